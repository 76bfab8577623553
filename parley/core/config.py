# pyright: reportMissingImports=false

from __future__ import annotations

from functools import lru_cache
import base64
import hashlib
import json
from typing import ClassVar, cast

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-driven settings with local dev defaults."""

    model_config: ClassVar[SettingsConfigDict] = SettingsConfigDict(
        env_file=None,
        case_sensitive=False,
        extra="ignore",
    )

    api_v1_prefix: str = "/api/v1"
    log_level: str = "INFO"

    env: str = "dev"

    cors_allowed_origins: list[str] = Field(default_factory=list)
    trusted_hosts: list[str] = Field(default_factory=list)

    # Identity collaborator: bearer tokens are HS256 JWTs with a `sub` claim.
    auth_jwt_secret: str = "dev-secret-change-me"

    secrets_master_key: bytes | None = None

    # Prefer DATABASE_URL when provided; otherwise construct from POSTGRES_* vars.
    database_url: str | None = None
    postgres_db: str = "parley"
    postgres_user: str = "parley"
    postgres_password: str = "parley"
    postgres_host: str = "localhost"
    postgres_port: int = 5432

    redis_url: str = "redis://localhost:6379/0"
    push_transport: str = "redis"

    # fake: deterministic offline adapter for every provider; live: real HTTP providers.
    llm_mode: str = "fake"
    llm_timeout_seconds: float = 60.0
    llm_image_timeout_seconds: float = 180.0

    openai_curator_model: str = "gpt-5-chat-latest"
    openai_curator_fallback_model: str = "gpt-4.1-mini"
    openai_classifier_model: str = "gpt-4o-mini"
    openai_image_fallback_model: str = "gpt-image-1"
    anthropic_curator_model: str = "claude-sonnet-4-5"
    anthropic_curator_fallback_model: str = "claude-haiku-4-5"
    anthropic_classifier_model: str = "claude-haiku-4-5"

    curator_timeout_seconds: float = 45.0
    curator_fallback_timeout_seconds: float = 30.0
    classifier_timeout_seconds: float = 5.0
    probe_timeout_seconds: float = 60.0

    catalog_stale_days: int = 7
    catalog_refresh_concurrency: int = 4
    capability_probe_concurrency: int = 8

    connection_ttl_seconds: int = 24 * 3600
    session_lease_seconds: int = 600
    image_partial_interval_seconds: float = 10.0

    object_store_dir: str = "./var/objects"
    object_url_ttl_seconds: int = 3600
    public_base_url: str = "http://localhost:8000"

    alert_webhook_url: str | None = None

    @field_validator("secrets_master_key", mode="before")
    @classmethod
    def _parse_secrets_master_key(cls, v: object) -> bytes | None:
        if v is None:
            return None
        if isinstance(v, (bytes, bytearray)):
            raw_bytes = bytes(v)
            if raw_bytes == b"":
                return None
            if len(raw_bytes) != 32:
                raise ValueError("SECRETS_MASTER_KEY must be 32 bytes")
            return raw_bytes
        if isinstance(v, str):
            s = v.strip()
            if s == "":
                return None
            pad = "=" * ((4 - (len(s) % 4)) % 4)
            try:
                key_bytes = base64.urlsafe_b64decode((s + pad).encode("ascii"))
            except Exception as e:
                raise ValueError("SECRETS_MASTER_KEY contains invalid base64url") from e
            if len(key_bytes) != 32:
                raise ValueError("SECRETS_MASTER_KEY must decode to 32 bytes")
            return key_bytes
        return cast(bytes, v)

    @property
    def secrets_master_key_bytes(self) -> bytes:
        if self.secrets_master_key is not None:
            return self.secrets_master_key

        seed = (self.auth_jwt_secret + "|secrets_master_key|v1").encode("utf-8")
        return hashlib.sha256(seed).digest()

    @field_validator("cors_allowed_origins", "trusted_hosts", mode="before")
    @classmethod
    def _parse_listish_env(cls, v: object) -> list[str]:
        if v is None:
            return []
        if isinstance(v, list):
            v_list = cast(list[object], v)
            return [str(x).strip() for x in v_list if str(x).strip()]
        if isinstance(v, str):
            raw = v.strip()
            if raw == "":
                return []
            if raw.lstrip().startswith("["):
                try:
                    parsed: object = cast(object, json.loads(raw))
                except ValueError:
                    parsed = None
                if isinstance(parsed, list):
                    parsed_list = cast(list[object], parsed)
                    return [str(x).strip() for x in parsed_list if str(x).strip()]
            parts: list[str] = []
            for chunk in raw.replace("\n", ",").replace("\t", ",").split(","):
                s = chunk.strip()
                if s:
                    parts.append(s)
            return parts
        return [str(v).strip()] if str(v).strip() else []

    @field_validator("llm_timeout_seconds", "llm_image_timeout_seconds", mode="after")
    @classmethod
    def _clamp_timeout(cls, v: float) -> float:
        if v <= 0:
            return 60.0
        return max(1.0, min(v, 300.0))

    @field_validator("push_transport", "llm_mode", mode="before")
    @classmethod
    def _normalize_choice(cls, v: object) -> str:
        return str(v).strip().lower()

    @property
    def sqlalchemy_database_uri(self) -> str:
        if self.database_url:
            return self.database_url
        return (
            f"postgresql+psycopg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    def _is_prod_env(self) -> bool:
        return self.env.strip().lower() in ("prod", "production")

    @model_validator(mode="after")
    def _validate_choices(self) -> "Settings":
        if self.push_transport not in ("redis", "local"):
            raise ValueError("PUSH_TRANSPORT must be one of: redis, local")
        if self.llm_mode not in ("fake", "live"):
            raise ValueError("LLM_MODE must be one of: fake, live")
        if self.catalog_stale_days <= 0:
            raise ValueError("CATALOG_STALE_DAYS must be > 0")
        if self.catalog_refresh_concurrency <= 0 or self.capability_probe_concurrency <= 0:
            raise ValueError("catalog concurrency limits must be > 0")
        return self

    @model_validator(mode="after")
    def _validate_prod_config(self) -> "Settings":
        if not self._is_prod_env():
            return self

        problems: list[str] = []

        if self.auth_jwt_secret.strip() in ("", "dev-secret-change-me"):
            problems.append(
                "AUTH_JWT_SECRET must be set in production (cannot use default 'dev-secret-change-me')."
            )

        if self.llm_mode == "fake":
            problems.append("LLM_MODE=fake is forbidden in production. Set LLM_MODE=live.")

        if self.push_transport == "local":
            problems.append(
                "PUSH_TRANSPORT=local is forbidden in production (connections span processes). Set PUSH_TRANSPORT=redis."
            )

        if self.secrets_master_key is None:
            problems.append("SECRETS_MASTER_KEY must be set in production (base64url 32 bytes).")

        if problems:
            details = "\n".join(f"- {p}" for p in problems)
            raise ValueError(
                f"Production settings validation failed (ENV={self.env!r}). Fix the following before starting the server:\n"
                + details
            )

        return self


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
