from __future__ import annotations

import base64

import pytest
from pydantic import ValidationError

from parley.core.config import Settings


_GOOD_KEY = base64.urlsafe_b64encode(b"k" * 32).decode("ascii").rstrip("=")


def _prod(**overrides: object) -> Settings:
    values: dict[str, object] = {
        "env": "prod",
        "auth_jwt_secret": "a-real-secret",
        "llm_mode": "live",
        "push_transport": "redis",
        "secrets_master_key": _GOOD_KEY,
    }
    values.update(overrides)
    return Settings(**values)  # type: ignore[arg-type]


def test_prod_settings_accept_a_complete_config() -> None:
    s = _prod()
    assert s.secrets_master_key_bytes == b"k" * 32


@pytest.mark.parametrize(
    ("overrides", "needle"),
    [
        ({"auth_jwt_secret": "dev-secret-change-me"}, "AUTH_JWT_SECRET"),
        ({"llm_mode": "fake"}, "LLM_MODE=fake"),
        ({"push_transport": "local"}, "PUSH_TRANSPORT=local"),
        ({"secrets_master_key": None}, "SECRETS_MASTER_KEY"),
    ],
)
def test_prod_settings_reject_dev_defaults(overrides: dict[str, object], needle: str) -> None:
    with pytest.raises(ValidationError, match=needle):
        _ = _prod(**overrides)


def test_master_key_must_decode_to_32_bytes() -> None:
    short = base64.urlsafe_b64encode(b"k" * 16).decode("ascii")
    with pytest.raises(ValidationError, match="32 bytes"):
        _ = Settings(secrets_master_key=short)


def test_dev_master_key_is_derived_from_jwt_secret() -> None:
    a = Settings(env="dev", auth_jwt_secret="one")
    b = Settings(env="dev", auth_jwt_secret="two")
    assert len(a.secrets_master_key_bytes) == 32
    assert a.secrets_master_key_bytes != b.secrets_master_key_bytes


def test_choice_fields_are_normalized_and_checked() -> None:
    assert Settings(push_transport=" Local ", llm_mode="LIVE").push_transport == "local"
    with pytest.raises(ValidationError):
        _ = Settings(push_transport="kafka")
    with pytest.raises(ValidationError):
        _ = Settings(llm_mode="replay")


def test_list_settings_accept_csv_and_json() -> None:
    s = Settings(cors_allowed_origins="https://a.test, https://b.test", trusted_hosts='["x.test", "y.test"]')
    assert s.cors_allowed_origins == ["https://a.test", "https://b.test"]
    assert s.trusted_hosts == ["x.test", "y.test"]


def test_llm_timeouts_are_clamped() -> None:
    s = Settings(llm_timeout_seconds=5000, llm_image_timeout_seconds=-1)
    assert s.llm_timeout_seconds == 300.0
    assert s.llm_image_timeout_seconds == 60.0
