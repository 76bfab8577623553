from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from collections.abc import Mapping
from typing import TypeAlias, cast


JSONScalar: TypeAlias = str | int | float | bool | None
JSONValue: TypeAlias = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]


def _b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _b64url_decode(data: str) -> bytes:
    if data == "":
        raise ValueError("invalid base64 input")
    padded = data + "=" * ((4 - (len(data) % 4)) % 4)
    try:
        return base64.urlsafe_b64decode(padded.encode("ascii"))
    except Exception as exc:
        raise ValueError("invalid base64 input") from exc


def _json_b64url(obj: Mapping[str, JSONValue]) -> str:
    raw = json.dumps(obj, separators=(",", ":"), sort_keys=True, ensure_ascii=True).encode("utf-8")
    return _b64url_encode(raw)


def _json_loads_dict(data: bytes) -> dict[str, JSONValue]:
    try:
        obj = cast(object, json.loads(data.decode("utf-8")))
    except (UnicodeDecodeError, ValueError) as exc:
        raise ValueError("invalid token") from exc
    if not isinstance(obj, dict):
        raise ValueError("invalid token")
    raw = cast(dict[object, object], obj)
    for k in raw.keys():
        if not isinstance(k, str):
            raise ValueError("invalid token")
    return cast(dict[str, JSONValue], raw)


def _sign_hs256(message: bytes, secret: str) -> bytes:
    if secret == "":
        raise ValueError("secret must be a non-empty string")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).digest()


def encode_access_token(payload: dict[str, JSONValue], secret: str, expires_in_seconds: int) -> str:
    """Mint an HS256 token. The identity service owns issuance; tests and scripts use this."""
    if expires_in_seconds <= 0:
        raise ValueError("expires_in_seconds must be a positive int")

    now = int(time.time())
    body: dict[str, JSONValue] = dict(payload)
    body["exp"] = now + expires_in_seconds

    header = {"alg": "HS256", "typ": "JWT"}
    header_b64 = _json_b64url(header)
    payload_b64 = _json_b64url(body)
    signing_input = f"{header_b64}.{payload_b64}".encode("ascii")
    sig = _sign_hs256(signing_input, secret)
    return f"{header_b64}.{payload_b64}.{_b64url_encode(sig)}"


def decode_access_token(token: str, secret: str) -> dict[str, JSONValue]:
    if token == "":
        raise ValueError("invalid token")

    parts = token.split(".")
    if len(parts) != 3:
        raise ValueError("invalid token")
    header_b64, payload_b64, sig_b64 = parts

    signing_input = f"{header_b64}.{payload_b64}".encode("ascii")
    expected_sig = _sign_hs256(signing_input, secret)
    try:
        provided_sig = _b64url_decode(sig_b64)
    except ValueError as exc:
        raise ValueError("invalid token") from exc
    if not hmac.compare_digest(provided_sig, expected_sig):
        raise ValueError("invalid token")

    header = _json_loads_dict(_b64url_decode(header_b64))
    payload = _json_loads_dict(_b64url_decode(payload_b64))

    alg = header.get("alg")
    if not isinstance(alg, str) or alg != "HS256":
        raise ValueError("invalid token")

    exp = payload.get("exp")
    if not isinstance(exp, int):
        raise ValueError("invalid token")
    if int(time.time()) >= exp:
        raise ValueError("token expired")

    return payload


def resolve_caller(token: str, secret: str) -> tuple[str, str]:
    """Return (caller_id, role) for a bearer token, raising ValueError when invalid."""
    payload = decode_access_token(token, secret)
    sub = payload.get("sub")
    if not isinstance(sub, str) or sub.strip() == "":
        raise ValueError("invalid token")
    role = payload.get("role")
    return sub, role if isinstance(role, str) else "user"


def sign_object_url(key: str, expires_at: int, secret: str) -> str:
    msg = f"{key}\n{expires_at}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), msg, hashlib.sha256).hexdigest()


def verify_object_url(key: str, expires_at: int, sig: str, secret: str) -> bool:
    if int(time.time()) >= expires_at:
        return False
    return hmac.compare_digest(sign_object_url(key, expires_at, secret), sig)
