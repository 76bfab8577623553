from __future__ import annotations

from pathlib import Path
from urllib.parse import parse_qs, urlsplit

import pytest

from parley.core.errors import NotFoundError, ValidationError
from parley.storage.objects import ObjectStore, new_object_key, session_prefix


def _store(tmp_path: Path) -> ObjectStore:
    return ObjectStore(tmp_path, signing_secret="s3cret")


def test_put_get_and_delete_prefix(tmp_path: Path) -> None:
    store = _store(tmp_path)
    prefix = session_prefix("u1", "s1")
    a = store.put(f"{prefix}a.txt", b"alpha")
    _ = store.put(f"{prefix}images/b.png", b"beta")
    _ = store.put("u1/s2/c.txt", b"gamma")

    assert store.get(a) == b"alpha"
    store.delete_prefix(prefix)
    assert not store.exists(a)
    assert store.get("u1/s2/c.txt") == b"gamma"
    with pytest.raises(NotFoundError):
        _ = store.get(a)


@pytest.mark.parametrize("key", ["", "../etc/passwd", "u1/../../x", "u1//x", "u1\\x", "/"])
def test_rejects_keys_that_escape_the_root(tmp_path: Path, key: str) -> None:
    with pytest.raises(ValidationError):
        _ = _store(tmp_path).put(key, b"x")


def test_signed_url_verifies_until_expiry(tmp_path: Path) -> None:
    store = _store(tmp_path)
    url = urlsplit(store.signed_url("u1/s1/a.png", ttl_seconds=60))
    q = parse_qs(url.query)
    exp, sig = int(q["exp"][0]), q["sig"][0]

    assert url.path == "/api/v1/files/u1/s1/a.png"
    assert store.verify("u1/s1/a.png", exp, sig)
    assert not store.verify("u1/s1/other.png", exp, sig)
    assert not ObjectStore(tmp_path, signing_secret="other").verify("u1/s1/a.png", exp, sig)

    past = urlsplit(store.signed_url("u1/s1/a.png", ttl_seconds=60, now=1_000))
    pq = parse_qs(past.query)
    assert not store.verify("u1/s1/a.png", int(pq["exp"][0]), pq["sig"][0])


def test_data_url_inlines_bytes(tmp_path: Path) -> None:
    store = _store(tmp_path)
    _ = store.put("u1/s1/doc.pdf", b"%PDF")
    assert store.data_url("u1/s1/doc.pdf") == "data:application/pdf;base64,JVBERg=="


def test_new_object_key_stays_in_session_prefix() -> None:
    key = new_object_key("u1", "s1", "../../my file.pdf")
    assert key.startswith("u1/s1/")
    assert key.endswith("-my_file.pdf")
    assert ".." not in key
