# pyright: reportUnusedFunction=false
import os
import sys
import tempfile
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

# Settings are read once at import time, so the test environment must be in
# place before anything under `parley` is imported.
_TMP_DIR = Path(tempfile.mkdtemp(prefix="parley-tests-"))
_ = os.environ.setdefault("DATABASE_URL", f"sqlite:///{_TMP_DIR / 'parley.db'}")
_ = os.environ.setdefault("OBJECT_STORE_DIR", str(_TMP_DIR / "objects"))
os.environ["LLM_MODE"] = "fake"
os.environ["PUSH_TRANSPORT"] = "local"
os.environ["ENV"] = "test"
_ = os.environ.setdefault("CELERY_TASK_ALWAYS_EAGER", "1")
_ = os.environ.setdefault("AUTH_JWT_SECRET", "test-secret")


def _ensure_test_schema() -> None:
    from parley.db.base import Base
    from parley.db.session import engine

    Base.metadata.create_all(bind=engine)


_ensure_test_schema()


@pytest.fixture(autouse=True)
def _isolate_db() -> None:
    from parley.db.base import Base
    from parley.db.session import engine

    tables = list(Base.metadata.sorted_tables)
    if not tables:
        return

    with engine.begin() as conn:
        for t in reversed(tables):
            _ = conn.execute(t.delete())


def make_token(sub: str, *, role: str = "user") -> str:
    from parley.core.config import settings
    from parley.core.security import encode_access_token

    return encode_access_token({"sub": sub, "role": role}, settings.auth_jwt_secret, 3600)


def auth_headers(sub: str, *, role: str = "user") -> dict[str, str]:
    return {"Authorization": f"Bearer {make_token(sub, role=role)}"}


def create_provider(
    *,
    name: str = "Fake AI",
    kind: str = "fake",
    default_model: str = "fake-chat",
    active: bool = True,
) -> str:
    from parley.db.models import Provider
    from parley.db.session import SessionLocal

    with SessionLocal() as db:
        row = Provider(name=name, kind=kind, default_model=default_model, active=active)
        db.add(row)
        db.commit()
        return row.id
