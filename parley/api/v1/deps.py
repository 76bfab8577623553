# pyright: reportMissingImports=false
# pyright: reportCallInDefaultInitializer=false
from __future__ import annotations

from dataclasses import dataclass
from typing import ClassVar, NoReturn

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from parley.core.config import settings
from parley.core.errors import (
    NotFoundError,
    ParleyError,
    SessionBusyError,
    UpstreamProviderError,
    ValidationError,
    VersionConflictError,
)
from parley.core.security import resolve_caller


_bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Caller:
    id: str
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def _unauthorized(detail: str = "Unauthorized") -> NoReturn:
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)


def _forbidden(detail: str = "Forbidden") -> NoReturn:
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=detail)


def caller_from_token(token: str | None) -> Caller | None:
    if token is None or token == "":
        return None
    try:
        sub, role = resolve_caller(token, settings.auth_jwt_secret)
    except ValueError:
        return None
    return Caller(id=sub, role=role)


def get_caller(
    creds: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
) -> Caller:
    if creds is None:
        _unauthorized()
    if creds.scheme.lower() != "bearer" or creds.credentials == "":
        _unauthorized()
    caller = caller_from_token(creds.credentials)
    if caller is None:
        _unauthorized()
    return caller


def require_user_id(caller: Caller = Depends(get_caller)) -> str:
    return caller.id


def require_admin(caller: Caller = Depends(get_caller)) -> Caller:
    if not caller.is_admin:
        _forbidden("Requires admin role")
    return caller


def http_error(exc: ParleyError) -> HTTPException:
    """Map a service error onto the HTTP status the API reports for it."""
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, (VersionConflictError, SessionBusyError)):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    if isinstance(exc, ValidationError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    if isinstance(exc, UpstreamProviderError):
        return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Internal error")


class CamelModel(BaseModel):
    """Wire models: camelCase on the wire, snake_case in Python."""

    model_config: ClassVar[ConfigDict] = ConfigDict(alias_generator=to_camel, populate_by_name=True)
