from __future__ import annotations


class ParleyError(Exception):
    """Base class for errors raised by parley services."""


class ValidationError(ParleyError):
    """Malformed or unauthorized input; rejected before any side effect."""


class NotFoundError(ParleyError):
    pass


class UpstreamProviderError(ParleyError):
    def __init__(self, message: str, *, status_code: int | None = None, body: str | None = None):
        super().__init__(message)
        self.status_code: int | None = status_code
        self.body: str | None = body


class UpstreamTimeoutError(UpstreamProviderError):
    pass


class CurationFailure(ParleyError):
    pass


class ProbeFailure(ParleyError):
    pass


class VersionConflictError(ParleyError):
    def __init__(self, session_id: str, expected_version: int):
        super().__init__(
            f"session {session_id} was modified concurrently (expected version {expected_version})"
        )
        self.session_id: str = session_id
        self.expected_version: int = expected_version


class SessionBusyError(ParleyError):
    def __init__(self, session_id: str):
        super().__init__(f"session {session_id} already has a turn in progress")
        self.session_id: str = session_id
