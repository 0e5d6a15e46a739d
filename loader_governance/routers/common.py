from __future__ import annotations

from dataclasses import dataclass, field
from typing import NoReturn, Optional

from fastapi import Header, HTTPException, status

from loader_governance.services.errors import (
    ERROR_CODE_HEADER,
    AuthorizationError,
    ConflictError,
    DownstreamUnavailableError,
    EncryptionError,
    InvalidStateError,
    LoaderGovernanceError,
    NotFoundError,
    ValidationError,
)

_STATUS_BY_ERROR: tuple[tuple[type[LoaderGovernanceError], int], ...] = (
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (ConflictError, status.HTTP_409_CONFLICT),
    (InvalidStateError, status.HTTP_409_CONFLICT),
    (AuthorizationError, status.HTTP_403_FORBIDDEN),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (EncryptionError, status.HTTP_500_INTERNAL_SERVER_ERROR),
    (DownstreamUnavailableError, status.HTTP_503_SERVICE_UNAVAILABLE),
)


@dataclass(frozen=True)
class Caller:
    username: Optional[str]
    roles: frozenset[str] = field(default_factory=frozenset)
    token: Optional[str] = None

    def require_username(self) -> str:
        if not self.username:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="X-Username header is required",
            )
        return self.username


def get_caller(
    x_username: Optional[str] = Header(None),
    x_user_roles: Optional[str] = Header(None),
    authorization: Optional[str] = Header(None),
) -> Caller:
    roles = frozenset(
        role.strip().upper() for role in (x_user_roles or "").split(",") if role.strip()
    )
    username = (x_username or "").strip() or None
    return Caller(username=username, roles=roles, token=authorization)


def raise_http_error(exc: LoaderGovernanceError) -> NoReturn:
    headers = {ERROR_CODE_HEADER: exc.error_code}
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            raise HTTPException(status_code=status_code, detail=exc.message, headers=headers) from exc
    raise HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=exc.message,
        headers=headers,
    ) from exc
