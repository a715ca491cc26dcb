from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from fastapi import Depends, HTTPException, Request, status


class Role(str, Enum):
    ADMINISTRATOR = "ADMINISTRATOR"
    ENGINEER = "ENGINEER"


@dataclass(frozen=True)
class Principal:
    id: int
    username: str
    role: Role
    active: bool = True

    @property
    def is_administrator(self) -> bool:
        return self.role == Role.ADMINISTRATOR


class IdentityContext(Protocol):
    def current_user(self) -> Principal:
        """Return the acting principal or raise if it cannot be resolved."""


class IdentityUnavailable(Exception):
    pass


@dataclass(frozen=True)
class StaticIdentity:
    """Identity fixed at construction; used by scripts, tests and service callers."""

    principal: Principal | None

    def current_user(self) -> Principal:
        if self.principal is None:
            raise IdentityUnavailable("no principal bound")
        return self.principal


class RequestIdentity:
    """Reads the principal the session middleware attached to the request."""

    def __init__(self, request: Request) -> None:
        self._request = request

    def current_user(self) -> Principal:
        principal = getattr(self._request.state, "principal", None)
        if principal is None:
            raise IdentityUnavailable("request carries no session principal")
        return principal


def get_current_principal(request: Request) -> Principal:
    principal = getattr(request.state, "principal", None)
    if not principal:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED)
    if not principal.active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN)
    return principal


def get_identity(request: Request, _: Principal = Depends(get_current_principal)) -> IdentityContext:
    return RequestIdentity(request)


def require_role(*allowed: Role):
    def _dep(principal: Principal = Depends(get_current_principal)) -> Principal:
        if principal.role not in allowed:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN)
        return principal

    return _dep
