"""
Acting-user resolution for audit records.

Every audit record is attributed to a user. The user comes from, in order:
1. An explicit value passed with the operation
2. The user provider configured on the AuditLog

A provider is any zero-argument callable returning the current user or None.
"""

from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Callable, Iterator, Optional

UserProvider = Callable[[], Any]


class UserMissingError(ValueError):
    """Raised when an audited operation has no resolvable acting user."""

    def __init__(self, message: str = "User missing in audit log!"):
        super().__init__(message)


def no_user() -> None:
    """Default provider: nobody is acting."""
    return None


class StaticUserProvider:
    """Provider that always returns the same user (scripts, jobs, tests)."""

    def __init__(self, user: Any):
        self.user = user

    def __call__(self) -> Any:
        return self.user


class ContextUserProvider:
    """
    Provider backed by a context variable.

    Lets a request handler set the acting user for the code it calls without
    touching shared state:

        users = ContextUserProvider()
        audit_log = AuditLog(store, get_user=users)

        with users.acting_as("jack"):
            collection.update_one({"_id": item_id}, {"name": "x"})
    """

    def __init__(self, name: str = "auditkit_user"):
        self._current: ContextVar[Optional[Any]] = ContextVar(name, default=None)

    def __call__(self) -> Any:
        return self._current.get()

    @contextmanager
    def acting_as(self, user: Any) -> Iterator[None]:
        token = self._current.set(user)
        try:
            yield
        finally:
            self._current.reset(token)


def resolve_user(explicit: Any, provider: Optional[UserProvider]) -> Any:
    """
    Resolve the acting user or fail.

    Falsy explicit values (None, "") fall through to the provider. The
    provider is called on every resolution; it may be swapped at any time.

    Raises:
        UserMissingError: If neither source yields a user
    """
    user = explicit
    if not user and provider is not None:
        user = provider()
    if not user:
        raise UserMissingError()
    return user
