"""
Identity provider contract and an in-memory session gate.

The sync core does not authenticate; it only reacts to an identity
appearing (hydrate) or disappearing (purge). Any auth client can drive
the core by implementing IdentityProvider.
"""

from __future__ import annotations

import logging
from typing import Callable, List, Optional, Protocol, runtime_checkable

logger = logging.getLogger(__name__)

IdentityHandler = Callable[[Optional[str]], None]


@runtime_checkable
class IdentityProvider(Protocol):
    """Supplies the identity used to scope mutations."""

    def current_identity(self) -> Optional[str]:
        ...

    def on_identity_change(self, handler: IdentityHandler) -> Callable[[], None]:
        ...


class SessionGate:
    """In-memory IdentityProvider driven by the host application.

    Handlers fire only when the identity actually changes, so refreshing
    the same session does not cause a purge/reload cycle.
    """

    def __init__(self, identity: Optional[str] = None, access_token: Optional[str] = None) -> None:
        self._identity = identity
        self._access_token = access_token
        self._handlers: List[IdentityHandler] = []

    def current_identity(self) -> Optional[str]:
        return self._identity

    @property
    def access_token(self) -> Optional[str]:
        return self._access_token

    def on_identity_change(self, handler: IdentityHandler) -> Callable[[], None]:
        self._handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    def sign_in(self, identity: str, access_token: Optional[str] = None) -> None:
        if not identity:
            raise ValueError("identity must be non-empty")
        self._access_token = access_token
        self._set(identity)

    def sign_out(self) -> None:
        self._access_token = None
        self._set(None)

    def _set(self, identity: Optional[str]) -> None:
        if identity == self._identity:
            return
        self._identity = identity
        logger.info("Identity changed", extra={"signed_in": identity is not None})
        for handler in list(self._handlers):
            handler(identity)
