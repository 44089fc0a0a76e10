import logging
from typing import AsyncIterable, Callable, List, Optional

from chatsync.core.errors import SessionError


logger = logging.getLogger(__name__)

IdentityListener = Callable[[Optional[str]], None]


class SessionProvider:
    """
    Current authenticated identity, fed by an external auth provider.

    Listeners are called synchronously on every transition. Switching
    directly from one identity to another is delivered as a sign-out
    (``None``) followed by the new identity, so listeners always tear down
    before they initialize.
    """

    def __init__(self, identity: Optional[str] = None) -> None:
        self._identity = identity
        self._listeners: List[IdentityListener] = []

    @property
    def identity(self) -> Optional[str]:
        return self._identity

    def require_identity(self) -> str:
        if self._identity is None:
            raise SessionError("No signed-in identity")
        return self._identity

    def subscribe(self, listener: IdentityListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def sign_in(self, identity: str) -> None:
        if not identity:
            raise ValueError("Identity cannot be empty")
        if identity == self._identity:
            return
        if self._identity is not None:
            self.sign_out()
        logger.info("Session signed in as %s", identity)
        self._identity = identity
        self._notify(identity)

    def sign_out(self) -> None:
        if self._identity is None:
            return
        logger.info("Session for %s signed out", self._identity)
        self._identity = None
        self._notify(None)

    async def follow(self, auth_states: AsyncIterable[Optional[str]]) -> None:
        """Mirror an auth provider's state-change stream until it ends."""
        async for identity in auth_states:
            if identity:
                self.sign_in(identity)
            else:
                self.sign_out()

    def _notify(self, identity: Optional[str]) -> None:
        for listener in list(self._listeners):
            listener(identity)
