"""Session source interface for pluggable identity providers"""

from abc import ABC, abstractmethod
from typing import Callable, Optional

from .models import AuthEvent, Session

SessionChangeHandler = Callable[[AuthEvent, Optional[Session]], None]


class Subscription:
    """Handle returned by `ISessionSource.on_session_change`"""

    def __init__(self, cancel: Callable[[], None]):
        self._cancel = cancel
        self.active = True

    def unsubscribe(self) -> None:
        """Stop receiving events. Safe to call more than once."""
        if self.active:
            self.active = False
            self._cancel()


class ISessionSource(ABC):
    """
    Interface for identity providers.

    Implementations must:
    1. Resolve the current session (restoring a persisted one if supported)
    2. Notify subscribers of SIGNED_IN, SIGNED_OUT and TOKEN_REFRESHED
    3. End the session remotely on sign out

    Providers with expiring tokens also override start_auto_refresh and
    stop_auto_refresh.
    """

    @abstractmethod
    async def get_current_session(self) -> Optional[Session]:
        """
        Resolve the active session.

        Returns:
            The active Session, or None when nobody is signed in

        Raises:
            SessionSourceError: If the provider could not be reached or
                rejected the stored credentials
        """
        pass

    @abstractmethod
    def on_session_change(self, handler: SessionChangeHandler) -> Subscription:
        """
        Register a session change handler.

        Handlers are called synchronously on the event loop with
        `(event, session)`; session is None for SIGNED_OUT.
        """
        pass

    @abstractmethod
    async def sign_out(self) -> None:
        """
        End the current session.

        Raises:
            SessionSourceError: If the remote sign-out call failed
        """
        pass

    async def sign_in_with_password(self, email: str, password: str) -> Session:
        """
        Sign in with email and password, emitting SIGNED_IN.

        Raises:
            SessionSourceError: If the credentials are rejected
            NotImplementedError: If the provider has no password sign-in
        """
        raise NotImplementedError(f"{self.get_provider_name()} does not support password sign-in")

    async def sign_up(
        self, email: str, password: str, full_name: Optional[str] = None
    ) -> Optional[Session]:
        """
        Register an account. Returns None while email confirmation is pending.

        Raises:
            SessionSourceError: If registration is rejected
            NotImplementedError: If the provider has no sign-up
        """
        raise NotImplementedError(f"{self.get_provider_name()} does not support sign-up")

    def start_auto_refresh(self) -> None:
        """Keep the held session's credentials fresh, emitting TOKEN_REFRESHED"""
        pass

    async def stop_auto_refresh(self) -> None:
        pass

    @abstractmethod
    def get_provider_name(self) -> str:
        """Return the name of this identity provider"""
        pass
