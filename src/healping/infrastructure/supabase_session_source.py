"""Supabase (GoTrue) session source"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional
import httpx
from jose import jwt
from jose.exceptions import JWTError

from ..core.errors import BackendError, SessionSourceError
from ..core.models import AuthEvent, Session
from ..core.session_source import ISessionSource, SessionChangeHandler, Subscription
from .session_storage import SessionStorage
from .supabase_client import SupabaseRestClient

logger = logging.getLogger(__name__)

SUPABASE_AUDIENCE = "authenticated"


class SupabaseSessionSource(ISessionSource):
    """
    Session source backed by Supabase Auth.

    Features:
    - Email/password sign-in and sign-up
    - Session persistence through SessionStorage, restored on startup
    - Refresh of expired sessions (refresh_token grant)
    - Background refresh `refresh_margin` seconds before expiry
    - Optional HS256 signature and audience verification with the JWT secret
    - SIGNED_IN / TOKEN_REFRESHED / SIGNED_OUT notifications
    """

    def __init__(
        self,
        client: SupabaseRestClient,
        storage: SessionStorage,
        jwt_secret: Optional[str] = None,
        refresh_margin: int = 60,
        retry_interval: float = 10.0,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Initialize Supabase session source.

        Args:
            client: REST client for the project
            storage: Where the session is persisted between restarts
            jwt_secret: Project JWT secret (enables signature verification)
            refresh_margin: Seconds before expiry at which the session is
                refreshed instead of reused
            retry_interval: Seconds between background refresh attempts when
                the provider is unreachable, and between checks while signed out
            clock: Wall clock in epoch seconds
            sleep: Awaitable delay used by the background refresh
        """
        self.client = client
        self.storage = storage
        self.jwt_secret = jwt_secret
        self.refresh_margin = refresh_margin
        self.retry_interval = retry_interval
        self._clock = clock
        self._sleep = sleep
        self._session: Optional[Session] = None
        self._handlers: List[SessionChangeHandler] = []
        self._refresh_task: Optional[asyncio.Task] = None

        logger.info(
            f"Initialized SupabaseSessionSource for {client.base_url} "
            f"(signature verification: {'on' if jwt_secret else 'off'})"
        )

    def get_provider_name(self) -> str:
        return "supabase"

    def current_access_token(self) -> Optional[str]:
        """Access token of the held session, used for row-level security"""
        return self._session.access_token if self._session else None

    def on_session_change(self, handler: SessionChangeHandler) -> Subscription:
        self._handlers.append(handler)

        def cancel() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return Subscription(cancel)

    async def get_current_session(self) -> Optional[Session]:
        """
        Return the held session, restoring it from storage if needed.

        A stored session close to expiry is refreshed first. A refresh token
        the provider rejects clears the stored session (signed out).

        Raises:
            SessionSourceError: If the stored session is invalid or the
                provider could not be reached
        """
        if self._session is None:
            payload = self.storage.load()
            if payload is None:
                return None
            try:
                self._session = self._session_from_payload(payload)
            except SessionSourceError:
                self.storage.clear()
                raise
            logger.info(f"Restored persisted session for user {self._session.user_id}")

        if self._session.is_expired(self._clock(), self.refresh_margin):
            logger.info(f"Session for user {self._session.user_id} expired, refreshing")
            try:
                return await self._refresh(emit=False)
            except BackendError as e:
                logger.warning(f"Stored session could not be refreshed: {e.message}")
                self._drop_session()
                return None

        return self._session

    async def sign_in_with_password(self, email: str, password: str) -> Session:
        """
        Sign in with email and password.

        Raises:
            SessionSourceError: If the credentials are rejected or the
                provider is unreachable
        """
        payload = await self._request(
            self.client.auth_token("password", {"email": email, "password": password})
        )
        session = self._accept(payload)
        logger.info(f"User {session.user_id} signed in")
        self._emit(AuthEvent.SIGNED_IN, session)
        return session

    async def sign_up(
        self, email: str, password: str, full_name: Optional[str] = None
    ) -> Optional[Session]:
        """
        Register a new account.

        Returns:
            The new Session, or None when the project requires email
            confirmation before the first sign-in
        """
        data = {"full_name": full_name} if full_name else None
        payload = await self._request(self.client.auth_signup(email, password, data))

        if not payload or not payload.get("access_token"):
            logger.info(f"Sign-up for {email} pending email confirmation")
            return None

        session = self._accept(payload)
        logger.info(f"User {session.user_id} signed up")
        self._emit(AuthEvent.SIGNED_IN, session)
        return session

    async def refresh_session(self) -> Session:
        """
        Exchange the refresh token for new credentials.

        Raises:
            SessionSourceError: If there is no session or the refresh failed
        """
        try:
            return await self._refresh(emit=True)
        except BackendError as e:
            raise SessionSourceError(e.message) from e

    async def sign_out(self) -> None:
        """
        Sign out. The local session is always dropped; a failed remote
        logout is reported after subscribers have been notified.

        Raises:
            SessionSourceError: If the remote logout call failed
        """
        session = self._session
        self._drop_session()

        error: Optional[str] = None
        if session is not None:
            try:
                await self.client.auth_logout(session.access_token)
            except BackendError as e:
                if e.status_code in (401, 403, 404):
                    # Token already revoked or expired upstream
                    logger.debug(f"Remote logout ignored: {e.message}")
                else:
                    error = e.message
            except httpx.HTTPError as e:
                error = f"Failed to reach identity provider: {e}"

        self._emit(AuthEvent.SIGNED_OUT, None)

        if error:
            logger.error(f"Remote sign-out failed: {error}")
            raise SessionSourceError(error)

    def start_auto_refresh(self) -> None:
        """Start refreshing the held session in the background"""
        if self._refresh_task is not None and not self._refresh_task.done():
            return
        self._refresh_task = asyncio.get_running_loop().create_task(self._auto_refresh())
        logger.info(f"Session auto-refresh started (margin {self.refresh_margin}s)")

    async def stop_auto_refresh(self) -> None:
        task = self._refresh_task
        self._refresh_task = None
        if task is None:
            return

        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Session auto-refresh stopped")

    def seconds_until_refresh(self) -> float:
        """Delay before the held session enters its refresh margin"""
        session = self._session
        if session is None or session.expires_at is None:
            return self.retry_interval
        return max(0.0, session.expires_at - self.refresh_margin - self._clock())

    async def _auto_refresh(self) -> None:
        while True:
            await self._sleep(self.seconds_until_refresh())

            session = self._session
            if session is None or not session.is_expired(self._clock(), self.refresh_margin):
                continue

            try:
                await self._refresh(emit=True)
            except BackendError as e:
                logger.warning(
                    f"Refresh token for user {session.user_id} rejected, "
                    f"signing out: {e.message}"
                )
                self._drop_session()
                self._emit(AuthEvent.SIGNED_OUT, None)
            except SessionSourceError as e:
                logger.warning(f"Session refresh failed, retrying in {self.retry_interval}s: {e}")
                await self._sleep(self.retry_interval)

    async def _refresh(self, emit: bool) -> Session:
        current = self._session
        if current is None or not current.refresh_token:
            raise SessionSourceError("No session to refresh")

        try:
            payload = await self.client.auth_token(
                "refresh_token", {"refresh_token": current.refresh_token}
            )
        except BackendError as e:
            if e.is_server_error:
                raise SessionSourceError(e.message) from e
            raise
        except httpx.HTTPError as e:
            raise SessionSourceError(f"Failed to reach identity provider: {e}") from e

        if self._session is not current:
            # Signed out or signed in again while the refresh was in flight
            raise SessionSourceError("Session changed during refresh")

        session = self._accept(payload)
        logger.info(f"Refreshed session for user {session.user_id}")
        if emit:
            self._emit(AuthEvent.TOKEN_REFRESHED, session)
        return session

    async def _request(self, call) -> Dict[str, Any]:
        try:
            return await call
        except BackendError as e:
            raise SessionSourceError(e.message) from e
        except httpx.HTTPError as e:
            raise SessionSourceError(f"Failed to reach identity provider: {e}") from e

    def _drop_session(self) -> None:
        self._session = None
        self.storage.clear()

    def _accept(self, payload: Dict[str, Any]) -> Session:
        session = self._session_from_payload(payload)
        self._session = session
        self.storage.save({**payload, "expires_at": session.expires_at})
        return session

    def _session_from_payload(self, payload: Dict[str, Any]) -> Session:
        """
        Build a Session from a GoTrue token response.

        Raises:
            SessionSourceError: If the access token is missing or invalid
        """
        token = payload.get("access_token")
        if not token:
            raise SessionSourceError("Session has no access token")

        claims = self._read_claims(token)
        user = payload.get("user") or {}

        user_id = user.get("id") or claims.get("sub")
        if not user_id:
            raise SessionSourceError("Session has no user id")

        expires_at = payload.get("expires_at") or claims.get("exp")
        if expires_at is None and payload.get("expires_in"):
            expires_at = int(self._clock()) + int(payload["expires_in"])

        return Session(
            user_id=str(user_id),
            email=user.get("email") or claims.get("email", ""),
            access_token=token,
            refresh_token=payload.get("refresh_token", ""),
            expires_at=int(expires_at) if expires_at is not None else None,
            user_metadata=user.get("user_metadata") or claims.get("user_metadata") or {},
        )

    def _read_claims(self, token: str) -> Dict[str, Any]:
        # Expiry is handled by refresh, so it is not enforced here
        try:
            if self.jwt_secret:
                return jwt.decode(
                    token,
                    self.jwt_secret,
                    algorithms=["HS256"],
                    audience=SUPABASE_AUDIENCE,
                    options={"verify_exp": False},
                )
            return jwt.get_unverified_claims(token)
        except JWTError as e:
            logger.warning(f"Access token rejected: {e}")
            raise SessionSourceError(f"Invalid access token: {e}") from e

    def _emit(self, event: AuthEvent, session: Optional[Session]) -> None:
        for handler in list(self._handlers):
            try:
                handler(event, session)
            except Exception as e:
                logger.error(f"Session change handler failed on {event.value}: {e}")
