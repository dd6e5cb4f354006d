"""Auth/session synchronizer.

Owns the process-wide snapshot of {session, profile, loading, initialized,
error} and keeps it consistent with the session source:
- Resolves the current session once at startup
- Fetches the profile for the signed-in user
- Applies SIGNED_IN / SIGNED_OUT / TOKEN_REFRESHED events
- Discards profile results that were superseded or arrive after teardown

Ordering: every profile fetch carries a generation id. Only the result whose
id matches the latest generation is applied. A request for a user whose
fetch is already in flight joins that fetch instead of starting another,
unless it is forced (after a profile write).
"""

import asyncio
import logging
from dataclasses import dataclass, replace
from typing import Callable, List, Optional, Set, Union

from .errors import ProfileStoreError, SessionSourceError
from .models import AuthEvent, AuthState, Profile, Session
from .profile_store import IProfileStore
from .session_source import ISessionSource, Subscription

logger = logging.getLogger(__name__)

StateListener = Callable[[AuthState], None]


@dataclass(frozen=True)
class LoadingStarted:
    clear_error: bool = True


@dataclass(frozen=True)
class SessionFailed:
    message: str


@dataclass(frozen=True)
class ProfileSettled:
    session: Session
    profile: Optional[Profile]
    error: Optional[str] = None


@dataclass(frozen=True)
class SignedOut:
    error: Optional[str] = None


@dataclass(frozen=True)
class CredentialsRefreshed:
    session: Session


Action = Union[LoadingStarted, SessionFailed, ProfileSettled, SignedOut, CredentialsRefreshed]


def reduce_auth_state(state: AuthState, action: Action) -> AuthState:
    """
    Single update entry point for the synchronizer's state.

    `initialized` is only ever set to True here, and every action that
    clears the session clears the profile with it.
    """
    if isinstance(action, LoadingStarted):
        return replace(
            state,
            loading=True,
            error=None if action.clear_error else state.error,
        )

    if isinstance(action, SessionFailed):
        return AuthState(loading=False, initialized=True, error=action.message)

    if isinstance(action, ProfileSettled):
        return AuthState(
            session=action.session,
            profile=action.profile,
            loading=False,
            initialized=True,
            error=action.error,
        )

    if isinstance(action, SignedOut):
        return AuthState(loading=False, initialized=True, error=action.error)

    if isinstance(action, CredentialsRefreshed):
        if state.session is None or not action.session.same_identity(state.session):
            return state
        return replace(state, session=state.session.with_credentials(action.session))

    raise TypeError(f"Unknown auth action: {action!r}")


@dataclass(frozen=True)
class SignOutResult:
    """Outcome of `AuthSynchronizer.sign_out` for the caller to surface"""

    ok: bool
    error: Optional[str] = None


class AuthSynchronizer:
    """
    Subscribable auth state container backed by a session source and a
    profile store.

    Example:
        synchronizer = AuthSynchronizer(session_source, profile_store)
        await synchronizer.start()

        unsubscribe = synchronizer.subscribe(lambda state: print(state.loading))
        await synchronizer.refresh_profile()

        synchronizer.close()
    """

    def __init__(self, session_source: ISessionSource, profile_store: IProfileStore):
        self._source = session_source
        self._store = profile_store

        self._state = AuthState()
        self._listeners: List[StateListener] = []
        self._subscription: Optional[Subscription] = None
        self._started = False
        self._alive = False

        # Profile fetch bookkeeping
        self._generation = 0
        self._pending_session: Optional[Session] = None
        self._profile_task: Optional[asyncio.Task] = None
        self._profile_user_id: Optional[str] = None
        self._tasks: Set[asyncio.Task] = set()

        logger.info(
            f"Initialized AuthSynchronizer with session source: "
            f"{session_source.get_provider_name()}"
        )

    @property
    def state(self) -> AuthState:
        """Current snapshot (read-only)"""
        return self._state

    @property
    def alive(self) -> bool:
        return self._alive

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """
        Register a listener called with every new snapshot.

        Returns:
            Callable that removes the listener
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def start(self) -> AuthState:
        """
        Subscribe to session changes and resolve the current session.

        Runs once per instance. Returns once the first resolution has settled.
        """
        if self._started:
            return self._state

        self._started = True
        self._alive = True

        # Subscribe before the lookup so no event is missed while it runs
        self._subscription = self._source.on_session_change(self._handle_session_change)
        generation = self._generation

        session: Optional[Session] = None
        error: Optional[str] = None
        try:
            session = await self._source.get_current_session()
        except SessionSourceError as e:
            logger.error(f"Auth session error: {e}")
            error = str(e) or "Failed to load session"
        except Exception as e:
            logger.error(f"Session fetch error: {e}")
            error = "Failed to load session"

        if not self._alive:
            logger.debug("Discarding initial session result after teardown")
            return self._state

        if generation != self._generation:
            # A session event arrived during the lookup and owns the state now
            logger.debug("Initial session result superseded by a session event")
        elif error is not None:
            self._dispatch(SessionFailed(error))
        elif session is None:
            logger.info("No active session")
            self._dispatch(SignedOut())
        else:
            logger.info(f"Restored session for user {session.user_id}")
            await asyncio.shield(self._request_profile(session))

        await self.wait_idle()
        return self._state

    def close(self) -> None:
        """Tear down: stop applying results and unsubscribe from the source"""
        if not self._alive:
            return

        self._alive = False
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None

        logger.info("AuthSynchronizer closed")

    async def sign_out(self) -> SignOutResult:
        """
        Sign out remotely, then clear local state regardless of the outcome.

        Returns:
            SignOutResult with ok=False and the failure message if the remote
            call failed (local state is cleared either way)
        """
        if not self._alive:
            logger.warning("sign_out called on a synchronizer that is not running")
            return SignOutResult(ok=False, error="Auth synchronizer is not running")

        self._invalidate()
        self._dispatch(LoadingStarted(clear_error=False))

        error: Optional[str] = None
        try:
            await self._source.sign_out()
        except SessionSourceError as e:
            logger.error(f"Error signing out: {e}")
            error = str(e) or "Failed to sign out"
        except Exception as e:
            logger.error(f"Logout error: {e}")
            error = "Failed to sign out"

        if self._alive:
            self._invalidate()
            self._dispatch(SignedOut(error=error))

        return SignOutResult(ok=error is None, error=error)

    async def refresh_profile(self, force: bool = False) -> AuthState:
        """
        Re-fetch the profile for the held session (no-op without one).

        Args:
            force: Start a new fetch that supersedes one already in flight.
                Use after writing the profile, since an earlier fetch may
                have read the row before the write.
        """
        held = self._held_session()
        if held is None or not self._alive:
            logger.debug("refresh_profile skipped: no session")
            return self._state

        await asyncio.shield(self._request_profile(held, force=force))
        return self._state

    async def wait_idle(self) -> None:
        """Wait for every outstanding profile fetch to finish"""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _handle_session_change(self, event: AuthEvent, session: Optional[Session]) -> None:
        if not self._alive:
            logger.debug(f"Ignoring {event.value} after teardown")
            return

        logger.info(
            f"Auth state changed: {event.value} "
            f"(user={session.user_id if session else None})"
        )

        if event is AuthEvent.SIGNED_OUT or session is None:
            self._invalidate()
            self._dispatch(SignedOut())
            return

        if event is AuthEvent.TOKEN_REFRESHED:
            if session.same_identity(self._held_session()):
                self._refresh_credentials(session)
                return
            logger.warning(
                f"Token refresh for unexpected user {session.user_id}, "
                f"handling as sign-in"
            )

        self._request_profile(session)

    def _refresh_credentials(self, session: Session) -> None:
        if self._pending_session is not None and session.same_identity(self._pending_session):
            self._pending_session = self._pending_session.with_credentials(session)
        if session.same_identity(self._state.session):
            self._dispatch(CredentialsRefreshed(session))
        logger.debug(f"Refreshed credentials for user {session.user_id}")

    def _held_session(self) -> Optional[Session]:
        if self._pending_session is not None:
            return self._pending_session
        return self._state.session

    def _invalidate(self) -> None:
        """Supersede any in-flight profile fetch"""
        self._generation += 1
        self._pending_session = None
        self._profile_task = None
        self._profile_user_id = None

    def _request_profile(self, session: Session, force: bool = False) -> asyncio.Task:
        task = self._profile_task
        if (
            not force
            and task is not None
            and not task.done()
            and self._profile_user_id == session.user_id
        ):
            logger.debug(f"Profile fetch already in flight for {session.user_id}, joining it")
            if self._pending_session is not None:
                self._pending_session = self._pending_session.with_credentials(session)
            return task

        self._generation += 1
        generation = self._generation
        self._pending_session = session
        self._profile_user_id = session.user_id
        self._dispatch(LoadingStarted(clear_error=True))

        task = asyncio.get_running_loop().create_task(
            self._fetch_profile(session.user_id, generation)
        )
        self._profile_task = task
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _fetch_profile(self, user_id: str, generation: int) -> None:
        profile: Optional[Profile] = None
        error: Optional[str] = None

        try:
            profile = await self._store.get_profile_by_id(user_id)
            if profile is None:
                logger.info(f"No profile found for user {user_id}, this is normal for new users")
        except ProfileStoreError as e:
            logger.error(f"Profile fetch error for user {user_id}: {e}")
            error = str(e) or "Failed to fetch profile"
        except Exception as e:
            logger.error(f"Unexpected error fetching profile for {user_id}: {e}")
            error = "Failed to fetch profile"

        if not self._alive:
            logger.debug(f"Discarding profile result for {user_id} after teardown")
            return

        if generation != self._generation or self._pending_session is None:
            logger.debug(
                f"Discarding stale profile result for {user_id} "
                f"(generation {generation}, current {self._generation})"
            )
            return

        session = self._pending_session
        self._pending_session = None
        self._profile_task = None
        self._profile_user_id = None
        self._dispatch(ProfileSettled(session=session, profile=profile, error=error))

    def _dispatch(self, action: Action) -> None:
        new_state = reduce_auth_state(self._state, action)
        if new_state == self._state:
            return

        self._state = new_state
        logger.debug(
            f"{type(action).__name__}: user="
            f"{new_state.session.user_id if new_state.session else None}, "
            f"profile={'yes' if new_state.profile else 'no'}, "
            f"loading={new_state.loading}, initialized={new_state.initialized}"
        )

        for listener in list(self._listeners):
            try:
                listener(new_state)
            except Exception as e:
                logger.error(f"Auth state listener failed: {e}")
