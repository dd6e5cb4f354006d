"""Shared fakes and fixtures for portal tests."""

import asyncio
from dataclasses import replace
from typing import Any, Dict, List, Optional

import pytest

from healping.core.errors import ProfileStoreError, SessionSourceError
from healping.core.models import AuthEvent, AuthState, Profile, Role, Session
from healping.core.profile_store import IProfileStore
from healping.core.session_source import ISessionSource, Subscription
from healping.core.synchronizer import AuthSynchronizer


def make_session(user_id: str = "user-1", token: str = "token-1", **kwargs) -> Session:
    return Session(
        user_id=user_id,
        email=kwargs.pop("email", f"{user_id}@example.com"),
        access_token=token,
        refresh_token=kwargs.pop("refresh_token", f"refresh-{token}"),
        **kwargs,
    )


def make_profile(user_id: str = "user-1", role: Role = Role.DOCTOR, **kwargs) -> Profile:
    return Profile(id=user_id, role=role, **kwargs)


async def drain(rounds: int = 10) -> None:
    """Let scheduled tasks run to their next suspension point"""
    for _ in range(rounds):
        await asyncio.sleep(0)


class FakeSessionSource(ISessionSource):
    """In-memory session source with controllable lookups and sign-out"""

    def __init__(self, session: Optional[Session] = None):
        self.session = session
        self.lookup_error: Optional[Exception] = None
        self.lookup_gate: Optional[asyncio.Event] = None
        self.sign_out_error: Optional[Exception] = None
        self.emit_on_sign_out = True
        self.accounts: Dict[str, Session] = {}
        self.handlers: List = []
        self.lookups = 0
        self.sign_outs = 0
        self.auto_refreshing = False

    def get_provider_name(self) -> str:
        return "fake"

    def start_auto_refresh(self) -> None:
        self.auto_refreshing = True

    async def stop_auto_refresh(self) -> None:
        self.auto_refreshing = False

    async def get_current_session(self) -> Optional[Session]:
        self.lookups += 1
        if self.lookup_gate is not None:
            await self.lookup_gate.wait()
        if self.lookup_error is not None:
            raise self.lookup_error
        return self.session

    def on_session_change(self, handler) -> Subscription:
        self.handlers.append(handler)
        return Subscription(lambda: self.handlers.remove(handler))

    def emit(self, event: AuthEvent, session: Optional[Session] = None) -> None:
        for handler in list(self.handlers):
            handler(event, session)

    async def sign_in_with_password(self, email: str, password: str) -> Session:
        session = self.accounts.get(email)
        if session is None or password != "secret":
            raise SessionSourceError("Invalid login credentials")
        self.session = session
        self.emit(AuthEvent.SIGNED_IN, session)
        return session

    async def sign_out(self) -> None:
        self.sign_outs += 1
        self.session = None
        if self.emit_on_sign_out:
            self.emit(AuthEvent.SIGNED_OUT, None)
        if self.sign_out_error is not None:
            raise self.sign_out_error


class FakeProfileStore(IProfileStore):
    """Profile store whose lookups can be held open per user"""

    def __init__(self, profiles: Optional[Dict[str, Profile]] = None):
        self.profiles: Dict[str, Profile] = dict(profiles or {})
        self.errors: Dict[str, Exception] = {}
        self.gates: Dict[str, asyncio.Event] = {}
        self.calls: List[str] = []
        self.created: List[Dict[str, Any]] = []
        self.updated: List[Dict[str, Any]] = []
        self.update_error: Optional[Exception] = None

    def hold(self, user_id: str) -> asyncio.Event:
        gate = asyncio.Event()
        self.gates[user_id] = gate
        return gate

    async def get_profile_by_id(self, user_id: str) -> Optional[Profile]:
        self.calls.append(user_id)
        gate = self.gates.get(user_id)
        if gate is not None:
            await gate.wait()
        if user_id in self.errors:
            raise self.errors[user_id]
        return self.profiles.get(user_id)

    async def create_profile(self, user_id: str, fields: Dict[str, Any]) -> Profile:
        try:
            role = Role(fields.get("role"))
        except ValueError as e:
            raise ProfileStoreError(f"Unknown role: {fields.get('role')!r}") from e

        self.created.append({"id": user_id, **fields})
        profile = Profile.from_row({**fields, "id": user_id, "role": role.value})
        self.profiles[user_id] = profile
        return profile

    async def update_profile(self, user_id: str, values: Dict[str, Any]) -> Optional[Profile]:
        if self.update_error is not None:
            raise self.update_error
        self.updated.append({"id": user_id, **values})
        if user_id not in self.profiles:
            return None
        self.profiles[user_id] = replace(self.profiles[user_id], **values)
        return self.profiles[user_id]


class StateRecorder:
    """Synchronizer listener keeping every published snapshot"""

    def __init__(self):
        self.states: List[AuthState] = []

    def __call__(self, state: AuthState) -> None:
        self.states.append(state)


@pytest.fixture
def session_source():
    return FakeSessionSource()


@pytest.fixture
def profile_store():
    return FakeProfileStore()


@pytest.fixture
def synchronizer(session_source, profile_store):
    sync = AuthSynchronizer(session_source, profile_store)
    yield sync
    sync.close()


@pytest.fixture
def recorder(synchronizer):
    rec = StateRecorder()
    synchronizer.subscribe(rec)
    return rec
