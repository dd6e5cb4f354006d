"""Tests for the Supabase REST client, session source, profile store and clinic repository."""

import asyncio
import json
from unittest.mock import Mock

import httpx
import pytest
from jose import jwt
from redis.exceptions import RedisError

from conftest import FakeProfileStore, make_profile
from healping.core.errors import BackendError, ProfileStoreError, RemoteCallError, SessionSourceError
from healping.core.models import AuthEvent, Role
from healping.core.resilience import RemoteCallPolicy
from healping.core.synchronizer import AuthSynchronizer
from healping.infrastructure.clinic_repository import EMPTY_DASHBOARD_STATS, ClinicRepository
from healping.infrastructure.session_storage import SessionStorage
from healping.infrastructure.supabase_client import OBJECT_MEDIA_TYPE, SupabaseRestClient, eq
from healping.infrastructure.supabase_profile_store import SupabaseProfileStore
from healping.infrastructure.supabase_session_source import SupabaseSessionSource

BASE_URL = "https://test.supabase.co"
ANON_KEY = "anon-key"
JWT_SECRET = "super-secret-jwt-token-for-tests"
NOW = 1_700_000_000


def make_token(user_id="user-1", exp=NOW + 3600, secret=JWT_SECRET, **claims):
    payload = {"sub": user_id, "email": f"{user_id}@example.com", "aud": "authenticated", "exp": exp}
    payload.update(claims)
    return jwt.encode(payload, secret, algorithm="HS256")


def token_response(user_id="user-1", exp=NOW + 3600, refresh_token="refresh-1", secret=JWT_SECRET):
    return {
        "access_token": make_token(user_id, exp, secret),
        "token_type": "bearer",
        "expires_in": 3600,
        "expires_at": exp,
        "refresh_token": refresh_token,
        "user": {
            "id": user_id,
            "email": f"{user_id}@example.com",
            "user_metadata": {"full_name": "Ada Lovelace"},
        },
    }


class FakeSupabase:
    """MockTransport handler keyed by (method, path)"""

    def __init__(self):
        self.routes = {}
        self.requests = []

    def on(self, method, path, status_code=200, body=None):
        self.routes[(method, path)] = (status_code, body)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        key = (request.method, request.url.path)
        if key not in self.routes:
            return httpx.Response(404, json={"message": f"no route {key}"})
        status_code, body = self.routes[key]
        if isinstance(body, Exception):
            raise body
        if body is None:
            return httpx.Response(status_code)
        return httpx.Response(status_code, json=body)

    def last(self, method, path) -> httpx.Request:
        for request in reversed(self.requests):
            if request.method == method and request.url.path == path:
                return request
        raise AssertionError(f"No {method} {path} request")


@pytest.fixture
def backend():
    return FakeSupabase()


@pytest.fixture
def client(backend):
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(backend))
    return SupabaseRestClient(BASE_URL, ANON_KEY, http_client=http_client)


@pytest.fixture
def storage():
    return SessionStorage()


@pytest.fixture
def source(client, storage):
    return SupabaseSessionSource(
        client, storage, jwt_secret=JWT_SECRET, refresh_margin=60, clock=lambda: NOW
    )


def record_events(source):
    events = []
    source.on_session_change(lambda event, session: events.append((event, session)))
    return events


class TestSupabaseRestClient:
    """Test request shaping and error normalization."""

    @pytest.mark.asyncio
    async def test_select_single_row(self, client, backend):
        backend.on("GET", "/rest/v1/profiles", body={"id": "user-1", "role": "doctor"})

        row = await client.select("profiles", {"id": eq("user-1")}, single=True)

        request = backend.last("GET", "/rest/v1/profiles")
        assert row == {"id": "user-1", "role": "doctor"}
        assert request.url.params["id"] == "eq.user-1"
        assert request.url.params["select"] == "*"
        assert request.headers["accept"] == OBJECT_MEDIA_TYPE
        assert request.headers["apikey"] == ANON_KEY

    @pytest.mark.asyncio
    async def test_select_with_order(self, client, backend):
        backend.on("GET", "/rest/v1/patients", body=[])

        await client.select("patients", {"clinic_id": eq("c1")}, order="created_at.desc")

        assert backend.last("GET", "/rest/v1/patients").url.params["order"] == "created_at.desc"

    @pytest.mark.asyncio
    async def test_user_token_used_for_data_calls(self, client, backend):
        client.token_provider = lambda: "user-access-token"
        backend.on("POST", "/rest/v1/rpc/get_dashboard_stats", body={})
        backend.on("POST", "/auth/v1/token", body=token_response())

        await client.rpc("get_dashboard_stats", {"clinic_uuid": "c1"})
        await client.auth_token("password", {"email": "a", "password": "b"})

        rpc = backend.last("POST", "/rest/v1/rpc/get_dashboard_stats")
        token = backend.last("POST", "/auth/v1/token")
        assert rpc.headers["authorization"] == "Bearer user-access-token"
        assert json.loads(rpc.content) == {"clinic_uuid": "c1"}
        assert token.headers["authorization"] == f"Bearer {ANON_KEY}"
        assert token.url.params["grant_type"] == "password"

    @pytest.mark.asyncio
    async def test_insert_asks_for_representation(self, client, backend):
        backend.on("POST", "/rest/v1/profiles", status_code=201, body=[{"id": "user-1"}])

        result = await client.insert("profiles", {"id": "user-1"})

        assert result == [{"id": "user-1"}]
        assert backend.last("POST", "/rest/v1/profiles").headers["prefer"] == "return=representation"

    @pytest.mark.asyncio
    async def test_postgrest_error(self, client, backend):
        backend.on(
            "GET",
            "/rest/v1/profiles",
            status_code=406,
            body={"code": "PGRST116", "message": "JSON object requested, multiple (or no) rows returned"},
        )

        with pytest.raises(BackendError) as exc_info:
            await client.select("profiles", {"id": eq("nobody")}, single=True)

        assert exc_info.value.is_not_found
        assert exc_info.value.status_code == 406

    @pytest.mark.asyncio
    async def test_gotrue_error(self, client, backend):
        backend.on(
            "POST",
            "/auth/v1/token",
            status_code=400,
            body={"error": "invalid_grant", "error_description": "Invalid login credentials"},
        )

        with pytest.raises(BackendError) as exc_info:
            await client.auth_token("password", {"email": "a", "password": "b"})

        assert exc_info.value.message == "Invalid login credentials"
        assert not exc_info.value.is_server_error


class TestSupabaseSessionSource:
    """Test sign-in, persistence, refresh and sign-out."""

    @pytest.mark.asyncio
    async def test_sign_in_emits_and_persists(self, source, backend, storage):
        backend.on("POST", "/auth/v1/token", body=token_response())
        events = record_events(source)

        session = await source.sign_in_with_password("user-1@example.com", "secret")

        assert session.user_id == "user-1"
        assert session.user_metadata == {"full_name": "Ada Lovelace"}
        assert session.expires_at == NOW + 3600
        assert events == [(AuthEvent.SIGNED_IN, session)]
        assert storage.load()["refresh_token"] == "refresh-1"
        assert source.current_access_token() == session.access_token

    @pytest.mark.asyncio
    async def test_rejected_credentials(self, source, backend):
        backend.on(
            "POST",
            "/auth/v1/token",
            status_code=400,
            body={"error": "invalid_grant", "error_description": "Invalid login credentials"},
        )
        events = record_events(source)

        with pytest.raises(SessionSourceError, match="Invalid login credentials"):
            await source.sign_in_with_password("user-1@example.com", "wrong")
        assert events == []

    @pytest.mark.asyncio
    async def test_token_signed_with_wrong_secret_is_rejected(self, source, backend):
        backend.on("POST", "/auth/v1/token", body=token_response(secret="another-secret"))

        with pytest.raises(SessionSourceError, match="Invalid access token"):
            await source.sign_in_with_password("user-1@example.com", "secret")

    @pytest.mark.asyncio
    async def test_claims_read_without_secret(self, client, storage, backend):
        source = SupabaseSessionSource(client, storage, clock=lambda: NOW)
        body = token_response(secret="whatever")
        del body["user"]
        backend.on("POST", "/auth/v1/token", body=body)

        session = await source.sign_in_with_password("user-1@example.com", "secret")

        assert session.user_id == "user-1"
        assert session.email == "user-1@example.com"

    @pytest.mark.asyncio
    async def test_restores_persisted_session(self, client, storage, backend):
        storage.save(token_response())
        source = SupabaseSessionSource(client, storage, jwt_secret=JWT_SECRET, clock=lambda: NOW)

        session = await source.get_current_session()

        assert session.user_id == "user-1"
        assert backend.requests == []

    @pytest.mark.asyncio
    async def test_no_persisted_session(self, source):
        assert await source.get_current_session() is None

    @pytest.mark.asyncio
    async def test_expired_session_is_refreshed_silently(self, source, storage, backend):
        storage.save(token_response(exp=NOW - 10))
        backend.on("POST", "/auth/v1/token", body=token_response(refresh_token="refresh-2"))
        events = record_events(source)

        session = await source.get_current_session()

        assert session.refresh_token == "refresh-2"
        assert session.expires_at == NOW + 3600
        assert backend.last("POST", "/auth/v1/token").url.params["grant_type"] == "refresh_token"
        assert events == []

    @pytest.mark.asyncio
    async def test_session_inside_refresh_margin_is_refreshed(self, source, storage, backend):
        storage.save(token_response(exp=NOW + 30))
        backend.on("POST", "/auth/v1/token", body=token_response(refresh_token="refresh-2"))

        session = await source.get_current_session()

        assert session.refresh_token == "refresh-2"

    @pytest.mark.asyncio
    async def test_rejected_refresh_token_signs_out(self, source, storage, backend):
        storage.save(token_response(exp=NOW - 10))
        backend.on(
            "POST",
            "/auth/v1/token",
            status_code=400,
            body={"error": "invalid_grant", "error_description": "Refresh Token Not Found"},
        )

        assert await source.get_current_session() is None
        assert storage.load() is None

    @pytest.mark.asyncio
    async def test_refresh_server_error_raises(self, source, storage, backend):
        storage.save(token_response(exp=NOW - 10))
        backend.on("POST", "/auth/v1/token", status_code=503, body={"message": "upstream down"})

        with pytest.raises(SessionSourceError, match="upstream down"):
            await source.get_current_session()
        assert storage.load() is not None

    @pytest.mark.asyncio
    async def test_corrupt_persisted_session_is_cleared(self, source, storage):
        storage.save({"access_token": "not-a-jwt"})

        with pytest.raises(SessionSourceError):
            await source.get_current_session()
        assert storage.load() is None

    @pytest.mark.asyncio
    async def test_refresh_session_emits_token_refreshed(self, source, backend):
        backend.on("POST", "/auth/v1/token", body=token_response())
        await source.sign_in_with_password("user-1@example.com", "secret")
        backend.on("POST", "/auth/v1/token", body=token_response(refresh_token="refresh-2"))
        events = record_events(source)

        session = await source.refresh_session()

        assert events == [(AuthEvent.TOKEN_REFRESHED, session)]

    @pytest.mark.asyncio
    async def test_refresh_session_without_session(self, source):
        with pytest.raises(SessionSourceError):
            await source.refresh_session()

    @pytest.mark.asyncio
    async def test_sign_up_pending_confirmation(self, source, backend):
        backend.on("POST", "/auth/v1/signup", body={"id": "user-9", "email": "new@example.com"})
        events = record_events(source)

        assert await source.sign_up("new@example.com", "secret", "New User") is None
        assert events == []
        assert json.loads(backend.last("POST", "/auth/v1/signup").content)["data"] == {
            "full_name": "New User"
        }

    @pytest.mark.asyncio
    async def test_sign_up_with_immediate_session(self, source, backend):
        backend.on("POST", "/auth/v1/signup", body=token_response("user-9"))
        events = record_events(source)

        session = await source.sign_up("user-9@example.com", "secret")

        assert session.user_id == "user-9"
        assert events == [(AuthEvent.SIGNED_IN, session)]

    @pytest.mark.asyncio
    async def test_sign_out(self, source, backend, storage):
        backend.on("POST", "/auth/v1/token", body=token_response())
        backend.on("POST", "/auth/v1/logout", status_code=204)
        session = await source.sign_in_with_password("user-1@example.com", "secret")
        events = record_events(source)

        await source.sign_out()

        logout = backend.last("POST", "/auth/v1/logout")
        assert logout.headers["authorization"] == f"Bearer {session.access_token}"
        assert events == [(AuthEvent.SIGNED_OUT, None)]
        assert storage.load() is None
        assert source.current_access_token() is None

    @pytest.mark.asyncio
    async def test_sign_out_ignores_revoked_token(self, source, backend):
        backend.on("POST", "/auth/v1/token", body=token_response())
        backend.on("POST", "/auth/v1/logout", status_code=401, body={"message": "invalid JWT"})
        await source.sign_in_with_password("user-1@example.com", "secret")

        await source.sign_out()

    @pytest.mark.asyncio
    async def test_sign_out_remote_failure_still_clears_locally(self, source, backend, storage):
        backend.on("POST", "/auth/v1/token", body=token_response())
        backend.on("POST", "/auth/v1/logout", body=httpx.ConnectError("unreachable"))
        await source.sign_in_with_password("user-1@example.com", "secret")
        events = record_events(source)

        with pytest.raises(SessionSourceError, match="Failed to reach identity provider"):
            await source.sign_out()

        assert events == [(AuthEvent.SIGNED_OUT, None)]
        assert storage.load() is None

    def test_unsubscribe(self, source):
        events = []
        subscription = source.on_session_change(lambda e, s: events.append(e))

        subscription.unsubscribe()
        subscription.unsubscribe()
        source._emit(AuthEvent.SIGNED_OUT, None)

        assert events == []
        assert not subscription.active


class ParkingSleep:
    """Records requested delays; zero-length sleeps yield, others park"""

    def __init__(self):
        self.delays = []
        self.parked = asyncio.Event()

    async def __call__(self, seconds):
        self.delays.append(seconds)
        if seconds == 0:
            await asyncio.sleep(0)
            return
        self.parked.set()
        await asyncio.sleep(3600)


class TestSessionAutoRefresh:
    """Test background refresh of the held session."""

    @pytest.fixture
    def now(self):
        return [NOW]

    @pytest.fixture
    def sleep(self):
        return ParkingSleep()

    @pytest.fixture
    def source(self, client, storage, now, sleep):
        return SupabaseSessionSource(
            client,
            storage,
            jwt_secret=JWT_SECRET,
            refresh_margin=60,
            clock=lambda: now[0],
            sleep=sleep,
        )

    def test_seconds_until_refresh_while_signed_out(self, source):
        assert source.seconds_until_refresh() == source.retry_interval

    @pytest.mark.asyncio
    async def test_expiring_session_refreshed_while_running(self, source, storage, backend, now, sleep):
        storage.save(token_response(exp=NOW + 3600))
        profiles = FakeProfileStore({"user-1": make_profile()})
        synchronizer = AuthSynchronizer(source, profiles)
        await synchronizer.start()
        assert source.seconds_until_refresh() == 3600 - 60

        now[0] = NOW + 3600 - 30
        backend.on("POST", "/auth/v1/token", body=token_response(exp=NOW + 7200, refresh_token="refresh-2"))
        refreshed = asyncio.Event()
        events = []

        def on_change(event, session):
            events.append(event)
            refreshed.set()

        source.on_session_change(on_change)
        source.start_auto_refresh()
        await asyncio.wait_for(refreshed.wait(), timeout=1)
        await source.stop_auto_refresh()

        assert events == [AuthEvent.TOKEN_REFRESHED]
        assert sleep.delays[0] == 0
        state = synchronizer.state
        assert state.session.refresh_token == "refresh-2"
        assert state.session.expires_at == NOW + 7200
        assert source.current_access_token() == state.session.access_token
        assert state.profile is not None
        assert not state.loading
        assert profiles.calls == ["user-1"]
        synchronizer.close()

    @pytest.mark.asyncio
    async def test_rejected_refresh_token_signs_out_in_background(self, source, storage, backend):
        backend.on("POST", "/auth/v1/token", body=token_response(exp=NOW + 30))
        await source.sign_in_with_password("user-1@example.com", "secret")
        backend.on(
            "POST",
            "/auth/v1/token",
            status_code=400,
            body={"error": "invalid_grant", "error_description": "Refresh Token Not Found"},
        )
        signed_out = asyncio.Event()
        events = []

        def on_change(event, session):
            events.append((event, session))
            signed_out.set()

        source.on_session_change(on_change)
        source.start_auto_refresh()
        await asyncio.wait_for(signed_out.wait(), timeout=1)
        await source.stop_auto_refresh()

        assert events == [(AuthEvent.SIGNED_OUT, None)]
        assert storage.load() is None
        assert source.current_access_token() is None

    @pytest.mark.asyncio
    async def test_unreachable_provider_retries_later(self, source, backend, sleep):
        backend.on("POST", "/auth/v1/token", body=token_response(exp=NOW + 30))
        await source.sign_in_with_password("user-1@example.com", "secret")
        backend.on("POST", "/auth/v1/token", body=httpx.ConnectError("unreachable"))
        events = record_events(source)

        source.start_auto_refresh()
        await asyncio.wait_for(sleep.parked.wait(), timeout=1)
        await source.stop_auto_refresh()

        assert sleep.delays[:2] == [0, source.retry_interval]
        assert events == []
        assert source.current_access_token() is not None

    @pytest.mark.asyncio
    async def test_stop_without_start(self, source):
        await source.stop_auto_refresh()


class TestSupabaseProfileStore:
    """Test profile lookups and creation."""

    @pytest.mark.asyncio
    async def test_get_profile(self, client, backend):
        backend.on(
            "GET",
            "/rest/v1/profiles",
            body={"id": "user-1", "role": "patient", "first_name": "Ada", "clinic_id": None},
        )

        profile = await SupabaseProfileStore(client).get_profile_by_id("user-1")

        assert profile.id == "user-1"
        assert profile.role is Role.PATIENT
        assert profile.display_name() == "Ada"

    @pytest.mark.asyncio
    async def test_missing_profile_is_none(self, client, backend):
        backend.on("GET", "/rest/v1/profiles", status_code=406, body={"code": "PGRST116", "message": "no rows"})

        assert await SupabaseProfileStore(client).get_profile_by_id("user-1") is None

    @pytest.mark.asyncio
    async def test_backend_failure_raises(self, client, backend):
        backend.on("GET", "/rest/v1/profiles", status_code=500, body={"message": "connection reset"})

        with pytest.raises(ProfileStoreError, match="connection reset"):
            await SupabaseProfileStore(client).get_profile_by_id("user-1")

    @pytest.mark.asyncio
    async def test_malformed_row_raises(self, client, backend):
        backend.on("GET", "/rest/v1/profiles", body={"id": "user-1", "role": "nurse"})

        with pytest.raises(ProfileStoreError, match="Malformed profile row"):
            await SupabaseProfileStore(client).get_profile_by_id("user-1")

    @pytest.mark.asyncio
    async def test_create_profile(self, client, backend):
        backend.on(
            "POST",
            "/rest/v1/profiles",
            status_code=201,
            body=[{"id": "user-1", "role": "doctor", "full_name": "Ada Lovelace"}],
        )

        profile = await SupabaseProfileStore(client).create_profile(
            "user-1", {"role": "doctor", "full_name": "Ada Lovelace", "phone": None}
        )

        row = json.loads(backend.last("POST", "/rest/v1/profiles").content)
        assert profile.role is Role.DOCTOR
        assert row["id"] == "user-1"
        assert row["preferences"] == {}
        assert "phone" not in row
        assert "created_at" in row and "updated_at" in row

    @pytest.mark.asyncio
    async def test_create_profile_rejects_unknown_role(self, client, backend):
        with pytest.raises(ProfileStoreError, match="Unknown role"):
            await SupabaseProfileStore(client).create_profile("user-1", {"role": "nurse"})
        assert backend.requests == []

    @pytest.mark.asyncio
    async def test_update_profile(self, client, backend):
        backend.on(
            "PATCH",
            "/rest/v1/profiles",
            body=[{"id": "user-1", "role": "doctor", "clinic_id": "c1"}],
        )

        profile = await SupabaseProfileStore(client).update_profile("user-1", {"clinic_id": "c1"})

        request = backend.last("PATCH", "/rest/v1/profiles")
        body = json.loads(request.content)
        assert profile.clinic_id == "c1"
        assert request.url.params["id"] == "eq.user-1"
        assert request.headers["prefer"] == "return=representation"
        assert body["clinic_id"] == "c1"
        assert "updated_at" in body

    @pytest.mark.asyncio
    async def test_update_profile_no_match(self, client, backend):
        backend.on("PATCH", "/rest/v1/profiles", body=[])

        assert await SupabaseProfileStore(client).update_profile("nobody", {"phone": "1"}) is None

    @pytest.mark.asyncio
    async def test_update_profile_rejects_unknown_fields(self, client, backend):
        with pytest.raises(ProfileStoreError, match="Unknown profile fields"):
            await SupabaseProfileStore(client).update_profile("user-1", {"role_override": "admin"})
        assert backend.requests == []

    @pytest.mark.asyncio
    async def test_update_profile_failure_raises(self, client, backend):
        backend.on("PATCH", "/rest/v1/profiles", status_code=403, body={"message": "permission denied"})

        with pytest.raises(ProfileStoreError, match="permission denied"):
            await SupabaseProfileStore(client).update_profile("user-1", {"clinic_id": "c1"})


class TestClinicRepository:
    """Test clinic data reads and mutations."""

    @pytest.fixture
    def repository(self, client):
        return ClinicRepository(client, RemoteCallPolicy(max_attempts=2, backoff_min=0, backoff_max=0))

    @pytest.mark.asyncio
    async def test_dashboard_stats_merge_over_defaults(self, repository, backend):
        backend.on("POST", "/rest/v1/rpc/get_dashboard_stats", body={"total_patients": 12})

        stats = await repository.get_dashboard_stats("c1")

        assert stats == {**EMPTY_DASHBOARD_STATS, "total_patients": 12}
        request = backend.last("POST", "/rest/v1/rpc/get_dashboard_stats")
        assert json.loads(request.content) == {"clinic_uuid": "c1"}

    @pytest.mark.asyncio
    async def test_dashboard_stats_fall_back_on_outage(self, repository, backend):
        backend.on("POST", "/rest/v1/rpc/get_dashboard_stats", status_code=503, body={"message": "down"})

        assert await repository.get_dashboard_stats("c1") == EMPTY_DASHBOARD_STATS
        assert len(backend.requests) == 2

    @pytest.mark.asyncio
    async def test_patients_fall_back_to_empty_list(self, repository, backend):
        backend.on("GET", "/rest/v1/patients", body=httpx.ConnectError("refused"))

        assert await repository.get_patients("c1") == []

    @pytest.mark.asyncio
    async def test_create_patient_prefixes_params(self, repository, backend):
        backend.on("POST", "/rest/v1/rpc/create_patient", body={"id": "p1"})

        result = await repository.create_patient(clinic_id="c1", full_name="Grace Hopper", phone="555-0100")

        params = json.loads(backend.last("POST", "/rest/v1/rpc/create_patient").content)
        assert result == {"id": "p1"}
        assert params["p_clinic_id"] == "c1"
        assert params["p_full_name"] == "Grace Hopper"
        assert params["p_email"] is None

    @pytest.mark.asyncio
    async def test_create_patient_failure_raises(self, repository, backend):
        backend.on("POST", "/rest/v1/rpc/create_patient", status_code=409, body={"message": "duplicate phone"})

        with pytest.raises(RemoteCallError, match="duplicate phone"):
            await repository.create_patient(clinic_id="c1", full_name="Grace Hopper", phone="555-0100")

    @pytest.mark.asyncio
    async def test_create_reminders_default_types(self, repository, backend):
        backend.on("POST", "/rest/v1/rpc/create_appointment_reminders", body=[{"id": "r1"}])

        await repository.create_reminders("a1")

        params = json.loads(backend.last("POST", "/rest/v1/rpc/create_appointment_reminders").content)
        assert params == {"p_appointment_id": "a1", "p_reminder_types": ["sms", "email"]}

    @pytest.mark.asyncio
    async def test_default_clinic_lookup(self, repository, backend):
        backend.on("GET", "/rest/v1/clinics", body={"id": "c-default"})

        assert await repository.get_default_clinic_id() == "c-default"

        request = backend.last("GET", "/rest/v1/clinics")
        assert request.url.params["name"] == "eq.Default Medical Practice"
        assert request.url.params["select"] == "id"

    @pytest.mark.asyncio
    async def test_default_clinic_missing(self, repository, backend):
        backend.on("GET", "/rest/v1/clinics", status_code=406, body={"code": "PGRST116", "message": "no rows"})

        assert await repository.get_default_clinic_id() is None

    @pytest.mark.asyncio
    async def test_create_doctor_record(self, repository, backend):
        backend.on("POST", "/rest/v1/doctors", status_code=201, body=[{"id": "d1"}])

        await repository.create_doctor_record("user-1", "c1", license_number="MD-42")

        row = json.loads(backend.last("POST", "/rest/v1/doctors").content)
        assert row["profile_id"] == "user-1"
        assert row["clinic_id"] == "c1"
        assert row["specialization"] == "General Practice"
        assert row["license_number"] == "MD-42"
        assert row["qualifications"] == []

    @pytest.mark.asyncio
    async def test_create_patient_record_failure_raises(self, repository, backend):
        backend.on("POST", "/rest/v1/patients", status_code=403, body={"message": "permission denied"})

        with pytest.raises(RemoteCallError, match="permission denied"):
            await repository.create_patient_record("user-1", address="1 Main St")

        assert len(backend.requests) == 1
        row = json.loads(backend.last("POST", "/rest/v1/patients").content)
        assert row["profile_id"] == "user-1"
        assert row["medical_history"] == {}

    @pytest.mark.asyncio
    async def test_patient_record_not_found(self, repository, backend):
        backend.on("GET", "/rest/v1/patients", status_code=406, body={"code": "PGRST116", "message": "no rows"})

        assert await repository.get_patient_record("user-1") is None


class TestSessionStorage:
    """Test Redis-backed storage with in-memory fallback."""

    def test_memory_round_trip(self, storage):
        storage.save({"access_token": "t"})
        assert storage.load() == {"access_token": "t"}

        storage.clear()
        assert storage.load() is None
        assert not storage.is_available()
        assert not storage.ping()

    def test_redis_client_is_used(self):
        redis_client = Mock()
        redis_client.get.return_value = json.dumps({"access_token": "t"})
        storage = SessionStorage(client=redis_client)

        storage.save({"access_token": "t"}, ttl=60)

        redis_client.set.assert_called_once_with("healping:auth:session", json.dumps({"access_token": "t"}), ex=60)
        assert storage.load() == {"access_token": "t"}
        assert storage.is_available()

    def test_redis_errors_fall_back_to_memory(self):
        redis_client = Mock()
        redis_client.set.side_effect = RedisError("down")
        redis_client.get.side_effect = RedisError("down")
        storage = SessionStorage(client=redis_client)

        storage.save({"access_token": "t"})

        assert storage.load() == {"access_token": "t"}

    def test_corrupt_payload_is_discarded(self):
        redis_client = Mock()
        redis_client.get.return_value = "{not json"
        storage = SessionStorage(client=redis_client)

        assert storage.load() is None
        redis_client.delete.assert_called_once()
