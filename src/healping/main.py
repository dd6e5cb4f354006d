"""
HealPing Portal - Main Application

Single-user portal process over a hosted Supabase backend:
- Auth/session synchronizer holding the process-wide auth snapshot
- Route guard middleware (loading placeholder, silent redirects)
- Role dashboards for doctors, patients and admins
- Timeout/retry/circuit-breaker policy for remote data calls
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from . import __version__
from .config import Settings, get_settings
from .core.circuit_breaker import CircuitBreaker
from .core.health_checker import HealthChecker
from .core.profile_store import IProfileStore
from .core.resilience import RemoteCallPolicy
from .core.session_source import ISessionSource
from .core.synchronizer import AuthSynchronizer
from .infrastructure import (
    ClinicRepository,
    SessionStorage,
    SupabaseProfileStore,
    SupabaseRestClient,
    SupabaseSessionSource,
)
from .api.middleware import RouteGuardMiddleware
from .api.routes import router

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    stream=sys.stdout,
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """Application lifespan manager for startup/shutdown events"""
    # Startup
    settings = app.state.settings
    logger.info(f"Starting healping-portal v{__version__}")
    logger.info(f"Supabase project: {settings.supabase_url}")
    logger.info(f"Portal listening on {settings.portal_host}:{settings.portal_port}")

    state = await app.state.synchronizer.start()
    logger.info(
        f"Auth state resolved: signed_in={state.session is not None}, "
        f"profile={'yes' if state.profile else 'no'}, error={state.error}"
    )
    app.state.session_source.start_auto_refresh()

    yield

    # Shutdown
    logger.info("Shutting down healping-portal")
    await app.state.session_source.stop_auto_refresh()
    app.state.synchronizer.close()
    await app.state.rest_client.aclose()


def create_app(
    settings: Optional[Settings] = None,
    *,
    session_source: Optional[ISessionSource] = None,
    profile_store: Optional[IProfileStore] = None,
    clinic_repository: Optional[ClinicRepository] = None,
    session_storage: Optional[SessionStorage] = None,
    circuit_breaker: Optional[CircuitBreaker] = None,
) -> FastAPI:
    """
    Create and configure FastAPI application.

    Collaborators default to the Supabase-backed implementations built from
    settings; any of them can be passed in instead.

    Returns:
        Configured FastAPI application
    """
    settings = settings or get_settings()
    logging.getLogger().setLevel(settings.log_level)

    rest_client = SupabaseRestClient(settings.supabase_url, settings.supabase_anon_key)
    session_storage = session_storage or SessionStorage(settings)

    if session_source is None:
        session_source = SupabaseSessionSource(
            rest_client,
            session_storage,
            jwt_secret=settings.supabase_jwt_secret,
            refresh_margin=settings.session_refresh_margin,
            retry_interval=settings.session_refresh_retry_interval,
        )
        # Data calls run under the signed-in user's row-level security
        rest_client.token_provider = session_source.current_access_token

    profile_store = profile_store or SupabaseProfileStore(rest_client)

    circuit_breaker = circuit_breaker or CircuitBreaker(
        fail_threshold=settings.circuit_breaker_fail_threshold,
        reset_timeout=settings.circuit_breaker_reset_timeout,
        enabled=settings.circuit_breaker_enabled,
    )
    policy = RemoteCallPolicy(
        timeout=settings.remote_call_timeout,
        max_attempts=settings.remote_call_max_attempts,
        backoff_min=settings.remote_call_backoff_min,
        backoff_max=settings.remote_call_backoff_max,
        circuit_breaker=circuit_breaker,
    )
    clinic_repository = clinic_repository or ClinicRepository(
        rest_client, policy, default_clinic_name=settings.default_clinic_name
    )

    synchronizer = AuthSynchronizer(session_source, profile_store)
    paths = settings.route_paths()

    app = FastAPI(
        title="HealPing Portal",
        description="Healthcare clinic portal with role-based access",
        version=__version__,
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.paths = paths
    app.state.rest_client = rest_client
    app.state.session_source = session_source
    app.state.profile_store = profile_store
    app.state.clinic_repository = clinic_repository
    app.state.synchronizer = synchronizer
    app.state.health_checker = HealthChecker(synchronizer, session_storage, circuit_breaker)

    # CORS is added last so it wraps guard redirects too
    app.add_middleware(RouteGuardMiddleware, synchronizer=synchronizer, paths=paths)

    # Configure CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(router)

    return app


# Create app instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()

    uvicorn.run(
        "healping.main:app",
        host=settings.portal_host,
        port=settings.portal_port,
        log_level=settings.log_level.lower(),
    )
