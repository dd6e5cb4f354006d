"""Route guard middleware"""

import logging
from typing import Callable, Dict, Optional
from fastapi import Request, Response, status
from fastapi.responses import JSONResponse, RedirectResponse
from starlette.middleware.base import BaseHTTPMiddleware

from ..core.guard import (
    GuardConfig,
    GuardOutcome,
    RoutePaths,
    evaluate_guard,
    guard_table,
)
from ..core.models import Role
from ..core.synchronizer import AuthSynchronizer

logger = logging.getLogger(__name__)

PUBLIC = GuardConfig(require_auth=False)

# Served even before the auth state is initialized
UNGUARDED_PREFIXES = ("/health", "/docs", "/redoc", "/openapi.json")


def build_guard_table(paths: RoutePaths) -> Dict[str, GuardConfig]:
    """
    Default guard configuration per path prefix.

    Public (once auth state is initialized):
    - /auth (sign-in, sign-up, sign-out, state)

    Session only (no profile needed):
    - /auth/refresh-profile
    - onboarding path (role selection)

    Role areas:
    - /doctor -> doctor, /patient -> patient, /admin -> admin
    - /clinic -> doctor or admin
    """
    return guard_table(
        [
            (paths.login_path, PUBLIC),
            ("/auth", PUBLIC),
            ("/auth/refresh-profile", GuardConfig(require_profile=False)),
            (paths.onboarding_path, GuardConfig(require_profile=False)),
            ("/doctor", GuardConfig(required_role=Role.DOCTOR)),
            ("/patient", GuardConfig(required_role=Role.PATIENT)),
            ("/admin", GuardConfig(required_role=Role.ADMIN)),
            ("/clinic", GuardConfig(allowed_roles=frozenset({Role.DOCTOR, Role.ADMIN}))),
        ]
    )


class RouteGuardMiddleware(BaseHTTPMiddleware):
    """
    Applies the guard policy to every request.

    Flow:
    1. Match the request path to a GuardConfig (longest prefix wins)
    2. Evaluate it against the synchronizer's current snapshot
    3. SHOW_LOADING -> 202 placeholder, REDIRECT -> redirect response,
       RENDER -> handler runs with the snapshot on request.state.auth

    Redirects are silent: there is no intermediate "access denied" response.
    """

    def __init__(
        self,
        app,
        synchronizer: AuthSynchronizer,
        paths: RoutePaths,
        guards: Optional[Dict[str, GuardConfig]] = None,
        default_guard: GuardConfig = GuardConfig(),
    ):
        """
        Initialize route guard middleware.

        Args:
            app: FastAPI application
            synchronizer: Source of the auth snapshot
            paths: Redirect targets
            guards: Path prefix -> GuardConfig (defaults to build_guard_table)
            default_guard: Config for paths with no matching prefix
        """
        super().__init__(app)
        self.synchronizer = synchronizer
        self.paths = paths
        self.guards = guards if guards is not None else build_guard_table(paths)
        self.default_guard = default_guard

        logger.info(f"Initialized RouteGuardMiddleware with {len(self.guards)} guarded prefixes")

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        path = request.url.path
        if _matches_any(path, UNGUARDED_PREFIXES):
            request.state.auth = self.synchronizer.state
            return await call_next(request)

        config = self._config_for(path)
        state = self.synchronizer.state
        decision = evaluate_guard(state, config, self.paths)

        request.state.auth = state

        if decision.outcome is GuardOutcome.REDIRECT and decision.redirect_to == path:
            logger.warning(
                f"Guard for {path} redirects to itself ({decision.reason.value}), "
                f"rendering instead; check the guard table"
            )
            return await call_next(request)

        if decision.outcome is GuardOutcome.SHOW_LOADING:
            logger.debug(f"Auth not settled for {path}, returning loading placeholder")
            return JSONResponse(
                status_code=status.HTTP_202_ACCEPTED,
                content={
                    "status": "loading",
                    "message": "Please wait while we load your content.",
                },
                headers={"Retry-After": "1"},
            )

        if decision.outcome is GuardOutcome.REDIRECT:
            logger.info(
                f"Redirecting {request.method} {path} -> {decision.redirect_to} "
                f"({decision.reason.value})"
            )
            redirect_status = (
                status.HTTP_307_TEMPORARY_REDIRECT
                if request.method in ("GET", "HEAD")
                else status.HTTP_303_SEE_OTHER
            )
            return RedirectResponse(decision.redirect_to, status_code=redirect_status)

        return await call_next(request)

    def _config_for(self, path: str) -> GuardConfig:
        for prefix, config in self.guards.items():
            if _matches(path, prefix):
                return config
        return self.default_guard


def _matches(path: str, prefix: str) -> bool:
    return path == prefix or path.startswith(prefix.rstrip("/") + "/")


def _matches_any(path: str, prefixes) -> bool:
    return any(_matches(path, prefix) for prefix in prefixes)
