"""Route guard policy.

Decides, from an AuthState snapshot and a GuardConfig, whether a route
renders, shows a loading placeholder or redirects:
- Not initialized -> SHOW_LOADING
- No auth required -> RENDER
- No session -> REDIRECT to login
- Session without profile -> REDIRECT to onboarding
- Role mismatch -> REDIRECT to the profile role's home
- Otherwise -> RENDER

Presence checks always run before role checks. A pending fetch that could
change a redirect shows the loading placeholder instead of redirecting.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, FrozenSet, Iterable, Optional

from .errors import GuardConfigurationError
from .models import AuthState, Role

logger = logging.getLogger(__name__)


class GuardOutcome(Enum):
    SHOW_LOADING = "show_loading"
    REDIRECT = "redirect"
    RENDER = "render"


class RedirectReason(Enum):
    UNAUTHENTICATED = "unauthenticated"
    NO_PROFILE = "no_profile"
    ROLE_MISMATCH = "role_mismatch"


@dataclass(frozen=True)
class GuardDecision:
    """Result of evaluating a guard against a state snapshot"""

    outcome: GuardOutcome
    redirect_to: Optional[str] = None
    reason: Optional[RedirectReason] = None

    @classmethod
    def loading(cls) -> "GuardDecision":
        return cls(GuardOutcome.SHOW_LOADING)

    @classmethod
    def render(cls) -> "GuardDecision":
        return cls(GuardOutcome.RENDER)

    @classmethod
    def redirect(cls, to: str, reason: RedirectReason) -> "GuardDecision":
        return cls(GuardOutcome.REDIRECT, redirect_to=to, reason=reason)


@dataclass(frozen=True)
class GuardConfig:
    """
    Access requirements for a route.

    Args:
        require_auth: Route needs a session
        required_role: Single role allowed on the route
        allowed_roles: Set of roles allowed on the route
        redirect_to: Overrides the login path for unauthenticated visitors
        require_profile: Route needs a completed profile (False only for
            the onboarding page itself)

    Raises:
        GuardConfigurationError: On contradictory requirements
    """

    require_auth: bool = True
    required_role: Optional[Role] = None
    allowed_roles: Optional[FrozenSet[Role]] = None
    redirect_to: Optional[str] = None
    require_profile: bool = True

    def __post_init__(self) -> None:
        if self.allowed_roles is not None:
            object.__setattr__(self, "allowed_roles", frozenset(self.allowed_roles))
            if not self.allowed_roles:
                raise GuardConfigurationError("allowed_roles must not be empty")

        has_roles = self.required_role is not None or self.allowed_roles is not None

        if (
            self.required_role is not None
            and self.allowed_roles is not None
            and self.required_role not in self.allowed_roles
        ):
            raise GuardConfigurationError(
                f"required_role {self.required_role.value} is not in allowed_roles"
            )
        if has_roles and not self.require_auth:
            raise GuardConfigurationError("Role requirements need require_auth=True")
        if has_roles and not self.require_profile:
            raise GuardConfigurationError("Role requirements need require_profile=True")

    def permits(self, role: Role) -> bool:
        if self.required_role is not None and role is not self.required_role:
            return False
        if self.allowed_roles is not None and role not in self.allowed_roles:
            return False
        return True


@dataclass(frozen=True)
class RoutePaths:
    """Redirect targets used by the guard"""

    login_path: str = "/auth"
    onboarding_path: str = "/onboarding"
    home_paths: Dict[Role, str] = field(
        default_factory=lambda: {
            Role.DOCTOR: "/doctor/dashboard",
            Role.PATIENT: "/patient/dashboard",
            Role.ADMIN: "/admin/dashboard",
        }
    )

    def __post_init__(self) -> None:
        missing = [role.value for role in Role if role not in self.home_paths]
        if missing:
            raise GuardConfigurationError(f"No home path for roles: {missing}")

    def home_path(self, role: Role) -> str:
        return self.home_paths[role]


def evaluate_guard(state: AuthState, config: GuardConfig, paths: RoutePaths) -> GuardDecision:
    """
    Decide the guard outcome for a snapshot.

    Args:
        state: Current synchronizer snapshot
        config: Route requirements
        paths: Redirect targets

    Returns:
        GuardDecision (outcome, redirect target, reason)
    """
    if not state.initialized:
        return GuardDecision.loading()

    if not config.require_auth:
        return GuardDecision.render()

    decision = _evaluate_settled(state, config, paths)

    # A fetch in flight may still change a redirect; never redirect early
    if decision.outcome is GuardOutcome.REDIRECT and state.loading:
        return GuardDecision.loading()

    return decision


def _evaluate_settled(state: AuthState, config: GuardConfig, paths: RoutePaths) -> GuardDecision:
    if state.session is None:
        return GuardDecision.redirect(
            config.redirect_to or paths.login_path, RedirectReason.UNAUTHENTICATED
        )

    if not config.require_profile:
        return GuardDecision.render()

    if state.profile is None:
        return GuardDecision.redirect(paths.onboarding_path, RedirectReason.NO_PROFILE)

    if not config.permits(state.profile.role):
        return GuardDecision.redirect(
            paths.home_path(state.profile.role), RedirectReason.ROLE_MISMATCH
        )

    return GuardDecision.render()


class GuardNavigator:
    """
    Observer that applies guard decisions as navigation.

    Re-evaluates on every snapshot and calls `navigate` exactly once per
    outcome change. Never navigates to the path it is guarding.
    """

    def __init__(
        self,
        synchronizer,
        config: GuardConfig,
        paths: RoutePaths,
        navigate: Callable[[str], None],
        current_path: Optional[str] = None,
    ):
        self.synchronizer = synchronizer
        self.config = config
        self.paths = paths
        self.current_path = current_path
        self._navigate = navigate
        self._decision: Optional[GuardDecision] = None
        self._unsubscribe: Optional[Callable[[], None]] = None

    @property
    def decision(self) -> Optional[GuardDecision]:
        return self._decision

    def start(self) -> GuardDecision:
        self._unsubscribe = self.synchronizer.subscribe(self._on_state)
        self._on_state(self.synchronizer.state)
        return self._decision

    def close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def _on_state(self, state: AuthState) -> None:
        decision = evaluate_guard(state, self.config, self.paths)
        if decision == self._decision:
            return

        self._decision = decision
        if decision.outcome is not GuardOutcome.REDIRECT:
            return
        if decision.redirect_to == self.current_path:
            logger.debug(f"Guard already at {self.current_path}, not redirecting")
            return

        logger.info(
            f"Guard redirect to {decision.redirect_to} ({decision.reason.value})"
        )
        self._navigate(decision.redirect_to)


def guard_table(entries: Iterable) -> Dict[str, GuardConfig]:
    """Build a prefix -> config table, longest prefix first"""
    return dict(sorted(entries, key=lambda item: len(item[0]), reverse=True))
