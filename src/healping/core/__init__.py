"""Core domain models, interfaces and auth state logic"""

from .guard import GuardConfig, GuardDecision, GuardNavigator, GuardOutcome, RoutePaths, evaluate_guard
from .models import AuthEvent, AuthState, Profile, Role, Session
from .profile_store import IProfileStore
from .session_source import ISessionSource, Subscription
from .synchronizer import AuthSynchronizer, SignOutResult

__all__ = [
    "AuthEvent",
    "AuthState",
    "AuthSynchronizer",
    "GuardConfig",
    "GuardDecision",
    "GuardNavigator",
    "GuardOutcome",
    "IProfileStore",
    "ISessionSource",
    "Profile",
    "Role",
    "RoutePaths",
    "Session",
    "SignOutResult",
    "Subscription",
    "evaluate_guard",
]
