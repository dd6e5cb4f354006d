"""API layer - Middleware and routing"""

from .middleware import RouteGuardMiddleware, build_guard_table
from .routes import router

__all__ = ["RouteGuardMiddleware", "build_guard_table", "router"]
