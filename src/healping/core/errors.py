"""Exception types raised by portal collaborators"""

from typing import Optional


class SessionSourceError(Exception):
    """Identity provider failed to resolve, refresh or end a session"""


class ProfileStoreError(Exception):
    """Profile lookup failed for a reason other than "not found" """


class GuardConfigurationError(ValueError):
    """Route guard configured with contradictory requirements"""


class BackendError(Exception):
    """Error response from the hosted backend (PostgREST or GoTrue)"""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.code = code

    @property
    def is_not_found(self) -> bool:
        """PostgREST reports zero rows for a single-object request as PGRST116"""
        return self.code == "PGRST116"

    @property
    def is_server_error(self) -> bool:
        return self.status_code is not None and self.status_code >= 500


class RemoteCallError(Exception):
    """A remote data call failed after timeout/retry handling"""

    def __init__(self, operation: str, message: str):
        super().__init__(f"{operation}: {message}")
        self.operation = operation
        self.message = message
