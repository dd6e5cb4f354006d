"""Session, profile and auth-state models shared by the portal"""

from dataclasses import asdict, dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Optional


class Role(Enum):
    """Application roles stored on the profile"""

    DOCTOR = "doctor"
    PATIENT = "patient"
    ADMIN = "admin"


class AuthEvent(Enum):
    """Session change events emitted by the identity provider"""

    SIGNED_IN = "SIGNED_IN"
    SIGNED_OUT = "SIGNED_OUT"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"


@dataclass(frozen=True)
class Session:
    """Authenticated identity issued by the identity provider"""

    user_id: str
    email: str
    access_token: str
    refresh_token: str = ""
    expires_at: Optional[int] = None
    user_metadata: Dict[str, Any] = field(default_factory=dict)

    def same_identity(self, other: Optional["Session"]) -> bool:
        """True when both sessions belong to the same user"""
        return other is not None and other.user_id == self.user_id

    def with_credentials(self, other: "Session") -> "Session":
        """Copy of this session carrying the other session's credentials"""
        return replace(
            self,
            access_token=other.access_token,
            refresh_token=other.refresh_token,
            expires_at=other.expires_at,
        )

    def is_expired(self, now: float, margin: int = 0) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at <= now + margin

    def to_dict(self) -> Dict[str, Any]:
        """Public view of the session (no credential material)"""
        return {
            "user_id": self.user_id,
            "email": self.email,
            "expires_at": self.expires_at,
            "user_metadata": dict(self.user_metadata),
        }


@dataclass(frozen=True)
class Profile:
    """Application-level user record, one per session user id"""

    id: str
    role: Role
    full_name: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    avatar_url: Optional[str] = None
    clinic_id: Optional[str] = None
    preferences: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Profile":
        """
        Build a profile from a `profiles` table row.

        Raises:
            ValueError: If the row has no id or an unknown role
        """
        if not row.get("id"):
            raise ValueError("Profile row is missing an id")

        return cls(
            id=str(row["id"]),
            role=Role(row.get("role")),
            full_name=row.get("full_name"),
            first_name=row.get("first_name"),
            last_name=row.get("last_name"),
            email=row.get("email"),
            phone=row.get("phone"),
            avatar_url=row.get("avatar_url"),
            clinic_id=row.get("clinic_id"),
            preferences=row.get("preferences") or {},
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )

    def display_name(self, session: Optional[Session] = None) -> str:
        """Best available display name, falling back to session metadata"""
        if self.full_name:
            return self.full_name
        parts = [p for p in (self.first_name, self.last_name) if p]
        if parts:
            return " ".join(parts)
        if session is not None:
            return session.user_metadata.get("full_name") or session.email
        return ""

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["role"] = self.role.value
        return data


@dataclass(frozen=True)
class AuthState:
    """Snapshot of the synchronizer's state published to observers"""

    session: Optional[Session] = None
    profile: Optional[Profile] = None
    loading: bool = True
    initialized: bool = False
    error: Optional[str] = None

    @property
    def is_authenticated(self) -> bool:
        return self.session is not None

    @property
    def role(self) -> Optional[Role]:
        return self.profile.role if self.profile else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session": self.session.to_dict() if self.session else None,
            "profile": self.profile.to_dict() if self.profile else None,
            "loading": self.loading,
            "initialized": self.initialized,
            "error": self.error,
        }
