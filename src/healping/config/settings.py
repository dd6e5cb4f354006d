"""Portal configuration using pydantic-settings"""

from typing import Dict, Literal, Optional
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..core.guard import RoutePaths
from ..core.models import Role


class Settings(BaseSettings):
    """Portal configuration from environment variables"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Hosted backend
    supabase_url: str = Field(
        default="http://localhost:54321",
        description="Supabase project URL",
    )
    supabase_anon_key: str = Field(
        default="",
        description="Supabase anonymous (public) API key",
    )
    supabase_jwt_secret: Optional[str] = Field(
        default=None,
        description="JWT secret; when set, access tokens are signature-verified",
    )
    session_refresh_margin: int = Field(
        default=60,
        description="Refresh the session this many seconds before it expires",
    )
    session_refresh_retry_interval: float = Field(
        default=10.0,
        description="Seconds between background refresh attempts after a failure",
    )

    # Session persistence
    session_storage_backend: Literal["memory", "redis"] = Field(
        default="memory",
        description="Where the signed-in session is persisted",
    )
    session_storage_key: str = Field(
        default="healping:auth:session",
        description="Storage key for the persisted session",
    )
    redis_mode: Literal["standalone", "sentinel"] = Field(default="standalone")
    redis_host: str = Field(default="localhost")
    redis_port: int = Field(default=6379)
    redis_password: Optional[str] = Field(default=None)
    redis_db: int = Field(default=0)
    redis_sentinel_hosts: str = Field(
        default="localhost:26379",
        description="Comma-separated host:port list (sentinel mode)",
    )
    redis_master_set: str = Field(default="mymaster")

    # Onboarding
    default_clinic_name: str = Field(
        default="Default Medical Practice",
        description="Clinic that doctors are assigned to when they sign up",
    )

    # Remote call policy
    remote_call_timeout: float = Field(
        default=5.0,
        description="Seconds allowed per remote data call attempt",
    )
    remote_call_max_attempts: int = Field(
        default=3,
        description="Attempts per remote read, including the first",
    )
    remote_call_backoff_min: float = Field(default=0.5)
    remote_call_backoff_max: float = Field(default=4.0)

    # Circuit breaker
    circuit_breaker_enabled: bool = Field(default=True)
    circuit_breaker_fail_threshold: int = Field(default=5)
    circuit_breaker_reset_timeout: int = Field(default=30)

    # Guard redirect targets
    login_path: str = Field(default="/auth")
    onboarding_path: str = Field(default="/onboarding")
    doctor_home_path: str = Field(default="/doctor/dashboard")
    patient_home_path: str = Field(default="/patient/dashboard")
    admin_home_path: str = Field(default="/admin/dashboard")

    # Portal server
    portal_host: str = Field(
        default="127.0.0.1",
        description="Portal bind host",
    )
    portal_port: int = Field(
        default=3000,
        description="Portal bind port",
    )
    cors_origins: str = Field(
        default="http://localhost:3000,http://127.0.0.1:3000",
        description="Comma-separated list of allowed CORS origins",
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level",
    )

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS origins into list"""
        return [origin.strip() for origin in self.cors_origins.split(",")]

    @property
    def redis_sentinel_hosts_list(self) -> list[tuple[str, int]]:
        hosts = []
        for entry in self.redis_sentinel_hosts.split(","):
            host, port = entry.strip().split(":")
            hosts.append((host, int(port)))
        return hosts

    def route_paths(self) -> RoutePaths:
        home_paths: Dict[Role, str] = {
            Role.DOCTOR: self.doctor_home_path,
            Role.PATIENT: self.patient_home_path,
            Role.ADMIN: self.admin_home_path,
        }
        return RoutePaths(
            login_path=self.login_path,
            onboarding_path=self.onboarding_path,
            home_paths=home_paths,
        )


# Singleton settings instance
_settings: Settings | None = None


def get_settings() -> Settings:
    """Get or create settings singleton"""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
