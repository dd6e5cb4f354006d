"""Infrastructure layer - Supabase collaborators and session storage"""

from .clinic_repository import ClinicRepository
from .session_storage import SessionStorage
from .supabase_client import SupabaseRestClient
from .supabase_profile_store import SupabaseProfileStore
from .supabase_session_source import SupabaseSessionSource

__all__ = [
    "ClinicRepository",
    "SessionStorage",
    "SupabaseRestClient",
    "SupabaseProfileStore",
    "SupabaseSessionSource",
]
