"""Clinic data helpers used by the dashboards.

Every call goes through RemoteCallPolicy:
- Reads degrade to an empty fallback when the backend cannot answer
- Mutations (create patient, schedule appointment, create reminders,
  onboarding role records) raise RemoteCallError so the caller can inform
  the user
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from ..core.errors import BackendError
from ..core.resilience import RemoteCallPolicy
from .supabase_client import SupabaseRestClient, eq

logger = logging.getLogger(__name__)

EMPTY_DASHBOARD_STATS: Dict[str, int] = {
    "total_patients": 0,
    "today_appointments": 0,
    "pending_reminders": 0,
    "upcoming_followups": 0,
    "overdue_followups": 0,
}

DEFAULT_REMINDER_TYPES = ("sms", "email")
DEFAULT_CLINIC_NAME = "Default Medical Practice"
DEFAULT_SPECIALIZATION = "General Practice"

APPOINTMENT_COLUMNS = "*, patients (id, full_name, phone, email)"
REMINDER_COLUMNS = (
    "*, appointments (id, appointment_date, treatment_type, "
    "patients (full_name, phone))"
)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _rpc_params(values: Dict[str, Any]) -> Dict[str, Any]:
    """Prefix RPC arguments the way the backend functions declare them"""
    return {f"p_{key}": value for key, value in values.items()}


class ClinicRepository:
    """Patients, appointments and reminders scoped by clinic"""

    def __init__(
        self,
        client: SupabaseRestClient,
        policy: RemoteCallPolicy,
        default_clinic_name: str = DEFAULT_CLINIC_NAME,
    ):
        self.client = client
        self.policy = policy
        self.default_clinic_name = default_clinic_name

    async def get_default_clinic_id(self) -> Optional[str]:
        """Clinic that self-registered doctors join, None if it does not exist"""

        async def fetch() -> Optional[str]:
            try:
                row = await self.client.select(
                    "clinics",
                    {"name": eq(self.default_clinic_name)},
                    columns="id",
                    single=True,
                )
            except BackendError as e:
                if e.is_not_found:
                    logger.warning(f"Default clinic '{self.default_clinic_name}' not found")
                    return None
                raise
            return row.get("id") if row else None

        return await self.policy.read("table:clinics", fetch, fallback=None)

    async def create_doctor_record(
        self,
        profile_id: str,
        clinic_id: Optional[str],
        specialization: Optional[str] = None,
        license_number: Optional[str] = None,
    ) -> Any:
        """Insert the `doctors` row linked to a new doctor profile"""
        now = _now()
        row = {
            "profile_id": profile_id,
            "clinic_id": clinic_id,
            "specialization": specialization or DEFAULT_SPECIALIZATION,
            "license_number": license_number,
            "qualifications": [],
            "consultation_fee": 0,
            "availability": {},
            "created_at": now,
            "updated_at": now,
        }
        result = await self.policy.mutate(
            "table:doctors", lambda: self.client.insert("doctors", row)
        )
        logger.info(f"Created doctor record for profile {profile_id} in clinic {clinic_id}")
        return result

    async def create_patient_record(
        self,
        profile_id: str,
        clinic_id: Optional[str] = None,
        date_of_birth: Optional[str] = None,
        address: Optional[str] = None,
        emergency_contact: Optional[str] = None,
    ) -> Any:
        """Insert the `patients` row linked to a new patient profile"""
        now = _now()
        row = {
            "profile_id": profile_id,
            "clinic_id": clinic_id,
            "date_of_birth": date_of_birth,
            "address": address,
            "emergency_contact": emergency_contact,
            "medical_history": {},
            "created_at": now,
            "updated_at": now,
        }
        result = await self.policy.mutate(
            "table:patients", lambda: self.client.insert("patients", row)
        )
        logger.info(f"Created patient record for profile {profile_id}")
        return result

    async def get_dashboard_stats(self, clinic_id: str) -> Dict[str, Any]:
        stats = await self.policy.read(
            "rpc:get_dashboard_stats",
            lambda: self.client.rpc("get_dashboard_stats", {"clinic_uuid": clinic_id}),
            fallback=None,
        )
        if not isinstance(stats, dict):
            return dict(EMPTY_DASHBOARD_STATS)
        return {**EMPTY_DASHBOARD_STATS, **stats}

    async def get_patients(self, clinic_id: str) -> List[Dict[str, Any]]:
        return await self.policy.read(
            "table:patients",
            lambda: self.client.select(
                "patients", {"clinic_id": eq(clinic_id)}, order="created_at.desc"
            ),
            fallback=[],
        )

    async def create_patient(
        self,
        clinic_id: str,
        full_name: str,
        phone: str,
        email: Optional[str] = None,
        date_of_birth: Optional[str] = None,
        gender: Optional[str] = None,
        address: Optional[str] = None,
    ) -> Any:
        params = _rpc_params(
            {
                "clinic_id": clinic_id,
                "full_name": full_name,
                "phone": phone,
                "email": email,
                "date_of_birth": date_of_birth,
                "gender": gender,
                "address": address,
            }
        )
        result = await self.policy.mutate(
            "rpc:create_patient", lambda: self.client.rpc("create_patient", params)
        )
        logger.info(f"Created patient in clinic {clinic_id}")
        return result

    async def get_appointments(self, clinic_id: str) -> List[Dict[str, Any]]:
        return await self.policy.read(
            "table:appointments",
            lambda: self.client.select(
                "appointments",
                {"clinic_id": eq(clinic_id)},
                columns=APPOINTMENT_COLUMNS,
                order="appointment_date.asc",
            ),
            fallback=[],
        )

    async def schedule_appointment(
        self,
        patient_id: str,
        doctor_id: str,
        clinic_id: str,
        appointment_date: str,
        duration_minutes: Optional[int] = None,
        treatment_type: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> Any:
        params = _rpc_params(
            {
                "patient_id": patient_id,
                "doctor_id": doctor_id,
                "clinic_id": clinic_id,
                "appointment_date": appointment_date,
                "duration_minutes": duration_minutes,
                "treatment_type": treatment_type,
                "notes": notes,
            }
        )
        result = await self.policy.mutate(
            "rpc:schedule_appointment",
            lambda: self.client.rpc("schedule_appointment", params),
        )
        logger.info(f"Scheduled appointment for patient {patient_id} on {appointment_date}")
        return result

    async def create_reminders(
        self, appointment_id: str, reminder_types: Sequence[str] = DEFAULT_REMINDER_TYPES
    ) -> Any:
        params = _rpc_params(
            {"appointment_id": appointment_id, "reminder_types": list(reminder_types)}
        )
        return await self.policy.mutate(
            "rpc:create_appointment_reminders",
            lambda: self.client.rpc("create_appointment_reminders", params),
        )

    async def get_reminders(self, clinic_id: str) -> List[Dict[str, Any]]:
        return await self.policy.read(
            "table:reminders",
            lambda: self.client.select(
                "reminders",
                {"appointments.clinic_id": eq(clinic_id)},
                columns=REMINDER_COLUMNS,
                order="scheduled_for.asc",
            ),
            fallback=[],
        )

    async def get_patient_record(self, profile_id: str) -> Optional[Dict[str, Any]]:
        """Patient row linked to a patient profile, None if not created yet"""

        async def fetch() -> Optional[Dict[str, Any]]:
            try:
                return await self.client.select(
                    "patients", {"profile_id": eq(profile_id)}, single=True
                )
            except BackendError as e:
                if e.is_not_found:
                    return None
                raise

        return await self.policy.read("table:patients", fetch, fallback=None)

    async def get_medical_records(self, patient_id: str) -> List[Dict[str, Any]]:
        return await self.policy.read(
            "table:medical_records",
            lambda: self.client.select(
                "medical_records", {"patient_id": eq(patient_id)}, order="created_at.desc"
            ),
            fallback=[],
        )
