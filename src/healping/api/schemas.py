"""Request bodies accepted by the portal API"""

from typing import List, Literal, Optional
from pydantic import BaseModel, Field


class SignInRequest(BaseModel):
    email: str
    password: str


class SignUpRequest(BaseModel):
    email: str
    password: str
    full_name: Optional[str] = None


class OnboardingRequest(BaseModel):
    """
    Role selection submitted by a signed-in user without a profile.

    The clinic is assigned on the server; unknown fields are ignored.
    """

    role: Literal["doctor", "patient"]
    first_name: str = Field(min_length=1)
    last_name: str = Field(min_length=1)
    phone: Optional[str] = None

    # Doctors
    specialization: Optional[str] = None
    license_number: Optional[str] = None

    # Patients
    date_of_birth: Optional[str] = None
    address: Optional[str] = None
    emergency_contact: Optional[str] = None


class CreatePatientRequest(BaseModel):
    full_name: str
    phone: str
    email: Optional[str] = None
    date_of_birth: Optional[str] = None
    gender: Optional[str] = None
    address: Optional[str] = None


class ScheduleAppointmentRequest(BaseModel):
    patient_id: str
    appointment_date: str
    duration_minutes: Optional[int] = None
    treatment_type: Optional[str] = None
    notes: Optional[str] = None


class CreateRemindersRequest(BaseModel):
    reminder_types: List[str] = Field(default_factory=lambda: ["sms", "email"])
