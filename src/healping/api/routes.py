"""API routes: health, auth actions, onboarding and role dashboards"""

import logging
from typing import Any, Dict, Optional
from fastapi import APIRouter, Depends, Request, Response, status
from fastapi.responses import JSONResponse

from ..core.errors import ProfileStoreError, RemoteCallError, SessionSourceError
from ..core.guard import RoutePaths
from ..core.models import AuthState, Role
from ..core.synchronizer import AuthSynchronizer
from ..infrastructure.clinic_repository import EMPTY_DASHBOARD_STATS, ClinicRepository
from .schemas import (
    CreatePatientRequest,
    CreateRemindersRequest,
    OnboardingRequest,
    ScheduleAppointmentRequest,
    SignInRequest,
    SignUpRequest,
)

logger = logging.getLogger(__name__)

router = APIRouter()

NO_CLINIC_MESSAGE = "No clinic associated with your account. Please contact support."


def get_synchronizer(request: Request) -> AuthSynchronizer:
    return request.app.state.synchronizer


def get_paths(request: Request) -> RoutePaths:
    return request.app.state.paths


def get_repository(request: Request) -> ClinicRepository:
    return request.app.state.clinic_repository


def get_auth_state(request: Request) -> AuthState:
    """Snapshot the guard evaluated for this request"""
    state = getattr(request.state, "auth", None)
    if state is None:
        state = request.app.state.synchronizer.state
    return state


def next_path(state: AuthState, paths: RoutePaths) -> str:
    """Where the client should go for this snapshot"""
    if state.profile is not None:
        return paths.home_path(state.profile.role)
    if state.session is not None:
        return paths.onboarding_path
    return paths.login_path


def _auth_payload(state: AuthState, paths: RoutePaths) -> Dict[str, Any]:
    return {**state.to_dict(), "redirect_to": next_path(state, paths)}


def _error(status_code: int, error: str, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": error, "message": message})


def _profile_summary(state: AuthState) -> Dict[str, Any]:
    profile = state.profile
    return {
        "profile": profile.to_dict(),
        "display_name": profile.display_name(state.session),
    }


# Health


@router.get("/health")
async def health_check() -> Dict[str, Any]:
    """Lightweight check that the portal process is up."""
    return {
        "status": "healthy",
        "service": "healping-portal",
        "version": "1.0.0",
    }


@router.get("/health/live")
async def liveness_probe(request: Request) -> Dict[str, Any]:
    health = await request.app.state.health_checker.check_liveness()
    return health.to_dict()


@router.get("/health/ready")
async def readiness_probe(request: Request) -> Response:
    """200 once auth state is resolved and backends are usable, else 503."""
    health = await request.app.state.health_checker.check_readiness()
    status_code = status.HTTP_200_OK if health.ready else status.HTTP_503_SERVICE_UNAVAILABLE
    return JSONResponse(status_code=status_code, content=health.to_dict())


# Auth


@router.get("/auth/state")
async def auth_state(
    synchronizer: AuthSynchronizer = Depends(get_synchronizer),
    paths: RoutePaths = Depends(get_paths),
) -> Dict[str, Any]:
    return _auth_payload(synchronizer.state, paths)


@router.post("/auth/sign-in")
async def sign_in(
    body: SignInRequest,
    request: Request,
    synchronizer: AuthSynchronizer = Depends(get_synchronizer),
    paths: RoutePaths = Depends(get_paths),
):
    source = request.app.state.session_source
    try:
        await source.sign_in_with_password(body.email, body.password)
    except SessionSourceError as e:
        logger.warning(f"Sign-in failed for {body.email}: {e}")
        return _error(status.HTTP_401_UNAUTHORIZED, "sign_in_failed", str(e) or "Authentication failed")
    except NotImplementedError as e:
        return _error(status.HTTP_501_NOT_IMPLEMENTED, "not_supported", str(e))

    await synchronizer.wait_idle()
    return _auth_payload(synchronizer.state, paths)


@router.post("/auth/sign-up")
async def sign_up(
    body: SignUpRequest,
    request: Request,
    synchronizer: AuthSynchronizer = Depends(get_synchronizer),
    paths: RoutePaths = Depends(get_paths),
):
    source = request.app.state.session_source
    try:
        session = await source.sign_up(body.email, body.password, body.full_name)
    except SessionSourceError as e:
        logger.warning(f"Sign-up failed for {body.email}: {e}")
        return _error(status.HTTP_400_BAD_REQUEST, "sign_up_failed", str(e) or "Registration failed")
    except NotImplementedError as e:
        return _error(status.HTTP_501_NOT_IMPLEMENTED, "not_supported", str(e))

    if session is None:
        return JSONResponse(
            status_code=status.HTTP_202_ACCEPTED,
            content={
                "status": "confirmation_required",
                "message": "Please check your email for a confirmation link!",
            },
        )

    await synchronizer.wait_idle()
    return _auth_payload(synchronizer.state, paths)


@router.post("/auth/sign-out")
async def sign_out(
    synchronizer: AuthSynchronizer = Depends(get_synchronizer),
    paths: RoutePaths = Depends(get_paths),
):
    result = await synchronizer.sign_out()
    content = {"ok": result.ok, "error": result.error, "redirect_to": paths.login_path}
    if not result.ok:
        # Local state is already cleared; report the remote failure
        return JSONResponse(status_code=status.HTTP_502_BAD_GATEWAY, content=content)
    return content


@router.post("/auth/refresh-profile")
async def refresh_profile(
    synchronizer: AuthSynchronizer = Depends(get_synchronizer),
    paths: RoutePaths = Depends(get_paths),
) -> Dict[str, Any]:
    state = await synchronizer.refresh_profile()
    return _auth_payload(state, paths)


# Onboarding


@router.post("/onboarding")
async def complete_onboarding(
    body: OnboardingRequest,
    request: Request,
    synchronizer: AuthSynchronizer = Depends(get_synchronizer),
    paths: RoutePaths = Depends(get_paths),
    state: AuthState = Depends(get_auth_state),
    repository: ClinicRepository = Depends(get_repository),
):
    """
    Complete role selection, then reload auth state.

    Steps:
    1. Insert the profile
    2. Doctors: look up the default clinic
    3. Insert the `doctors` or `patients` row linked to the profile
    4. Write the clinic back to the profile
    """
    if state.profile is not None:
        return _error(
            status.HTTP_409_CONFLICT,
            "profile_exists",
            "Your profile is already set up",
        )

    user_id = state.session.user_id
    fields = {
        "role": body.role,
        "email": state.session.email,
        "first_name": body.first_name,
        "last_name": body.last_name,
        "full_name": f"{body.first_name} {body.last_name}",
        "phone": body.phone,
        "avatar_url": state.session.user_metadata.get("avatar_url"),
    }

    store = request.app.state.profile_store
    try:
        await store.create_profile(user_id, fields)
    except ProfileStoreError as e:
        logger.error(f"Error creating profile for {user_id}: {e}")
        return _error(
            status.HTTP_502_BAD_GATEWAY,
            "profile_creation_failed",
            str(e) or "Failed to create profile. Please try again.",
        )

    try:
        clinic_id = None
        if body.role == Role.DOCTOR.value:
            clinic_id = await repository.get_default_clinic_id()
            await repository.create_doctor_record(
                user_id,
                clinic_id,
                specialization=body.specialization,
                license_number=body.license_number,
            )
        else:
            await repository.create_patient_record(
                user_id,
                date_of_birth=body.date_of_birth,
                address=body.address,
                emergency_contact=body.emergency_contact,
            )

        if clinic_id:
            await store.update_profile(user_id, {"clinic_id": clinic_id})
    except (RemoteCallError, ProfileStoreError) as e:
        logger.error(f"Error completing {body.role} onboarding for {user_id}: {e}")
        # The profile exists now, so auth state must reflect it
        await synchronizer.refresh_profile(force=True)
        message = e.message if isinstance(e, RemoteCallError) else str(e)
        return _error(status.HTTP_502_BAD_GATEWAY, "onboarding_incomplete", message)

    new_state = await synchronizer.refresh_profile(force=True)
    return _auth_payload(new_state, paths)


# Doctor area


def _clinic_id(state: AuthState) -> Optional[str]:
    return state.profile.clinic_id if state.profile else None


@router.get("/doctor/dashboard")
async def doctor_dashboard(
    state: AuthState = Depends(get_auth_state),
    repository: ClinicRepository = Depends(get_repository),
) -> Dict[str, Any]:
    clinic_id = _clinic_id(state)
    if not clinic_id:
        return {**_profile_summary(state), "stats": dict(EMPTY_DASHBOARD_STATS), "error": NO_CLINIC_MESSAGE}

    stats = await repository.get_dashboard_stats(clinic_id)
    return {**_profile_summary(state), "stats": stats, "error": None}


@router.get("/doctor/patients")
async def list_patients(
    state: AuthState = Depends(get_auth_state),
    repository: ClinicRepository = Depends(get_repository),
) -> Dict[str, Any]:
    clinic_id = _clinic_id(state)
    if not clinic_id:
        return {"patients": [], "error": NO_CLINIC_MESSAGE}
    return {"patients": await repository.get_patients(clinic_id), "error": None}


@router.post("/doctor/patients", status_code=status.HTTP_201_CREATED)
async def add_patient(
    body: CreatePatientRequest,
    state: AuthState = Depends(get_auth_state),
    repository: ClinicRepository = Depends(get_repository),
):
    clinic_id = _clinic_id(state)
    if not clinic_id:
        return _error(status.HTTP_409_CONFLICT, "no_clinic", NO_CLINIC_MESSAGE)

    try:
        patient = await repository.create_patient(clinic_id=clinic_id, **body.model_dump())
    except RemoteCallError as e:
        return _error(status.HTTP_502_BAD_GATEWAY, "backend_error", e.message)
    return {"patient": patient}


@router.get("/doctor/appointments")
async def list_appointments(
    state: AuthState = Depends(get_auth_state),
    repository: ClinicRepository = Depends(get_repository),
) -> Dict[str, Any]:
    clinic_id = _clinic_id(state)
    if not clinic_id:
        return {"appointments": [], "error": NO_CLINIC_MESSAGE}
    return {"appointments": await repository.get_appointments(clinic_id), "error": None}


@router.post("/doctor/appointments", status_code=status.HTTP_201_CREATED)
async def schedule_appointment(
    body: ScheduleAppointmentRequest,
    state: AuthState = Depends(get_auth_state),
    repository: ClinicRepository = Depends(get_repository),
):
    clinic_id = _clinic_id(state)
    if not clinic_id:
        return _error(status.HTTP_409_CONFLICT, "no_clinic", NO_CLINIC_MESSAGE)

    try:
        appointment = await repository.schedule_appointment(
            doctor_id=state.profile.id,
            clinic_id=clinic_id,
            **body.model_dump(),
        )
    except RemoteCallError as e:
        return _error(status.HTTP_502_BAD_GATEWAY, "backend_error", e.message)
    return {"appointment": appointment}


# Clinic reminders (doctors and admins)


@router.get("/clinic/reminders")
async def list_reminders(
    state: AuthState = Depends(get_auth_state),
    repository: ClinicRepository = Depends(get_repository),
) -> Dict[str, Any]:
    clinic_id = _clinic_id(state)
    if not clinic_id:
        return {"reminders": [], "error": NO_CLINIC_MESSAGE}
    return {"reminders": await repository.get_reminders(clinic_id), "error": None}


@router.post("/clinic/reminders/{appointment_id}", status_code=status.HTTP_201_CREATED)
async def create_reminders(
    appointment_id: str,
    body: CreateRemindersRequest,
    repository: ClinicRepository = Depends(get_repository),
):
    try:
        reminders = await repository.create_reminders(appointment_id, body.reminder_types)
    except RemoteCallError as e:
        return _error(status.HTTP_502_BAD_GATEWAY, "backend_error", e.message)
    return {"reminders": reminders}


# Patient area


@router.get("/patient/dashboard")
async def patient_dashboard(
    state: AuthState = Depends(get_auth_state),
    repository: ClinicRepository = Depends(get_repository),
) -> Dict[str, Any]:
    record = await repository.get_patient_record(state.profile.id)
    return {**_profile_summary(state), "patient": record}


@router.get("/patient/records")
async def patient_records(
    state: AuthState = Depends(get_auth_state),
    repository: ClinicRepository = Depends(get_repository),
) -> Dict[str, Any]:
    record = await repository.get_patient_record(state.profile.id)
    if record is None:
        return {"patient": None, "records": []}
    records = await repository.get_medical_records(record["id"])
    return {"patient": record, "records": records}


# Admin area


@router.get("/admin/dashboard")
async def admin_dashboard(
    state: AuthState = Depends(get_auth_state),
    repository: ClinicRepository = Depends(get_repository),
) -> Dict[str, Any]:
    clinic_id = _clinic_id(state)
    stats = await repository.get_dashboard_stats(clinic_id) if clinic_id else dict(EMPTY_DASHBOARD_STATS)
    return {
        **_profile_summary(state),
        "stats": stats,
        "error": None if clinic_id else NO_CLINIC_MESSAGE,
    }
