from datetime import datetime, timedelta
from decimal import Decimal

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, field_validator
from sqlalchemy.orm import Session

from counselbook.auth.dependencies import get_current_user, get_db
from counselbook.core.timeutils import utcnow
from counselbook.models.appointment import Appointment
from counselbook.models.enums import AppointmentStatus, UserRole
from counselbook.models.user import User
from counselbook.routes.common import ensure_database_ready, service_errors
from counselbook.services import appointment_state
from counselbook.services.appointment_state import CaseDraft, TransitionResult
from counselbook.services.notifications import NotificationDispatcher, get_notifier
from counselbook.services.slot_conflicts import list_busy_intervals

router = APIRouter(tags=['appointments'])

MAX_APPOINTMENT_NOTES_LENGTH = 600
MAX_CASE_TITLE_LENGTH = 200
BUSY_RANGE_DAYS = 28


class CreateAppointmentRequest(BaseModel):
    lawyer_id: str
    start_time: datetime
    duration_minutes: int
    case_title: str
    case_description: str | None = None
    case_type: str | None = None
    notes: str | None = None

    @field_validator('case_title')
    @classmethod
    def validate_case_title(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError('Case title is required.')
        if len(normalized) > MAX_CASE_TITLE_LENGTH:
            raise ValueError(f'Case title must be {MAX_CASE_TITLE_LENGTH} characters or fewer.')
        return normalized

    @field_validator('case_type')
    @classmethod
    def validate_case_type(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip().lower()
        return normalized or None

    @field_validator('notes')
    @classmethod
    def validate_notes(cls, value: str | None) -> str | None:
        if value is None:
            return None

        normalized = value.strip()
        if not normalized:
            return None

        if len(normalized) > MAX_APPOINTMENT_NOTES_LENGTH:
            raise ValueError(f'Notes must be {MAX_APPOINTMENT_NOTES_LENGTH} characters or fewer.')

        return normalized


class AppointmentResponse(BaseModel):
    id: str
    client_id: str
    lawyer_id: str | None = None
    case_id: str
    start_time: datetime
    end_time: datetime
    duration_minutes: int
    status: AppointmentStatus
    notes: str | None = None
    request_message: str | None = None
    created_at: datetime | None = None
    responded_at: datetime | None = None
    updated_at: datetime | None = None

    class Config:
        from_attributes = True


class PaymentSummaryResponse(BaseModel):
    id: str
    amount: Decimal
    currency: str
    status: str

    class Config:
        from_attributes = True


class TransitionResponse(BaseModel):
    appointment: AppointmentResponse
    changed: bool
    payment: PaymentSummaryResponse | None = None


class BusyIntervalResponse(BaseModel):
    start_time: datetime
    end_time: datetime


def to_transition_response(result: TransitionResult) -> TransitionResponse:
    return TransitionResponse(
        appointment=AppointmentResponse.model_validate(result.appointment),
        changed=result.changed,
        payment=PaymentSummaryResponse.model_validate(result.payment) if result.payment else None,
    )


@router.post('', response_model=TransitionResponse, status_code=status.HTTP_201_CREATED)
def create_appointment(
    data: CreateAppointmentRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    notifier: NotificationDispatcher = Depends(get_notifier),
):
    ensure_database_ready()

    with service_errors(db):
        result = appointment_state.request_appointment(
            db,
            client_id=current_user.id,
            lawyer_id=data.lawyer_id,
            case_draft=CaseDraft(title=data.case_title, description=data.case_description, case_type=data.case_type),
            start=data.start_time,
            duration_minutes=data.duration_minutes,
            notifier=notifier,
            notes=data.notes,
        )

    return to_transition_response(result)


@router.get('', response_model=list[AppointmentResponse])
def list_my_appointments(
    status_filter: AppointmentStatus | None = Query(default=None, alias='status'),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    with service_errors(db):
        query = db.query(Appointment)
        if current_user.role == UserRole.LAWYER.value:
            query = query.filter(Appointment.lawyer_id == current_user.id)
        else:
            query = query.filter(Appointment.client_id == current_user.id)
        if status_filter is not None:
            query = query.filter(Appointment.status == status_filter.value)

        return query.order_by(Appointment.start_time.asc()).all()


@router.get('/lawyers/{lawyer_id}/busy', response_model=list[BusyIntervalResponse])
def list_lawyer_busy_intervals(
    lawyer_id: str,
    days: int = Query(default=14, ge=1, le=BUSY_RANGE_DAYS),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    del current_user
    ensure_database_ready()

    with service_errors(db):
        now = utcnow()
        intervals = list_busy_intervals(db, lawyer_id, now, now + timedelta(days=days))

    return [BusyIntervalResponse(start_time=interval.start, end_time=interval.end) for interval in intervals]


@router.post('/{appointment_id}/accept', response_model=TransitionResponse)
def accept_appointment(
    appointment_id: str,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    notifier: NotificationDispatcher = Depends(get_notifier),
):
    if current_user.role != UserRole.LAWYER.value:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail='Only lawyers can accept requests.')

    ensure_database_ready()

    with service_errors(db):
        result = appointment_state.accept_request(db, appointment_id, current_user.id, notifier)

    return to_transition_response(result)


@router.post('/{appointment_id}/reject', response_model=TransitionResponse)
def reject_appointment(
    appointment_id: str,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    notifier: NotificationDispatcher = Depends(get_notifier),
):
    if current_user.role != UserRole.LAWYER.value:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail='Only lawyers can decline requests.')

    ensure_database_ready()

    with service_errors(db):
        result = appointment_state.reject_request(db, appointment_id, current_user.id, notifier)

    return to_transition_response(result)


@router.post('/{appointment_id}/cancel', response_model=TransitionResponse)
def cancel_appointment(
    appointment_id: str,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    notifier: NotificationDispatcher = Depends(get_notifier),
):
    ensure_database_ready()

    with service_errors(db):
        result = appointment_state.cancel(db, appointment_id, current_user.id, notifier)

    return to_transition_response(result)


@router.post('/{appointment_id}/complete', response_model=TransitionResponse)
def complete_appointment(
    appointment_id: str,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    notifier: NotificationDispatcher = Depends(get_notifier),
):
    if current_user.role != UserRole.LAWYER.value:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail='Only lawyers can complete appointments.')

    ensure_database_ready()

    with service_errors(db):
        result = appointment_state.complete(db, appointment_id, current_user.id, notifier)

    return to_transition_response(result)
