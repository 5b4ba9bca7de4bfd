from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable

from sqlalchemy.orm import Session

from counselbook.models.appointment import Appointment
from counselbook.models.enums import AppointmentStatus

# Only scheduled (paid) appointments make a slot unavailable for certain.
BINDING_STATUSES = (AppointmentStatus.SCHEDULED,)
# Request-time pre-check also skips slots that are likely to be taken.
ADVISORY_STATUSES = (AppointmentStatus.PENDING, AppointmentStatus.SCHEDULED)


@dataclass(frozen=True)
class BookedInterval:
    appointment_id: str
    lawyer_id: str
    start: datetime
    end: datetime


def intervals_overlap(start_a: datetime, end_a: datetime, start_b: datetime, end_b: datetime) -> bool:
    # Half-open intervals: touching endpoints are not an overlap.
    return not (end_a <= start_b or start_a >= end_b)


def has_conflict(
    lawyer_id: str,
    candidate_start: datetime,
    candidate_duration_minutes: int,
    existing_bookings: Iterable[BookedInterval],
) -> bool:
    candidate_end = candidate_start + timedelta(minutes=candidate_duration_minutes)

    for booking in existing_bookings:
        if booking.lawyer_id != lawyer_id:
            continue
        if intervals_overlap(candidate_start, candidate_end, booking.start, booking.end):
            return True

    return False


def load_lawyer_bookings(
    db: Session,
    lawyer_id: str,
    statuses: Iterable[AppointmentStatus] = BINDING_STATUSES,
    exclude_appointment_id: str | None = None,
    window_start: datetime | None = None,
    window_end: datetime | None = None,
) -> list[BookedInterval]:
    query = db.query(Appointment.id, Appointment.lawyer_id, Appointment.start_time, Appointment.end_time).filter(
        Appointment.lawyer_id == lawyer_id,
        Appointment.status.in_([status.value for status in statuses]),
    )
    if exclude_appointment_id is not None:
        query = query.filter(Appointment.id != exclude_appointment_id)
    if window_start is not None:
        query = query.filter(Appointment.end_time > window_start)
    if window_end is not None:
        query = query.filter(Appointment.start_time < window_end)

    return [
        BookedInterval(appointment_id=row_id, lawyer_id=row_lawyer_id, start=start_time, end=end_time)
        for row_id, row_lawyer_id, start_time, end_time in query.order_by(Appointment.start_time.asc()).all()
    ]


def list_busy_intervals(
    db: Session,
    lawyer_id: str,
    window_start: datetime,
    window_end: datetime,
) -> list[BookedInterval]:
    return load_lawyer_bookings(
        db,
        lawyer_id,
        statuses=ADVISORY_STATUSES,
        window_start=window_start,
        window_end=window_end,
    )
