"""Closed vocabularies for status columns and notification kinds."""

from enum import Enum


class UserRole(str, Enum):
    CLIENT = 'client'
    LAWYER = 'lawyer'


class AppointmentStatus(str, Enum):
    """
    Appointment lifecycle.

    Flow: pending -> awaiting_payment -> scheduled -> completed
              \\-> rejected                 \\-> cancelled
    """

    PENDING = 'pending'
    AWAITING_PAYMENT = 'awaiting_payment'
    SCHEDULED = 'scheduled'
    COMPLETED = 'completed'
    CANCELLED = 'cancelled'
    REJECTED = 'rejected'
    RESCHEDULED = 'rescheduled'


class PaymentStatus(str, Enum):
    PENDING = 'pending'
    COMPLETED = 'completed'
    FAILED = 'failed'


class CaseStatus(str, Enum):
    OPEN = 'open'
    IN_PROGRESS = 'in_progress'
    COMPLETED = 'completed'
    CLOSED = 'closed'


class NotificationKind(str, Enum):
    APPOINTMENT_REQUESTED = 'appointment_requested'
    APPOINTMENT_ACCEPTED = 'appointment_accepted'
    APPOINTMENT_REJECTED = 'appointment_rejected'
    APPOINTMENT_CANCELLED = 'appointment_cancelled'
    APPOINTMENT_COMPLETED = 'appointment_completed'
    PAYMENT_COMPLETED = 'payment_completed'
    PAYMENT_FAILED = 'payment_failed'
