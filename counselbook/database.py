from threading import Lock

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.orm import declarative_base, sessionmaker

from counselbook.core import config


def _engine_options(database_url: str) -> dict:
    if database_url.startswith('sqlite'):
        return {'connect_args': {'check_same_thread': False}}
    return {'pool_pre_ping': True}


engine = create_engine(config.DATABASE_URL, **_engine_options(config.DATABASE_URL))

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
)

Base = declarative_base()

_schema_lock = Lock()
_appointment_schema_checked = False
_payment_schema_checked = False


def _apply_schema_steps(table_name: str, migration_steps: list[tuple[str, str]], index_statements: list[str]) -> None:
    inspector = inspect(engine)

    if table_name not in inspector.get_table_names():
        return

    existing_columns = {column['name'] for column in inspector.get_columns(table_name)}

    with engine.begin() as connection:
        for column_name, statement in migration_steps:
            if column_name not in existing_columns:
                connection.execute(text(statement))
        for statement in index_statements:
            connection.execute(text(statement))


def ensure_appointment_schema() -> None:
    global _appointment_schema_checked

    if _appointment_schema_checked:
        return

    with _schema_lock:
        if _appointment_schema_checked:
            return

        _apply_schema_steps(
            'appointments',
            [
                ('request_message', 'ALTER TABLE appointments ADD COLUMN request_message VARCHAR'),
                ('responded_at', 'ALTER TABLE appointments ADD COLUMN responded_at TIMESTAMP'),
                ('cancelled_by', 'ALTER TABLE appointments ADD COLUMN cancelled_by VARCHAR(36)'),
            ],
            [
                'CREATE INDEX IF NOT EXISTS idx_appointments_lawyer_status_start '
                'ON appointments(lawyer_id, status, start_time)',
                'CREATE INDEX IF NOT EXISTS idx_appointments_client_start ON appointments(client_id, start_time)',
            ],
        )

        _appointment_schema_checked = True


def ensure_payment_schema() -> None:
    global _payment_schema_checked

    if _payment_schema_checked:
        return

    with _schema_lock:
        if _payment_schema_checked:
            return

        _apply_schema_steps(
            'payments',
            [
                ('payment_intent_id', 'ALTER TABLE payments ADD COLUMN payment_intent_id VARCHAR'),
                ('client_notified_at', 'ALTER TABLE payments ADD COLUMN client_notified_at TIMESTAMP'),
                ('lawyer_notified_at', 'ALTER TABLE payments ADD COLUMN lawyer_notified_at TIMESTAMP'),
                ('duplicate_of', 'ALTER TABLE payments ADD COLUMN duplicate_of VARCHAR(36)'),
            ],
            [
                'CREATE UNIQUE INDEX IF NOT EXISTS idx_payments_external_reference ON payments(external_reference)',
                'CREATE INDEX IF NOT EXISTS idx_payments_appointment_status ON payments(appointment_id, status)',
            ],
        )

        _payment_schema_checked = True
