import pytest
from fastapi import HTTPException

from counselbook.models.enums import NotificationKind
from counselbook.routes.notification_routes import list_my_notifications, mark_notification_read
from counselbook.services.notifications import NotificationDispatcher


@pytest.fixture
def dispatcher(session_factory) -> NotificationDispatcher:
    return NotificationDispatcher(session_factory=session_factory)


def test_list_my_notifications_returns_only_recipients_rows(db, client, lawyer, dispatcher) -> None:
    dispatcher.notify(client.id, NotificationKind.APPOINTMENT_ACCEPTED, {'case_title': 'Lease dispute'}, actor_id=lawyer.id)
    dispatcher.notify(lawyer.id, NotificationKind.APPOINTMENT_REQUESTED, {'case_title': 'Lease dispute'}, actor_id=client.id)

    notifications = list_my_notifications(unread_only=False, limit=50, current_user=client, db=db)

    assert [notification.kind for notification in notifications] == ['appointment_accepted']
    assert notifications[0].title == 'Lawyer accepted your request'


def test_mark_notification_read_hides_it_from_unread_list(db, client, dispatcher) -> None:
    dispatcher.notify(client.id, NotificationKind.PAYMENT_COMPLETED, {'case_title': 'Lease dispute', 'role': 'client'})
    notification = list_my_notifications(unread_only=True, limit=50, current_user=client, db=db)[0]

    updated = mark_notification_read(notification.id, current_user=client, db=db)

    assert updated.is_read is True
    assert list_my_notifications(unread_only=True, limit=50, current_user=client, db=db) == []
    assert len(list_my_notifications(unread_only=False, limit=50, current_user=client, db=db)) == 1


def test_mark_someone_elses_notification_is_not_found(db, client, lawyer, dispatcher) -> None:
    dispatcher.notify(lawyer.id, NotificationKind.APPOINTMENT_REQUESTED, {'case_title': 'Lease dispute'})
    notification = list_my_notifications(unread_only=False, limit=50, current_user=lawyer, db=db)[0]

    with pytest.raises(HTTPException) as exception_info:
        mark_notification_read(notification.id, current_user=client, db=db)

    assert exception_info.value.status_code == 404
