from sqlalchemy import select

from marketplace.database import get_session
from marketplace.models import Analytic, Notification
from marketplace.notifications import ConnectionRegistry, Notifier, record_event


def test_registry_pushes_to_connected_users_only(mocker):
    registry = ConnectionRegistry()
    send = mocker.Mock()
    registry.connect("user-1", send)

    assert registry.push("user-1", "notification", {"id": 1}) is True
    assert registry.push("user-2", "notification", {"id": 2}) is False
    send.assert_called_once_with("notification", {"id": 1})
    assert len(registry) == 1


def test_stale_disconnect_keeps_the_newer_connection(mocker):
    registry = ConnectionRegistry()
    old, new = mocker.Mock(), mocker.Mock()
    registry.connect("user-1", old)
    registry.connect("user-1", new)

    registry.disconnect("user-1", old)
    assert registry.is_connected("user-1")

    registry.disconnect("user-1", new)
    assert not registry.is_connected("user-1")


def test_notifier_persists_and_pushes(db, mocker):
    registry = ConnectionRegistry()
    send = mocker.Mock()
    registry.connect("seller-1", send)

    notification_id = Notifier(registry).notify("seller-1", "order", "New order ORD-1", link="orders")

    row = db.get(Notification, notification_id)
    assert (row.receiver_id, row.type, row.status) == ("seller-1", "order", "unread")
    event, payload = send.call_args.args
    assert event == "notification"
    assert payload["id"] == notification_id
    assert payload["link"] == "orders"


def test_offline_users_still_get_stored_notifications(db):
    notification_id = Notifier(ConnectionRegistry()).notify("user-9", "payment", "Refunded")

    assert db.get(Notification, notification_id) is not None


def test_notifier_swallows_delivery_errors(db, mocker):
    registry = ConnectionRegistry()
    registry.connect("user-1", mocker.Mock(side_effect=RuntimeError("socket gone")))

    assert Notifier(registry).notify("user-1", "order", "hello") is None


def test_record_event_once_per_user_and_day(db):
    with get_session() as session:
        assert record_event(session, "order", "p-1", "user-1") is True
    with get_session() as session:
        assert record_event(session, "order", "p-1", "user-1") is False
        assert record_event(session, "order", "p-1", "user-2") is True

    assert len(db.execute(select(Analytic)).scalars().all()) == 2


def test_record_event_once_per_product_and_day(db):
    with get_session() as session:
        assert record_event(session, "purchase", "p-1", "user-1", per_user=False) is True
    with get_session() as session:
        assert record_event(session, "purchase", "p-1", "user-2", per_user=False) is False
        assert record_event(session, "purchase", "p-2", "user-2", per_user=False) is True
