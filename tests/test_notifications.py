import logging
from types import SimpleNamespace
from unittest.mock import Mock, patch

from core import config as core_config
from services.events import (
    ORDER_CREATED,
    ORDER_REFUNDED,
    ORDER_STATUS_CHANGED,
    PAYMENT_STATUS_CHANGED,
    DomainEvent,
)
from services.notifications import NotificationDispatcher
from tasks.notification_tasks import send_notification_task


def _order(email="buyer@example.com"):
    user = SimpleNamespace(full_name="Mona Adel", email=email) if email else None
    return SimpleNamespace(id=1, order_number="ORD1", currency="EGP", user=user)


def _event(name, **payload):
    return DomainEvent(name=name, order_id=1, order_number="ORD1", payload=payload)


class TestRendering:
    def test_order_created(self):
        message = NotificationDispatcher(send=Mock()).render(
            _event(ORDER_CREATED, total="228.00", payment_method="cash_on_delivery"), _order()
        )
        assert message["subject"] == "Order ORD1 received"
        assert "Hello Mona Adel" in message["body"]
        assert "228.00 EGP" in message["body"]
        assert "cash on delivery" in message["body"]

    def test_status_change_subject(self):
        message = NotificationDispatcher(send=Mock()).render(
            _event(ORDER_STATUS_CHANGED, previous="pending", status="processing"), _order()
        )
        assert message["subject"] == "Order ORD1 is now processing"
        assert "from pending to processing" in message["body"]

    def test_payload_order_number_does_not_break_subject(self):
        message = NotificationDispatcher(send=Mock()).render(
            _event(ORDER_STATUS_CHANGED, previous="pending", status="processing", order_number="ORD-OLD"), _order()
        )
        assert message["subject"] == "Order ORD1 is now processing"

    def test_payment_failed_body(self):
        message = NotificationDispatcher(send=Mock()).render(
            _event(PAYMENT_STATUS_CHANGED, previous="pending", payment_status="failed"), _order()
        )
        assert "did not go through" in message["body"]

    def test_refund_body(self):
        message = NotificationDispatcher(send=Mock()).render(
            _event(ORDER_REFUNDED, amount="100.00", reason="Damaged", reference="REFUND_ORD1"), _order()
        )
        assert "100.00 EGP" in message["body"]
        assert "Reason: Damaged" in message["body"]

    def test_unknown_event(self):
        assert NotificationDispatcher(send=Mock()).render(_event("order.archived"), _order()) is None


class TestDispatch:
    def test_queues_one_message_per_event(self):
        send = Mock()
        events = [
            _event(ORDER_STATUS_CHANGED, previous="processing", status="completed"),
            _event(PAYMENT_STATUS_CHANGED, previous="pending", payment_status="paid"),
            _event("order.archived"),
        ]

        assert NotificationDispatcher(send=send).dispatch(events, _order()) == 2
        assert send.call_count == 2
        to_email, subject, _, event_name = send.call_args_list[1].args
        assert to_email == "buyer@example.com"
        assert subject == "Payment update for order ORD1"
        assert event_name == PAYMENT_STATUS_CHANGED

    def test_queue_failure_is_logged(self, caplog):
        send = Mock(side_effect=RuntimeError("broker down"))
        with caplog.at_level(logging.ERROR, logger="services.notifications"):
            queued = NotificationDispatcher(send=send).dispatch([_event(ORDER_CREATED, total="1", payment_method="x")], _order())

        assert queued == 0
        assert "Failed to queue notification" in caplog.text

    def test_no_recipient(self):
        send = Mock()
        assert NotificationDispatcher(send=send).dispatch([_event(ORDER_CREATED)], _order(email=None)) == 0
        send.assert_not_called()

    def test_no_events(self):
        send = Mock()
        assert NotificationDispatcher(send=send).dispatch([], _order()) == 0
        send.assert_not_called()

    def test_default_sender_uses_celery(self):
        with patch("services.notifications.send_notification_task") as task:
            NotificationDispatcher().dispatch([_event(ORDER_CREATED, total="1", payment_method="x")], _order())
        task.delay.assert_called_once()
        assert task.delay.call_args.args[0] == "buyer@example.com"


class TestNotificationTask:
    def test_skipped_while_testing(self):
        result = send_notification_task("buyer@example.com", "Subject", "Body", ORDER_CREATED)
        assert result == {"status": "skipped", "to": "buyer@example.com", "event": ORDER_CREATED}

    def test_sends_over_smtp(self, monkeypatch):
        monkeypatch.setattr(core_config.settings, "TESTING", False)
        monkeypatch.setattr(core_config.settings, "SMTP_USERNAME", "mailer")
        monkeypatch.setattr(core_config.settings, "SMTP_PASSWORD", "secret")

        with patch("tasks.notification_tasks.smtplib.SMTP") as smtp:
            result = send_notification_task("buyer@example.com", "Subject", "Body", ORDER_CREATED)

        server = smtp.return_value.__enter__.return_value
        server.login.assert_called_once_with("mailer", "secret")
        sent = server.send_message.call_args.args[0]
        assert sent["To"] == "buyer@example.com"
        assert result["status"] == "sent"
