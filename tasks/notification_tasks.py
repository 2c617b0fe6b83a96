import smtplib
from email.message import EmailMessage

from core.celery import celery_app
from core.config import settings
from core.logging import get_logger

logger = get_logger(__name__)


@celery_app.task(bind=True, max_retries=3)
def send_notification_task(self, to_email: str, subject: str, body: str, event_name: str = ""):
    """
    Send an order notification email.
    Retries up to 3 times on failure.
    """
    # Skip delivery in testing mode or with placeholder credentials
    if settings.TESTING or not settings.SMTP_PASSWORD:
        logger.info("Notification delivery skipped", extra={"to_email": to_email, "subject": subject, "event": event_name})
        return {"status": "skipped", "to": to_email, "event": event_name}

    try:
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = settings.SMTP_FROM or settings.SMTP_USERNAME
        msg["To"] = to_email
        msg.set_content(body)

        with smtplib.SMTP(settings.SMTP_HOST, settings.SMTP_PORT) as server:
            server.starttls()
            if settings.SMTP_USERNAME and settings.SMTP_PASSWORD:
                server.login(settings.SMTP_USERNAME, settings.SMTP_PASSWORD)
            server.send_message(msg)

        return {"status": "sent", "to": to_email, "subject": subject, "event": event_name}

    except (smtplib.SMTPException, OSError) as exc:
        logger.warning("Notification delivery failed", extra={"to_email": to_email, "event": event_name, "error": str(exc)})
        # Retry with exponential backoff
        countdown = min(2 ** self.request.retries, 60)  # Max 60 seconds
        raise self.retry(exc=exc, countdown=countdown)
