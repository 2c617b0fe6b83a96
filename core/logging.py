import logging

from core.config import settings

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
_RECORD_ATTRS = set(vars(logging.LogRecord("", logging.INFO, "", 0, "", (), None))) | {"message", "asctime"}
_configured = False


class ContextFormatter(logging.Formatter):
    """Appends the fields passed through ``extra=`` as ``key=value`` pairs."""

    def formatMessage(self, record: logging.LogRecord) -> str:
        line = super().formatMessage(record)
        context = sorted((key, value) for key, value in vars(record).items() if key not in _RECORD_ATTRS)
        if not context:
            return line
        return line + " " + " ".join(f"{key}={value}" for key, value in context)


def configure_logging() -> None:
    global _configured
    if _configured:
        return
    handler = logging.StreamHandler()
    handler.setFormatter(ContextFormatter(LOG_FORMAT))
    logging.basicConfig(level=logging.DEBUG if settings.DEBUG else logging.INFO, handlers=[handler])
    # SQL echo is controlled by SQLALCHEMY_ECHO, keep the engine logger quiet otherwise
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    _configured = True


def get_logger(name: str) -> logging.Logger:
    configure_logging()
    return logging.getLogger(name)
