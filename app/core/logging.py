import logging
import logging.config
import re

REDACTED = "[REDACTED]"

# (pattern, replacement); an address=... assignment keeps its key.
RECIPIENT_REDACTIONS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}"), REDACTED),
    (re.compile(r"(?<!\w)\+?\d[\d\s().-]{8,}\d\b"), REDACTED),
    (re.compile(r"(?i)\b((?:recipient_)?address\s*[=:]\s*)([^,\s]+)"), rf"\1{REDACTED}"),
]


def redact_recipients(text: str) -> str:
    for pattern, replacement in RECIPIENT_REDACTIONS:
        text = pattern.sub(replacement, text)
    return text


class RecipientSafeFilter(logging.Filter):
    """Keep recipient addresses (e-mail, phone, ``address=...``) out of log output."""

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = redact_recipients(record.msg)

        if isinstance(record.args, tuple):
            record.args = tuple(
                redact_recipients(arg) if isinstance(arg, str) else arg for arg in record.args
            )
        elif isinstance(record.args, dict):
            record.args = {
                key: redact_recipients(value) if isinstance(value, str) else value
                for key, value in record.args.items()
            }
        return True


def setup_logging(level: str | None = None) -> None:
    """Configure console logging; worker threads are named in every line."""
    from app.core.settings import get_settings

    root_level = (level or get_settings().log_level).upper()
    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "filters": {
                "recipient_safe": {"()": "app.core.logging.RecipientSafeFilter"},
            },
            "formatters": {
                "default": {
                    "format": "%(asctime)s %(levelname)s [%(threadName)s] %(name)s %(message)s",
                },
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "default",
                    "filters": ["recipient_safe"],
                },
            },
            "root": {"handlers": ["console"], "level": root_level},
            "loggers": {
                # SQL echo would print bound parameters, recipient addresses included.
                "sqlalchemy.engine": {"level": "WARNING"},
            },
        }
    )
