import contextvars
import logging
import sys

from pythonjsonlogger import jsonlogger

# Context variables for correlation
ctx_trace_id = contextvars.ContextVar("trace_id", default=None)
ctx_subscription_id = contextvars.ContextVar("subscription_id", default=None)
ctx_batch_id = contextvars.ContextVar("batch_id", default=None)

_CONTEXT_FIELDS = (
    ("trace_id", ctx_trace_id),
    ("subscription_id", ctx_subscription_id),
    ("batch_id", ctx_batch_id),
)


class CorrelationJsonFormatter(jsonlogger.JsonFormatter):
    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)

        # Inject context variables if present
        for field, var in _CONTEXT_FIELDS:
            value = var.get()
            if value and field not in log_record:
                log_record[field] = value


def setup_logger(log_format: str = "text", log_level: str = "INFO"):
    """Configure the root logger."""
    root_logger = logging.getLogger()

    # Remove existing handlers to avoid duplicates
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)

    if log_format.lower() == "json":
        formatter = CorrelationJsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"levelname": "level", "asctime": "timestamp"},
        )
    else:
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        )

    handler.setFormatter(formatter)
    root_logger.addHandler(handler)

    numeric_level = getattr(logging, log_level.upper(), logging.INFO)
    root_logger.setLevel(numeric_level)

    # Silence third-party noise
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("alembic").setLevel(logging.WARNING)

    return root_logger
