import json
import logging
from datetime import UTC, datetime

from crosspost.infrastructure.logging.context import log_context


class JsonLogFormatter(logging.Formatter):
    """One JSON object per line with the active request or dispatch context.

    Records from the Celery worker carry ``claim_token`` instead of
    ``request_id``; keys with no value are left out.
    """

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **log_context(),
        }
        if record.exc_info:
            payload["exc_type"] = record.exc_info[0].__name__ if record.exc_info[0] else None
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)
