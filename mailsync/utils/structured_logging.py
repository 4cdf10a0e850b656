"""
Structured Logging Module
JSON log output for log aggregation tools
"""

import json
import logging
from typing import Any


class JSONFormatter(logging.Formatter):
    """
    Formats log records as one JSON object per line.

    PATTERN RECOGNITION: Same idea as JSON access logs in nginx. A sync run
    can be followed with jq by filtering on "logger" (SyncOrchestrator,
    IMAPConnector, AttachmentStore) instead of grepping free text.

    SECURITY STORY: Extra fields whose names look like secrets are replaced
    with "[REDACTED]", so a stray extra={'app_password': ...} never reaches
    the log file.
    """

    SENSITIVE_FIELDS = {
        'password', 'token', 'secret', 'credential', 'app_password', 'access_token'
    }

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        # logger.info("msg", extra={"extra_fields": {"account": ..., "uid": ...}})
        if hasattr(record, "extra_fields"):
            log_data.update({
                k: self._sanitize_value(k, v)
                for k, v in record.extra_fields.items()
            })

        return json.dumps(log_data, default=str)

    def _sanitize_value(self, key: str, value: Any) -> Any:
        """Return "[REDACTED]" for keys naming a secret, else the value"""
        key_lower = key.lower()
        if any(sensitive in key_lower for sensitive in self.SENSITIVE_FIELDS):
            return "[REDACTED]"
        return value
