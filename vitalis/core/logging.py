"""
Secure Logging Utility

Structured logging for the sync service with token sanitization.

SECURITY REQUIREMENTS:
- No OAuth tokens, authorization codes or state tokens in logs
- Structured audit entries for connect/disconnect events
- Sanitized error messages
"""

import logging
import re
import sys
import json
from typing import Optional, Dict, Any
from datetime import datetime, timezone

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance for a module"""
    return logging.getLogger(name)


class SecureLogger:
    """
    Secure logging wrapper that prevents credential leakage
    """

    SENSITIVE_PATTERNS = [
        r'token',
        r'secret',
        r'bearer',
        r'authorization',
        r'code=',
        r'state=',
        r'password',
        r'credential',
    ]

    @staticmethod
    def sanitize_message(message: str) -> str:
        """
        Sanitize log message to remove sensitive information

        Args:
            message: Original log message

        Returns:
            Sanitized log message
        """
        # Bearer / Basic authorization values
        message = re.sub(r'(?i)\b(bearer|basic)\s+[A-Za-z0-9\-._~+/]+=*', r'\1 [redacted]', message)

        # key=value pairs carrying secrets (query strings, form bodies, reprs)
        message = re.sub(
            r'(?i)\b(access_token|refresh_token|client_secret|code|state|id_token)(["\']?\s*[=:]\s*["\']?)[^\s&"\',}]+',
            r'\1\2[redacted]',
            message,
        )

        # Remove email addresses
        message = re.sub(r'\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Z|a-z]{2,}\b', '[email]', message)

        # Long opaque strings (JWTs, raw tokens)
        message = re.sub(r'\b[A-Za-z0-9_\-]{32,}(\.[A-Za-z0-9_\-]+){0,2}\b', '[token]', message)

        return message

    @staticmethod
    def should_sanitize(message: str) -> bool:
        """Check if message contains sensitive patterns"""
        message_lower = message.lower()
        for pattern in SecureLogger.SENSITIVE_PATTERNS:
            if re.search(pattern, message_lower):
                return True
        return bool(re.search(r'[A-Za-z0-9_\-]{32,}', message))

    @classmethod
    def log(cls, logger: logging.Logger, level: int, message: str, *args, **kwargs):
        if cls.should_sanitize(message):
            message = cls.sanitize_message(message)
        logger.log(level, message, *args, **kwargs)


class SanitizingFilter(logging.Filter):
    """Applies SecureLogger sanitization to every record passing the handler."""

    def filter(self, record: logging.LogRecord) -> bool:
        try:
            message = record.getMessage()
        except Exception:
            return True
        if SecureLogger.should_sanitize(message):
            record.msg = SecureLogger.sanitize_message(message)
            record.args = ()
        return True


def configure_logging(level: str = "INFO") -> None:
    """Configure the root logger once; safe to call repeatedly."""
    root = logging.getLogger()
    for handler in root.handlers:
        if getattr(handler, "_vitalis_handler", False):
            root.setLevel(level.upper())
            return

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.addFilter(SanitizingFilter())
    handler._vitalis_handler = True
    root.addHandler(handler)
    root.setLevel(level.upper())

    # httpx logs full request URLs, which can carry codes and states
    logging.getLogger("httpx").setLevel(logging.WARNING)


def log_error(message: str, logger_name: Optional[str] = None, exc_info: bool = False, **kwargs):
    """Log error message securely"""
    logger = get_logger(logger_name or __name__)
    if exc_info:
        kwargs['exc_info'] = True
    SecureLogger.log(logger, logging.ERROR, message, **kwargs)


def log_audit(event_type: str, user_id: Optional[str], details: Dict[str, Any]):
    """
    Log audit event with structured data

    Args:
        event_type: Type of audit event
        user_id: User ID (if applicable)
        details: Additional event details
    """
    logger = get_logger("audit")
    audit_entry = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "event_type": event_type,
        "user_id": user_id,
        "details": details
    }
    logger.info(f"[AUDIT] {json.dumps(audit_entry, default=str)}")
