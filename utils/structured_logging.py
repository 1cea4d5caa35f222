"""
Structured JSON logging for crawl and analysis operations.
Provides consistent logging format with required fields:
- service, action, status, scan_id
- error_type, error_message (in case of failure)
- Masks sensitive data (partial email addresses)

Graph error bodies and SharePoint actor names regularly carry user
principal names, so masking is on by default.
"""

import logging
import json
from datetime import datetime
from typing import Optional
import re


def mask_email(email: Optional[str]) -> Optional[str]:
    """
    Partially mask an email address for privacy.
    Example: john.doe@example.com -> j***@example.com
    """
    if not email or '@' not in email:
        return email

    local, domain = email.split('@', 1)
    masked_local = (local[0] if local else '') + '***'

    return f"{masked_local}@{domain}"


def mask_emails_in_text(text: str) -> str:
    """
    Find and mask all email addresses in a text string.
    """
    email_pattern = r'\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b'

    def replacer(match):
        return mask_email(match.group(0))

    return re.sub(email_pattern, replacer, text)


class StructuredLogger:
    """
    Structured logger for crawl/analysis operations.
    Outputs JSON-formatted logs with consistent fields.
    """

    def __init__(self, service: str = "crawl", logger_name: str = "sp5s.crawl"):
        self.service = service
        self.logger = logging.getLogger(logger_name)

    def _log(
        self,
        level: int,
        action: str,
        status: str,
        message: str,
        scan_id: Optional[str] = None,
        error_type: Optional[str] = None,
        error_message: Optional[str] = None,
        mask_sensitive: bool = True,
        **extra_fields
    ):
        log_data = {
            "timestamp": datetime.now().astimezone().isoformat(),
            "service": self.service,
            "action": action,
            "status": status,
            "message": mask_emails_in_text(message) if mask_sensitive else message,
        }

        if scan_id:
            log_data["scan_id"] = scan_id
        if error_type:
            log_data["error_type"] = error_type
        if error_message:
            log_data["error_message"] = mask_emails_in_text(error_message) if mask_sensitive else error_message

        for key, value in extra_fields.items():
            if isinstance(value, str) and mask_sensitive:
                log_data[key] = mask_emails_in_text(value)
            else:
                log_data[key] = value

        self.logger.log(level, json.dumps(log_data, default=str))

    def info(
        self,
        action: str,
        status: str = "success",
        message: str = "",
        scan_id: Optional[str] = None,
        **extra_fields
    ):
        """
        Log informational message.

        Args:
            action: The operation being performed (e.g., "process_batch", "finalize")
            status: Status of the operation (default: "success")
            message: Human-readable message
            scan_id: Scan the operation belongs to
            **extra_fields: Additional fields to include in the log
        """
        self._log(
            logging.INFO,
            action=action,
            status=status,
            message=message,
            scan_id=scan_id,
            **extra_fields
        )

    def warning(
        self,
        action: str,
        status: str = "warning",
        message: str = "",
        scan_id: Optional[str] = None,
        **extra_fields
    ):
        """Log warning message."""
        self._log(
            logging.WARNING,
            action=action,
            status=status,
            message=message,
            scan_id=scan_id,
            **extra_fields
        )

    def error(
        self,
        action: str,
        message: str,
        error: Optional[Exception] = None,
        scan_id: Optional[str] = None,
        **extra_fields
    ):
        """
        Log error message.

        Args:
            action: The operation that failed
            message: Human-readable error message
            error: Exception object (if available)
            scan_id: Scan the operation belongs to
            **extra_fields: Additional fields
        """
        error_type = None
        error_message = None

        if error:
            error_type = type(error).__name__
            error_message = str(error)

        self._log(
            logging.ERROR,
            action=action,
            status="error",
            message=message,
            scan_id=scan_id,
            error_type=error_type,
            error_message=error_message,
            **extra_fields
        )


crawl_logger = StructuredLogger(service="crawl", logger_name="sp5s.crawl")
analysis_logger = StructuredLogger(service="analysis", logger_name="sp5s.analysis")
