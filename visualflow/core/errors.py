# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Error hierarchy shared by the engine, persistence, sync and API layers.

Each class carries the HTTP status the API answers with; the exception
handler in main.py renders `to_dict()` as the response body.
"""

from typing import Any, Dict, Optional

MAX_USER_MESSAGE_LENGTH = 500


class VisualFlowError(Exception):
    """Base exception for all Visual Flow errors."""

    status_code = 500

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        status_code: Optional[int] = None
    ):
        self.message = message
        self.details = details or {}
        if status_code is not None:
            self.status_code = status_code
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Response body for the API error handler."""
        return {
            "error": type(self).__name__,
            "message": self.message,
            "status_code": self.status_code,
            "details": self.details
        }


class NotFoundError(VisualFlowError):
    """A flow or execution id that the store does not know."""

    status_code = 404

    def __init__(self, resource: str, identifier: str, details: Optional[Dict[str, Any]] = None):
        """
        Args:
            resource: "Flow" or "Execution"
            identifier: The id that was looked up
        """
        super().__init__(f"{resource} not found: {identifier}", details=details)
        self.resource = resource
        self.identifier = identifier


class ValidationError(VisualFlowError):
    """Rejected input; `field` names the offending part when known."""

    status_code = 400

    def __init__(self, message: str, field: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details=details)
        self.field = field


class ConfigurationError(VisualFlowError):
    def __init__(self, message: str, config_file: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details=details)
        self.config_file = config_file


class PersistenceError(VisualFlowError):
    """
    Reading or writing a flow or execution record failed.

    Never fatal to an execution; surfaced to the editor as a
    degraded-save indicator.
    """

    def __init__(self, message: str, record_id: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details=details)
        self.record_id = record_id


class SyncConflictError(VisualFlowError):
    """
    Remote store rejected a sync with a client error other than not-found.

    The attempt is abandoned and local state stays authoritative.
    """

    status_code = 409

    def __init__(self, message: str, remote_status: Optional[int] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details=details)
        self.remote_status = remote_status


class RemoteUnavailableError(VisualFlowError):
    """Remote store unreachable or answered with a server error. Retryable."""

    status_code = 503

    def __init__(self, message: str, service: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details=details)
        self.service = service


def sanitize_error_for_user(error: Exception, include_type: bool = True) -> str:
    """
    Error text fit for a node result or an editor toast.

    Falls back to the exception name when the message is empty and
    truncates long payloads (webhook bodies, provider dumps).
    """
    text = str(error).strip() or type(error).__name__
    if len(text) > MAX_USER_MESSAGE_LENGTH:
        text = text[:MAX_USER_MESSAGE_LENGTH] + "..."
    return f"{type(error).__name__}: {text}" if include_type else text
