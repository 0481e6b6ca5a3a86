"""Typed failures raised by the integration layer.

Route handlers let these propagate; ``src.middleware.error_handler`` maps
each one to an HTTP status and a stable ``error.type`` so clients can tell a
"reauthorize" from a "retry me" without parsing messages.
"""

from typing import Any


class IntegrationError(Exception):
    status_code = 500
    error_type = "internal_error"
    # Set when the credential was rotated before the failure; it must still be persisted.
    rotated_credential = None

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__

    def extra(self) -> dict[str, Any]:
        return {}


# --- Credential lifecycle ---

class NoCredential(IntegrationError):
    status_code = 401
    error_type = "reauthorize"

    def __init__(self, message: str = "No Xero credential in session"):
        super().__init__(message)

    def extra(self) -> dict[str, Any]:
        return {"needs_reauth": True}


class RefreshFailed(IntegrationError):
    """Refresh exchange rejected or unreachable. Terminal for the session."""

    status_code = 401
    error_type = "reauthorize"

    def __init__(self, provider_status: int | None, message: str = ""):
        super().__init__(message or f"Token refresh failed: {provider_status}")
        self.provider_status = provider_status

    def extra(self) -> dict[str, Any]:
        return {"needs_reauth": True, "provider_status": self.provider_status}


class RefreshConflict(RefreshFailed):
    """The refresh token was already exchanged by a concurrent request."""

    status_code = 409
    error_type = "retry"

    def __init__(self, provider_status: int | None, message: str = ""):
        super().__init__(
            provider_status,
            message or "Credential was rotated by a concurrent request; retry with the latest session",
        )

    def extra(self) -> dict[str, Any]:
        return {"retryable": True, "provider_status": self.provider_status}


class MissingTenant(IntegrationError):
    status_code = 401
    error_type = "reauthorize"

    def __init__(self, message: str = "No Xero tenant bound to session"):
        super().__init__(message)

    def extra(self) -> dict[str, Any]:
        return {"needs_reauth": True}


# --- Outbound calls ---

class ExternalAPIError(IntegrationError):
    status_code = 502
    error_type = "external_api_error"

    def __init__(self, status_code: int, body: str):
        super().__init__(f"Xero API error: {status_code}")
        self.provider_status = status_code
        self.body = body
        if status_code == 401:
            # Rejected even after a forced refresh: the connection itself is gone.
            self.status_code = 401
            self.error_type = "reauthorize"

    def extra(self) -> dict[str, Any]:
        extra = {"provider_status": self.provider_status, "details": self.body[:2000]}
        if self.provider_status == 401:
            extra["needs_reauth"] = True
        return extra


class TransientError(IntegrationError):
    status_code = 503
    error_type = "transient_error"

    def extra(self) -> dict[str, Any]:
        return {"retryable": True}


class IntegrationDisabled(IntegrationError):
    status_code = 503
    error_type = "integration_disabled"

    def __init__(self, message: str = "Xero integration is disabled in this environment"):
        super().__init__(message)


# --- Attachments ---

class Forbidden(IntegrationError):
    status_code = 403
    error_type = "forbidden"

    def __init__(self, message: str = "Insufficient permissions"):
        super().__init__(message)


class ObjectNotFound(IntegrationError):
    status_code = 404
    error_type = "not_found"

    def __init__(self, file_key: str):
        super().__init__(f"Attachment object not found: {file_key}")
        self.file_key = file_key


class InvalidFileKey(IntegrationError):
    status_code = 400
    error_type = "invalid_file_key"

    def __init__(self, file_key: str):
        super().__init__("File key is outside the attachment namespace")
        self.file_key = file_key


class ReconciliationPartialFailure(IntegrationError):
    status_code = 207
    error_type = "partial_failure"

    def __init__(self, report):
        super().__init__(f"Reconciliation finished with {len(report.errors)} error(s)")
        self.report = report

    def extra(self) -> dict[str, Any]:
        return {"details": self.report.as_dict()}
