class RoseramError(Exception):
    """Base error carrying an API code and the HTTP status it maps to."""

    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, message: str, details: dict | str | None = None):
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationError(RoseramError):
    code = "VALIDATION_ERROR"
    status_code = 400


class AuthenticationError(RoseramError):
    code = "AUTH_ERROR"
    status_code = 401

    def __init__(self, message: str = "Authentication failed", details=None):
        super().__init__(message, details)


class NotFoundError(RoseramError):
    code = "NOT_FOUND"
    status_code = 404

    def __init__(self, resource: str = "Resource", details=None):
        super().__init__(f"{resource} not found", details)


class ConflictError(RoseramError):
    code = "CONFLICT"
    status_code = 409


class PreconditionError(RoseramError):
    """A setup step was requested before the steps it depends on completed."""

    code = "PRECONDITION_FAILED"
    status_code = 409


class ProvisioningError(RoseramError):
    """The sandbox provider refused or failed to allocate a sandbox."""

    code = "PROVISIONING_ERROR"
    status_code = 502


class SetupTimeoutError(RoseramError):
    """Clone, install and dev-server boot did not produce a port in time."""

    code = "SETUP_TIMEOUT"
    status_code = 504


class ExternalServiceError(RoseramError):
    code = "EXTERNAL_SERVICE_ERROR"
    status_code = 503

    def __init__(self, service: str, message: str | None = None, details=None):
        super().__init__(message or f"{service} service error", details)
        self.service = service


class PreviewCreationError(RoseramError):
    """Structured failure of a preview provisioning run.

    Keeps the project id so the HTTP layer can correlate the failure with the
    record it created. ``sandbox_name`` names whatever may still be allocated
    at the provider; the original exception is kept as ``cause``.
    """

    code = "PREVIEW_CREATION_FAILED"

    def __init__(self, project_id: str, cause: Exception, sandbox_name: str | None = None):
        message = getattr(cause, "message", None) or str(cause) or type(cause).__name__
        super().__init__(message, details=repr(cause))
        self.error = message
        self.project_id = project_id
        self.sandbox_name = sandbox_name
        self.cause = cause
        self.status_code = getattr(cause, "status_code", 500)

    def to_dict(self) -> dict:
        data = {
            "error": self.error,
            "projectId": self.project_id,
            "details": self.details,
        }
        if self.sandbox_name:
            data["sandboxName"] = self.sandbox_name
        return data


def format_error_response(error: Exception) -> dict:
    """Render any exception as the JSON body returned to API callers."""
    if isinstance(error, PreviewCreationError):
        return {
            "success": False,
            "error": error.error,
            "code": getattr(error.cause, "code", error.code),
            "projectId": error.project_id,
            "sandboxName": error.sandbox_name,
            "details": error.details,
        }
    if isinstance(error, RoseramError):
        return {
            "success": False,
            "error": error.message,
            "code": error.code,
            "details": error.details,
        }
    return {
        "success": False,
        "error": str(error) or "An unknown error occurred",
        "code": "UNKNOWN_ERROR",
        "details": None,
    }


def format_error_message(error) -> str:
    if isinstance(error, RoseramError):
        return error.message
    if isinstance(error, Exception):
        return str(error) or type(error).__name__
    if isinstance(error, str):
        return error
    return "An unexpected error occurred"
