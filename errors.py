from typing import Optional


class AutomationError(Exception):
    """Base class for every error raised by the automation service."""

    code = "automation_error"
    status_code = 500

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    @property
    def category(self) -> str:
        return type(self).__name__

    def to_dict(self) -> dict:
        data = {"error": self.code, "message": self.message}
        if self.details:
            data["details"] = self.details
        return data


class WorkflowValidationError(AutomationError):
    """Malformed workflow definition. Rejected at CRUD time, never persisted."""

    code = "validation_error"
    status_code = 422


class NotFoundError(AutomationError):
    code = "not_found"
    status_code = 404


class ConflictError(AutomationError):
    code = "conflict"
    status_code = 409


class DispatchError(AutomationError):
    """Transient failure executing or forwarding an action. Retried per policy."""

    code = "dispatch_error"
    status_code = 502


class ExecutionTimeoutError(DispatchError):
    """No completion callback arrived within the execution window."""

    code = "execution_timeout"
    status_code = 504


class FatalActionError(AutomationError):
    """The action config itself is invalid; retrying would reproduce the error."""

    code = "fatal_action_error"
    status_code = 422


class SignatureError(AutomationError):
    """Webhook signature missing or not matching the scheme for its source."""

    code = "invalid_signature"
    status_code = 401
