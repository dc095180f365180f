"""
Domain errors for the optimization pipeline.

Each error carries the HTTP status the API layer should answer with, so the
same exceptions serve the FastAPI routers, cron endpoints and the CLI.
"""

from typing import Any, Optional


class AutopilotError(Exception):
    status_code = 500
    code = "internal_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"error": {"code": self.code, "message": self.message}}


class NotFoundError(AutopilotError):
    status_code = 404
    code = "not_found"


class TenantAccessError(AutopilotError):
    status_code = 403
    code = "tenant_forbidden"


class StateConflictError(AutopilotError):
    """Operation attempted on a recommendation that is not in the required state."""
    status_code = 409
    code = "state_conflict"


class RecommendationExpiredError(AutopilotError):
    status_code = 410
    code = "expired"


class ConfigurationError(AutopilotError):
    """Missing connection or malformed rule. Aborts only the affected unit of work."""
    status_code = 422
    code = "configuration_error"


class AdapterError(AutopilotError):
    """A platform call failed: transport error, timeout, non-2xx or error envelope."""
    status_code = 502
    code = "adapter_error"

    def __init__(
        self,
        message: str,
        request: Optional[dict] = None,
        response: Any = None,
        http_status: Optional[int] = None,
    ):
        super().__init__(message)
        self.request = request
        self.response = response
        self.http_status = http_status
