"""Error taxonomy shared by the adapter and the HTTP layer.

Every error carries a human-readable message and a coarse type. Internal
exception detail is kept on ``__cause__`` for logging and never leaves the
process through ``to_payload``.
"""

from typing import Optional


class AdapterError(Exception):
    status_code = 500
    error_type = "internal_server_error"
    code: Optional[str] = None

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def to_payload(self) -> dict:
        return {
            "error": {
                "message": self.message,
                "type": self.error_type,
                "code": self.code,
            }
        }


class ValidationError(AdapterError):
    """Malformed chat request; rejected before any automation."""

    status_code = 400
    error_type = "invalid_request_error"


class ModelNotFoundError(ValidationError):
    code = "model_not_found"

    def __init__(self, model: str):
        super().__init__(f"Model '{model}' not found")
        self.model = model


class AutomationTimeoutError(AdapterError):
    """No completion signal and no content within the response timeout."""

    error_type = "timeout_error"
    code = "response_timeout"


class AutomationFailure(AdapterError):
    """The remote page could not be driven (navigation, missing elements, closed page)."""

    error_type = "automation_error"


class UpstreamFetchError(AdapterError):
    status_code = 502
    error_type = "upstream_error"

    def __init__(self, path: str, message: str):
        super().__init__(message)
        self.path = path


class CatalogRefreshError(AdapterError):
    """Every configured path failed or returned no models."""

    error_type = "upstream_error"
    code = "catalog_unavailable"
