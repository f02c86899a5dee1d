"""Error taxonomy for the matching and payment engine.

Expected business conditions (duplicate callbacks, expired requests,
policy denials) are returned as typed outcomes by the services. These
exceptions are raised for synchronous input rejection and for failures the
caller must handle (gateway unreachable, unknown records on user-facing
lookups). Every error carries a machine-readable ``code``.
"""
from typing import Optional


class EngineError(Exception):
    """Base class for engine errors."""
    code = "ENGINE_ERROR"

    def __init__(self, message: str, code: Optional[str] = None):
        self.message = message
        if code:
            self.code = code
        super().__init__(message)


class ValidationError(EngineError):
    """Bad input (amount, phone format, message content). Never retried."""
    code = "VALIDATION_ERROR"


class ConflictError(EngineError):
    """State conflict that could not be resolved by returning existing state."""
    code = "CONFLICT"


class NotFoundError(EngineError):
    code = "NOT_FOUND"


class PolicyDenied(EngineError):
    """Capability gate refusal; ``reason`` is a DenyReason value."""
    code = "POLICY_DENIED"

    def __init__(self, reason: str, message: Optional[str] = None):
        self.reason = reason
        super().__init__(message or reason, code=reason)


class ExternalServiceError(EngineError):
    """Payment gateway unreachable or rejected the initiation."""
    code = "EXTERNAL_SERVICE_ERROR"


class GatewayPayloadError(EngineError):
    """Raw gateway callback could not be normalized."""
    code = "MALFORMED_CALLBACK"
