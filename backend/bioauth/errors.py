"""
Exception hierarchy for the Biometric Authentication Session Manager

Every error carries a machine-readable code, an HTTP status and a category so
the API layer can render it into the common error envelope without knowing
which service raised it. Provider and network failures are translated into
this taxonomy at the gateway boundary and never leak as raw httpx errors.
"""
from typing import Any, Dict, Optional


class BioAuthError(Exception):
    """
    Base class for all biometric session errors.

    Args:
        message: Human-readable message, safe to show to the caller
        context: Extra diagnostic fields for logging (never sent to clients)
        error_code: Overrides the class-level machine-readable code
    """

    code = "BIOAUTH_ERROR"
    status_code = 500
    category = "system"
    recoverable = False

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None,
    ) -> None:
        self.message = message
        self.context = context or {}
        if error_code:
            self.code = error_code
        super().__init__(self.message)

    def __str__(self) -> str:
        parts = [self.message, f"[{self.code}]"]
        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            parts.append(f"[{context_str}]")
        return " ".join(parts)

    def to_dict(self) -> Dict[str, Any]:
        """Render the error body used by every API error response."""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "category": self.category,
                "recoverable": self.recoverable,
            }
        }


class IdentityNotFound(BioAuthError):
    code = "IDENTITY_NOT_FOUND"
    status_code = 404
    category = "identity"


class IdentityInactive(BioAuthError):
    code = "IDENTITY_INACTIVE"
    status_code = 403
    category = "identity"


class NotEnrolled(BioAuthError):
    code = "NOT_ENROLLED"
    status_code = 400
    category = "identity"


class ProviderUnavailable(BioAuthError):
    """Transient provider failure (network, timeout, 5xx). Callers retry."""

    code = "PROVIDER_UNAVAILABLE"
    status_code = 503
    category = "provider"
    recoverable = True


class ProviderRejected(BioAuthError):
    """Permanent provider refusal (4xx), e.g. a duplicate enrollment."""

    code = "PROVIDER_REJECTED"
    status_code = 409
    category = "provider"


class OperationNotFound(BioAuthError):
    code = "OPERATION_NOT_FOUND"
    status_code = 404
    category = "operation"


class OperationConsumed(BioAuthError):
    """The operation already reached a terminal state; re-initiate."""

    code = "OPERATION_CONSUMED"
    status_code = 409
    category = "operation"


class ProofUnavailable(BioAuthError):
    """Provider reported completion but has no proof for the operation."""

    code = "PROOF_UNAVAILABLE"
    status_code = 502
    category = "provider"


class ProofRejected(BioAuthError):
    code = "PROOF_REJECTED"
    status_code = 401
    category = "verification"

    def __init__(self, message: str, reasons=None, **kwargs) -> None:
        self.reasons = list(reasons or [])
        super().__init__(message, **kwargs)


class ManualReviewRequired(BioAuthError):
    code = "MANUAL_REVIEW_REQUIRED"
    status_code = 202
    category = "verification"

    def __init__(self, message: str, reasons=None, **kwargs) -> None:
        self.reasons = list(reasons or [])
        super().__init__(message, **kwargs)


class TokenInvalid(BioAuthError):
    code = "INVALID_TOKEN"
    status_code = 401
    category = "authentication"


class TokenExpired(TokenInvalid):
    code = "TOKEN_EXPIRED"
