"""
Data models for the Biometric Authentication Session Manager
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from bioauth.errors import ManualReviewRequired, ProofRejected


class Purpose(str, Enum):
    """Why a verification operation was opened"""
    ENROLLMENT = "enrollment"
    AUTHENTICATION = "authentication"


class OperationState(str, Enum):
    """Canonical, provider-agnostic operation state"""
    PENDING = "pending"
    COMPLETED = "completed"
    EXPIRED = "expired"
    UNKNOWN = "unknown"


class ProviderResult(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


class PresentationAttackResult(str, Enum):
    PASS = "pass"
    REJECT = "reject"
    MANUAL_REVIEW = "manual_review"


class DecisionOutcome(str, Enum):
    ACCEPT = "accept"
    REJECT = "reject"
    MANUAL_REVIEW = "manual_review"


class PollStatus(str, Enum):
    """Status reported to the polling client"""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REJECTED = "rejected"
    MANUAL_REVIEW = "manual_review"
    EXPIRED = "expired"
    CONSUMED = "consumed"


@dataclass
class Identity:
    """A user identity that may verify with the biometric provider"""
    identity_id: str
    email: str
    name: str = ""
    role: str = "user"
    access_level: str = "standard"
    department: str = ""
    is_active: bool = True
    enrolled: bool = False
    created_at: float = 0.0
    last_login_at: Optional[float] = None

    def to_public_dict(self) -> Dict[str, Any]:
        return {
            "id": self.identity_id,
            "name": self.name,
            "email": self.email,
            "department": self.department,
            "role": self.role,
            "accessLevel": self.access_level,
            "isActive": self.is_active,
            "biometricEnrolled": self.enrolled,
            "createdAt": self.created_at,
            "lastLoginAt": self.last_login_at,
        }


@dataclass
class VerificationOperation:
    """An in-flight provider operation and the identity that opened it"""
    operation_id: str
    subject_identity_ref: str
    created_at: float
    expires_at: float
    purpose: Purpose

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at


@dataclass
class OperationStatus:
    """
    Normalized provider status.

    ``result`` is only meaningful when ``state`` is COMPLETED, and a
    COMPLETED status always carries ``completed_at``.
    """
    state: OperationState
    result: Optional[ProviderResult] = None
    completed_at: Optional[str] = None
    raw_state: Any = None
    raw_result: Any = None

    @classmethod
    def pending(cls, raw_state: Any = None, raw_result: Any = None) -> "OperationStatus":
        return cls(OperationState.PENDING, raw_state=raw_state, raw_result=raw_result)

    @classmethod
    def completed(
        cls,
        result: ProviderResult,
        completed_at: str,
        raw_state: Any = None,
        raw_result: Any = None,
    ) -> "OperationStatus":
        return cls(OperationState.COMPLETED, result, completed_at, raw_state, raw_result)

    @property
    def is_success(self) -> bool:
        return self.state == OperationState.COMPLETED and self.result == ProviderResult.SUCCESS

    @property
    def is_failure(self) -> bool:
        return self.state == OperationState.COMPLETED and self.result == ProviderResult.FAILURE


@dataclass
class ProofPayload:
    """Verification signals reported by the provider for one operation"""
    is_live: bool
    injection_detected: bool
    presentation_attack_result: PresentationAttackResult
    face_match_score: float
    confidence_score: float
    document_expired: Optional[bool] = None
    barcode_check_passed: Optional[bool] = None
    ocr_consistent: Optional[bool] = None


@dataclass
class ProofDecision:
    """Outcome of the proof policy with every triggered reason"""
    outcome: DecisionOutcome
    reasons: List[str] = field(default_factory=list)

    @property
    def accepted(self) -> bool:
        return self.outcome == DecisionOutcome.ACCEPT


@dataclass
class SessionTokens:
    access_token: str
    refresh_token: str
    expires_in_seconds: int
    token_type: str = "Bearer"


@dataclass
class TokenClaims:
    """Decoded and verified token claims"""
    subject_id: str
    issued_at: int
    expires_at: int
    issuer: str
    audience: str
    token_type: str
    token_id: str
    email: Optional[str] = None
    role: Optional[str] = None
    access_level: Optional[str] = None


@dataclass
class TokenValidationResult:
    valid: bool
    claims: Optional[TokenClaims] = None
    error: Optional[str] = None


@dataclass
class HandoffData:
    """What the client needs for the out-of-band capture step"""
    url: str
    qr_payload: str


@dataclass
class ProviderOperation:
    """Result of opening an operation with the provider"""
    operation_id: str
    handoff: HandoffData
    expires_at: float


@dataclass
class InitiateResult:
    operation_id: str
    purpose: Purpose
    handoff: HandoffData
    expires_at: float


@dataclass
class PollResult:
    """Answer to a single poll of an operation"""
    operation_id: str
    status: PollStatus
    code: str
    message: str
    reasons: List[str] = field(default_factory=list)
    tokens: Optional[SessionTokens] = None
    identity: Optional[Dict[str, Any]] = None

    def raise_for_status(self) -> "PollResult":
        """Raise the validator outcome as an exception for callers that prefer it."""
        if self.status == PollStatus.REJECTED:
            raise ProofRejected(self.message, reasons=self.reasons)
        if self.status == PollStatus.MANUAL_REVIEW:
            raise ManualReviewRequired(self.message, reasons=self.reasons)
        return self


@dataclass
class AccessLogEntry:
    entry_id: str
    identity_id: str
    event: str
    timestamp: float
    metadata: Dict[str, Any] = field(default_factory=dict)
