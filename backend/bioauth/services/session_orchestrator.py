"""
Session Orchestrator for the Biometric Authentication Session Manager

Coordinates the provider gateway, operation registry, proof validator and
token issuer across initiate and poll, and enforces the operation state
machine:

    Initiated -> Pending (0..N polls) -> Completed-Accept | Completed-Reject
                 | Completed-ManualReview | Expired | ProviderFailed

Every terminal state consumes the registry entry, so tokens are issued at
most once per operation.
"""
import logging
import time

from bioauth.errors import (
    BioAuthError,
    IdentityInactive,
    IdentityNotFound,
    NotEnrolled,
    OperationConsumed,
    OperationNotFound,
    ProofUnavailable,
    ProviderRejected,
    TokenInvalid,
)
from bioauth.models.data_models import (
    DecisionOutcome,
    Identity,
    InitiateResult,
    OperationState,
    PollResult,
    PollStatus,
    Purpose,
    SessionTokens,
    VerificationOperation,
)
from bioauth.services.identity_directory import IdentityDirectory
from bioauth.services.operation_registry import OperationStore
from bioauth.services.proof_validator import ProofValidator
from bioauth.services.provider_gateway import ProviderGateway
from bioauth.services.token_issuer import REFRESH_TOKEN_TYPE, TokenIssuer

logger = logging.getLogger(__name__)


class SessionOrchestrator:
    """Drives verification operations from initiation to token issuance"""

    OPERATION_TTL_SECONDS = 300  # 5 minutes

    def __init__(
        self,
        gateway: ProviderGateway,
        registry: OperationStore,
        validator: ProofValidator,
        token_issuer: TokenIssuer,
        directory: IdentityDirectory,
        operation_ttl: int = OPERATION_TTL_SECONDS,
        clock=time.time,
    ):
        """
        Args:
            gateway: Client for the identity provider
            registry: Store of in-flight operations
            validator: Proof decision policy
            token_issuer: Session token minting
            directory: Identity records and access log
            operation_ttl: Lifetime of an operation in seconds
            clock: Time source returning epoch seconds
        """
        self.gateway = gateway
        self.registry = registry
        self.validator = validator
        self.token_issuer = token_issuer
        self.directory = directory
        self.operation_ttl = operation_ttl
        self._clock = clock

    def initiate(self, identity_ref: str, purpose: Purpose = Purpose.AUTHENTICATION) -> InitiateResult:
        """
        Open a verification operation for an identity.

        Args:
            identity_ref: Identity id or e-mail address
            purpose: Enrollment or authentication

        Returns:
            InitiateResult with the operation id and handoff data

        Raises:
            IdentityNotFound: Unknown identity
            IdentityInactive: Identity is deactivated
            NotEnrolled: Authentication requested before enrollment
            ProviderUnavailable / ProviderRejected: Provider failures
        """
        identity = self.directory.resolve(identity_ref)
        if identity is None:
            raise IdentityNotFound("User not found", context={"identity_ref": identity_ref})
        if not identity.is_active:
            raise IdentityInactive("User account is inactive", context={"identity_id": identity.identity_id})
        if purpose == Purpose.AUTHENTICATION and not identity.enrolled:
            raise NotEnrolled(
                "Biometric enrollment is required before biometric login",
                context={"identity_id": identity.identity_id},
            )

        provider_operation = self.gateway.create_operation(
            identity.identity_id, purpose, self.operation_ttl
        )

        now = self._clock()
        operation = VerificationOperation(
            operation_id=provider_operation.operation_id,
            subject_identity_ref=identity.identity_id,
            created_at=now,
            expires_at=now + self.operation_ttl,
            purpose=purpose,
        )
        self.registry.put(operation)

        self.directory.record_access(
            identity.identity_id,
            f"biometric_{purpose.value}_initiated",
            {"operation_id": operation.operation_id},
        )
        logger.info(
            f"Initiated {purpose.value} operation {operation.operation_id} "
            f"for identity {identity.identity_id}"
        )

        return InitiateResult(
            operation_id=operation.operation_id,
            purpose=purpose,
            handoff=provider_operation.handoff,
            expires_at=operation.expires_at,
        )

    def poll(self, operation_id: str) -> PollResult:
        """
        Report the state of an operation, completing it on first success.

        Provider unavailability propagates as ProviderUnavailable and leaves
        the operation untouched so the client can poll again.
        """
        try:
            operation = self.registry.get(operation_id)
        except OperationConsumed:
            return self._consumed(operation_id)
        except OperationNotFound:
            return PollResult(
                operation_id=operation_id,
                status=PollStatus.EXPIRED,
                code="OPERATION_NOT_FOUND",
                message="Verification session not found or expired. Please start again.",
            )

        try:
            status = self.gateway.fetch_status(operation_id, operation.purpose)
        except ProviderRejected:
            logger.warning(f"Provider rejected status check for operation {operation_id}")
            return self._finish(operation_id, PollResult(
                operation_id=operation_id,
                status=PollStatus.FAILED,
                code="PROVIDER_FAILED",
                message="Verification could not be completed. Please start again.",
            ))

        if status.state in (OperationState.PENDING, OperationState.UNKNOWN):
            return PollResult(
                operation_id=operation_id,
                status=PollStatus.PENDING,
                code="PENDING",
                message="Verification in progress",
            )

        if status.state == OperationState.EXPIRED:
            return self._finish(operation_id, PollResult(
                operation_id=operation_id,
                status=PollStatus.EXPIRED,
                code="OPERATION_EXPIRED",
                message="Verification session expired. Please start again.",
            ))

        if status.is_failure:
            return self._finish(operation_id, PollResult(
                operation_id=operation_id,
                status=PollStatus.FAILED,
                code="VERIFICATION_FAILED",
                message="Biometric verification failed",
                reasons=["Biometric verification unsuccessful"],
            ))

        return self._complete(operation_id)

    def _finish(self, operation_id: str, result: PollResult) -> PollResult:
        """Consume the operation for a terminal non-success outcome."""
        try:
            operation = self.registry.take(operation_id)
        except OperationConsumed:
            return self._consumed(operation_id)
        except OperationNotFound:
            return PollResult(
                operation_id=operation_id,
                status=PollStatus.EXPIRED,
                code="OPERATION_NOT_FOUND",
                message="Verification session not found or expired. Please start again.",
            )

        self.directory.record_access(
            operation.subject_identity_ref,
            f"biometric_{operation.purpose.value}_{result.status.value}",
            {"operation_id": operation_id, "code": result.code},
        )
        logger.info(f"Operation {operation_id} finished: {result.status.value} ({result.code})")
        return result

    def _complete(self, operation_id: str) -> PollResult:
        # Only the caller that wins the take may fetch the proof and mint tokens.
        try:
            operation = self.registry.take(operation_id)
        except OperationConsumed:
            logger.info(f"Concurrent completion of operation {operation_id} lost the race")
            return self._consumed(operation_id)
        except OperationNotFound:
            return PollResult(
                operation_id=operation_id,
                status=PollStatus.EXPIRED,
                code="OPERATION_NOT_FOUND",
                message="Verification session not found or expired. Please start again.",
            )

        identity_id = operation.subject_identity_ref
        purpose = operation.purpose

        try:
            proof = self.gateway.fetch_proof(operation_id, purpose)
        except ProofUnavailable:
            logger.error(f"Provider reported success but has no proof for operation {operation_id}")
            return self._failed_after_claim(operation, "PROOF_UNAVAILABLE")
        except BioAuthError as e:
            logger.error(f"Proof retrieval failed for operation {operation_id}: {e}")
            return self._failed_after_claim(operation, "PROVIDER_FAILED")

        decision = self.validator.validate(proof)

        if decision.outcome == DecisionOutcome.REJECT:
            self.directory.record_access(identity_id, f"biometric_{purpose.value}_rejected", {
                "operation_id": operation_id,
                "reasons": decision.reasons,
            })
            logger.warning(f"Proof rejected for operation {operation_id}: {decision.reasons}")
            return PollResult(
                operation_id=operation_id,
                status=PollStatus.REJECTED,
                code="PROOF_REJECTED",
                message="Biometric verification rejected",
                reasons=decision.reasons,
            )

        if decision.outcome == DecisionOutcome.MANUAL_REVIEW:
            self.directory.record_access(identity_id, f"biometric_{purpose.value}_manual_review", {
                "operation_id": operation_id,
                "reasons": decision.reasons,
            })
            logger.warning(f"Proof for operation {operation_id} requires manual review: {decision.reasons}")
            return PollResult(
                operation_id=operation_id,
                status=PollStatus.MANUAL_REVIEW,
                code="MANUAL_REVIEW_REQUIRED",
                message="Verification requires manual review",
                reasons=decision.reasons,
            )

        identity = self.directory.get(identity_id)
        if identity is None or not identity.is_active:
            logger.warning(f"Identity {identity_id} unavailable after accepted proof for operation {operation_id}")
            return PollResult(
                operation_id=operation_id,
                status=PollStatus.FAILED,
                code="IDENTITY_UNAVAILABLE",
                message="User account is not available",
                reasons=["User account is not available"],
            )

        if purpose == Purpose.ENROLLMENT:
            identity = self.directory.mark_enrolled(identity_id)

        tokens = self.token_issuer.issue(identity)
        identity = self.directory.update_last_login(identity_id)
        self.directory.record_access(identity_id, f"biometric_{purpose.value}_completed", {
            "operation_id": operation_id,
            "face_match_score": proof.face_match_score,
            "confidence_score": proof.confidence_score,
        })
        logger.info(f"Operation {operation_id} completed, tokens issued for identity {identity_id}")

        return PollResult(
            operation_id=operation_id,
            status=PollStatus.COMPLETED,
            code="AUTHENTICATED",
            message="Biometric verification successful",
            tokens=tokens,
            identity=_minimal_claims(identity),
        )

    def _failed_after_claim(self, operation: VerificationOperation, code: str) -> PollResult:
        self.directory.record_access(
            operation.subject_identity_ref,
            f"biometric_{operation.purpose.value}_failed",
            {"operation_id": operation.operation_id, "code": code},
        )
        return PollResult(
            operation_id=operation.operation_id,
            status=PollStatus.FAILED,
            code=code,
            message="Verification could not be completed. Please start again.",
            reasons=["Verification result unavailable"],
        )

    @staticmethod
    def _consumed(operation_id: str) -> PollResult:
        return PollResult(
            operation_id=operation_id,
            status=PollStatus.CONSUMED,
            code="OPERATION_CONSUMED",
            message="Verification session already used. Please start again.",
        )

    def refresh(self, refresh_token: str) -> SessionTokens:
        """
        Exchange a refresh token for a new token pair.

        Raises:
            TokenInvalid / TokenExpired: Bad refresh token or unusable identity
        """
        claims = self.token_issuer.verify(refresh_token, expected_type=REFRESH_TOKEN_TYPE)
        identity = self.directory.get(claims.subject_id)
        if identity is None or not identity.is_active:
            raise TokenInvalid("User not found or inactive")
        return self.token_issuer.refresh(refresh_token, identity)

    def current_identity(self, access_token: str) -> Identity:
        """Resolve the identity behind a bearer access token."""
        claims = self.token_issuer.verify(access_token)
        identity = self.directory.get(claims.subject_id)
        if identity is None:
            raise IdentityNotFound("User not found", context={"identity_id": claims.subject_id})
        return identity

    def re_enroll(self, identity: Identity) -> InitiateResult:
        """
        Replace an identity's biometric enrollment.

        The new enrollment operation is opened before the old enrollment is
        cleared, so a provider failure leaves the existing enrollment usable.

        Raises:
            IdentityInactive: Identity is deactivated
            ProviderUnavailable / ProviderRejected: Provider failures
        """
        if not identity.is_active:
            raise IdentityInactive("User account is inactive", context={"identity_id": identity.identity_id})

        result = self.initiate(identity.identity_id, Purpose.ENROLLMENT)
        if identity.enrolled:
            self.directory.clear_enrollment(identity.identity_id)
        self.directory.record_access(identity.identity_id, "biometric_re_enrollment_requested", {
            "operation_id": result.operation_id,
        })
        return result

    def delete_biometric_data(self, identity: Identity) -> Identity:
        """
        Drop an identity's enrollment; biometric login is refused until it re-enrolls.

        Raises:
            NotEnrolled: Nothing to delete
        """
        if not identity.enrolled:
            raise NotEnrolled(
                "No biometric enrollment found",
                context={"identity_id": identity.identity_id},
                error_code="NO_ENROLLMENT",
            )
        updated = self.directory.clear_enrollment(identity.identity_id)
        self.directory.record_access(identity.identity_id, "biometric_data_deleted")
        return updated

    def sweep_expired(self) -> int:
        """Evict operations that expired without reaching a terminal state."""
        return self.registry.sweep()


def _minimal_claims(identity: Identity) -> dict:
    return {
        "id": identity.identity_id,
        "email": identity.email,
        "role": identity.role,
        "accessLevel": identity.access_level,
    }
