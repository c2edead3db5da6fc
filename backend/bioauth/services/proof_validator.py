"""
Proof Validator for biometric verification results

This module implements the decision policy that maps a provider proof payload
to Accept, Reject or ManualReview. Critical checks (liveness, injection,
document validity, presentation attacks) are evaluated before quality checks
(match score, confidence, barcode, OCR consistency).
"""
import logging
import math

from bioauth.models.data_models import (
    DecisionOutcome,
    PresentationAttackResult,
    ProofDecision,
    ProofPayload,
)

logger = logging.getLogger(__name__)


def _below(score: float, threshold: float) -> bool:
    # NaN compares false against everything, so it must be rejected explicitly
    return not math.isfinite(score) or score < threshold


class ProofValidator:
    """
    Pure decision function over a ProofPayload.

    Any failed critical check rejects the proof and the quality checks are
    not evaluated. Otherwise any failed quality check sends the proof to
    manual review. Every triggered condition of the deciding tier is
    reported in ``reasons``.

    A score equal to its threshold passes.
    """

    FACE_MATCH_THRESHOLD = 0.80
    CONFIDENCE_THRESHOLD = 0.85

    def __init__(
        self,
        face_match_threshold: float = FACE_MATCH_THRESHOLD,
        confidence_threshold: float = CONFIDENCE_THRESHOLD,
    ):
        """
        Args:
            face_match_threshold: Minimum face match score (0.0-1.0)
            confidence_threshold: Minimum overall confidence score (0.0-1.0)
        """
        self.face_match_threshold = face_match_threshold
        self.confidence_threshold = confidence_threshold

    def validate(self, proof: ProofPayload) -> ProofDecision:
        """
        Decide what to do with a proof.

        Args:
            proof: Normalized proof payload from the provider gateway

        Returns:
            ProofDecision with the outcome and every triggered reason
        """
        critical = self._critical_failures(proof)
        if critical:
            logger.info(f"Proof rejected: {critical}")
            return ProofDecision(outcome=DecisionOutcome.REJECT, reasons=critical)

        quality = self._quality_warnings(proof)
        if quality:
            logger.info(f"Proof requires manual review: {quality}")
            return ProofDecision(outcome=DecisionOutcome.MANUAL_REVIEW, reasons=quality)

        return ProofDecision(outcome=DecisionOutcome.ACCEPT, reasons=[])

    def _critical_failures(self, proof: ProofPayload) -> list:
        reasons = []
        if not proof.is_live:
            reasons.append("Liveness check failed")
        if proof.injection_detected:
            reasons.append("Injection attack detected")
        if proof.document_expired is True:
            reasons.append("Document expired")
        if proof.presentation_attack_result == PresentationAttackResult.REJECT:
            reasons.append("Presentation attack detected")
        return reasons

    def _quality_warnings(self, proof: ProofPayload) -> list:
        reasons = []
        if proof.presentation_attack_result == PresentationAttackResult.MANUAL_REVIEW:
            reasons.append("Presentation attack detection requires manual review")
        if _below(proof.face_match_score, self.face_match_threshold):
            reasons.append(f"Low face match score: {proof.face_match_score:.2f}")
        if _below(proof.confidence_score, self.confidence_threshold):
            reasons.append(f"Low confidence score: {proof.confidence_score:.2f}")
        if proof.barcode_check_passed is False:
            reasons.append("Barcode security check failed")
        if proof.ocr_consistent is False:
            reasons.append("OCR consistency check failed")
        return reasons
