"""
Shared fixtures for the bioauth test suite
"""
import threading

import pytest

from bioauth.models.data_models import (
    HandoffData,
    Identity,
    OperationStatus,
    PresentationAttackResult,
    ProofPayload,
    ProviderOperation,
    ProviderResult,
)
from bioauth.services.identity_directory import IdentityDirectory

TEST_SECRET = "test-secret-key-that-is-long-enough-for-hs256"
COMPLETED_AT = "2024-01-01T00:00:00Z"


class FakeClock:
    """Manually advanced time source"""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def good_proof(**overrides) -> ProofPayload:
    values = dict(
        is_live=True,
        injection_detected=False,
        presentation_attack_result=PresentationAttackResult.PASS,
        face_match_score=0.95,
        confidence_score=0.95,
    )
    values.update(overrides)
    return ProofPayload(**values)


class FakeGateway:
    """Stands in for ProviderGateway; statuses and proofs are set per operation"""

    def __init__(self, clock):
        self.clock = clock
        self.created = []
        self.statuses = {}
        self.proofs = {}
        self.proof_requests = 0
        self._lock = threading.Lock()

    def create_operation(self, subject_identity_ref, purpose, timeout):
        operation_id = f"op-{len(self.created) + 1}"
        self.created.append((operation_id, subject_identity_ref, purpose))
        self.statuses[operation_id] = OperationStatus.pending()
        return ProviderOperation(
            operation_id=operation_id,
            handoff=HandoffData(url=f"https://capture.test/?id={operation_id}", qr_payload=operation_id),
            expires_at=self.clock() + timeout,
        )

    def fetch_status(self, operation_id, purpose):
        status = self.statuses[operation_id]
        if isinstance(status, Exception):
            raise status
        return status

    def fetch_proof(self, operation_id, purpose):
        with self._lock:
            self.proof_requests += 1
        proof = self.proofs.get(operation_id, good_proof())
        if isinstance(proof, Exception):
            raise proof
        return proof

    def succeed(self, operation_id, proof=None):
        self.statuses[operation_id] = OperationStatus.completed(ProviderResult.SUCCESS, COMPLETED_AT)
        if proof is not None:
            self.proofs[operation_id] = proof

    def close(self):
        pass


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def directory(clock):
    directory = IdentityDirectory(clock=clock)
    directory.add(Identity(
        identity_id="user-1",
        email="alice@example.com",
        name="Alice",
        role="admin",
        access_level="elevated",
        department="Security",
        enrolled=True,
    ))
    directory.add(Identity(
        identity_id="user-2",
        email="bob@example.com",
        name="Bob",
    ))
    return directory
