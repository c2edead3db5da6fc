"""
Operation Registry

Time-bounded mapping from an in-flight verification operation to the
identity that initiated it. An entry authorizes token issuance at most once:
``take`` removes it atomically and leaves a tombstone so later lookups can
tell "already consumed" apart from "never existed / expired".
"""
import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Dict

from bioauth.errors import OperationConsumed, OperationNotFound
from bioauth.models.data_models import VerificationOperation

logger = logging.getLogger(__name__)


class OperationStore(ABC):
    """Storage contract used by the session orchestrator"""

    @abstractmethod
    def put(self, operation: VerificationOperation) -> None:
        """Store a new live operation."""

    @abstractmethod
    def get(self, operation_id: str) -> VerificationOperation:
        """
        Return the live operation.

        Raises:
            OperationConsumed: The operation already reached a terminal state
            OperationNotFound: Unknown or expired operation
        """

    @abstractmethod
    def take(self, operation_id: str) -> VerificationOperation:
        """Atomically remove and return the live operation, marking it consumed."""

    @abstractmethod
    def delete(self, operation_id: str) -> None:
        """Remove an operation without marking it consumed."""

    @abstractmethod
    def sweep(self) -> int:
        """Evict expired operations. Returns the number evicted."""


class InMemoryOperationRegistry(OperationStore):
    """
    Process-local OperationStore guarded by a single lock.

    Suitable for a single instance; losing an entry only forces the client
    to initiate again.
    """

    DEFAULT_CONSUMED_TTL_SECONDS = 900

    def __init__(self, consumed_ttl: float = DEFAULT_CONSUMED_TTL_SECONDS, clock=time.time):
        """
        Args:
            consumed_ttl: How long a consumed operation id is remembered
            clock: Time source returning epoch seconds
        """
        self._lock = threading.Lock()
        self._operations: Dict[str, VerificationOperation] = {}
        self._consumed: Dict[str, float] = {}
        self.consumed_ttl = consumed_ttl
        self._clock = clock

    def put(self, operation: VerificationOperation) -> None:
        with self._lock:
            if operation.operation_id in self._operations or operation.operation_id in self._consumed:
                raise ValueError(f"Operation {operation.operation_id} already registered")
            self._operations[operation.operation_id] = operation
        logger.debug(f"Registered operation {operation.operation_id}")

    def get(self, operation_id: str) -> VerificationOperation:
        with self._lock:
            return self._get_live(operation_id)

    def take(self, operation_id: str) -> VerificationOperation:
        with self._lock:
            operation = self._get_live(operation_id)
            del self._operations[operation_id]
            self._consumed[operation_id] = self._clock() + self.consumed_ttl
        logger.info(f"Operation {operation_id} consumed")
        return operation

    def _get_live(self, operation_id: str) -> VerificationOperation:
        # caller holds the lock
        if operation_id in self._consumed:
            raise OperationConsumed(
                "Verification session already used. Please start again.",
                context={"operation_id": operation_id},
            )
        operation = self._operations.get(operation_id)
        if operation is None:
            raise OperationNotFound(
                "Verification session not found or expired",
                context={"operation_id": operation_id},
            )
        if operation.is_expired(self._clock()):
            del self._operations[operation_id]
            logger.info(f"Operation {operation_id} expired on lookup")
            raise OperationNotFound(
                "Verification session not found or expired",
                context={"operation_id": operation_id},
            )
        return operation

    def delete(self, operation_id: str) -> None:
        with self._lock:
            self._operations.pop(operation_id, None)

    def sweep(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [op_id for op_id, op in self._operations.items() if op.is_expired(now)]
            for op_id in expired:
                del self._operations[op_id]
            stale = [op_id for op_id, until in self._consumed.items() if now > until]
            for op_id in stale:
                del self._consumed[op_id]
        if expired:
            logger.info(f"Swept {len(expired)} expired operations")
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._operations)
