# Service layer components
from .identity_directory import IdentityDirectory
from .operation_registry import InMemoryOperationRegistry, OperationStore
from .proof_validator import ProofValidator
from .provider_gateway import ProviderGateway
from .session_orchestrator import SessionOrchestrator
from .token_issuer import TokenIssuer

__all__ = ['IdentityDirectory', 'InMemoryOperationRegistry', 'OperationStore', 'ProofValidator', 'ProviderGateway', 'SessionOrchestrator', 'TokenIssuer']
