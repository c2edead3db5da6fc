"""
Provider Gateway for the external biometric identity provider

Thin httpx client around the provider's operation API. Enrollment and
authentication use different endpoint families with different status
shapes; each family is handled by an adapter and every response is
normalized into the canonical OperationStatus / ProofPayload before it
leaves this module. Network and HTTP failures are translated into the
bioauth error taxonomy here and nowhere else.
"""
from abc import ABC, abstractmethod
import logging
import math
import threading
import time
import uuid
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import httpx

from bioauth.errors import (
    ProofUnavailable,
    ProviderRejected,
    ProviderUnavailable,
)
from bioauth.models.data_models import (
    HandoffData,
    OperationState,
    OperationStatus,
    PresentationAttackResult,
    ProofPayload,
    ProviderOperation,
    ProviderResult,
    Purpose,
)

logger = logging.getLogger(__name__)

# Numeric provider codes. State: 0=Pending, 1=Completed, 2=Failed, 3=Expired.
# Result: 0=None, 1=Success, 2=Failure.
_NUMERIC_STATES = {0: "pending", 1: "completed", 2: "failed", 3: "expired"}
_NUMERIC_RESULTS = {0: None, 1: "success", 2: "failure"}

_STRING_STATES = {
    "pending": "pending",
    "in_progress": "pending",
    "inprogress": "pending",
    "completed": "completed",
    "failed": "failed",
    "expired": "expired",
}
_STRING_RESULTS = {
    "none": None,
    "success": "success",
    "failure": "failure",
    "failed": "failure",
    "fail": "failure",
}

_FAILING_CHECKS = {"fail", "reject"}


def _code(value: Any, numeric: dict, strings: dict) -> Optional[str]:
    # bool is an int subclass; a boolean is never a valid provider code
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, int):
        return numeric.get(value, "unknown")
    if isinstance(value, str):
        text = value.strip().lower()
        if text.isdigit():
            return numeric.get(int(text), "unknown")
        return strings.get(text, "unknown")
    return "unknown"


def normalize_status(data: Dict[str, Any]) -> OperationStatus:
    """
    Map a provider status body onto the canonical OperationStatus.

    A completion without a ``CompletedAt`` marker is reported as pending,
    never as completed.
    """
    raw_state = data.get("State", data.get("state"))
    raw_result = data.get("Result", data.get("result"))
    completed_at = data.get("CompletedAt") or data.get("completedAt")

    state = _code(raw_state, _NUMERIC_STATES, _STRING_STATES)
    result = _code(raw_result, _NUMERIC_RESULTS, _STRING_RESULTS)

    if state == "expired":
        return OperationStatus(OperationState.EXPIRED, raw_state=raw_state, raw_result=raw_result)

    if state in ("completed", "failed"):
        if not completed_at:
            logger.warning(f"Provider reported state={raw_state!r} without a completion timestamp, treating as pending")
            return OperationStatus.pending(raw_state, raw_result)
        if state == "failed" or result == "failure":
            return OperationStatus.completed(ProviderResult.FAILURE, completed_at, raw_state, raw_result)
        if result == "success":
            return OperationStatus.completed(ProviderResult.SUCCESS, completed_at, raw_state, raw_result)
        return OperationStatus(OperationState.UNKNOWN, raw_state=raw_state, raw_result=raw_result)

    if state == "pending":
        return OperationStatus.pending(raw_state, raw_result)

    return OperationStatus(OperationState.UNKNOWN, raw_state=raw_state, raw_result=raw_result)


def _check_failed(value: Any) -> bool:
    return isinstance(value, str) and value.strip().lower() in _FAILING_CHECKS


def _pass_fail(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        text = value.strip().lower()
        if text in ("pass", "passed", "success"):
            return True
        if text in _FAILING_CHECKS:
            return False
    return None


def _score(value: Any) -> float:
    # Anything outside [0, 1], NaN included, fails closed
    if isinstance(value, bool):
        return 0.0
    try:
        score = float(value)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(score) or not 0.0 <= score <= 1.0:
        logger.warning(f"Provider score {value!r} outside [0, 1], treating as 0.0")
        return 0.0
    return score


def proof_from_provider(data: Optional[Dict[str, Any]]) -> ProofPayload:
    """
    Map the raw provider proof fields onto a ProofPayload.

    Missing liveness or score fields fail closed (not live, score 0.0).

    Raises:
        ProofUnavailable: If the body is empty
    """
    if not data or not isinstance(data, dict):
        raise ProofUnavailable("Provider returned no proof for a completed operation")

    pad = data.get("PadResult")
    pad_text = pad.strip().lower().replace(" ", "_") if isinstance(pad, str) else ""
    if pad_text == "reject":
        pad_result = PresentationAttackResult.REJECT
    elif pad_text == "manual_review":
        pad_result = PresentationAttackResult.MANUAL_REVIEW
    else:
        pad_result = PresentationAttackResult.PASS

    document_expired = data.get("DocumentExpired")

    return ProofPayload(
        is_live=data.get("IsLive") is True,
        injection_detected=(
            _check_failed(data.get("SelfieInjectionDetection"))
            or _check_failed(data.get("DocumentInjectionDetection"))
        ),
        document_expired=document_expired if isinstance(document_expired, bool) else None,
        presentation_attack_result=pad_result,
        face_match_score=_score(data.get("FaceMatchScore")),
        confidence_score=_score(data.get("ConfidenceScore")),
        barcode_check_passed=_pass_fail(data.get("BarcodeSecurityCheck")),
        ocr_consistent=_pass_fail(data.get("MRZOCRMismatch")),
    )


class OperationAdapter(ABC):
    """Endpoint family used for one operation purpose"""

    resource = ""
    id_field = ""
    handoff_id_param = ""
    handoff_extra: Dict[str, str] = {}

    def __init__(self, gateway: "ProviderGateway"):
        self.gateway = gateway

    @abstractmethod
    def create_payload(self, subject_identity_ref: str, timeout: int) -> Dict[str, Any]:
        raise NotImplementedError

    def collection_url(self) -> str:
        return f"{self.gateway.transaction_url}/v2/{self.resource}"

    def status_url(self, operation_id: str) -> str:
        return f"{self.collection_url()}/{operation_id}"

    def proof_url(self, operation_id: str) -> str:
        return f"{self.collection_url()}/{operation_id}/result"

    def handoff(self, operation_id: str, secret: str) -> HandoffData:
        params = {self.handoff_id_param: operation_id, "secret": secret, "baseUrl": self.gateway.base_url}
        params.update(self.handoff_extra)
        url = f"{self.gateway.web_url}?{urlencode(params)}"
        return HandoffData(url=url, qr_payload=url)


class EnrollmentAdapter(OperationAdapter):
    """EnrollBioCredential operations (numeric State/Result codes)"""

    resource = "operations"
    id_field = "OperationId"
    handoff_id_param = "operationId"

    def create_payload(self, subject_identity_ref: str, timeout: int) -> Dict[str, Any]:
        return {
            "AccountNumber": subject_identity_ref,
            "Codeword": "",
            "Name": "EnrollBioCredential",
            "Timeout": timeout,
            "TransportType": 0,
            "Tag": f"bioauth-enrollment-{uuid.uuid4().hex[:12]}",
        }


class AuthenticationAdapter(OperationAdapter):
    """Verify_Identity transactions (numeric or string State/Result codes)"""

    resource = "transactions"
    id_field = "TransactionId"
    handoff_id_param = "transactionId"
    handoff_extra = {"mode": "authentication"}

    def create_payload(self, subject_identity_ref: str, timeout: int) -> Dict[str, Any]:
        return {
            "AccountNumber": subject_identity_ref,
            "Name": "Verify_Identity",
            "Timeout": timeout,
            "ConfirmationPolicy": {
                "TransportType": 0,
                "CredentialType": 1,
                "MinimumConfidence": self.gateway.min_confidence,
                "MaximumAttempts": self.gateway.max_attempts,
            },
        }


class ProviderGateway:
    """
    Client for the identity provider's operation API.

    Every request has an explicit timeout. The provider bearer token is
    obtained lazily with the API key pair and refreshed once on a 401.
    """

    def __init__(
        self,
        api_key_id: Optional[str],
        api_key_value: Optional[str],
        base_url: str = "https://id-uat.authid.ai",
        web_url: str = "http://localhost:3002",
        timeout: float = 5.0,
        min_confidence: float = 0.85,
        max_attempts: int = 3,
        transport: Optional[httpx.BaseTransport] = None,
        clock=time.time,
    ):
        """
        Args:
            api_key_id: Provider API key id (Basic auth user for token requests)
            api_key_value: Provider API key secret
            base_url: Provider host
            web_url: Hosted capture page that receives the handoff parameters
            timeout: Per-request timeout in seconds
            min_confidence: MinimumConfidence sent with authentication requests
            max_attempts: MaximumAttempts sent with authentication requests
            transport: Optional httpx transport (tests use httpx.MockTransport)
            clock: Time source returning epoch seconds
        """
        self.api_key_id = api_key_id
        self.api_key_value = api_key_value
        self.base_url = base_url.rstrip("/")
        self.web_url = web_url.rstrip("/")
        self.transaction_url = f"{self.base_url}/IDCompleteBackendEngine/Default/AuthorizationServiceRest"
        self.idp_url = f"{self.base_url}/IDCompleteBackendEngine/IdentityService/v1"
        self.min_confidence = min_confidence
        self.max_attempts = max_attempts
        self._clock = clock

        self._client = httpx.Client(timeout=httpx.Timeout(timeout), transport=transport)
        self._token_lock = threading.Lock()
        self._access_token: Optional[str] = None

        self._adapters = {
            Purpose.ENROLLMENT: EnrollmentAdapter(self),
            Purpose.AUTHENTICATION: AuthenticationAdapter(self),
        }

        if not (api_key_id and api_key_value):
            logger.warning("Provider API keys not configured, provider calls will fail")
        logger.info(f"ProviderGateway initialized for {self.base_url}")

    def close(self) -> None:
        self._client.close()

    # ------------------------------------------------------------------
    # Provider session
    # ------------------------------------------------------------------

    def _authenticate(self) -> str:
        if not (self.api_key_id and self.api_key_value):
            raise ProviderUnavailable("Identity provider credentials are not configured")

        try:
            response = self._client.post(
                f"{self.idp_url}/auth/token",
                auth=(self.api_key_id, self.api_key_value),
            )
        except httpx.HTTPError as e:
            logger.error(f"Provider authentication request failed: {e}")
            raise ProviderUnavailable("Identity provider is unavailable")

        if response.status_code != 200:
            logger.error(f"Provider authentication failed with HTTP {response.status_code}")
            raise ProviderUnavailable(
                "Identity provider authentication failed",
                context={"status": response.status_code},
            )

        token = self._json(response).get("AccessToken")
        if not token:
            raise ProviderUnavailable("Identity provider returned no access token")

        logger.info("Authenticated with identity provider")
        return token

    def _bearer(self, force_refresh: bool = False) -> str:
        with self._token_lock:
            if force_refresh or not self._access_token:
                self._access_token = self._authenticate()
            return self._access_token

    def _request(self, method: str, url: str, json: Optional[dict] = None) -> httpx.Response:
        """Send an authenticated request; transport failures become ProviderUnavailable."""
        for attempt in range(2):
            headers = {
                "Content-Type": "application/json",
                "Authorization": f"Bearer {self._bearer(force_refresh=attempt > 0)}",
            }
            try:
                response = self._client.request(method, url, json=json, headers=headers)
            except httpx.TimeoutException:
                logger.warning(f"Provider request timed out: {method} {url}")
                raise ProviderUnavailable("Identity provider timed out")
            except httpx.HTTPError as e:
                logger.warning(f"Provider request failed: {method} {url}: {e}")
                raise ProviderUnavailable("Identity provider is unavailable")

            if response.status_code != 401:
                return response
            logger.info("Provider token rejected, re-authenticating")

        raise ProviderUnavailable("Identity provider rejected our credentials")

    @staticmethod
    def _json(response: httpx.Response) -> Dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            raise ProviderUnavailable("Identity provider returned an invalid response")
        return body if isinstance(body, dict) else {}

    @staticmethod
    def _raise_for_status(response: httpx.Response, action: str) -> None:
        status = response.status_code
        if status >= 500:
            logger.warning(f"Provider {action} failed with HTTP {status}")
            raise ProviderUnavailable("Identity provider is unavailable", context={"status": status})
        if status >= 400:
            logger.warning(f"Provider {action} rejected with HTTP {status}")
            raise ProviderRejected("Identity provider rejected the request", context={"status": status})

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def create_operation(self, subject_identity_ref: str, purpose: Purpose, timeout: int) -> ProviderOperation:
        """
        Open a verification operation with the provider.

        Args:
            subject_identity_ref: Provider account number for the identity
            purpose: Enrollment or authentication
            timeout: Provider-side operation timeout in seconds

        Raises:
            ProviderUnavailable: Network error, timeout or 5xx
            ProviderRejected: 4xx, e.g. subject already enrolled
        """
        adapter = self._adapters[purpose]
        response = self._request("POST", adapter.collection_url(), adapter.create_payload(subject_identity_ref, timeout))
        self._raise_for_status(response, "create operation")

        body = self._json(response)
        operation_id = body.get(adapter.id_field) or body.get("OperationId")
        secret = body.get("OneTimeSecret") or ""
        if not operation_id:
            raise ProviderUnavailable("Identity provider returned no operation id")

        logger.info(f"Created {purpose.value} operation {operation_id} for {subject_identity_ref}")

        return ProviderOperation(
            operation_id=operation_id,
            handoff=adapter.handoff(operation_id, secret),
            expires_at=self._clock() + timeout,
        )

    def fetch_status(self, operation_id: str, purpose: Purpose) -> OperationStatus:
        """
        Fetch and normalize the operation status.

        A 404 is treated as provider replication lag and reported as pending.
        """
        adapter = self._adapters[purpose]
        response = self._request("GET", adapter.status_url(operation_id))
        if response.status_code == 404:
            logger.info(f"Operation {operation_id} not visible at provider yet, reporting pending")
            return OperationStatus.pending()
        self._raise_for_status(response, "status check")

        status = normalize_status(self._json(response))
        logger.info(f"Operation {operation_id} status: {status.state.value} ({status.raw_state!r}/{status.raw_result!r})")
        return status

    def fetch_proof(self, operation_id: str, purpose: Purpose) -> ProofPayload:
        """
        Fetch the proof for an operation that completed successfully.

        Raises:
            ProofUnavailable: The provider has no proof for the operation
        """
        adapter = self._adapters[purpose]
        response = self._request("GET", adapter.proof_url(operation_id))
        if response.status_code == 404:
            raise ProofUnavailable(
                "Provider has no proof for a completed operation",
                context={"operation_id": operation_id},
            )
        self._raise_for_status(response, "proof retrieval")
        return proof_from_provider(self._json(response))
