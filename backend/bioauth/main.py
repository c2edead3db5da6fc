"""
FastAPI application entry point for the Biometric Authentication Session Manager

Run with ``bioauth`` (installed console script), ``python -m bioauth.main``
or ``uvicorn bioauth.main:app --app-dir backend``.
"""
from fastapi import FastAPI, HTTPException, Request, Header
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from datetime import datetime, timezone
from typing import Optional
import logging
import json
import asyncio
import uvicorn

from bioauth import __version__
from bioauth.config import load_settings
from bioauth.errors import BioAuthError, TokenInvalid
from bioauth.models.data_models import InitiateResult, PollResult, Purpose

# Import all services
from bioauth.services import (
    IdentityDirectory,
    InMemoryOperationRegistry,
    ProofValidator,
    ProviderGateway,
    SessionOrchestrator,
    TokenIssuer,
)

# Load configuration (reads .env when present)
settings = load_settings()

# Configure logging
logging.basicConfig(
    level=settings.log_level,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Initialize FastAPI app
app = FastAPI(
    title="Biometric Authentication Session API",
    description="Brokers biometric identity verification and issues session tokens",
    version=__version__
)

# CORS configuration for the client application
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Per-client rate limit shared by every biometric authentication route
limiter = Limiter(key_func=get_remote_address)
app.state.limiter = limiter
auth_rate_limit = limiter.shared_limit(lambda: settings.auth_rate_limit, scope="biometric-auth")

# Initialize services
identity_directory = IdentityDirectory()
if settings.identity_seed_file:
    identity_directory.load_seed_file(settings.identity_seed_file)

operation_registry = InMemoryOperationRegistry()

proof_validator = ProofValidator(
    face_match_threshold=settings.face_match_threshold,
    confidence_threshold=settings.confidence_threshold,
)

provider_gateway = ProviderGateway(
    api_key_id=settings.provider_api_key_id,
    api_key_value=settings.provider_api_key_value,
    base_url=settings.provider_base_url,
    web_url=settings.provider_web_url,
    timeout=settings.provider_timeout_seconds,
    min_confidence=settings.provider_min_confidence,
    max_attempts=settings.provider_max_attempts,
)

token_issuer = TokenIssuer(
    secret=settings.jwt_secret,
    private_key=settings.jwt_private_key,
    public_key=settings.jwt_public_key,
    issuer=settings.jwt_issuer,
    audience=settings.jwt_audience,
    access_expiry=settings.jwt_expires_in,
    refresh_expiry=settings.jwt_refresh_expires_in,
)

session_orchestrator = SessionOrchestrator(
    gateway=provider_gateway,
    registry=operation_registry,
    validator=proof_validator,
    token_issuer=token_issuer,
    directory=identity_directory,
    operation_ttl=settings.operation_ttl_seconds,
)

# Background task control
_sweep_task = None
_sweep_task_running = False


async def sweep_expired_operations_task():
    """
    Background task that periodically evicts expired verification operations.

    Operations abandoned by the client are never polled to completion; this
    reclaims them once their TTL has passed.
    """
    global _sweep_task_running
    _sweep_task_running = True

    logger.info("Starting operation sweep background task")

    while _sweep_task_running:
        await asyncio.sleep(settings.sweep_interval_seconds)
        try:
            evicted = session_orchestrator.sweep_expired()
            if evicted:
                logger.info(f"Evicted {evicted} expired operations")
        except Exception as e:
            logger.error(f"Error in operation sweep task: {e}", exc_info=True)


@app.on_event("startup")
async def startup_event():
    """Start the operation sweep background task."""
    global _sweep_task
    logger.info("Application startup: initializing background tasks")
    _sweep_task = asyncio.create_task(sweep_expired_operations_task())


@app.on_event("shutdown")
async def shutdown_event():
    """Stop the sweep task and release the provider client."""
    global _sweep_task, _sweep_task_running
    logger.info("Application shutdown: stopping background tasks")

    _sweep_task_running = False

    if _sweep_task:
        _sweep_task.cancel()
        try:
            await _sweep_task
        except asyncio.CancelledError:
            logger.info("Operation sweep background task stopped")

    provider_gateway.close()


# Request models
class InitiateRequest(BaseModel):
    """Request body for /auth/biometric/initiate"""
    identityRef: str
    purpose: Purpose = Purpose.AUTHENTICATION


class RefreshRequest(BaseModel):
    """Request body for /auth/refresh"""
    refreshToken: str


# Domain exception handler
@app.exception_handler(BioAuthError)
async def bioauth_exception_handler(request: Request, exc: BioAuthError):
    """Render service errors into the common error envelope"""
    if exc.status_code >= 500:
        logger.warning(f"{request.method} {request.url.path} failed: {exc}")
    else:
        logger.info(f"{request.method} {request.url.path} refused: {exc}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle all unhandled exceptions"""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={
            "error": {
                "code": "INTERNAL_SERVER_ERROR",
                "message": "An unexpected error occurred",
                "category": "system",
                "recoverable": False
            }
        }
    )


# HTTP exception handler
@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Handle HTTP exceptions with consistent error format"""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": {
                "code": exc.detail if isinstance(exc.detail, str) else "HTTP_ERROR",
                "message": str(exc.detail),
                "category": "http",
                "recoverable": exc.status_code < 500
            }
        }
    )


# Request body validation handler
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Report malformed request bodies in the common error envelope"""
    errors = exc.errors()
    if errors:
        location = ".".join(str(part) for part in errors[0].get("loc", ()))
        message = f"{location}: {errors[0].get('msg', 'invalid value')}"
    else:
        message = "Invalid request"
    logger.info(f"{request.method} {request.url.path} invalid request: {message}")
    return JSONResponse(
        status_code=422,
        content={
            "error": {
                "code": "VALIDATION_ERROR",
                "message": message,
                "category": "validation",
                "recoverable": False
            }
        }
    )


# Rate limit handler
@app.exception_handler(RateLimitExceeded)
async def rate_limit_exception_handler(request: Request, exc: RateLimitExceeded):
    """Too many authentication attempts from one client"""
    logger.warning(f"Rate limit exceeded for {get_remote_address(request)} on {request.url.path}")
    return JSONResponse(
        status_code=429,
        content={
            "error": {
                "code": "AUTH_RATE_LIMIT_EXCEEDED",
                "message": "Too many authentication attempts, please try again later.",
                "category": "rate_limit",
                "recoverable": True
            }
        }
    )


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "Biometric Authentication Session API",
        "status": "running",
        "version": __version__
    }


@app.get("/health")
async def health_check():
    """Health check endpoint for monitoring"""
    return {
        "status": "healthy",
        "services": {
            "api": "operational",
            "operation_registry": "operational",
            "pending_operations": len(operation_registry)
        }
    }


def _iso(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()


def _bearer_token(authorization: Optional[str]) -> str:
    if not authorization or not authorization.startswith("Bearer "):
        raise TokenInvalid("Access token required", error_code="MISSING_AUTH_TOKEN")
    return authorization[len("Bearer "):].strip()


def _initiate_response(result: InitiateResult) -> dict:
    return {
        "operationId": result.operation_id,
        "purpose": result.purpose.value,
        "providerHandoffUrl": result.handoff.url,
        "qrPayload": result.handoff.qr_payload,
        "expiresAt": _iso(result.expires_at),
        "pollIntervalSeconds": settings.poll_interval_seconds,
        "maxWaitSeconds": settings.max_poll_wait_seconds
    }


@app.post("/auth/biometric/initiate")
@auth_rate_limit
def initiate_biometric(request: Request, body: InitiateRequest):
    """
    Open a biometric verification operation for an identity.

    Returns the operation id and the handoff URL/QR payload the client uses
    for the out-of-band capture step, plus the recommended polling cadence.

    Errors: 404 unknown identity, 403 inactive identity, 400 not enrolled,
    409 provider rejected, 503 provider unavailable.
    """
    result = session_orchestrator.initiate(body.identityRef, body.purpose)
    return _initiate_response(result)


def _poll_response(result: PollResult) -> dict:
    body = {
        "operationId": result.operation_id,
        "status": result.status.value,
        "code": result.code,
        "message": result.message,
    }
    if result.reasons:
        body["reasons"] = result.reasons
    if result.tokens is not None:
        body.update({
            "accessToken": result.tokens.access_token,
            "refreshToken": result.tokens.refresh_token,
            "expiresIn": result.tokens.expires_in_seconds,
            "tokenType": result.tokens.token_type,
            "user": result.identity,
        })
    return body


@app.get("/auth/biometric/poll/{operation_id}")
@auth_rate_limit
def poll_biometric(request: Request, operation_id: str):
    """
    Poll a verification operation.

    Every status is reported with HTTP 200 (pending, completed, failed,
    rejected, manual_review, expired, consumed). Tokens are only present on
    the single poll that completes the operation. A 503 means the provider
    was unavailable and the client should poll again on its next interval.
    """
    result = session_orchestrator.poll(operation_id)
    return _poll_response(result)


@app.post("/auth/refresh")
@auth_rate_limit
def refresh_tokens(request: Request, body: RefreshRequest):
    """Exchange a refresh token for a new token pair"""
    tokens = session_orchestrator.refresh(body.refreshToken)
    return {
        "message": "Token refreshed successfully",
        "accessToken": tokens.access_token,
        "refreshToken": tokens.refresh_token,
        "expiresIn": tokens.expires_in_seconds,
        "tokenType": tokens.token_type
    }


@app.get("/auth/me")
def get_current_user(authorization: Optional[str] = Header(None)):
    """Profile of the identity behind the bearer access token"""
    identity = session_orchestrator.current_identity(_bearer_token(authorization))
    return {"user": identity.to_public_dict()}


@app.get("/auth/me/access-log")
def get_access_log(limit: int = 50, authorization: Optional[str] = Header(None)):
    """Most recent biometric access events of the current identity"""
    identity = session_orchestrator.current_identity(_bearer_token(authorization))
    entries = identity_directory.access_log(identity.identity_id, limit=max(1, min(limit, 100)))
    return {
        "entries": [
            {
                "id": entry.entry_id,
                "event": entry.event,
                "timestamp": _iso(entry.timestamp),
                "metadata": entry.metadata
            }
            for entry in entries
        ]
    }


@app.get("/auth/biometric/enrollment/status")
def get_enrollment_status(authorization: Optional[str] = Header(None)):
    """Whether the current identity can log in biometrically"""
    identity = session_orchestrator.current_identity(_bearer_token(authorization))
    return {
        "enrollment": {
            "identityId": identity.identity_id,
            "enrolled": identity.enrolled,
            "isActive": identity.is_active
        }
    }


@app.post("/auth/biometric/re-enroll")
@auth_rate_limit
def re_enroll_biometric(request: Request, authorization: Optional[str] = Header(None)):
    """
    Start a fresh enrollment for the current identity.

    The previous enrollment stays valid until the new operation has been
    opened with the provider; after that biometric login is refused until the
    new enrollment completes.
    """
    identity = session_orchestrator.current_identity(_bearer_token(authorization))
    result = session_orchestrator.re_enroll(identity)
    response = _initiate_response(result)
    response["message"] = "Biometric re-enrollment initiated"
    return response


@app.delete("/auth/biometric/data")
def delete_biometric_data(authorization: Optional[str] = Header(None)):
    """Drop the current identity's biometric enrollment"""
    identity = session_orchestrator.current_identity(_bearer_token(authorization))
    updated = session_orchestrator.delete_biometric_data(identity)
    return {
        "message": "Biometric data deleted successfully",
        "enrollment": {
            "identityId": updated.identity_id,
            "enrolled": updated.enrolled,
            "isActive": updated.is_active
        }
    }


@app.post("/api/token/validate")
async def validate_token_endpoint(request: Request):
    """
    Validate a session token's signature, expiry, issuer, audience and type.

    Accepts ``{"token": "..."}`` and answers 200 with the claims when valid,
    401 otherwise.
    """
    try:
        body = await request.json()
    except json.JSONDecodeError:
        return JSONResponse(
            status_code=400,
            content={
                "error": {
                    "code": "INVALID_JSON",
                    "message": "Request body must be valid JSON",
                    "category": "validation",
                    "recoverable": False
                }
            }
        )

    token = body.get("token") if isinstance(body, dict) else None
    if not token:
        return JSONResponse(
            status_code=400,
            content={
                "error": {
                    "code": "MISSING_TOKEN",
                    "message": "Token is required in request body",
                    "category": "validation",
                    "recoverable": False
                }
            }
        )

    validation_result = token_issuer.validate_token(token)

    if validation_result.valid:
        claims = validation_result.claims
        return JSONResponse(
            status_code=200,
            content={
                "valid": True,
                "subject_id": claims.subject_id,
                "token_type": claims.token_type,
                "issued_at": claims.issued_at,
                "expires_at": claims.expires_at
            }
        )

    return JSONResponse(
        status_code=401,
        content={
            "valid": False,
            "error": validation_result.error
        }
    )


def run():
    """Serve the API with uvicorn using the configured host and port"""
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    run()
