"""
Token Issuer for session access/refresh tokens

Tokens are stateless JWTs. When a PEM key pair is configured they are signed
with RS256; when only a shared secret is configured they use HS256; with
neither, an ephemeral RSA key pair is generated at startup (tokens then do
not survive a restart).
"""
import logging
import re
import time
import uuid
from typing import Optional, Union

import jwt
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from bioauth.errors import TokenExpired, TokenInvalid
from bioauth.models.data_models import (
    Identity,
    SessionTokens,
    TokenClaims,
    TokenValidationResult,
)

logger = logging.getLogger(__name__)

ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"

_DURATION_RE = re.compile(r"^(\d+)([smhd])$")
_DURATION_UNITS = {"s": 1, "m": 60, "h": 3600, "d": 86400}


def parse_duration(value: Union[str, int]) -> int:
    """
    Parse a lifetime such as "30s", "15m", "1h", "7d" or "3600" into seconds.

    Raises:
        ValueError: If the value is not a positive duration
    """
    if isinstance(value, int):
        seconds = value
    else:
        text = value.strip()
        if text.isdigit():
            seconds = int(text)
        else:
            match = _DURATION_RE.match(text)
            if not match:
                raise ValueError(f"Invalid duration: '{value}'")
            seconds = int(match.group(1)) * _DURATION_UNITS[match.group(2)]
    if seconds <= 0:
        raise ValueError(f"Duration must be positive: '{value}'")
    return seconds


class TokenIssuer:
    """Creates and verifies signed session tokens"""

    DEFAULT_ACCESS_EXPIRY = "1h"
    DEFAULT_REFRESH_EXPIRY = "7d"

    def __init__(
        self,
        secret: Optional[str] = None,
        private_key: Optional[str] = None,
        public_key: Optional[str] = None,
        issuer: str = "bioauth-service",
        audience: str = "bioauth-api",
        access_expiry: Union[str, int] = DEFAULT_ACCESS_EXPIRY,
        refresh_expiry: Union[str, int] = DEFAULT_REFRESH_EXPIRY,
        clock=time.time,
    ):
        """
        Args:
            secret: Shared HS256 secret (used when no key pair is given)
            private_key: PEM-encoded RSA private key for RS256 signing
            public_key: PEM-encoded RSA public key for RS256 verification
            issuer: Value of the ``iss`` claim, checked on verify
            audience: Value of the ``aud`` claim, checked on verify
            access_expiry: Access token lifetime
            refresh_expiry: Refresh token lifetime
            clock: Time source returning epoch seconds
        """
        self.issuer = issuer
        self.audience = audience
        self.access_expiry_seconds = parse_duration(access_expiry)
        self.refresh_expiry_seconds = parse_duration(refresh_expiry)
        self._clock = clock

        if private_key and public_key:
            self.algorithm = "RS256"
            self._signing_key = private_key
            self._verify_key = public_key
        elif secret:
            self.algorithm = "HS256"
            self._signing_key = secret
            self._verify_key = secret
        else:
            logger.warning("No JWT signing key configured, generating an ephemeral RSA key pair")
            self.algorithm = "RS256"
            self._signing_key, self._verify_key = self._generate_key_pair()

        logger.info(f"TokenIssuer initialized with {self.algorithm}")

    @staticmethod
    def _generate_key_pair():
        private = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        private_pem = private.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )
        public_pem = private.public_key().public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )
        return private_pem, public_pem

    def issue(self, identity: Identity) -> SessionTokens:
        """
        Mint an access/refresh token pair for an identity.

        Args:
            identity: Verified identity record

        Returns:
            SessionTokens with both tokens and the access lifetime
        """
        now = int(self._clock())
        access_payload = {
            "sub": identity.identity_id,
            "email": identity.email,
            "role": identity.role,
            "access_level": identity.access_level,
            "token_type": ACCESS_TOKEN_TYPE,
        }
        refresh_payload = {
            "sub": identity.identity_id,
            "token_type": REFRESH_TOKEN_TYPE,
        }

        access_token = self._encode(access_payload, now, self.access_expiry_seconds)
        refresh_token = self._encode(refresh_payload, now, self.refresh_expiry_seconds)

        logger.info(f"Issued session tokens for identity {identity.identity_id}")

        return SessionTokens(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in_seconds=self.access_expiry_seconds,
        )

    def _encode(self, payload: dict, now: int, lifetime: int) -> str:
        claims = dict(payload)
        claims.update({
            "iat": now,
            "exp": now + lifetime,
            "iss": self.issuer,
            "aud": self.audience,
            "jti": str(uuid.uuid4()),
        })
        return jwt.encode(claims, self._signing_key, algorithm=self.algorithm)

    def verify(self, token: str, expected_type: str = ACCESS_TOKEN_TYPE) -> TokenClaims:
        """
        Verify signature, expiry, issuer, audience and token type.

        Args:
            token: Encoded JWT
            expected_type: "access" or "refresh"

        Returns:
            Verified TokenClaims

        Raises:
            TokenExpired: If the token is past its expiry
            TokenInvalid: For any other verification failure
        """
        if not token:
            raise TokenInvalid("Token is required")

        try:
            decoded = jwt.decode(
                token,
                self._verify_key,
                algorithms=[self.algorithm],
                issuer=self.issuer,
                audience=self.audience,
                # exp and iat are checked against the injected clock below
                options={
                    "require": ["exp", "iat", "iss", "aud", "sub"],
                    "verify_exp": False,
                    "verify_iat": False,
                },
            )
        except jwt.InvalidTokenError as e:
            logger.warning(f"Token verification failed: {e}")
            raise TokenInvalid("Invalid token")

        if decoded["exp"] <= self._clock():
            raise TokenExpired("Token expired")

        token_type = decoded.get("token_type")
        if token_type != expected_type:
            logger.warning(f"Token type mismatch: expected {expected_type}, got {token_type}")
            raise TokenInvalid("Invalid token type")

        return TokenClaims(
            subject_id=decoded["sub"],
            issued_at=decoded["iat"],
            expires_at=decoded["exp"],
            issuer=decoded["iss"],
            audience=decoded["aud"],
            token_type=token_type,
            token_id=decoded.get("jti", ""),
            email=decoded.get("email"),
            role=decoded.get("role"),
            access_level=decoded.get("access_level"),
        )

    def refresh(self, refresh_token: str, identity: Identity) -> SessionTokens:
        """
        Exchange a valid refresh token for a new token pair.

        Raises:
            TokenInvalid: If the token is invalid or belongs to another identity
            TokenExpired: If the refresh token has expired
        """
        claims = self.verify(refresh_token, expected_type=REFRESH_TOKEN_TYPE)
        if claims.subject_id != identity.identity_id:
            logger.warning(f"Refresh token subject mismatch for identity {identity.identity_id}")
            raise TokenInvalid("Token user mismatch")

        logger.info(f"Refreshing tokens for identity {identity.identity_id}")
        return self.issue(identity)

    def validate_token(self, token: str) -> TokenValidationResult:
        """Non-raising wrapper around verify() for the validation endpoint."""
        try:
            return TokenValidationResult(valid=True, claims=self.verify(token))
        except TokenInvalid as e:
            return TokenValidationResult(valid=False, error=e.message)
