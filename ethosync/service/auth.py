from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from datetime import timedelta
from typing import Any, Optional

from ethosync.logging import get_logger
from ethosync.service.errors import AuthenticationError
from ethosync.storage.errors import ConstraintViolation
from ethosync.storage.models import User

logger = get_logger(__name__)


class AuthService:
    """Verifies identity-provider bearer tokens and maps them to tenant accounts.

    Tokens are HS256 JWTs signed with the shared ``JWT_SECRET``. The ``sub``
    claim is the identity id; a tenant account is created the first time an
    identity is seen.
    """

    def __init__(self, store, settings) -> None:
        self.store = store
        self.settings = settings
        self._clock_skew_leeway = timedelta(seconds=30)

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
            ).digest()
        )

    def issue_access_token(
        self,
        subject: str,
        *,
        email: Optional[str] = None,
        name: Optional[str] = None,
        ttl_seconds: int = 3600,
    ) -> str:
        """Mint a token the way the identity provider does; used by tests and local tooling."""
        if not self.settings.jwt_secret:
            raise RuntimeError("JWT_SECRET is not configured")
        payload: dict[str, Any] = {"sub": subject, "exp": int(time.time()) + ttl_seconds}
        if email:
            payload["email"] = email
        if name:
            payload["name"] = name
        if self.settings.jwt_issuer:
            payload["iss"] = self.settings.jwt_issuer
        if self.settings.jwt_audience:
            payload["aud"] = self.settings.jwt_audience
        header_enc = self._encode_segment(
            json.dumps({"alg": "HS256", "typ": "JWT"}, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        if not self.settings.jwt_secret:
            logger.warning("jwt_secret_missing")
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if self.settings.jwt_issuer and payload.get("iss") != self.settings.jwt_issuer:
            return None
        if self.settings.jwt_audience:
            aud = payload.get("aud")
            if isinstance(aud, str):
                valid_aud = aud == self.settings.jwt_audience
            elif isinstance(aud, list):
                valid_aud = self.settings.jwt_audience in aud
            else:
                valid_aud = False
            if not valid_aud:
                return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= time.time() - self._clock_skew_leeway.total_seconds():
            return None
        if not payload.get("sub"):
            return None
        return payload

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        scheme, _, token = header.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return None
        return token.strip()

    def authenticate(self, authorization: Optional[str]) -> User:
        """Return the tenant for a bearer header, creating the account on first use."""
        token = self._extract_bearer(authorization)
        claims = self._decode_jwt(token) if token else None
        if not claims:
            raise AuthenticationError("Unauthorized")
        identity_id = str(claims["sub"])
        user = self.store.get_user_by_identity(identity_id)
        if user is not None:
            return user
        email = claims.get("email") or f"{identity_id}@users.invalid"
        try:
            user = self.store.create_user(identity_id, email, claims.get("name"))
        except ConstraintViolation:
            # Concurrent first requests for the same identity
            user = self.store.get_user_by_identity(identity_id)
            if user is None:
                raise
        else:
            logger.info("tenant_account_created", user_id=user.id)
        return user

    def verify_webhook(self, authorization: Optional[str]) -> None:
        expected = self.settings.webhook_auth_token
        if not expected:
            return
        token = self._extract_bearer(authorization)
        if not token or not hmac.compare_digest(token, expected):
            logger.warning("webhook_auth_failed")
            raise AuthenticationError("Unauthorized")
