"""Signed, expiring, purpose-scoped tokens (HS256 JWT).

Access, email-verification and password-reset tokens share the access
secret; refresh tokens use their own. Every token carries a ``typ`` claim
naming its purpose and verification checks both the secret and the claim,
so a token minted for one purpose never verifies for another.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Optional

from medhub.config import ConfigurationError, Settings
from medhub.logging import get_logger
from medhub.storage.models import Account

logger = get_logger(__name__)

Clock = Callable[[], datetime]


class TokenPurpose(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"
    VERIFY_EMAIL = "verify_email"
    PASSWORD_RESET = "password_reset"


class TokenError(Exception):
    """Token failed verification. ``reason`` is for logs only, never for clients."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime


def password_fingerprint(password_hash: str) -> str:
    """Short digest of the stored hash; changes whenever the password does."""
    return hashlib.sha256(password_hash.encode("utf-8")).hexdigest()[:32]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenIssuer:
    def __init__(self, settings: Settings, *, clock: Optional[Clock] = None) -> None:
        access_secret = settings.jwt_access_secret
        refresh_secret = settings.jwt_refresh_secret
        if not access_secret or not refresh_secret:
            raise ConfigurationError("JWT_SECRET and JWT_REFRESH_SECRET must be set")
        if access_secret == refresh_secret:
            raise ConfigurationError("JWT_SECRET and JWT_REFRESH_SECRET must differ")
        self._secrets = {
            TokenPurpose.ACCESS: access_secret.encode(),
            TokenPurpose.VERIFY_EMAIL: access_secret.encode(),
            TokenPurpose.PASSWORD_RESET: access_secret.encode(),
            TokenPurpose.REFRESH: refresh_secret.encode(),
        }
        self.issuer = settings.jwt_issuer
        self.audience = settings.jwt_audience
        self.access_ttl = timedelta(minutes=settings.access_token_ttl_minutes)
        self.refresh_ttl = timedelta(minutes=settings.refresh_token_ttl_minutes)
        self.leeway = timedelta(seconds=settings.jwt_leeway_seconds)
        self.clock: Clock = clock or _utcnow

    def now(self) -> datetime:
        return self.clock()

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str, purpose: TokenPurpose) -> str:
        digest = hmac.new(
            self._secrets[purpose], signing_input.encode(), hashlib.sha256
        ).digest()
        return self._encode_segment(digest)

    def _encode_jwt(self, payload: dict[str, Any], purpose: TokenPurpose) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, purpose)}"

    def issue(
        self,
        purpose: TokenPurpose,
        subject: str,
        ttl: timedelta,
        **claims: Any,
    ) -> tuple[str, datetime]:
        """Mint a token for ``purpose``; returns ``(token, expires_at)``."""
        now = self.now()
        expires_at = now + ttl
        payload = {
            **claims,
            "iss": self.issuer,
            "aud": self.audience,
            "sub": subject,
            "typ": purpose.value,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
            # Distinguishes tokens minted within the same second
            "jti": uuid.uuid4().hex,
        }
        return self._encode_jwt(payload, purpose), expires_at

    def issue_pair(self, account: Account) -> TokenPair:
        roles = list(account.roles)
        access_token, access_exp = self.issue(
            TokenPurpose.ACCESS, account.id, self.access_ttl, roles=roles
        )
        refresh_token, refresh_exp = self.issue(
            TokenPurpose.REFRESH, account.id, self.refresh_ttl, roles=roles
        )
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            access_expires_at=access_exp,
            refresh_expires_at=refresh_exp,
        )

    def verify(self, token: str, purpose: TokenPurpose) -> dict[str, Any]:
        """Return the claims of a valid token or raise :class:`TokenError`."""
        if not token or not isinstance(token, str):
            raise TokenError("empty")
        if not token.isascii():
            raise TokenError("malformed")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise TokenError("malformed")

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            raise TokenError("header_decode_failed")
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", purpose=purpose.value)
            raise TokenError("algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}", purpose)
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise TokenError("signature")
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError):
            raise TokenError("payload_decode_failed")
        if not isinstance(payload, dict):
            raise TokenError("payload_decode_failed")

        if payload.get("typ") != purpose.value:
            raise TokenError("purpose")
        if payload.get("iss") != self.issuer or payload.get("aud") != self.audience:
            raise TokenError("audience")
        if not payload.get("sub"):
            raise TokenError("subject")
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise TokenError("expiry_missing")
        if exp_ts <= (self.now() - self.leeway).timestamp():
            raise TokenError("expired")
        return payload
