from __future__ import annotations

import asyncio
import hmac
from datetime import timedelta
from typing import Optional

from medhub.logging import email_hash, get_logger
from medhub.service.background import BackgroundTasks
from medhub.service.email import EmailService
from medhub.service.errors import ValidationError
from medhub.service.passwords import PasswordManager, validate_password_strength
from medhub.service.tokens import (
    TokenError,
    TokenIssuer,
    TokenPurpose,
    password_fingerprint,
)
from medhub.storage.models import Account

logger = get_logger(__name__)

RESET_REQUESTED = "If the email exists, a password reset link has been sent"
RESET_COMPLETED = "Password has been reset successfully"
INVALID_RESET_TOKEN = "Invalid or expired reset token"


class PasswordResetService:
    """Forgot-password flow.

    Reset tokens embed a fingerprint of the password hash they were minted
    against. Redeeming one changes the hash, so every token becomes single
    use without any server-side token table.

    Any other write of the hash also retires outstanding tokens, including
    the transparent argon2 parameter upgrade done on login. A user who signs
    in with an outdated hash after requesting a reset must request a new link.
    """

    def __init__(
        self,
        store,
        tokens: TokenIssuer,
        passwords: PasswordManager,
        email: EmailService,
        *,
        ttl: timedelta = timedelta(hours=1),
        background: Optional[BackgroundTasks] = None,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.passwords = passwords
        self.email = email
        self.ttl = ttl
        self.background = background or BackgroundTasks()

    def mint(self, account: Account) -> str:
        token, _ = self.tokens.issue(
            TokenPurpose.PASSWORD_RESET,
            account.id,
            self.ttl,
            pwd=password_fingerprint(account.password_hash),
        )
        return token

    async def request_password_reset(self, email: str) -> str:
        """Always answers the same message whether or not the address exists."""
        account = self.store.get_account_by_email(email)
        if not account:
            logger.info("password_reset_unknown_email", email_hash=email_hash(email))
            return RESET_REQUESTED
        token = self.mint(account)
        self.background.spawn(
            self._send(account, token), name=f"password_reset_email:{account.id}"
        )
        logger.info("password_reset_requested", account_id=account.id)
        return RESET_REQUESTED

    async def _send(self, account: Account, token: str) -> None:
        sent = await asyncio.to_thread(
            self.email.send_password_reset,
            account.email,
            token,
            first_name=account.first_name,
            ttl_minutes=int(self.ttl.total_seconds() // 60),
        )
        if not sent:
            logger.warning("password_reset_email_failed", account_id=account.id)

    async def reset_password(self, token: str, new_password: str) -> str:
        try:
            validate_password_strength(new_password)
        except ValueError as exc:
            raise ValidationError(str(exc), detail={"field": "newPassword"})
        try:
            claims = self.tokens.verify(token, TokenPurpose.PASSWORD_RESET)
        except TokenError as exc:
            logger.info("password_reset_rejected", reason=exc.reason)
            raise ValidationError(INVALID_RESET_TOKEN)
        account = self.store.get_account(str(claims["sub"]))
        if not account:
            logger.info("password_reset_rejected", reason="unknown_account")
            raise ValidationError(INVALID_RESET_TOKEN)
        expected = password_fingerprint(account.password_hash)
        presented = str(claims.get("pwd") or "")
        if not hmac.compare_digest(expected, presented):
            # already redeemed, or the password changed after minting
            logger.info("password_reset_rejected", reason="stale", account_id=account.id)
            raise ValidationError(INVALID_RESET_TOKEN)
        self.store.update_password(
            account.id, self.passwords.hash(new_password), clear_refresh_token=True
        )
        logger.info("password_reset_completed", account_id=account.id)
        return RESET_COMPLETED
