from __future__ import annotations

import asyncio
from datetime import timedelta

from medhub.logging import get_logger
from medhub.service.email import EmailService
from medhub.service.errors import EmailDeliveryError, NotFoundError, ValidationError
from medhub.service.tokens import TokenError, TokenIssuer, TokenPurpose
from medhub.storage.models import Account, normalize_email

logger = get_logger(__name__)

VERIFICATION_SENT = "Verification email sent"
ALREADY_VERIFIED = "Email is already verified"
EMAIL_VERIFIED = "Email verified successfully"
INVALID_VERIFICATION_TOKEN = "Invalid or expired verification token"


class EmailVerificationService:
    """Mints and redeems email-verification tokens.

    A token binds the account id to the address it was sent to, so a token
    minted before an address change no longer verifies.
    """

    def __init__(
        self,
        store,
        tokens: TokenIssuer,
        email: EmailService,
        *,
        ttl: timedelta = timedelta(hours=24),
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.email = email
        self.ttl = ttl

    def mint(self, account: Account) -> str:
        token, _ = self.tokens.issue(
            TokenPurpose.VERIFY_EMAIL,
            account.id,
            self.ttl,
            email=normalize_email(account.email),
        )
        return token

    async def send_for_account(self, account: Account) -> str:
        token = self.mint(account)
        sent = await asyncio.to_thread(
            self.email.send_email_verification,
            account.email,
            token,
            first_name=account.first_name,
            ttl_minutes=int(self.ttl.total_seconds() // 60),
        )
        if not sent:
            raise EmailDeliveryError("Failed to send verification email")
        logger.info("verification_email_sent", account_id=account.id)
        return token

    async def send_verification_email(self, account_id: str) -> str:
        """Send a fresh verification link; repeatable.

        Raises:
            NotFoundError: unknown account.
            EmailDeliveryError: the mail transport reported failure.
        """
        account = self.store.get_account(account_id)
        if not account:
            raise NotFoundError("User not found")
        return await self.send_for_account(account)

    async def verify_email(self, token: str) -> str:
        try:
            claims = self.tokens.verify(token, TokenPurpose.VERIFY_EMAIL)
        except TokenError as exc:
            logger.info("email_verification_rejected", reason=exc.reason)
            raise ValidationError(INVALID_VERIFICATION_TOKEN)
        account = self.store.get_account(str(claims["sub"]))
        if not account or normalize_email(account.email) != claims.get("email"):
            logger.info("email_verification_rejected", reason="account_mismatch")
            raise ValidationError(INVALID_VERIFICATION_TOKEN)
        if not account.email_verified:
            self.store.mark_email_verified(account.id)
            logger.info("email_verified", account_id=account.id)
        return EMAIL_VERIFIED
