from __future__ import annotations

import hmac
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, List, Optional, Protocol

from medhub.logging import email_hash, get_logger
from medhub.service.background import BackgroundTasks
from medhub.service.errors import AuthenticationError, ConflictError, NotFoundError
from medhub.service.lockout import LockoutPolicy
from medhub.service.passwords import PasswordManager
from medhub.service.profiles import PatientProfileHook
from medhub.service.roles import SELF_REGISTRATION_ROLES, Role, has_role, parse_roles
from medhub.service.tokens import TokenError, TokenIssuer, TokenPair, TokenPurpose
from medhub.storage.errors import ConstraintViolation
from medhub.storage.models import Account, normalize_email

if TYPE_CHECKING:
    from medhub.service.email_verification import EmailVerificationService

logger = get_logger(__name__)

INVALID_CREDENTIALS = "Invalid credentials"
INVALID_REFRESH_TOKEN = "Invalid or expired refresh token"
EMAIL_TAKEN = "User with this email already exists"


class AccountStore(Protocol):
    def create_account(
        self,
        email: str,
        password_hash: str,
        first_name: str,
        last_name: str,
        roles: List[str],
        *,
        email_verified: bool = False,
    ) -> Account: ...

    def get_account(self, account_id: str) -> Optional[Account]: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def list_accounts(self, role: Optional[str] = None, limit: int = 100) -> List[Account]: ...

    def update_login_state(
        self, account_id: str, failed_attempts: int, locked_until: Optional[datetime]
    ) -> Optional[Account]: ...

    def update_refresh_token(
        self, account_id: str, refresh_token: Optional[str]
    ) -> Optional[Account]: ...

    def update_password(
        self, account_id: str, password_hash: str, *, clear_refresh_token: bool = True
    ) -> Optional[Account]: ...

    def mark_email_verified(self, account_id: str) -> Optional[Account]: ...


@dataclass
class AuthContext:
    account_id: str
    roles: List[str] = field(default_factory=list)

    def has_role(self, role: Role | str) -> bool:
        return has_role(self.roles, role)


@dataclass
class AuthResult:
    account: Account
    tokens: TokenPair

    @property
    def access_token(self) -> str:
        return self.tokens.access_token

    @property
    def refresh_token(self) -> str:
        return self.tokens.refresh_token


class AuthService:
    """Registration, login with lockout, refresh rotation and logout.

    Access tokens are stateless and stay valid until they expire; only the
    single refresh token persisted on the account can be revoked.
    """

    def __init__(
        self,
        store: AccountStore,
        tokens: TokenIssuer,
        passwords: PasswordManager,
        lockout: LockoutPolicy,
        *,
        profiles: Optional[PatientProfileHook] = None,
        verification: Optional["EmailVerificationService"] = None,
        background: Optional[BackgroundTasks] = None,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.passwords = passwords
        self.lockout = lockout
        self.profiles = profiles
        self.verification = verification
        self.background = background or BackgroundTasks()
        self.logger = logger

    def _now(self) -> datetime:
        return self.tokens.now()

    async def register(
        self, email: str, password: str, first_name: str, last_name: str
    ) -> AuthResult:
        """Self-service signup. The account always gets exactly ``[Patient]``."""
        account = self._create_account(
            email, password, first_name, last_name, list(SELF_REGISTRATION_ROLES)
        )
        self._create_patient_profile(account)
        result = self._start_session(account)
        self._dispatch_verification(account)
        self.logger.info("account_registered", account_id=account.id)
        return result

    async def admin_create_user(
        self,
        email: str,
        password: str,
        first_name: str,
        last_name: str,
        roles: List[str],
        *,
        admin_id: str,
    ) -> AuthResult:
        """Create an account with an explicit role set on behalf of an admin.

        Raises:
            ConflictError: duplicate email, or a role outside the role set.
            ValidationError: empty role list.
        """
        granted = parse_roles(roles)
        account = self._create_account(email, password, first_name, last_name, granted)
        self.logger.info(
            "admin_created_user",
            admin_id=admin_id,
            account_id=account.id,
            roles=granted,
        )
        if Role.PATIENT.value in granted:
            self._create_patient_profile(account)
        result = self._start_session(account)
        self._dispatch_verification(account)
        return result

    async def login(self, email: str, password: str) -> AuthResult:
        account = self.store.get_account_by_email(email)
        if not account:
            self.logger.info("login_unknown_email", email_hash=email_hash(email))
            raise AuthenticationError(INVALID_CREDENTIALS)

        now = self._now()
        if self.lockout.is_locked(account.account_locked_until, now):
            minutes = self.lockout.remaining_minutes(account.account_locked_until, now)
            self.logger.info("login_rejected_locked", account_id=account.id, minutes_left=minutes)
            raise AuthenticationError(
                f"Account is locked. Please try again in {minutes} minute(s)."
            )

        if not self.passwords.verify(account.password_hash, password):
            decision = self.lockout.register_failure(account.failed_login_attempts, now)
            self.store.update_login_state(
                account.id, decision.failed_attempts, decision.locked_until
            )
            if decision.locked:
                self.logger.warning(
                    "account_locked",
                    account_id=account.id,
                    failed_attempts=decision.failed_attempts,
                    locked_until=decision.locked_until.isoformat(),
                )
                raise AuthenticationError(
                    "Account locked due to multiple failed login attempts. "
                    f"Please try again in {self.lockout.duration_minutes} minutes."
                )
            self.logger.info(
                "login_bad_password",
                account_id=account.id,
                failed_attempts=decision.failed_attempts,
            )
            raise AuthenticationError(INVALID_CREDENTIALS)

        if account.failed_login_attempts or account.account_locked_until:
            reset = self.lockout.reset()
            self.store.update_login_state(account.id, reset.failed_attempts, reset.locked_until)
            account.failed_login_attempts = reset.failed_attempts
            account.account_locked_until = reset.locked_until
        if self.passwords.needs_rehash(account.password_hash):
            self.store.update_password(
                account.id, self.passwords.hash(password), clear_refresh_token=False
            )
        result = self._start_session(account)
        self.logger.info("login_succeeded", account_id=account.id)
        return result

    async def refresh(self, refresh_token: str) -> TokenPair:
        """Rotate the refresh token. The presented token stops working."""
        try:
            claims = self.tokens.verify(refresh_token, TokenPurpose.REFRESH)
        except TokenError as exc:
            self.logger.info("refresh_rejected", reason=exc.reason)
            raise AuthenticationError(INVALID_REFRESH_TOKEN)
        account = self.store.get_account(str(claims["sub"]))
        if not account:
            self.logger.info("refresh_rejected", reason="unknown_account")
            raise AuthenticationError(INVALID_REFRESH_TOKEN)
        current = account.refresh_token
        if not current or not hmac.compare_digest(current.encode(), refresh_token.encode()):
            self.logger.warning("refresh_rejected", reason="not_current", account_id=account.id)
            raise AuthenticationError(INVALID_REFRESH_TOKEN)
        pair = self.tokens.issue_pair(account)
        self.store.update_refresh_token(account.id, pair.refresh_token)
        self.logger.info("refresh_rotated", account_id=account.id)
        return pair

    async def logout(self, account_id: str, refresh_token: Optional[str] = None) -> None:
        # The presented refresh token is ignored; logout always clears the
        # stored one so the call is idempotent.
        self.store.update_refresh_token(account_id, None)
        self.logger.info("logout", account_id=account_id)

    def get_profile(self, account_id: str) -> Account:
        account = self.store.get_account(account_id)
        if not account:
            raise NotFoundError("User not found")
        return account

    def authenticate(self, authorization: Optional[str]) -> Optional[AuthContext]:
        token = self._extract_bearer(authorization)
        if not token:
            return None
        try:
            claims = self.tokens.verify(token, TokenPurpose.ACCESS)
        except TokenError as exc:
            self.logger.info("access_token_rejected", reason=exc.reason)
            return None
        roles = claims.get("roles")
        if not isinstance(roles, list):
            return None
        return AuthContext(account_id=str(claims["sub"]), roles=[str(r) for r in roles])

    async def drain_background_tasks(self, timeout: Optional[float] = None) -> None:
        await self.background.drain(timeout)

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        scheme, _, token = header.strip().partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return None
        return token.strip()

    def _create_account(
        self,
        email: str,
        password: str,
        first_name: str,
        last_name: str,
        roles: List[str],
    ) -> Account:
        normalized = normalize_email(email)
        if self.store.get_account_by_email(normalized):
            raise ConflictError(EMAIL_TAKEN, detail={"field": "email"})
        try:
            return self.store.create_account(
                normalized,
                self.passwords.hash(password),
                first_name.strip(),
                last_name.strip(),
                roles,
            )
        except ConstraintViolation:
            # lost a race with a concurrent signup for the same address
            raise ConflictError(EMAIL_TAKEN, detail={"field": "email"})

    def _start_session(self, account: Account) -> AuthResult:
        pair = self.tokens.issue_pair(account)
        updated = self.store.update_refresh_token(account.id, pair.refresh_token)
        return AuthResult(account=updated or account, tokens=pair)

    def _create_patient_profile(self, account: Account) -> None:
        if not self.profiles:
            return
        try:
            self.profiles.create_from_account(account)
        except Exception as exc:
            # The account stands even when the clinical profile cannot be made.
            self.logger.warning(
                "patient_profile_create_failed",
                account_id=account.id,
                error_type=type(exc).__name__,
                error=str(exc),
            )

    def _dispatch_verification(self, account: Account) -> None:
        if not self.verification:
            return
        self.background.spawn(
            self.verification.send_for_account(account),
            name=f"verification_email:{account.id}",
        )
