"""Tests for password reset and email verification flows."""

from datetime import datetime, timedelta, timezone

import pytest
from argon2 import PasswordHasher

from medhub.config import Settings
from medhub.service.auth import AuthService
from medhub.service.background import BackgroundTasks
from medhub.service.email import EmailService
from medhub.service.email_verification import (
    EMAIL_VERIFIED,
    INVALID_VERIFICATION_TOKEN,
    EmailVerificationService,
)
from medhub.service.errors import (
    AuthenticationError,
    EmailDeliveryError,
    NotFoundError,
    ValidationError,
)
from medhub.service.lockout import LockoutPolicy
from medhub.service.password_reset import (
    INVALID_RESET_TOKEN,
    RESET_COMPLETED,
    RESET_REQUESTED,
    PasswordResetService,
)
from medhub.service.passwords import PasswordManager
from medhub.service.tokens import TokenIssuer, TokenPurpose
from medhub.storage.memory import MemoryStore

PASSWORD = "Abcdef1!"
NEW_PASSWORD = "Newpass9$"


class FakeClock:
    def __init__(self, start: datetime):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


class RecordingEmail:
    def __init__(self, ok: bool = True):
        self.ok = ok
        self.verifications = []
        self.resets = []

    def send_email_verification(self, to_email, token, *, first_name="", ttl_minutes=0):
        self.verifications.append((to_email, token, ttl_minutes))
        return self.ok

    def send_password_reset(self, to_email, token, *, first_name="", ttl_minutes=0):
        self.resets.append((to_email, token, ttl_minutes))
        return self.ok


@pytest.fixture
def clock():
    return FakeClock(datetime.now(timezone.utc).replace(microsecond=0))


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def tokens(clock):
    return TokenIssuer(
        Settings(
            jwt_access_secret="recovery-access-secret-000",
            jwt_refresh_secret="recovery-refresh-secret-000",
        ),
        clock=clock,
    )


@pytest.fixture
def passwords():
    return PasswordManager(PasswordHasher(time_cost=1, memory_cost=1024, parallelism=1))


@pytest.fixture
def email():
    return RecordingEmail()


@pytest.fixture
def background():
    return BackgroundTasks()


@pytest.fixture
def reset_service(store, tokens, passwords, email, background):
    return PasswordResetService(
        store, tokens, passwords, email, ttl=timedelta(hours=1), background=background
    )


@pytest.fixture
def verification(store, tokens, email):
    return EmailVerificationService(store, tokens, email, ttl=timedelta(hours=24))


@pytest.fixture
def auth(store, tokens, passwords, background):
    return AuthService(store, tokens, passwords, LockoutPolicy(), background=background)


class TestPasswordReset:
    async def test_request_is_indistinguishable_for_unknown_email(
        self, auth, reset_service, email, background
    ):
        await auth.register("a@b.com", PASSWORD, "Ada", "Lovelace")

        known = await reset_service.request_password_reset("a@b.com")
        unknown = await reset_service.request_password_reset("nobody@b.com")
        await background.drain()

        assert known == unknown == RESET_REQUESTED
        assert [to for to, _, _ in email.resets] == ["a@b.com"]
        assert email.resets[0][2] == 60

    async def test_reset_changes_password_and_revokes_sessions(
        self, auth, reset_service, email, background
    ):
        registered = await auth.register("a@b.com", PASSWORD, "Ada", "Lovelace")
        await reset_service.request_password_reset("a@b.com")
        await background.drain()
        token = email.resets[0][1]

        assert await reset_service.reset_password(token, NEW_PASSWORD) == RESET_COMPLETED

        with pytest.raises(AuthenticationError):
            await auth.refresh(registered.refresh_token)
        with pytest.raises(AuthenticationError):
            await auth.login("a@b.com", PASSWORD)
        assert (await auth.login("a@b.com", NEW_PASSWORD)).account.id == registered.account.id

    async def test_reset_token_is_single_use(self, auth, reset_service, store):
        registered = await auth.register("a@b.com", PASSWORD, "Ada", "Lovelace")
        token = reset_service.mint(store.get_account(registered.account.id))

        await reset_service.reset_password(token, NEW_PASSWORD)

        with pytest.raises(ValidationError) as excinfo:
            await reset_service.reset_password(token, "Another1!")
        assert excinfo.value.message == INVALID_RESET_TOKEN

    async def test_login_rehash_retires_outstanding_reset_token(
        self, auth, reset_service, store
    ):
        stale = PasswordHasher(time_cost=2, memory_cost=1024, parallelism=1).hash(PASSWORD)
        account = store.create_account("a@b.com", stale, "Ada", "Lovelace", ["Patient"])
        token = reset_service.mint(account)

        await auth.login("a@b.com", PASSWORD)

        assert store.get_account(account.id).password_hash != stale
        with pytest.raises(ValidationError) as excinfo:
            await reset_service.reset_password(token, NEW_PASSWORD)
        assert excinfo.value.message == INVALID_RESET_TOKEN

    async def test_reset_clears_lockout(self, auth, reset_service, store):
        registered = await auth.register("a@b.com", PASSWORD, "Ada", "Lovelace")
        for _ in range(5):
            with pytest.raises(AuthenticationError):
                await auth.login("a@b.com", "Wrong-pass1!")
        token = reset_service.mint(store.get_account(registered.account.id))

        await reset_service.reset_password(token, NEW_PASSWORD)

        assert (await auth.login("a@b.com", NEW_PASSWORD)).account.failed_login_attempts == 0

    async def test_expired_reset_token_rejected(self, auth, reset_service, store, clock):
        registered = await auth.register("a@b.com", PASSWORD, "Ada", "Lovelace")
        token = reset_service.mint(store.get_account(registered.account.id))
        clock.advance(hours=1)

        with pytest.raises(ValidationError):
            await reset_service.reset_password(token, NEW_PASSWORD)

    async def test_access_token_is_not_a_reset_token(self, auth, reset_service):
        registered = await auth.register("a@b.com", PASSWORD, "Ada", "Lovelace")

        with pytest.raises(ValidationError):
            await reset_service.reset_password(registered.access_token, NEW_PASSWORD)

    async def test_weak_new_password_rejected_before_token_check(self, reset_service):
        with pytest.raises(ValidationError) as excinfo:
            await reset_service.reset_password("not-a-token", "weak")
        assert excinfo.value.detail == {"field": "newPassword"}

    async def test_transport_failure_does_not_leak(
        self, auth, store, tokens, passwords, background
    ):
        failing = PasswordResetService(
            store, tokens, passwords, RecordingEmail(ok=False), background=background
        )
        await auth.register("a@b.com", PASSWORD, "Ada", "Lovelace")

        assert await failing.request_password_reset("a@b.com") == RESET_REQUESTED
        await background.drain()


class TestEmailVerification:
    async def test_verify_marks_account_and_is_idempotent(self, auth, verification, store):
        registered = await auth.register("a@b.com", PASSWORD, "Ada", "Lovelace")
        token = verification.mint(registered.account)

        assert await verification.verify_email(token) == EMAIL_VERIFIED
        assert await verification.verify_email(token) == EMAIL_VERIFIED
        assert store.get_account(registered.account.id).email_verified

    async def test_send_verification_email_uses_ttl(self, auth, verification, email):
        registered = await auth.register("a@b.com", PASSWORD, "Ada", "Lovelace")

        token = await verification.send_verification_email(registered.account.id)

        assert email.verifications == [("a@b.com", token, 24 * 60)]

    async def test_unknown_account(self, verification):
        with pytest.raises(NotFoundError):
            await verification.send_verification_email("missing")

    async def test_transport_failure_surfaces(self, auth, store, tokens):
        registered = await auth.register("a@b.com", PASSWORD, "Ada", "Lovelace")
        failing = EmailVerificationService(store, tokens, RecordingEmail(ok=False))

        with pytest.raises(EmailDeliveryError) as excinfo:
            await failing.send_verification_email(registered.account.id)
        assert excinfo.value.status_code == 500

    async def test_expired_token_rejected(self, auth, verification, clock):
        registered = await auth.register("a@b.com", PASSWORD, "Ada", "Lovelace")
        token = verification.mint(registered.account)
        clock.advance(hours=24)

        with pytest.raises(ValidationError) as excinfo:
            await verification.verify_email(token)
        assert excinfo.value.message == INVALID_VERIFICATION_TOKEN

    async def test_token_bound_to_email(self, auth, verification, tokens):
        registered = await auth.register("a@b.com", PASSWORD, "Ada", "Lovelace")
        forged, _ = tokens.issue(
            TokenPurpose.VERIFY_EMAIL,
            registered.account.id,
            timedelta(hours=1),
            email="other@b.com",
        )

        with pytest.raises(ValidationError):
            await verification.verify_email(forged)

    async def test_reset_token_does_not_verify_email(self, auth, verification, reset_service):
        registered = await auth.register("a@b.com", PASSWORD, "Ada", "Lovelace")
        token = reset_service.mint(registered.account)

        with pytest.raises(ValidationError):
            await verification.verify_email(token)


class TestEmailService:
    def test_unconfigured_service_logs_instead_of_sending(self):
        service = EmailService(base_url="https://app.example/")

        assert not service.is_configured
        assert service.send_email_verification("a@b.com", "tok", first_name="Ada")

    def test_links_point_at_frontend(self):
        service = EmailService(base_url="https://app.example/")

        assert service.link_for("verify-email", "a.b.c") == "https://app.example/verify-email?token=a.b.c"
        assert service.link_for("/reset-password", "x y").endswith("/reset-password?token=x+y")

    def test_redacts_recipient(self):
        assert EmailService._redact_email("alice@example.com") == "al***@example.com"
        assert EmailService._redact_email("nonsense") == "redacted"
