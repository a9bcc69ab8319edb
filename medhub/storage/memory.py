from __future__ import annotations

import json
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from medhub.logging import get_logger
from medhub.storage.errors import ConstraintViolation
from medhub.storage.models import Account, PatientProfile, normalize_email, utcnow


class MemoryStore:
    """In-process credential store persisted as a JSON snapshot.

    Used for tests and single-node development. Every write rewrites
    ``<fs_root>/state/memory_store.json``; the snapshot is reloaded on
    construction so accounts survive restarts.
    """

    def __init__(self, fs_root: str = "/tmp/medhub") -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self.patient_profiles: Dict[str, PatientProfile] = {}
        # RLock so helpers can re-enter while a public method holds the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    # accounts ---------------------------------------------------------

    def create_account(
        self,
        email: str,
        password_hash: str,
        first_name: str,
        last_name: str,
        roles: List[str],
        *,
        email_verified: bool = False,
    ) -> Account:
        account = Account.new(
            email,
            password_hash,
            first_name,
            last_name,
            roles,
            email_verified=email_verified,
        )
        with self._data_lock:
            if any(existing.email == account.email for existing in self.accounts.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            self.accounts[account.id] = account
            self._persist_state()
            return replace(account, roles=list(account.roles))

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            return replace(account, roles=list(account.roles)) if account else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        key = normalize_email(email)
        with self._data_lock:
            account = next((a for a in self.accounts.values() if a.email == key), None)
            return replace(account, roles=list(account.roles)) if account else None

    def list_accounts(self, role: Optional[str] = None, limit: int = 100) -> List[Account]:
        with self._data_lock:
            results = [
                replace(a, roles=list(a.roles))
                for a in self.accounts.values()
                if not role or role in a.roles
            ]
        return sorted(results, key=lambda a: a.created_at, reverse=True)[:limit]

    def _update(self, account_id: str, **changes) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            updated = replace(account, updated_at=utcnow(), **changes)
            self.accounts[account_id] = updated
            self._persist_state()
            return replace(updated, roles=list(updated.roles))

    def update_login_state(
        self,
        account_id: str,
        failed_attempts: int,
        locked_until: Optional[datetime],
    ) -> Optional[Account]:
        return self._update(
            account_id,
            failed_login_attempts=failed_attempts,
            account_locked_until=locked_until,
        )

    def update_refresh_token(
        self, account_id: str, refresh_token: Optional[str]
    ) -> Optional[Account]:
        return self._update(account_id, refresh_token=refresh_token)

    def update_password(
        self,
        account_id: str,
        password_hash: str,
        *,
        clear_refresh_token: bool = True,
    ) -> Optional[Account]:
        changes = {
            "password_hash": password_hash,
            "failed_login_attempts": 0,
            "account_locked_until": None,
        }
        if clear_refresh_token:
            changes["refresh_token"] = None
        return self._update(account_id, **changes)

    def mark_email_verified(self, account_id: str) -> Optional[Account]:
        return self._update(account_id, email_verified=True)

    # patient profiles -------------------------------------------------

    def create_patient_profile(
        self, account_id: str, email: str, first_name: str, last_name: str
    ) -> PatientProfile:
        with self._data_lock:
            if account_id in self.patient_profiles:
                raise ConstraintViolation(
                    "patient profile already exists", {"account_id": account_id}
                )
            profile = PatientProfile(
                id=str(uuid.uuid4()),
                account_id=account_id,
                email=normalize_email(email),
                first_name=first_name,
                last_name=last_name,
            )
            self.patient_profiles[account_id] = profile
            self._persist_state()
            return replace(profile)

    def get_patient_profile(self, account_id: str) -> Optional[PatientProfile]:
        with self._data_lock:
            profile = self.patient_profiles.get(account_id)
            return replace(profile) if profile else None

    # persistence ------------------------------------------------------

    def _persist_state(self) -> None:
        state = {
            "accounts": [self._serialize_account(a) for a in self.accounts.values()],
            "patient_profiles": [
                self._serialize_profile(p) for p in self.patient_profiles.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.accounts = {
            a["id"]: self._deserialize_account(a) for a in data.get("accounts", [])
        }
        self.patient_profiles = {
            p["account_id"]: self._deserialize_profile(p)
            for p in data.get("patient_profiles", [])
        }
        self.logger.info("memory_store_loaded", accounts=len(self.accounts))
        return True

    def _serialize_account(self, account: Account) -> dict:
        return {
            "id": account.id,
            "email": account.email,
            "password_hash": account.password_hash,
            "first_name": account.first_name,
            "last_name": account.last_name,
            "roles": list(account.roles),
            "failed_login_attempts": account.failed_login_attempts,
            "account_locked_until": self._serialize_datetime(account.account_locked_until),
            "refresh_token": account.refresh_token,
            "email_verified": account.email_verified,
            "created_at": self._serialize_datetime(account.created_at),
            "updated_at": self._serialize_datetime(account.updated_at),
        }

    def _deserialize_account(self, data: dict) -> Account:
        return Account(
            id=str(data["id"]),
            email=data["email"],
            password_hash=data["password_hash"],
            first_name=data.get("first_name", ""),
            last_name=data.get("last_name", ""),
            roles=list(data.get("roles") or ["Patient"]),
            failed_login_attempts=int(data.get("failed_login_attempts", 0)),
            account_locked_until=self._deserialize_datetime(data.get("account_locked_until")),
            refresh_token=data.get("refresh_token"),
            email_verified=bool(data.get("email_verified", False)),
            created_at=self._deserialize_datetime(data["created_at"]) or utcnow(),
            updated_at=self._deserialize_datetime(data.get("updated_at")) or utcnow(),
        )

    def _serialize_profile(self, profile: PatientProfile) -> dict:
        return {
            "id": profile.id,
            "account_id": profile.account_id,
            "email": profile.email,
            "first_name": profile.first_name,
            "last_name": profile.last_name,
            "created_at": self._serialize_datetime(profile.created_at),
        }

    def _deserialize_profile(self, data: dict) -> PatientProfile:
        return PatientProfile(
            id=str(data["id"]),
            account_id=str(data["account_id"]),
            email=data["email"],
            first_name=data.get("first_name", ""),
            last_name=data.get("last_name", ""),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
        )
