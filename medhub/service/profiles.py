from __future__ import annotations

from typing import Optional, Protocol

from medhub.logging import get_logger
from medhub.storage.models import Account, PatientProfile

logger = get_logger(__name__)


class PatientProfileStore(Protocol):
    def create_patient_profile(
        self, account_id: str, email: str, first_name: str, last_name: str
    ) -> PatientProfile: ...

    def get_patient_profile(self, account_id: str) -> Optional[PatientProfile]: ...


class PatientProfileHook(Protocol):
    """Creates the clinical-side record for a new patient account."""

    def create_from_account(self, account: Account) -> PatientProfile: ...


class StorePatientProfiles:
    """Writes a placeholder profile the patient completes later."""

    def __init__(self, store: PatientProfileStore) -> None:
        self.store = store

    def create_from_account(self, account: Account) -> PatientProfile:
        existing = self.store.get_patient_profile(account.id)
        if existing:
            return existing
        profile = self.store.create_patient_profile(
            account.id, account.email, account.first_name, account.last_name
        )
        logger.info("patient_profile_created", account_id=account.id, profile_id=profile.id)
        return profile
