from __future__ import annotations

from enum import Enum
from typing import Iterable, List

from medhub.service.errors import ConflictError, ValidationError


class Role(str, Enum):
    """Closed set of roles an account can hold."""

    PATIENT = "Patient"
    DOCTOR = "Doctor"
    NURSE = "Nurse"
    ADMIN = "Admin"
    RECEPTIONIST = "Receptionist"


ALLOWED_ROLES = frozenset(role.value for role in Role)

# Self-registration never escalates past this set
SELF_REGISTRATION_ROLES = (Role.PATIENT.value,)


def parse_roles(values: Iterable[str]) -> List[str]:
    """Validate a role list from a request boundary.

    Matching is exact and case-sensitive. Duplicates collapse, first
    occurrence wins.

    Raises:
        ValidationError: the list is empty.
        ConflictError: one or more entries are outside the role set.
    """
    requested = [str(value) for value in values]
    if not requested:
        raise ValidationError("At least one role is required", detail={"field": "roles"})
    invalid = [value for value in requested if value not in ALLOWED_ROLES]
    if invalid:
        raise ConflictError(
            f"Invalid roles: {', '.join(invalid)}",
            detail={"invalid_roles": invalid},
        )
    return list(dict.fromkeys(requested))


def has_role(roles: Iterable[str], role: Role | str) -> bool:
    wanted = role.value if isinstance(role, Role) else role
    return wanted in set(roles)
