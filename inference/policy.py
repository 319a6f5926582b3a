"""
Caller identity and read access to prediction records.
"""
from dataclasses import dataclass
from typing import Union


@dataclass(frozen=True)
class Anonymous:
    """Caller without (valid) credentials."""


@dataclass(frozen=True)
class Authenticated:
    id: str
    role: str = "user"


Principal = Union[Anonymous, Authenticated]

ANONYMOUS = Anonymous()


def requester_id_of(principal: Principal):
    if isinstance(principal, Authenticated):
        return principal.id
    return None


class AccessPolicy:
    """Ownership check only, role-based elevation is handled elsewhere."""

    def can_read(self, record, principal: Principal) -> bool:
        if record.requester_id is None:
            return True
        if isinstance(principal, Authenticated):
            return principal.id == record.requester_id
        return False
