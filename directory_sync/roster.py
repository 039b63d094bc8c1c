"""
Roster building.

A roster is an immutable set of (identity, role) pairs taken from a source list
or from a destination group's current membership.
"""

import re
import logging
from typing import Dict, FrozenSet, Iterable, List, NamedTuple, Optional, Tuple

from directory_sync.identity import Identity, InvalidIdentityError, normalize
from directory_sync.models import OutcomeKind, OutcomeRecord, Role

logger = logging.getLogger(__name__)

_MULTI_VALUE_SEPARATORS = re.compile(r'[\s,;]+')


class Roster:
    """Immutable role-partitioned set of identities."""

    __slots__ = ('_by_role',)

    def __init__(self, by_role: Optional[Dict[Role, Iterable[Identity]]] = None):
        by_role = by_role or {}
        self._by_role = {
            role: frozenset(by_role.get(role, ())) for role in Role
        }

    @classmethod
    def from_identities(cls, identities: Iterable[Identity], role: Role = Role.MEMBER) -> 'Roster':
        return cls({role: identities})

    @classmethod
    def empty(cls) -> 'Roster':
        return cls()

    @property
    def members(self) -> FrozenSet[Identity]:
        return self._by_role[Role.MEMBER]

    @property
    def owners(self) -> FrozenSet[Identity]:
        return self._by_role[Role.OWNER]

    def with_role(self, role: Role) -> FrozenSet[Identity]:
        return self._by_role[role]

    def identities(self) -> FrozenSet[Identity]:
        """All identities regardless of role."""
        return self.members | self.owners

    def flatten(self) -> 'Roster':
        """Collapse every role into plain membership."""
        return Roster({Role.MEMBER: self.identities()})

    def is_empty(self) -> bool:
        return not self.members and not self.owners

    def __contains__(self, identity) -> bool:
        return identity in self.members or identity in self.owners

    def __len__(self) -> int:
        return len(self.members) + len(self.owners)

    def __eq__(self, other):
        if not isinstance(other, Roster):
            return NotImplemented
        return self._by_role == other._by_role

    def __hash__(self):
        return hash((self.members, self.owners))

    def __repr__(self):
        return f"Roster(members={len(self.members)}, owners={len(self.owners)})"


class RosterBuildResult(NamedTuple):
    roster: Roster
    skipped: Tuple[OutcomeRecord, ...]
    total_input: int


def split_multi_value(field: Optional[str]) -> List[str]:
    """
    Split a multi-value cell into tokens.

    Spreadsheet exports separate addresses with spaces, commas or semicolons.
    Empty tokens are discarded.
    """
    if not field:
        return []
    return [token for token in _MULTI_VALUE_SEPARATORS.split(str(field)) if token]


def build_roster(entries: Iterable[Tuple[Optional[str], Role]]) -> RosterBuildResult:
    """
    Build a roster from raw (identity, role) entries.

    Invalid entries are reported as SKIPPED_INVALID_INPUT outcomes and left out
    of the roster; duplicates within a role are dropped silently.

    Args:
        entries: Raw identity strings paired with their role

    Returns:
        RosterBuildResult with the roster, the skipped outcomes and the number
        of entries read
    """
    by_role = {role: set() for role in Role}
    skipped = []
    total = 0

    for raw, role in entries:
        total += 1
        try:
            identity = normalize(raw)
        except InvalidIdentityError as e:
            logger.warning(f"Skipping invalid {role.value} entry '{raw or ''}': {e}")
            skipped.append(OutcomeRecord(
                outcome=OutcomeKind.SKIPPED_INVALID_INPUT,
                raw=raw,
                message=str(e)
            ))
            continue
        by_role[role].add(identity)

    return RosterBuildResult(Roster(by_role), tuple(skipped), total)
