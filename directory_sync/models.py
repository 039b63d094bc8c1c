"""
Value types shared by the roster builder, reconciler and outcome aggregator.

All types here are immutable snapshots; nothing in a run mutates them after
creation.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional, Tuple

from directory_sync.identity import Identity


class Role(Enum):
    """Membership role. Managers are treated as owners."""

    MEMBER = 'member'
    OWNER = 'owner'

    @classmethod
    def parse(cls, raw: Optional[str]) -> 'Role':
        """
        Parse a role label from a source file or remote listing.

        Blank or unknown labels fall back to MEMBER.
        """
        label = (raw or '').strip().lower()
        if label in ('owner', 'owners', 'manager', 'managers'):
            return cls.OWNER
        return cls.MEMBER


class DestinationKind(Enum):
    """How a destination group treats membership roles."""

    ROLE_AWARE = 'role_aware'
    ROLE_FLATTENED = 'role_flattened'
    UNSUPPORTED = 'unsupported'


class OperationKind(Enum):
    ADD = 'add'
    REMOVE = 'remove'
    UPDATE = 'update'


class OutcomeKind(Enum):
    APPLIED = 'applied'
    ALREADY_SATISFIED = 'already_satisfied'
    SKIPPED_INVALID_INPUT = 'skipped_invalid_input'
    NOT_FOUND_REMOTELY = 'not_found_remotely'
    REMOTE_ERROR = 'remote_error'


@dataclass(frozen=True)
class GroupRef:
    """A destination group as resolved in a remote directory."""

    reference: Identity
    object_id: Optional[str] = None
    display_name: Optional[str] = None
    kind: Optional[DestinationKind] = None

    def __str__(self):
        return self.reference.value


@dataclass(frozen=True)
class PlannedOperation:
    """
    A single change to apply to a destination.

    ADD operations carry exactly one identity. REMOVE operations carry one
    removal batch. UPDATE operations carry one identity plus the attribute
    changes as sorted (name, value) pairs.
    """

    kind: OperationKind
    role: Role
    identities: Tuple[Identity, ...]
    destination: Optional[GroupRef] = None
    changes: Tuple[Tuple[str, str], ...] = field(default=())

    @property
    def identity(self) -> Identity:
        return self.identities[0]

    @property
    def size(self) -> int:
        return len(self.identities)

    def changes_dict(self) -> Dict[str, str]:
        return dict(self.changes)

    def describe(self) -> str:
        """Short human-readable description used in progress lines."""
        target = f" in '{self.destination}'" if self.destination else ''
        if self.kind == OperationKind.REMOVE:
            return f"remove {self.size} {self.role.value}(s){target}"
        if self.kind == OperationKind.UPDATE:
            names = ', '.join(name for name, _ in self.changes)
            return f"update {self.identity} ({names})"
        return f"add {self.role.value} {self.identity}{target}"


@dataclass(frozen=True)
class OutcomeRecord:
    """The classified result of one planned operation or one raw input."""

    outcome: OutcomeKind
    operation: Optional[PlannedOperation] = None
    raw: Optional[str] = None
    message: Optional[str] = None
    count: int = 1
