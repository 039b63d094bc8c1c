"""
Membership reconciliation.

Compares a desired roster with a destination group's actual roster and plans
the add and remove operations needed to bring the destination in line.

Role policy at role-aware destinations (Microsoft 365 groups): an identity
listed both as owner and as member is added only as an owner. The member list
sent to the destination is always "members minus owners". This mirrors the
behaviour of the administrative scripts this tool replaces and avoids duplicate
membership records on some back-ends; it is a policy choice, not a derived
rule.
"""

import logging
from enum import Enum
from typing import Iterable, List, Optional, Tuple

from directory_sync.config import ConfigurationError
from directory_sync.identity import Identity
from directory_sync.models import DestinationKind, GroupRef, OperationKind, PlannedOperation, Role
from directory_sync.roster import Roster

logger = logging.getLogger(__name__)

DEFAULT_REMOVAL_BATCH_SIZE = 100


class SyncMode(Enum):
    """Additive jobs only add; full jobs also remove what the source lacks."""

    ADDITIVE = 'additive'
    FULL = 'full'

    @classmethod
    def parse(cls, raw: Optional[str]) -> 'SyncMode':
        try:
            return cls((raw or 'additive').strip().lower())
        except ValueError:
            raise ConfigurationError(f"Unknown sync mode: '{raw}'")


class Plan:
    """
    Ordered sequence of planned operations for one destination.

    Besides the operations, a plan records which desired identities were
    already present (``satisfied``) and whether the destination itself had to
    be skipped because its kind is unsupported.
    """

    def __init__(self, operations: Iterable[PlannedOperation] = (),
                 satisfied: Iterable[Tuple[Identity, Role]] = (),
                 destination: Optional[GroupRef] = None,
                 skipped_destination: bool = False):
        self.operations = tuple(operations)
        self.satisfied = tuple(satisfied)
        self.destination = destination
        self.skipped_destination = skipped_destination

    def __iter__(self):
        return iter(self.operations)

    def __len__(self):
        return len(self.operations)

    def __getitem__(self, index):
        return self.operations[index]

    @property
    def additions(self) -> List[PlannedOperation]:
        return [op for op in self.operations if op.kind == OperationKind.ADD]

    @property
    def removals(self) -> List[PlannedOperation]:
        return [op for op in self.operations if op.kind == OperationKind.REMOVE]

    def __repr__(self):
        return (f"Plan(destination={self.destination}, adds={len(self.additions)}, "
                f"removal_batches={len(self.removals)}, satisfied={len(self.satisfied)}, "
                f"skipped_destination={self.skipped_destination})")


def batched(identities: Iterable[Identity], size: int) -> List[Tuple[Identity, ...]]:
    """Split identities (sorted by key) into fixed-size batches."""
    if size < 1:
        raise ConfigurationError(f"Batch size must be positive, got {size}")
    ordered = sorted(identities)
    return [tuple(ordered[i:i + size]) for i in range(0, len(ordered), size)]


def _adds(identities: Iterable[Identity], role: Role, destination: Optional[GroupRef]) -> List[PlannedOperation]:
    return [
        PlannedOperation(kind=OperationKind.ADD, role=role, identities=(identity,), destination=destination)
        for identity in sorted(identities)
    ]


def _removals(identities: Iterable[Identity], role: Role, destination: Optional[GroupRef],
              batch_size: int) -> List[PlannedOperation]:
    return [
        PlannedOperation(kind=OperationKind.REMOVE, role=role, identities=batch, destination=destination)
        for batch in batched(identities, batch_size)
    ]


def reconcile(desired: Roster, actual: Roster, kind: DestinationKind,
              destination: Optional[GroupRef] = None,
              mode: SyncMode = SyncMode.ADDITIVE,
              batch_size: int = DEFAULT_REMOVAL_BATCH_SIZE,
              allow_full_removal_when_empty: bool = False) -> Plan:
    """
    Plan the operations that reconcile ``actual`` with ``desired``.

    Args:
        desired: Roster built from the source
        actual: Current roster of the destination group
        kind: How the destination treats roles
        destination: Group the operations target
        mode: ADDITIVE (adds only) or FULL (adds and batched removals)
        batch_size: Maximum identities per removal operation
        allow_full_removal_when_empty: Required to run a FULL reconciliation
            with an empty desired roster, which removes every current member

    Returns:
        Plan with owner adds, then member adds, then removal batches

    Raises:
        ConfigurationError: For a FULL reconciliation with an empty desired
            roster when the caller has not explicitly allowed it
    """
    if kind == DestinationKind.UNSUPPORTED:
        logger.info(f"Destination '{destination}' has an unsupported group type, nothing planned")
        return Plan(destination=destination, skipped_destination=True)

    if mode == SyncMode.FULL and desired.is_empty() and not allow_full_removal_when_empty:
        raise ConfigurationError(
            f"Desired roster for '{destination}' is empty; a full sync would remove all "
            f"{len(actual.identities())} current members. Set allow_full_removal_when_empty to proceed."
        )

    operations = []
    satisfied = []

    if kind == DestinationKind.ROLE_AWARE:
        desired_owners = desired.owners
        desired_members = desired.members - desired_owners

        owners_to_add = desired_owners - actual.owners
        members_to_add = desired_members - actual.members
        satisfied.extend((identity, Role.OWNER) for identity in sorted(desired_owners & actual.owners))
        satisfied.extend((identity, Role.MEMBER) for identity in sorted(desired_members & actual.members))

        operations.extend(_adds(owners_to_add, Role.OWNER, destination))
        operations.extend(_adds(members_to_add, Role.MEMBER, destination))

        if mode == SyncMode.FULL:
            everyone = desired.identities()
            operations.extend(_removals(actual.owners - desired_owners, Role.OWNER, destination, batch_size))
            operations.extend(_removals(actual.members - everyone, Role.MEMBER, destination, batch_size))

    else:
        wanted = desired.identities()
        present = actual.identities()

        satisfied.extend((identity, Role.MEMBER) for identity in sorted(wanted & present))
        operations.extend(_adds(wanted - present, Role.MEMBER, destination))

        if mode == SyncMode.FULL:
            operations.extend(_removals(present - wanted, Role.MEMBER, destination, batch_size))

    plan = Plan(operations, satisfied, destination)
    logger.debug(f"Reconciled '{destination}': {plan}")
    return plan
