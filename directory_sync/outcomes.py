"""
Outcome classification and run accounting.

The aggregator applies planned operations one at a time through an injected
callable, classifies each result, and is the only writer of the run's
RunSummary.
"""

import logging
from dataclasses import asdict, dataclass, replace
from typing import Callable, Iterable, List, Optional, Tuple

from directory_sync.identity import Identity
from directory_sync.logging_setup import audit_logger
from directory_sync.models import (
    GroupRef, OperationKind, OutcomeKind, OutcomeRecord, PlannedOperation, Role
)

logger = logging.getLogger(__name__)


class RemoteFailure(Exception):
    """Raised by a directory collaborator when a remote call fails."""
    pass


class BatchFailure(RemoteFailure):
    """
    Raised when some identities of a batch operation were not changed.

    ``failed`` holds (identity, message) pairs; every other identity of the
    batch was applied.
    """

    def __init__(self, message: str, failed: Iterable[Tuple[Identity, str]]):
        super().__init__(message)
        self.failed = tuple(failed)


# Remote directories report these conditions only in free-text messages
# (Graph, JumpCloud and Exchange all differ), so classification is done by
# phrase families. Matching is case-insensitive and checked in table order.
FAILURE_PHRASES: Tuple[Tuple[OutcomeKind, Tuple[str, ...]], ...] = (
    (OutcomeKind.ALREADY_SATISFIED, (
        'already a member',
        'already an owner',
        'already exist',
        'is already',
        'already in the group',
        'member already',
    )),
    (OutcomeKind.NOT_FOUND_REMOTELY, (
        'does not exist',
        'not found',
        "couldn't be found",
        'could not be found',
        "couldn't find",
        'cannot find',
        'request_resourcenotfound',
        'no such object',
    )),
)


def classify_failure(message: Optional[str]) -> OutcomeKind:
    """
    Classify a remote failure message.

    Returns:
        ALREADY_SATISFIED, NOT_FOUND_REMOTELY, or REMOTE_ERROR when no phrase
        family matches
    """
    text = (message or '').lower()
    for kind, phrases in FAILURE_PHRASES:
        if any(phrase in text for phrase in phrases):
            return kind
    return OutcomeKind.REMOTE_ERROR


@dataclass
class RunSummary:
    """Per-run counters. Counters count identities, not remote calls."""

    added: int = 0
    removed: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0
    total_input: int = 0

    def as_dict(self):
        return asdict(self)

    @classmethod
    def total(cls, summaries: Iterable['RunSummary']) -> 'RunSummary':
        result = cls()
        for summary in summaries:
            for name, value in summary.as_dict().items():
                setattr(result, name, getattr(result, name) + value)
        return result

    def __str__(self):
        return (f"{self.added} added, {self.removed} removed, {self.updated} updated, "
                f"{self.skipped} skipped, {self.errors} errors ({self.total_input} input)")


ApplyFn = Callable[[PlannedOperation], object]


class OutcomeAggregator:
    """Applies operations and accumulates their outcomes for one run."""

    def __init__(self, label: str = 'run'):
        self.label = label
        self.summary = RunSummary()
        self.outcomes: List[OutcomeRecord] = []

    def count_input(self, count: int = 1):
        self.summary.total_input += count

    def record_skipped_input(self, records: Iterable[OutcomeRecord]):
        """Record outcomes for raw entries rejected before reconciliation."""
        for record in records:
            self._record(record)

    def record_satisfied(self, identity: Identity, role: Role, destination: Optional[GroupRef] = None):
        operation = PlannedOperation(kind=OperationKind.ADD, role=role,
                                     identities=(identity,), destination=destination)
        logger.info(f"[{self.label}] {identity} is already a {role.value} of '{destination}'")
        self._record(OutcomeRecord(OutcomeKind.ALREADY_SATISFIED, operation=operation))

    def record_unchanged(self, identity: Identity):
        """Record a user whose attributes already match the source."""
        operation = PlannedOperation(kind=OperationKind.UPDATE, role=Role.MEMBER, identities=(identity,))
        logger.info(f"[{self.label}] {identity} is already up to date")
        self._record(OutcomeRecord(OutcomeKind.ALREADY_SATISFIED, operation=operation))

    def record_destination_skipped(self, destination, reason: str):
        logger.warning(f"[{self.label}] Skipping destination '{destination}': {reason}")
        self._record(OutcomeRecord(OutcomeKind.SKIPPED_INVALID_INPUT, raw=str(destination), message=reason))

    def record_error(self, message: str, kind: OutcomeKind = OutcomeKind.REMOTE_ERROR,
                     raw: Optional[str] = None, count: int = 1):
        """Record a failure that happened outside an operation (e.g. an unknown destination)."""
        if kind == OutcomeKind.NOT_FOUND_REMOTELY:
            logger.warning(f"[{self.label}] {message}")
        else:
            logger.error(f"[{self.label}] {message}")
        self._record(OutcomeRecord(kind, raw=raw, message=message, count=count))

    def apply(self, operations: Iterable[PlannedOperation], apply_fn: ApplyFn) -> RunSummary:
        """
        Apply operations strictly in order, one at a time.

        A failing operation never stops the ones after it. When a batch
        fails only for some identities, the rest of the batch counts as
        applied and each failure is classified on its own message.

        Args:
            operations: Planned operations, in the order to apply them
            apply_fn: Callable performing the remote change; raising
                RemoteFailure signals a remote failure

        Returns:
            The run summary (shared with this aggregator)
        """
        for operation in operations:
            try:
                apply_fn(operation)
            except BatchFailure as e:
                records = self._split_batch(operation, e)
            except RemoteFailure as e:
                message = str(e)
                records = [OutcomeRecord(classify_failure(message), operation=operation, message=message,
                                         count=operation.size)]
            except Exception as e:
                # Not a remote failure: keep going, but leave the traceback in the log
                logger.error(f"[{self.label}] Unexpected error while applying {operation.describe()}: {e}",
                             exc_info=True)
                records = [OutcomeRecord(OutcomeKind.REMOTE_ERROR, operation=operation,
                                         message=f"Unexpected error: {e}", count=operation.size)]
            else:
                records = [OutcomeRecord(OutcomeKind.APPLIED, operation=operation, count=operation.size)]

            for record in records:
                self._log_progress(record)
                self._record(record)

        return self.summary

    @staticmethod
    def _split_batch(operation: PlannedOperation, failure: BatchFailure) -> List[OutcomeRecord]:
        failed = {identity for identity, _ in failure.failed}
        done = tuple(identity for identity in operation.identities if identity not in failed)

        records = []
        if done:
            records.append(OutcomeRecord(OutcomeKind.APPLIED, operation=replace(operation, identities=done),
                                         count=len(done)))
        for identity, message in failure.failed:
            records.append(OutcomeRecord(classify_failure(message), operation=replace(operation, identities=(identity,)),
                                         message=message))
        return records

    def _log_progress(self, record: OutcomeRecord):
        operation = record.operation
        description = operation.describe()
        if record.outcome == OutcomeKind.APPLIED:
            logger.info(f"[{self.label}] Done: {description}")
        elif record.outcome == OutcomeKind.ALREADY_SATISFIED:
            logger.info(f"[{self.label}] Already satisfied: {description}")
        elif record.outcome == OutcomeKind.NOT_FOUND_REMOTELY:
            logger.warning(f"[{self.label}] Not found: {description}: {record.message}")
        else:
            logger.error(f"[{self.label}] Failed: {description}: {record.message}")

        for identity in operation.identities:
            audit_logger.log_change(
                operation.kind.value, str(identity), str(operation.destination or ''),
                record.outcome.value
            )

    def _record(self, record: OutcomeRecord):
        self.outcomes.append(record)
        summary = self.summary

        if record.outcome == OutcomeKind.APPLIED:
            kind = record.operation.kind
            if kind == OperationKind.ADD:
                summary.added += record.count
            elif kind == OperationKind.REMOVE:
                summary.removed += record.count
            else:
                summary.updated += record.count
        elif record.outcome in (OutcomeKind.ALREADY_SATISFIED, OutcomeKind.SKIPPED_INVALID_INPUT):
            summary.skipped += record.count
        else:
            summary.errors += record.count

    def failures(self) -> List[OutcomeRecord]:
        return [r for r in self.outcomes
                if r.outcome in (OutcomeKind.NOT_FOUND_REMOTELY, OutcomeKind.REMOTE_ERROR)]


def apply_operations(operations: Iterable[PlannedOperation], apply_fn: ApplyFn,
                     label: str = 'run') -> RunSummary:
    """Apply operations with a fresh aggregator and return its summary."""
    return OutcomeAggregator(label).apply(operations, apply_fn)
