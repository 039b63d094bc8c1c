"""
Sync jobs.

A job reads its source, plans every change for its destination directory and
only then applies them. Everything that can abort a job (unreadable source,
missing columns, a full sync against an empty roster) is detected while
planning, so an aborted job never leaves a destination half changed.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from directory_sync.config import ConfigurationError
from directory_sync.gateways.base import DirectoryAPIBase
from directory_sync.identity import Identity, InvalidIdentityError, normalize, normalize_reference
from directory_sync.models import (
    DestinationKind, OperationKind, OutcomeKind, OutcomeRecord, PlannedOperation, Role
)
from directory_sync.outcomes import OutcomeAggregator, RemoteFailure, RunSummary, classify_failure
from directory_sync.reconciler import DEFAULT_REMOVAL_BATCH_SIZE, Plan, SyncMode, reconcile
from directory_sync.roster import build_roster
from directory_sync.sources.base import SourceReader
from directory_sync.sources.csv_source import CsvSourceReader

logger = logging.getLogger(__name__)

EMAIL_COLUMN = 'Email'


def _failure_kind(error: Exception) -> OutcomeKind:
    """Outcome for a failed lookup; only a missing principal is treated specially."""
    if classify_failure(str(error)) == OutcomeKind.NOT_FOUND_REMOTELY:
        return OutcomeKind.NOT_FOUND_REMOTELY
    return OutcomeKind.REMOTE_ERROR


class SyncJob:
    """Base class for a configured job against one destination directory."""

    def __init__(self, config: Dict[str, Any], destination: DirectoryAPIBase, dry_run: bool = False):
        self.config = config
        self.name = config.get('name', self.__class__.__name__)
        self.destination = destination
        self.dry_run = dry_run
        self.aggregator = OutcomeAggregator(self.name)

    @property
    def summary(self) -> RunSummary:
        return self.aggregator.summary

    def run(self) -> RunSummary:
        raise NotImplementedError

    def _apply(self, operations: List[PlannedOperation]) -> RunSummary:
        if self.dry_run:
            return self.aggregator.apply(operations, self._dry_run_apply)
        return self.aggregator.apply(operations, self._apply_operation)

    def _dry_run_apply(self, operation: PlannedOperation):
        logger.info(f"[{self.name}] Dry run, would {operation.describe()}")

    def _apply_operation(self, operation: PlannedOperation):
        raise NotImplementedError


class MembershipJob(SyncJob):
    """
    Brings destination group memberships in line with a source.

    Source rows are grouped by their normalized group reference, so a group
    split across many CSV rows is reconciled once.
    """

    def __init__(self, config: Dict[str, Any], destination: DirectoryAPIBase, source: SourceReader,
                 removal_batch_size: int = DEFAULT_REMOVAL_BATCH_SIZE, dry_run: bool = False,
                 allow_full_removal_when_empty: Optional[bool] = None):
        """
        Args:
            config: Job configuration (``name``, ``group``, ``mode``,
                ``allow_full_removal_when_empty``)
            destination: Directory whose groups are changed
            source: Reader producing the desired membership
            removal_batch_size: Maximum identities per removal call
            dry_run: Plan and log without changing anything
            allow_full_removal_when_empty: Overrides the job setting when not None
        """
        super().__init__(config, destination, dry_run)
        self.source = source
        self.group = config.get('group')
        self.mode = SyncMode.parse(config.get('mode'))
        self.removal_batch_size = removal_batch_size
        if allow_full_removal_when_empty is None:
            allow_full_removal_when_empty = bool(config.get('allow_full_removal_when_empty', False))
        self.allow_full_removal_when_empty = allow_full_removal_when_empty

    def run(self) -> RunSummary:
        """
        Run the job.

        Raises:
            ConfigurationError: If the source cannot be used or a full sync
                would empty a group without permission; nothing is changed
        """
        logger.info(f"[{self.name}] Reading {self.source.describe()} ({self.mode.value} sync)")
        grouped = self._group_rows(self.source.read())

        plans = []
        for reference, entries in grouped.items():
            plan = self._plan_group(reference, entries)
            if plan is not None:
                plans.append(plan)

        for plan in plans:
            self._apply(list(plan.operations))

        logger.info(f"[{self.name}] {self.summary}")
        return self.summary

    def _group_rows(self, rows) -> Dict[Identity, List[Tuple[Optional[str], Role]]]:
        grouped = {}
        for row in rows:
            raw_group = row.group if row.group is not None else self.group
            try:
                reference = normalize_reference(raw_group)
            except InvalidIdentityError as e:
                where = f" on line {row.line_number}" if row.line_number else ''
                logger.warning(f"[{self.name}] Invalid group reference{where}, skipping {len(row.entries)} entries")
                self.aggregator.count_input(len(row.entries))
                self.aggregator.record_skipped_input(
                    OutcomeRecord(OutcomeKind.SKIPPED_INVALID_INPUT, raw=raw, message=f"Invalid group reference: {e}")
                    for raw, _ in row.entries
                )
                continue
            grouped.setdefault(reference, []).extend(row.entries)
        return grouped

    def _plan_group(self, reference: Identity, entries) -> Optional[Plan]:
        result = build_roster(entries)
        self.aggregator.count_input(result.total_input)
        self.aggregator.record_skipped_input(result.skipped)

        try:
            resolution = self.destination.resolve(reference)
            if not resolution.exists:
                self.aggregator.record_error(
                    f"Group '{reference}' not found in {self.destination.name}",
                    OutcomeKind.NOT_FOUND_REMOTELY, raw=reference.value
                )
                return None
            if resolution.kind == DestinationKind.UNSUPPORTED:
                self.aggregator.record_destination_skipped(
                    reference, f"group type cannot be managed in {self.destination.name}"
                )
                return None
            actual = self.destination.list_current_members(resolution.group)
        except RemoteFailure as e:
            self.aggregator.record_error(f"Cannot read group '{reference}': {e}", _failure_kind(e),
                                         raw=reference.value)
            return None

        plan = reconcile(
            result.roster, actual, resolution.kind,
            destination=resolution.group,
            mode=self.mode,
            batch_size=self.removal_batch_size,
            allow_full_removal_when_empty=self.allow_full_removal_when_empty,
        )
        for identity, role in plan.satisfied:
            self.aggregator.record_satisfied(identity, role, resolution.group)

        logger.info(f"[{self.name}] '{reference}': {len(plan.additions)} to add, "
                    f"{sum(op.size for op in plan.removals)} to remove, {len(plan.satisfied)} already present")
        return plan

    def _apply_operation(self, operation: PlannedOperation):
        if operation.kind == OperationKind.ADD:
            self.destination.add_member(operation.destination, operation.identity, operation.role)
        elif operation.kind == OperationKind.REMOVE:
            self.destination.remove_members(operation.destination, operation.identities, operation.role)
        else:
            raise ValueError(f"Unexpected operation for a membership job: {operation.kind.value}")


class AttributeJob(SyncJob):
    """
    Updates user attributes from a CSV keyed by email address.

    ``attribute_map`` maps CSV column names to directory attribute names.
    Blank cells never clear an attribute.
    """

    def __init__(self, config: Dict[str, Any], destination: DirectoryAPIBase, source: CsvSourceReader,
                 dry_run: bool = False):
        super().__init__(config, destination, dry_run)
        self.source = source
        self.attribute_map = dict(config.get('attribute_map') or {})
        if not self.attribute_map:
            raise ConfigurationError(f"Attribute job '{self.name}' has no attribute_map")

    def run(self) -> RunSummary:
        logger.info(f"[{self.name}] Reading {self.source.describe()}")
        records = self.source.read_records([EMAIL_COLUMN] + list(self.attribute_map))

        operations = []
        for line_number, record in records:
            operation = self._plan_record(line_number, record)
            if operation is not None:
                operations.append(operation)

        logger.info(f"[{self.name}] {len(operations)} users to update")
        self._apply(operations)

        logger.info(f"[{self.name}] {self.summary}")
        return self.summary

    def _plan_record(self, line_number: int, record: Dict[str, str]) -> Optional[PlannedOperation]:
        self.aggregator.count_input()
        raw = record.get(EMAIL_COLUMN)
        try:
            identity = normalize(raw)
        except InvalidIdentityError as e:
            logger.warning(f"[{self.name}] Skipping line {line_number}: {e}")
            self.aggregator.record_skipped_input(
                [OutcomeRecord(OutcomeKind.SKIPPED_INVALID_INPUT, raw=raw, message=str(e))]
            )
            return None

        desired = {}
        for column, attribute in self.attribute_map.items():
            value = (record.get(column) or '').strip()
            if value:
                desired[attribute] = value

        try:
            current = self.destination.get_user_attributes(identity, desired.keys()) if desired else {}
        except RemoteFailure as e:
            self.aggregator.record_error(f"Cannot read attributes of '{identity}': {e}", _failure_kind(e),
                                         raw=identity.value)
            return None

        if current is None:
            self.aggregator.record_error(f"User '{identity}' not found in {self.destination.name}",
                                         OutcomeKind.NOT_FOUND_REMOTELY, raw=identity.value)
            return None

        changes = tuple(sorted(
            (attribute, value) for attribute, value in desired.items() if current.get(attribute, '') != value
        ))
        if not changes:
            self.aggregator.record_unchanged(identity)
            return None

        return PlannedOperation(kind=OperationKind.UPDATE, role=Role.MEMBER, identities=(identity,),
                                changes=changes)

    def _apply_operation(self, operation: PlannedOperation):
        self.destination.update_user_attributes(operation.identity, operation.changes_dict())
