"""
Directory group source.

Uses the current membership of a group in any configured directory as the
desired roster, for jobs that copy members from one group to another.
"""

import logging
from typing import List

from directory_sync.config import ConfigurationError
from directory_sync.gateways.base import DirectoryAPIBase
from directory_sync.identity import normalize_reference
from directory_sync.models import Role
from .base import SourceReader, SourceRow

logger = logging.getLogger(__name__)


class DirectoryGroupSource(SourceReader):
    """Reads the owners and members of an existing group."""

    def __init__(self, directory: DirectoryAPIBase, group: str):
        self.directory = directory
        self.group = group

    def describe(self) -> str:
        return f"group '{self.group}' in {self.directory.name}"

    def read(self) -> List[SourceRow]:
        resolution = self.directory.resolve(normalize_reference(self.group))
        if not resolution.exists:
            raise ConfigurationError(f"Source group '{self.group}' not found in {self.directory.name}")

        roster = self.directory.list_current_members(resolution.group)
        entries = tuple(
            [(identity.value, Role.OWNER) for identity in sorted(roster.owners)]
            + [(identity.value, Role.MEMBER) for identity in sorted(roster.members)]
        )
        logger.info(f"Read {len(entries)} entries from {self.describe()}")
        return [SourceRow(None, entries)]
