"""
JumpCloud device inventory source.

Produces the users bound to JumpCloud systems (optionally only systems running
a given OS) as member entries, one row per device.
"""

import logging
from typing import List, Optional

from directory_sync.gateways.jumpcloud import JumpCloudDirectoryAPI
from directory_sync.models import Role
from .base import SourceReader, SourceRow

logger = logging.getLogger(__name__)


class JumpCloudDeviceSource(SourceReader):

    def __init__(self, directory: JumpCloudDirectoryAPI, os_filter: Optional[str] = None):
        self.directory = directory
        self.os_filter = os_filter

    def describe(self) -> str:
        scope = f" running {self.os_filter}" if self.os_filter else ''
        return f"devices{scope} in {self.directory.name}"

    def read(self) -> List[SourceRow]:
        rows = []
        for system in self.directory.list_systems(self.os_filter):
            system_id = system.get('_id') or system.get('id')
            entries = []
            for user_id in self.directory.list_system_user_ids(system_id):
                identity = self.directory.identity_for_user_id(user_id)
                # Users without an email still count as input and are skipped later
                entries.append((identity.value if identity else '', Role.MEMBER))
            if entries:
                logger.debug(f"Device {system.get('hostname') or system_id} has {len(entries)} bound users")
                rows.append(SourceRow(None, tuple(entries)))

        logger.info(f"Read {len(rows)} devices with bound users from {self.describe()}")
        return rows
