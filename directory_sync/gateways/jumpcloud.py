"""
JumpCloud directory integration.

Manages JumpCloud user groups through the v1 (system users, systems) and v2
(group membership, associations) REST APIs. User groups have no owner role,
so every group resolves as a role-flattened destination.
"""

import logging
from typing import Any, Dict, Iterable, Iterator, List, Optional
from urllib.parse import urlencode

from directory_sync.identity import Identity, try_normalize
from directory_sync.models import DestinationKind, GroupRef, Role
from directory_sync.roster import Roster
from .base import DirectoryAPIBase, DirectoryAPIError, DirectoryBatchError, Resolution

logger = logging.getLogger(__name__)

USER_FIELDS = 'email username firstname lastname'


class JumpCloudDirectoryAPI(DirectoryAPIBase):
    """JumpCloud client implementing the directory collaborator interfaces."""

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize JumpCloud API client.

        Args:
            config: Directory configuration dictionary. ``org_id`` is sent as
                ``x-org-id`` for multi-tenant administrator keys.
        """
        super().__init__(config)

        self.page_size = config.get('page_size', 100)
        org_id = config.get('org_id')
        if org_id:
            self.auth_headers['x-org-id'] = org_id

        self._users_by_id: Optional[Dict[str, Dict[str, Any]]] = None
        self._ids_by_identity: Dict[Identity, str] = {}

        logger.info(f"Initialized JumpCloud API client for {self.name}")

    def _paged(self, path: str, params: Optional[Dict[str, Any]] = None,
               results_key: Optional[str] = None) -> Iterator[Dict[str, Any]]:
        """Iterate over a skip/limit paginated listing."""
        skip = 0
        while True:
            query = dict(params or {})
            query.update({'limit': self.page_size, 'skip': skip})
            separator = '&' if '?' in path else '?'
            response = self.request('GET', f"{path}{separator}{urlencode(query)}")

            items = response.get(results_key, []) if results_key else response
            if not items:
                break
            for item in items:
                yield item
            if len(items) < self.page_size:
                break
            skip += len(items)

    def _load_users(self) -> Dict[str, Dict[str, Any]]:
        """Fetch and cache every system user, keyed by id."""
        if self._users_by_id is None:
            self._users_by_id = {}
            for user in self._paged('/systemusers', {'fields': USER_FIELDS}, 'results'):
                user_id = user.get('_id') or user.get('id')
                self._users_by_id[user_id] = user
                identity = try_normalize(user.get('email'))
                if identity is not None:
                    self._ids_by_identity[identity] = user_id
            logger.info(f"Loaded {len(self._users_by_id)} users from {self.name}")
        return self._users_by_id

    def identity_for_user_id(self, user_id: str) -> Optional[Identity]:
        user = self._load_users().get(user_id)
        if not user:
            return None
        return try_normalize(user.get('email'))

    def _find_user_id(self, identity: Identity) -> Optional[str]:
        if identity in self._ids_by_identity:
            return self._ids_by_identity[identity]

        query = urlencode({'filter': f"email:$eq:{identity.value}", 'fields': USER_FIELDS})
        results = self.request('GET', f"/systemusers?{query}").get('results', [])
        for user in results:
            if try_normalize(user.get('email')) == identity:
                user_id = user.get('_id') or user.get('id')
                self._ids_by_identity[identity] = user_id
                return user_id
        return None

    def _require_user_id(self, identity: Identity) -> str:
        user_id = self._find_user_id(identity)
        if not user_id:
            raise DirectoryAPIError(f"User '{identity}' not found in {self.name}", status=404)
        return user_id

    def resolve(self, reference: Identity) -> Resolution:
        query = urlencode({'filter': f"name:eq:{reference.value}"})
        groups = self.request('GET', f"/v2/usergroups?{query}") or []

        matches = [g for g in groups if str(g.get('name', '')).lower() == reference.key]
        if not matches:
            logger.warning(f"User group '{reference}' not found in {self.name}")
            return Resolution(False, DestinationKind.UNSUPPORTED)

        group = matches[0]
        kind = DestinationKind.ROLE_FLATTENED
        return Resolution(True, kind, GroupRef(reference, group['id'], group.get('name'), kind))

    def list_current_members(self, group: GroupRef) -> Roster:
        members = set()
        for association in self._paged(f"/v2/usergroups/{group.object_id}/members"):
            target = association.get('to') or {}
            if target.get('type') != 'user':
                continue
            identity = self.identity_for_user_id(target.get('id'))
            if identity is None:
                logger.warning(f"Member {target.get('id')} of '{group}' has no usable email, ignoring")
                continue
            members.add(identity)

        logger.info(f"Retrieved {len(members)} members of '{group}' from {self.name}")
        return Roster.from_identities(members)

    def _change_membership(self, group: GroupRef, user_id: str, op: str):
        self.request('POST', f"/v2/usergroups/{group.object_id}/members",
                     body={'op': op, 'type': 'user', 'id': user_id})

    def add_member(self, group: GroupRef, identity: Identity, role: Role) -> None:
        user_id = self._require_user_id(identity)
        self._change_membership(group, user_id, 'add')
        logger.debug(f"Added '{identity}' to '{group}' in {self.name}")

    def remove_members(self, group: GroupRef, identities: Iterable[Identity], role: Role = Role.MEMBER) -> None:
        identities = list(identities)
        failures = []

        for identity in identities:
            user_id = self._find_user_id(identity)
            if not user_id:
                logger.warning(f"User '{identity}' not found in {self.name}, considering removal successful")
                continue
            try:
                self._change_membership(group, user_id, 'remove')
            except DirectoryAPIError as e:
                if e.status == 404:
                    logger.info(f"'{identity}' is no longer in '{group}', considering removal successful")
                    continue
                failures.append((identity, str(e)))

        if failures:
            raise DirectoryBatchError(
                f"Failed to remove {len(failures)} of {len(identities)} members from '{group}': "
                + '; '.join(f"{identity}: {message}" for identity, message in failures),
                failures
            )

    def get_user_attributes(self, identity: Identity, names: Iterable[str]) -> Optional[Dict[str, str]]:
        user_id = self._find_user_id(identity)
        if not user_id:
            return None
        user = self.request('GET', f"/systemusers/{user_id}")
        return {name: '' if user.get(name) is None else str(user.get(name)) for name in names}

    def update_user_attributes(self, identity: Identity, changes: Dict[str, str]) -> None:
        user_id = self._require_user_id(identity)
        self.request('PUT', f"/systemusers/{user_id}", body=dict(changes))

    def list_systems(self, os_filter: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        List devices, optionally only those whose OS name contains ``os_filter``.

        Returns:
            System records with ``_id``, ``hostname``, ``displayName`` and ``os``
        """
        systems = []
        for system in self._paged('/systems', {'fields': 'hostname displayName os'}, 'results'):
            if os_filter and os_filter.lower() not in str(system.get('os', '')).lower():
                continue
            systems.append(system)
        logger.info(f"Retrieved {len(systems)} systems from {self.name}")
        return systems

    def list_system_user_ids(self, system_id: str) -> List[str]:
        """Ids of the users bound to a device."""
        return [
            association.get('id')
            for association in self._paged(f"/v2/systems/{system_id}/users")
            if association.get('type', 'user') == 'user'
        ]
