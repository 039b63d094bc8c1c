"""
Microsoft Graph directory integration.

Manages Microsoft 365 (Unified) groups and cloud security groups through the
Graph REST API. Mail-enabled security groups and distribution lists are
mastered in Exchange Online and cannot be changed through Graph; they resolve
as unsupported destinations.
"""

import logging
from typing import Any, Dict, Iterable, Optional, Set
from urllib.parse import quote

from directory_sync.identity import Identity, try_normalize
from directory_sync.models import DestinationKind, GroupRef, Role
from directory_sync.roster import Roster
from .base import DirectoryAPIBase, DirectoryAPIError, DirectoryBatchError, Resolution

logger = logging.getLogger(__name__)

GROUP_FIELDS = 'id,displayName,mail,groupTypes,mailEnabled,securityEnabled'
USER_FIELDS = 'id,mail,userPrincipalName'


def _odata_literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def classify_group(group: Dict[str, Any]) -> DestinationKind:
    """
    Map a Graph group object to a destination kind.

    Unified groups keep owners and members apart. Cloud security groups are
    synced as plain membership. Anything mail-enabled without being Unified
    is managed by Exchange and is unsupported here.
    """
    if 'Unified' in (group.get('groupTypes') or []):
        return DestinationKind.ROLE_AWARE
    if group.get('securityEnabled') and not group.get('mailEnabled'):
        return DestinationKind.ROLE_FLATTENED
    return DestinationKind.UNSUPPORTED


class GraphDirectoryAPI(DirectoryAPIBase):
    """Microsoft Graph client implementing the directory collaborator interfaces."""

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize Graph API client.

        ``auth.tenant_id`` fills in the token URL and the default scope when
        they are not configured explicitly.

        Args:
            config: Directory configuration dictionary
        """
        auth = config.setdefault('auth', {})
        tenant_id = auth.get('tenant_id')
        if tenant_id and not auth.get('token_url'):
            auth['token_url'] = f"https://login.microsoftonline.com/{tenant_id}/oauth2/v2.0/token"
        auth.setdefault('scope', 'https://graph.microsoft.com/.default')

        super().__init__(config)

        self.page_size = config.get('page_size', 999)
        self._user_ids: Dict[Identity, str] = {}

        logger.info(f"Initialized Graph API client for {self.name}")

    def resolve(self, reference: Identity) -> Resolution:
        """Find a group by mail address, or by display name when the reference has no '@'."""
        field = 'mail' if '@' in reference.value else 'displayName'
        query = quote(f"{field} eq {_odata_literal(reference.value)}")
        response = self.request('GET', f"/groups?$filter={query}&$select={GROUP_FIELDS}")
        groups = response.get('value', [])

        if not groups:
            logger.warning(f"Group '{reference}' not found in {self.name}")
            return Resolution(False, DestinationKind.UNSUPPORTED)

        if len(groups) > 1:
            logger.warning(f"{len(groups)} groups match '{reference}' in {self.name}, using the first")

        group = groups[0]
        kind = classify_group(group)
        logger.debug(f"Resolved '{reference}' to {group['id']} ({kind.value}) in {self.name}")
        return Resolution(True, kind, GroupRef(reference, group['id'], group.get('displayName'), kind))

    def list_current_members(self, group: GroupRef) -> Roster:
        members = self._list_principals(group, 'members')
        owners = set()
        if group.kind == DestinationKind.ROLE_AWARE:
            owners = self._list_principals(group, 'owners')

        logger.info(f"Retrieved {len(members)} members and {len(owners)} owners of '{group}' from {self.name}")
        return Roster({Role.MEMBER: members, Role.OWNER: owners})

    def _list_principals(self, group: GroupRef, relation: str) -> Set[Identity]:
        principals = set()
        path = f"/groups/{group.object_id}/{relation}/microsoft.graph.user?$select={USER_FIELDS}&$top={self.page_size}"

        while path:
            response = self.request('GET', path)
            for user in response.get('value', []):
                identity = try_normalize(user.get('mail')) or try_normalize(user.get('userPrincipalName'))
                if identity is None:
                    logger.warning(f"{relation[:-1].capitalize()} {user.get('id')} of '{group}' has no usable address, ignoring")
                    continue
                principals.add(identity)
                self._user_ids[identity] = user['id']
            path = response.get('@odata.nextLink')

        return principals

    def _find_user_id(self, identity: Identity) -> Optional[str]:
        """Look a user up by UPN, then by mail address."""
        if identity in self._user_ids:
            return self._user_ids[identity]

        user_id = None
        try:
            user = self.request('GET', f"/users/{quote(identity.value, safe='@')}?$select=id")
            user_id = user.get('id')
        except DirectoryAPIError as e:
            if e.status != 404:
                raise

        if not user_id:
            query = quote(f"mail eq {_odata_literal(identity.value)}")
            users = self.request('GET', f"/users?$filter={query}&$select=id").get('value', [])
            if users:
                user_id = users[0]['id']

        if user_id:
            self._user_ids[identity] = user_id
        return user_id

    def _require_user_id(self, identity: Identity) -> str:
        user_id = self._find_user_id(identity)
        if not user_id:
            raise DirectoryAPIError(f"User '{identity}' could not be found in {self.name}", status=404)
        return user_id

    def add_member(self, group: GroupRef, identity: Identity, role: Role) -> None:
        user_id = self._require_user_id(identity)
        relation = 'owners' if role == Role.OWNER else 'members'
        reference = f"{self.base_url.rstrip('/')}/directoryObjects/{user_id}"

        self.request('POST', f"/groups/{group.object_id}/{relation}/$ref", body={'@odata.id': reference})
        logger.debug(f"Added {role.value} '{identity}' to '{group}' in {self.name}")

    def remove_members(self, group: GroupRef, identities: Iterable[Identity], role: Role = Role.MEMBER) -> None:
        """
        Remove one batch of users from a group.

        Graph has no bulk removal, so each user is removed individually. Users
        that no longer exist or are no longer in the group count as removed.
        """
        relation = 'owners' if role == Role.OWNER else 'members'
        identities = list(identities)
        failures = []

        for identity in identities:
            user_id = self._find_user_id(identity)
            if not user_id:
                logger.warning(f"User '{identity}' not found in {self.name}, considering removal successful")
                continue
            try:
                self.request('DELETE', f"/groups/{group.object_id}/{relation}/{user_id}/$ref")
            except DirectoryAPIError as e:
                if e.status == 404:
                    logger.info(f"'{identity}' is no longer in '{group}', considering removal successful")
                    continue
                failures.append((identity, str(e)))

        if failures:
            raise DirectoryBatchError(
                f"Failed to remove {len(failures)} of {len(identities)} {relation} from '{group}': "
                + '; '.join(f"{identity}: {message}" for identity, message in failures),
                failures
            )

    def get_user_attributes(self, identity: Identity, names: Iterable[str]) -> Optional[Dict[str, str]]:
        names = list(names)
        user_id = self._find_user_id(identity)
        if not user_id:
            return None

        user = self.request('GET', f"/users/{user_id}?$select={','.join(names)}")
        return {name: '' if user.get(name) is None else str(user.get(name)) for name in names}

    def update_user_attributes(self, identity: Identity, changes: Dict[str, str]) -> None:
        user_id = self._require_user_id(identity)
        self.request('PATCH', f"/users/{user_id}", body=dict(changes))
