#!/usr/bin/env python3
"""
Unit tests for membership and attribute sync jobs.

Uses an in-memory directory in place of a remote one.
"""

import os
import sys
import unittest
from unittest.mock import Mock

# Add parent directory to path to import directory_sync modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from directory_sync.config import ConfigurationError
from directory_sync.gateways.base import (
    DirectoryAPIError, DirectoryLookup, MembershipGateway, Resolution, UserAttributeGateway
)
from directory_sync.identity import normalize
from directory_sync.jobs import AttributeJob, MembershipJob
from directory_sync.models import DestinationKind, GroupRef, OutcomeKind, Role
from directory_sync.roster import Roster
from directory_sync.sources.base import SourceReader, SourceRow


class FakeDirectory(DirectoryLookup, MembershipGateway, UserAttributeGateway):
    """In-memory directory recording every change."""

    def __init__(self, groups=None, users=None):
        self.name = 'fake'
        # reference key -> (kind, {Role: set of identities})
        self.groups = groups or {}
        self.users = users or {}
        self.calls = []
        self.fail_adds = {}

    def resolve(self, reference):
        if reference.key not in self.groups:
            return Resolution(False, DestinationKind.UNSUPPORTED)
        kind = self.groups[reference.key][0]
        return Resolution(True, kind, GroupRef(reference, 'id-' + reference.key, reference.value, kind))

    def list_current_members(self, group):
        return Roster(self.groups[group.reference.key][1])

    def add_member(self, group, identity, role):
        self.calls.append(('add', group.reference.key, identity.value, role))
        if identity.key in self.fail_adds:
            raise DirectoryAPIError(self.fail_adds[identity.key])
        self.groups[group.reference.key][1].setdefault(role, set()).add(identity)

    def remove_members(self, group, identities, role=Role.MEMBER):
        identities = list(identities)
        self.calls.append(('remove', group.reference.key, [i.value for i in identities], role))
        self.groups[group.reference.key][1][role] -= set(identities)

    def get_user_attributes(self, identity, names):
        user = self.users.get(identity.key)
        if user is None:
            return None
        return {name: user.get(name, '') for name in names}

    def update_user_attributes(self, identity, changes):
        self.calls.append(('update', identity.value, dict(changes)))
        self.users[identity.key].update(changes)


class ListSource(SourceReader):

    def __init__(self, rows):
        self.rows = rows

    def read(self):
        return list(self.rows)


def members(*values):
    return {normalize(v) for v in values}


class TestMembershipJob(unittest.TestCase):
    """Test cases for MembershipJob."""

    def setUp(self):
        self.directory = FakeDirectory({
            'team@x.com': (DestinationKind.ROLE_AWARE, {Role.MEMBER: members('bob@x.com'), Role.OWNER: set()}),
            'sec@x.com': (DestinationKind.ROLE_FLATTENED, {Role.MEMBER: members('old@x.com'), Role.OWNER: set()}),
            'dl@x.com': (DestinationKind.UNSUPPORTED, {Role.MEMBER: set(), Role.OWNER: set()}),
        })

    def run_job(self, rows, **config):
        config.setdefault('name', 'test-job')
        job = MembershipJob(config, self.directory, ListSource(rows))
        return job, job.run()

    def test_rows_grouped_by_reference(self):
        job, summary = self.run_job([
            SourceRow('team@x.com', (('alice@x.com', Role.MEMBER),), 2),
            SourceRow('TEAM@x.com', (('BOB@x.com', Role.MEMBER),), 3),
            SourceRow(' team@x.com ', (('bob@X.com', Role.MEMBER),), 4),
        ])

        self.assertEqual(self.directory.calls, [('add', 'team@x.com', 'alice@x.com', Role.MEMBER)])
        self.assertEqual((summary.added, summary.skipped, summary.errors, summary.total_input), (1, 1, 0, 3))

    def test_job_group_used_when_rows_have_none(self):
        job, summary = self.run_job([SourceRow(None, (('alice@x.com', Role.OWNER),))], group='team@x.com')
        self.assertEqual(self.directory.calls, [('add', 'team@x.com', 'alice@x.com', Role.OWNER)])

    def test_invalid_group_reference_skips_entries(self):
        job, summary = self.run_job([SourceRow('', (('alice@x.com', Role.MEMBER), ('bob@x.com', Role.MEMBER)), 2)])

        self.assertEqual(self.directory.calls, [])
        self.assertEqual((summary.skipped, summary.total_input), (2, 2))

    def test_unknown_group_is_not_found(self):
        job, summary = self.run_job([
            SourceRow('missing@x.com', (('alice@x.com', Role.MEMBER),)),
            SourceRow('team@x.com', (('carol@x.com', Role.MEMBER),)),
        ])

        self.assertEqual(summary.errors, 1)
        self.assertEqual(summary.added, 1)
        self.assertEqual(job.aggregator.failures()[0].outcome, OutcomeKind.NOT_FOUND_REMOTELY)

    def test_unsupported_destination_skipped_once(self):
        job, summary = self.run_job([
            SourceRow('dl@x.com', (('alice@x.com', Role.MEMBER), ('bob@x.com', Role.MEMBER))),
        ])

        self.assertEqual(self.directory.calls, [])
        self.assertEqual(summary.skipped, 1)
        self.assertEqual(summary.errors, 0)

    def test_full_sync_on_flattened_group(self):
        job, summary = self.run_job([
            SourceRow('sec@x.com', (('alice@x.com', Role.OWNER), ('bob@x.com', Role.MEMBER))),
        ], mode='full')

        self.assertEqual(self.directory.calls, [
            ('add', 'sec@x.com', 'alice@x.com', Role.MEMBER),
            ('add', 'sec@x.com', 'bob@x.com', Role.MEMBER),
            ('remove', 'sec@x.com', ['old@x.com'], Role.MEMBER),
        ])
        self.assertEqual((summary.added, summary.removed), (2, 1))

    def test_full_sync_twice_changes_nothing_the_second_time(self):
        rows = [SourceRow('team@x.com', (('alice@x.com', Role.OWNER), ('carol@x.com', Role.MEMBER)))]
        self.run_job(rows, mode='full')
        self.directory.calls = []

        _, summary = self.run_job(rows, mode='full')
        self.assertEqual(self.directory.calls, [])
        self.assertEqual(summary.skipped, 2)

    def test_empty_roster_full_sync_aborts_before_any_change(self):
        with self.assertRaises(ConfigurationError):
            self.run_job([
                SourceRow('sec@x.com', (('alice@x.com', Role.MEMBER),)),
                SourceRow('team@x.com', (('', Role.MEMBER),)),
            ], mode='full')
        self.assertEqual(self.directory.calls, [])

    def test_empty_roster_full_sync_allowed(self):
        job = MembershipJob({'name': 'empty', 'mode': 'full'}, self.directory,
                            ListSource([SourceRow('team@x.com', ())]),
                            allow_full_removal_when_empty=True)
        summary = job.run()
        self.assertEqual(summary.removed, 1)

    def test_remote_failures_are_classified_and_do_not_stop_the_job(self):
        self.directory.fail_adds = {
            'dup@x.com': 'The user is already a member of this group',
            'boom@x.com': 'HTTP 503: Service Unavailable',
        }
        job, summary = self.run_job([SourceRow('team@x.com', (
            ('dup@x.com', Role.MEMBER), ('boom@x.com', Role.MEMBER), ('zed@x.com', Role.MEMBER),
        ))])

        self.assertEqual((summary.added, summary.skipped, summary.errors), (1, 1, 1))

    def test_dry_run_changes_nothing(self):
        job = MembershipJob({'name': 'dry', 'mode': 'full'}, self.directory,
                            ListSource([SourceRow('sec@x.com', (('alice@x.com', Role.MEMBER),))]),
                            dry_run=True)
        summary = job.run()

        self.assertEqual(self.directory.calls, [])
        self.assertEqual((summary.added, summary.removed), (1, 1))

    def test_lookup_failure_recorded_per_group(self):
        self.directory.resolve = Mock(side_effect=DirectoryAPIError('HTTP 500: Internal Server Error'))
        job, summary = self.run_job([SourceRow('team@x.com', (('alice@x.com', Role.MEMBER),))])
        self.assertEqual(summary.errors, 1)
        self.assertEqual(job.aggregator.failures()[0].outcome, OutcomeKind.REMOTE_ERROR)

    def test_removal_batches(self):
        self.directory.groups['sec@x.com'][1][Role.MEMBER] = members(*['u%03d@x.com' % i for i in range(5)])
        job = MembershipJob({'name': 'batch', 'mode': 'full'}, self.directory,
                            ListSource([SourceRow('sec@x.com', (('keep@x.com', Role.MEMBER),))]),
                            removal_batch_size=2)
        summary = job.run()

        removals = [call for call in self.directory.calls if call[0] == 'remove']
        self.assertEqual([len(call[2]) for call in removals], [2, 2, 1])
        self.assertEqual(summary.removed, 5)


class TestAttributeJob(unittest.TestCase):
    """Test cases for AttributeJob."""

    def setUp(self):
        self.directory = FakeDirectory(users={
            'alice@x.com': {'department': 'Engineering', 'jobTitle': 'Developer'},
            'bob@x.com': {'department': 'Sales', 'jobTitle': ''},
        })
        self.source = Mock()
        self.source.describe.return_value = 'users.csv'
        self.config = {'name': 'attrs', 'attribute_map': {'Department': 'department', 'Title': 'jobTitle'}}

    def test_only_changed_values_sent(self):
        self.source.read_records.return_value = [
            (2, {'Email': 'alice@x.com', 'Department': 'Engineering', 'Title': 'Lead Developer'}),
            (3, {'Email': 'bob@x.com', 'Department': 'Sales', 'Title': ''}),
            (4, {'Email': 'nobody', 'Department': 'Sales', 'Title': ''}),
            (5, {'Email': 'ghost@x.com', 'Department': 'Sales', 'Title': ''}),
        ]
        job = AttributeJob(self.config, self.directory, self.source)
        summary = job.run()

        self.source.read_records.assert_called_once_with(['Email', 'Department', 'Title'])
        self.assertEqual(self.directory.calls, [('update', 'alice@x.com', {'jobTitle': 'Lead Developer'})])
        self.assertEqual((summary.updated, summary.skipped, summary.errors, summary.total_input), (1, 2, 1, 4))

    def test_requires_attribute_map(self):
        with self.assertRaises(ConfigurationError):
            AttributeJob({'name': 'attrs'}, self.directory, self.source)


if __name__ == '__main__':
    unittest.main()
