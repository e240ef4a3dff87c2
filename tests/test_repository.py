"""
Test cases for the Supabase member repository.
"""

import pytest
from unittest import mock
import sys
import os

sys.path.insert(0, os.path.dirname(__file__))

from helpers import mock_client, mock_query, unit_descriptor
from facecheck.errors import RemoteBackendError
from facecheck.repository import MemberRepository, create_backend_client


MEMBER_ROW = {
    'id': 'm1',
    'name': 'Ann',
    'status': 'VIP',
    'photo_url': 'data:image/jpeg;base64,AAAA',
    'face_descriptor': [0.1] * 128,
    'created_at': '2024-01-01T00:00:00+00:00',
    'organization_id': 'org-1'
}


class TestMemberRepository:

    def test_get_members_scoped_to_organization(self):
        members_query = mock_query([MEMBER_ROW])
        repository = MemberRepository(mock_client({'members': members_query}), 'org-1')

        members = repository.get_members()

        assert len(members) == 1
        assert members[0].status == 'VIP'
        assert members[0].face_descriptor.shape == (128,)
        assert members[0].updated_at == MEMBER_ROW['created_at']
        members_query.eq.assert_any_call('organization_id', 'org-1')
        members_query.is_.assert_not_called()
        members_query.order.assert_called_with('created_at', desc=True)

    def test_legacy_mode_filters_null_organization(self):
        members_query = mock_query([])
        repository = MemberRepository(mock_client({'members': members_query}))

        assert repository.get_members() == []
        members_query.is_.assert_any_call('organization_id', 'null')

    def test_set_and_clear_organization(self):
        repository = MemberRepository(mock_client())
        repository.set_organization('org-2')
        assert repository.organization_id == 'org-2'
        repository.clear_organization()
        assert repository.organization_id is None

    def test_metadata_query_excludes_photo(self):
        members_query = mock_query([dict(MEMBER_ROW, photo_url=None)])
        repository = MemberRepository(mock_client({'members': members_query}), 'org-1')
        repository.get_members_metadata()
        columns = members_query.select.call_args[0][0]
        assert 'photo_url' not in columns
        assert 'face_descriptor' in columns

    def test_backend_error_is_wrapped(self):
        members_query = mock_query()
        members_query.execute.side_effect = RuntimeError('timeout')
        repository = MemberRepository(mock_client({'members': members_query}), 'org-1')

        with pytest.raises(RemoteBackendError) as excinfo:
            repository.get_members()
        assert excinfo.value.operation == 'get_members'
        assert isinstance(excinfo.value.cause, RuntimeError)

    def test_get_member_photo(self):
        members_query = mock_query([{'photo_url': 'data:image/png;base64,AAAA'}])
        repository = MemberRepository(mock_client({'members': members_query}))
        assert repository.get_member_photo('m1') == 'data:image/png;base64,AAAA'
        members_query.eq.assert_any_call('id', 'm1')

    def test_add_member_sends_organization_and_descriptor(self):
        members_query = mock_query([MEMBER_ROW])
        repository = MemberRepository(mock_client({'members': members_query}), 'org-1')

        member = repository.add_member('Ann', 'data:image/jpeg;base64,AAAA', 'VIP',
                                       face_descriptor=unit_descriptor(1))

        row = members_query.insert.call_args[0][0]
        assert row['organization_id'] == 'org-1'
        assert len(row['face_descriptor']) == 128
        assert member.id == 'm1'

    def test_add_member_without_returned_row(self):
        repository = MemberRepository(mock_client({'members': mock_query([])}))
        with pytest.raises(RemoteBackendError):
            repository.add_member('Ann', None)

    def test_update_member_stamps_updated_at(self):
        members_query = mock_query([MEMBER_ROW])
        repository = MemberRepository(mock_client({'members': members_query}))
        repository.update_member('m1', {'name': 'Ann B'})
        updates = members_query.update.call_args[0][0]
        assert updates['name'] == 'Ann B'
        assert 'updated_at' in updates

    def test_update_member_descriptor(self):
        members_query = mock_query([MEMBER_ROW])
        repository = MemberRepository(mock_client({'members': members_query}))
        repository.update_member_descriptor('m1', unit_descriptor(1))
        updates = members_query.update.call_args[0][0]
        assert len(updates['face_descriptor']) == 128
        assert 'photo_url' not in updates

    def test_delete_member(self):
        members_query = mock_query()
        repository = MemberRepository(mock_client({'members': members_query}))
        repository.delete_member('m1')
        members_query.delete.assert_called_once()
        members_query.eq.assert_any_call('id', 'm1')

    def test_members_with_descriptors(self):
        members_query = mock_query([MEMBER_ROW])
        repository = MemberRepository(mock_client({'members': members_query}), 'org-1')
        assert len(repository.get_members_with_descriptors()) == 1
        members_query.is_.assert_any_call('face_descriptor', 'null')
        members_query.order.assert_called_with('name')

    def test_count_members_needing_descriptors(self):
        repository = MemberRepository(mock_client({'members': mock_query([], count=4)}))
        assert repository.count_members_needing_descriptors() == 4

        failing = mock_query()
        failing.execute.side_effect = RuntimeError('down')
        repository = MemberRepository(mock_client({'members': failing}))
        assert repository.count_members_needing_descriptors() == 0

    def test_get_attendance_logs(self):
        logs_query = mock_query([{'id': 'l1', 'member_id': 'm1', 'confidence': 0.9,
                                  'timestamp': '2024-01-01T08:00:00+00:00'}])
        repository = MemberRepository(mock_client({'attendance_logs': logs_query}), 'org-1')
        logs = repository.get_attendance_logs(limit=10)
        assert logs[0].member_id == 'm1'
        logs_query.limit.assert_called_with(10)

    def test_has_attended_today(self):
        repository = MemberRepository(mock_client({'attendance_logs': mock_query([{'id': 'l1'}])}))
        assert repository.has_attended_today('m1')

        repository = MemberRepository(mock_client({'attendance_logs': mock_query([])}))
        assert not repository.has_attended_today('m1')

    def test_has_attended_today_error_allows_attendance(self):
        logs_query = mock_query()
        logs_query.execute.side_effect = RuntimeError('down')
        repository = MemberRepository(mock_client({'attendance_logs': logs_query}))
        assert repository.has_attended_today('m1') is False

    def test_add_attendance_log(self):
        logs_query = mock_query([])
        repository = MemberRepository(mock_client({'attendance_logs': logs_query}), 'org-1')
        logs_query.execute.side_effect = [
            mock_query([]).execute.return_value,
            mock_query([{'id': 'l1', 'member_id': 'm1', 'confidence': 0.85,
                        'organization_id': 'org-1'}]).execute.return_value,
        ]

        log = repository.add_attendance_log('m1', 0.85)

        assert log.id == 'l1'
        row = logs_query.insert.call_args[0][0]
        assert row['member_id'] == 'm1'
        assert row['organization_id'] == 'org-1'
        assert 'id' not in row

    def test_add_attendance_log_skips_when_already_attended(self):
        logs_query = mock_query([{'id': 'l1'}])
        repository = MemberRepository(mock_client({'attendance_logs': logs_query}))
        assert repository.add_attendance_log('m1', 0.9) is None
        logs_query.insert.assert_not_called()


class TestCreateBackendClient:

    def test_missing_credentials(self):
        with pytest.raises(RemoteBackendError):
            create_backend_client({'backend': {'url': None, 'key': None}})

    def test_client_uses_request_timeout(self):
        config = {
            'backend': {'url': 'https://example.supabase.co', 'key': 'secret'},
            'sync': {'timeout_seconds': 7}
        }
        with mock.patch('facecheck.repository.create_client') as create_client:
            client = create_backend_client(config)

        assert client is create_client.return_value
        args, kwargs = create_client.call_args
        assert args == ('https://example.supabase.co', 'secret')
        assert kwargs['options'].postgrest_client_timeout == 7
        assert kwargs['options'].storage_client_timeout == 7
