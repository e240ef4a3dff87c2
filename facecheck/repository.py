"""
Remote Backend Module

Member and attendance tables on the hosted Supabase backend. Every query is
scoped to the current organization, or to rows without an organization when
running in legacy mode.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import numpy as np
from supabase import Client, ClientOptions, create_client

from .errors import RemoteBackendError
from .models import AttendanceLog, Member, descriptor_to_list, utc_now_iso

logger = logging.getLogger(__name__)

METADATA_COLUMNS = ('id, name, face_embedding, face_descriptor, status, local_photo_path, '
                    'details, created_at, updated_at, organization_id')


def create_backend_client(config: Dict[str, Any]) -> Client:
    """
    Create a Supabase client from the backend configuration.

    Table and storage requests time out after sync.timeout_seconds.

    Raises:
        RemoteBackendError: If the URL or key is missing
    """
    backend = config.get('backend', {})
    url, key = backend.get('url'), backend.get('key')
    if not url or not key:
        raise RemoteBackendError(
            'connect', ValueError('SUPABASE_URL and SUPABASE_KEY must be set'))

    timeout = config.get('sync', {}).get('timeout_seconds', 20)
    options = ClientOptions(
        postgrest_client_timeout=timeout,
        storage_client_timeout=timeout
    )
    logger.info(f"Connecting to backend with {timeout}s request timeout")
    return create_client(url, key, options=options)


class MemberRepository:
    """Access to the remote members and attendance_logs tables."""

    def __init__(self, client: Client, organization_id: Optional[str] = None):
        """
        Initialize repository.

        Args:
            client: Supabase client
            organization_id: Organization scope, None for legacy mode
        """
        self.client = client
        self.organization_id = organization_id

        if organization_id:
            logger.info(f"Member repository scoped to organization {organization_id}")
        else:
            logger.info("Member repository in legacy mode (no organization)")

    def set_organization(self, organization_id: str):
        self.organization_id = organization_id
        logger.info(f"Organization context set to {organization_id}")

    def clear_organization(self):
        self.organization_id = None
        logger.info("Organization context cleared, using legacy mode")

    def _scoped(self, query):
        if self.organization_id:
            return query.eq('organization_id', self.organization_id)
        return query.is_('organization_id', 'null')

    def _execute(self, operation: str, query):
        try:
            return query.execute()
        except Exception as e:
            logger.error(f"Backend operation {operation} failed: {e}")
            raise RemoteBackendError(operation, e) from e

    def get_members(self) -> List[Member]:
        """All members of the organization, newest first, photos included."""
        query = self._scoped(self.client.table('members').select('*'))
        result = self._execute('get_members', query.order('created_at', desc=True))
        members = [Member.from_dict(row) for row in result.data or []]
        logger.info(f"Fetched {len(members)} members")
        return members

    def get_members_metadata(self) -> List[Member]:
        """All members without the photo column."""
        query = self._scoped(self.client.table('members').select(METADATA_COLUMNS))
        result = self._execute('get_members_metadata', query.order('created_at', desc=True))
        members = [Member.from_dict(row) for row in result.data or []]
        logger.info(f"Fetched metadata for {len(members)} members")
        return members

    def get_member_photo(self, member_id: str) -> Optional[str]:
        query = self.client.table('members').select('photo_url').eq('id', member_id).limit(1)
        result = self._execute('get_member_photo', query)
        rows = result.data or []
        return rows[0].get('photo_url') if rows else None

    def add_member(self, name: str, photo_url: Optional[str], status: str = 'Allowed',
                   face_descriptor: Optional[np.ndarray] = None,
                   details: Optional[str] = None) -> Member:
        """
        Insert a member.

        Returns:
            The stored member with the id assigned by the backend
        """
        row = {
            'name': name,
            'photo_url': photo_url,
            'status': status,
            'details': details,
            'organization_id': self.organization_id
        }
        if face_descriptor is not None:
            row['face_descriptor'] = descriptor_to_list(face_descriptor)

        result = self._execute('add_member', self.client.table('members').insert(row))
        if not result.data:
            raise RemoteBackendError('add_member', ValueError('insert returned no row'))

        member = Member.from_dict(result.data[0])
        logger.info(f"Added member {member.name} ({member.id})")
        return member

    def update_member(self, member_id: str, updates: Dict[str, Any]) -> Optional[Member]:
        updates = dict(updates, updated_at=utc_now_iso())
        query = self.client.table('members').update(updates).eq('id', member_id)
        result = self._execute('update_member', query)
        rows = result.data or []
        return Member.from_dict(rows[0]) if rows else None

    def delete_member(self, member_id: str):
        self._execute('delete_member', self.client.table('members').delete().eq('id', member_id))
        logger.info(f"Deleted member {member_id}")

    def get_members_with_descriptors(self) -> List[Member]:
        """Members that already have a stored descriptor, ordered by name."""
        query = self._scoped(self.client.table('members').select('id, name, face_descriptor, status, photo_url'))
        query = query.not_.is_('face_descriptor', 'null').order('name')
        result = self._execute('get_members_with_descriptors', query)
        members = [Member.from_dict(row) for row in result.data or []]
        logger.info(f"Fetched {len(members)} members with descriptors")
        return members

    def update_member_descriptor(self, member_id: str, descriptor: np.ndarray,
                                 photo_url: Optional[str] = None) -> Optional[Member]:
        updates = {'face_descriptor': descriptor_to_list(descriptor)}
        if photo_url:
            updates['photo_url'] = photo_url
        return self.update_member(member_id, updates)

    def count_members_needing_descriptors(self) -> int:
        """Members with a photo but no descriptor. Errors count as zero."""
        query = self.client.table('members').select('id', count='exact')
        query = self._scoped(query.not_.is_('photo_url', 'null').is_('face_descriptor', 'null'))
        try:
            result = self._execute('count_members_needing_descriptors', query)
        except RemoteBackendError:
            return 0
        return result.count or 0

    def get_attendance_logs(self, limit: int = 50) -> List[AttendanceLog]:
        query = self._scoped(self.client.table('attendance_logs').select('*'))
        result = self._execute('get_attendance_logs', query.order('timestamp', desc=True).limit(limit))
        return [AttendanceLog.from_dict(row) for row in result.data or []]

    def has_attended_today(self, member_id: str) -> bool:
        """
        Whether the member already has an attendance log today.

        Backend errors return False so attendance is not blocked.
        """
        start_of_day = datetime.now().replace(hour=0, minute=0, second=0, microsecond=0).astimezone()
        end_of_day = start_of_day + timedelta(days=1)

        query = (self.client.table('attendance_logs')
                 .select('id')
                 .eq('member_id', member_id)
                 .gte('timestamp', start_of_day.isoformat())
                 .lt('timestamp', end_of_day.isoformat()))
        try:
            result = self._execute('has_attended_today', self._scoped(query).limit(1))
        except RemoteBackendError:
            return False
        return bool(result.data)

    def add_attendance_log(self, member_id: str, confidence: float) -> Optional[AttendanceLog]:
        """
        Append an attendance log.

        Returns:
            The created log, or None when the member already attended today
        """
        if self.has_attended_today(member_id):
            logger.info(f"Member {member_id} already attended today, skipping log")
            return None

        log = AttendanceLog(member_id=member_id, confidence=float(confidence),
                            organization_id=self.organization_id)
        result = self._execute('add_attendance_log',
                               self.client.table('attendance_logs').insert(log.to_dict()))
        if result.data:
            return AttendanceLog.from_dict(result.data[0])
        return log
