"""
Local Member Store Module

Local mirror of the remote members table so the scanner can start without the
network. Two interchangeable backends: a JSON key-value store and SQLite.
"""

import json
import logging
import os
import sqlite3
import threading
from typing import Any, Dict, List, Optional

from .errors import RemoteBackendError, StorageNotInitializedError
from .kv_store import KeyValueStore
from .models import Member, MemberStatus, descriptor_to_list, is_valid_status

logger = logging.getLogger(__name__)

MEMBERS_KEY = 'local_members'

CREATE_MEMBERS_TABLE = """
CREATE TABLE IF NOT EXISTS members (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    photo_url TEXT,
    status TEXT CHECK(status IN ('Allowed', 'Banned', 'VIP')) DEFAULT 'Allowed',
    face_descriptor TEXT,
    local_photo_path TEXT,
    details TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    organization_id TEXT,
    synced INTEGER DEFAULT 1
)
"""

MEMBER_COLUMNS = ('id', 'name', 'photo_url', 'status', 'face_descriptor', 'local_photo_path',
                  'details', 'created_at', 'updated_at', 'organization_id', 'synced')


class LocalMemberStore:
    """Shared behaviour of the local member store backends."""

    backend_name = 'base'

    def __init__(self, repository=None):
        self.repository = repository
        self._initialized = False

    def _require_initialized(self):
        if not self._initialized:
            raise StorageNotInitializedError(f"{self.backend_name} member store not initialized")

    def is_ready(self) -> bool:
        return self._initialized

    def initialize(self):
        raise NotImplementedError

    def _replace_all(self, members: List[Member]):
        raise NotImplementedError

    def get_all_members(self) -> List[Member]:
        raise NotImplementedError

    def upsert_local(self, member: Member):
        raise NotImplementedError

    def clear(self):
        raise NotImplementedError

    def sync_from_remote(self) -> int:
        """
        Replace local members with the remote table.

        Returns:
            Number of members stored

        Raises:
            StorageNotInitializedError: If initialize() was not called
            RemoteBackendError: If the backend query fails
        """
        self._require_initialized()
        if self.repository is None:
            raise RemoteBackendError('sync_from_remote', ValueError('no repository configured'))

        members = self.repository.get_members()
        self._replace_all(members)
        logger.info(f"Synced {len(members)} members from remote to local {self.backend_name} store")
        return len(members)

    def get_members_with_photos(self) -> List[Member]:
        return [member for member in self.get_all_members() if member.has_photo]

    def get_member(self, member_id: str) -> Optional[Member]:
        self._require_initialized()
        for member in self.get_all_members():
            if member.id == member_id:
                return member
        return None

    def has_member(self, member_id: str) -> bool:
        return self.get_member(member_id) is not None

    def add_member(self, name: str, photo_url: str,
                   status: str = MemberStatus.ALLOWED) -> Optional[Member]:
        """
        Add a member remotely first to obtain the official id, then locally.

        Returns:
            Stored member, or None if the backend insert failed
        """
        self._require_initialized()
        if not is_valid_status(status):
            raise ValueError(f"Invalid member status: {status}")
        if self.repository is None:
            logger.error("Cannot add member without a backend repository")
            return None

        try:
            member = self.repository.add_member(name=name, photo_url=photo_url, status=status)
        except RemoteBackendError as e:
            logger.error(f"Error adding member {name}: {e}")
            return None

        self.upsert_local(member)
        logger.info(f"Added {name} to remote and local stores")
        return member

    def stats(self) -> Dict[str, Any]:
        if not self._initialized:
            return {'total_members': 0, 'members_with_photos': 0, 'allowed_members': 0,
                    'banned_members': 0, 'vip_members': 0, 'is_initialized': False}

        members = self.get_all_members()
        return {
            'total_members': len(members),
            'members_with_photos': sum(1 for member in members if member.has_photo),
            'allowed_members': sum(1 for member in members if member.status == MemberStatus.ALLOWED),
            'banned_members': sum(1 for member in members if member.status == MemberStatus.BANNED),
            'vip_members': sum(1 for member in members if member.status == MemberStatus.VIP),
            'is_initialized': True
        }


class JsonMemberStore(LocalMemberStore):
    """Members kept as a dictionary in the key-value store."""

    backend_name = 'json'

    def __init__(self, kv_store: KeyValueStore, repository=None):
        super().__init__(repository)
        self.kv_store = kv_store

    def initialize(self):
        if self.kv_store.get(MEMBERS_KEY) is None:
            self.kv_store.set(MEMBERS_KEY, {})
        self._initialized = True
        logger.info(f"JSON member store ready ({len(self.kv_store.get(MEMBERS_KEY))} members)")

    def _replace_all(self, members: List[Member]):
        self.kv_store.set(MEMBERS_KEY, {member.id: member.to_dict() for member in members})

    def get_all_members(self) -> List[Member]:
        self._require_initialized()
        rows = self.kv_store.get(MEMBERS_KEY, {})
        return [Member.from_dict(row) for row in rows.values()]

    def upsert_local(self, member: Member):
        self._require_initialized()
        rows = dict(self.kv_store.get(MEMBERS_KEY, {}))
        rows[member.id] = member.to_dict()
        self.kv_store.set(MEMBERS_KEY, rows)

    def clear(self):
        self._require_initialized()
        self.kv_store.set(MEMBERS_KEY, {})
        logger.info("JSON member store cleared")


class SqliteMemberStore(LocalMemberStore):
    """Members kept in a local SQLite database."""

    backend_name = 'sqlite'

    def __init__(self, db_path: str, repository=None):
        super().__init__(repository)
        self.db_path = db_path
        self.connection: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()

    def initialize(self):
        directory = os.path.dirname(self.db_path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        self.connection = sqlite3.connect(self.db_path, check_same_thread=False)
        self.connection.row_factory = sqlite3.Row
        with self.connection:
            self.connection.execute(CREATE_MEMBERS_TABLE)
        self._initialized = True
        logger.info(f"SQLite member store ready at {self.db_path}")

    def close(self):
        if self.connection is not None:
            self.connection.close()
            self.connection = None
        self._initialized = False

    def _row_values(self, member: Member, synced: bool = True) -> tuple:
        descriptor = descriptor_to_list(member.face_descriptor)
        created_at = member.created_at or member.updated_at or ''
        return (
            member.id,
            member.name,
            member.photo_url,
            member.status if is_valid_status(member.status) else MemberStatus.ALLOWED,
            json.dumps(descriptor) if descriptor is not None else None,
            member.local_photo_path,
            member.details,
            created_at,
            member.updated_at or created_at,
            member.organization_id,
            1 if synced else 0
        )

    def _insert_sql(self) -> str:
        placeholders = ', '.join('?' for _ in MEMBER_COLUMNS)
        return f"INSERT OR REPLACE INTO members ({', '.join(MEMBER_COLUMNS)}) VALUES ({placeholders})"

    def _replace_all(self, members: List[Member]):
        with self._lock, self.connection:
            self.connection.execute('DELETE FROM members')
            for member in members:
                try:
                    self.connection.execute(self._insert_sql(), self._row_values(member))
                except sqlite3.Error as e:
                    logger.error(f"Error storing member {member.name}: {e}")

    def get_all_members(self) -> List[Member]:
        self._require_initialized()
        with self._lock:
            rows = self.connection.execute('SELECT * FROM members ORDER BY created_at DESC').fetchall()

        members = []
        for row in rows:
            data = dict(row)
            if data.get('face_descriptor'):
                data['face_descriptor'] = json.loads(data['face_descriptor'])
            members.append(Member.from_dict(data))
        return members

    def get_member(self, member_id: str) -> Optional[Member]:
        self._require_initialized()
        with self._lock:
            row = self.connection.execute('SELECT * FROM members WHERE id = ?', (member_id,)).fetchone()
        if row is None:
            return None
        data = dict(row)
        if data.get('face_descriptor'):
            data['face_descriptor'] = json.loads(data['face_descriptor'])
        return Member.from_dict(data)

    def upsert_local(self, member: Member, synced: bool = True):
        self._require_initialized()
        with self._lock, self.connection:
            self.connection.execute(self._insert_sql(), self._row_values(member, synced))

    def unsynced_ids(self) -> List[str]:
        self._require_initialized()
        with self._lock:
            rows = self.connection.execute('SELECT id FROM members WHERE synced = 0').fetchall()
        return [row['id'] for row in rows]

    def clear(self):
        self._require_initialized()
        with self._lock, self.connection:
            self.connection.execute('DELETE FROM members')
        logger.info("SQLite member store cleared")


def create_local_store(config: Dict[str, Any], repository=None,
                       kv_store: Optional[KeyValueStore] = None) -> LocalMemberStore:
    """
    Create the configured local member store (not yet initialized).

    Args:
        config: Configuration dictionary with storage settings
        repository: Remote member repository
        kv_store: Key-value store for the JSON backend

    Returns:
        JsonMemberStore or SqliteMemberStore
    """
    storage = config.get('storage', {})
    backend = storage.get('local_backend', 'json')

    if backend == 'sqlite':
        return SqliteMemberStore(storage.get('sqlite_file', 'data/facecheck.db'), repository)

    if backend != 'json':
        logger.warning(f"Unknown local backend {backend}, using json")
    if kv_store is None:
        kv_store = KeyValueStore(storage.get('kv_file', 'data/facecheck_store.json'))
    return JsonMemberStore(kv_store, repository)
