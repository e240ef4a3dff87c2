"""
Data Models

Member, local cache entry and attendance log records shared by the storage,
sync and scanning layers.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import time

import numpy as np


class MemberStatus:
    ALLOWED = 'Allowed'
    BANNED = 'Banned'
    VIP = 'VIP'

    ALL = (ALLOWED, BANNED, VIP)


def is_valid_status(status: Optional[str]) -> bool:
    return status in MemberStatus.ALL


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def descriptor_to_list(descriptor) -> Optional[List[float]]:
    """Convert a numpy descriptor to a JSON friendly list."""
    if descriptor is None:
        return None
    return [float(value) for value in np.asarray(descriptor, dtype=np.float32).ravel()]


def descriptor_from_list(values) -> Optional[np.ndarray]:
    """Convert a stored list (or array) back into a float32 descriptor."""
    if values is None:
        return None
    array = np.asarray(values, dtype=np.float32).ravel()
    return array if array.size > 0 else None


@dataclass
class Member:
    """A member row mirrored from the remote members table."""
    id: str
    name: str
    status: str = MemberStatus.ALLOWED
    photo_url: Optional[str] = None
    face_descriptor: Optional[np.ndarray] = None
    local_photo_path: Optional[str] = None
    details: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    organization_id: Optional[str] = None

    @property
    def has_photo(self) -> bool:
        return bool(self.photo_url) and self.photo_url.startswith('data:image/')

    def to_dict(self, include_photo: bool = True) -> Dict[str, Any]:
        data = {
            'id': self.id,
            'name': self.name,
            'status': self.status,
            'face_descriptor': descriptor_to_list(self.face_descriptor),
            'local_photo_path': self.local_photo_path,
            'details': self.details,
            'created_at': self.created_at,
            'updated_at': self.updated_at,
            'organization_id': self.organization_id
        }
        if include_photo:
            data['photo_url'] = self.photo_url
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Member':
        """
        Build a member from a backend or local row.

        Older rows only carry ``face_embedding``; it is used when no
        ``face_descriptor`` is present.
        """
        descriptor = data.get('face_descriptor')
        if descriptor is None:
            descriptor = data.get('face_embedding')
        created_at = data.get('created_at')
        return cls(
            id=str(data['id']),
            name=data.get('name') or '',
            status=data.get('status') or MemberStatus.ALLOWED,
            photo_url=data.get('photo_url'),
            face_descriptor=descriptor_from_list(descriptor),
            local_photo_path=data.get('local_photo_path'),
            details=data.get('details'),
            created_at=created_at,
            updated_at=data.get('updated_at') or created_at,
            organization_id=data.get('organization_id')
        )


@dataclass
class CacheEntry:
    """A locally captured face waiting to be matched or synced."""
    id: str
    name: str
    image: str
    timestamp: str = field(default_factory=utc_now_iso)
    capture_time: float = field(default_factory=time.time)
    synced: bool = False
    descriptor: Optional[np.ndarray] = None
    similarity: Optional[float] = None
    status: Optional[str] = None

    def age(self, now: Optional[float] = None) -> float:
        """Seconds since capture."""
        if now is None:
            now = time.time()
        return now - self.capture_time

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['descriptor'] = descriptor_to_list(self.descriptor)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CacheEntry':
        return cls(
            id=data['id'],
            name=data['name'],
            image=data.get('image', ''),
            timestamp=data.get('timestamp') or utc_now_iso(),
            capture_time=float(data.get('capture_time', time.time())),
            synced=bool(data.get('synced', False)),
            descriptor=descriptor_from_list(data.get('descriptor')),
            similarity=data.get('similarity'),
            status=data.get('status')
        )


@dataclass
class AttendanceLog:
    """Append-only attendance record."""
    member_id: str
    confidence: float
    timestamp: str = field(default_factory=utc_now_iso)
    id: Optional[str] = None
    organization_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        if data['id'] is None:
            del data['id']
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AttendanceLog':
        return cls(
            id=data.get('id'),
            member_id=str(data['member_id']),
            confidence=float(data.get('confidence') or 0.0),
            timestamp=data.get('timestamp') or utc_now_iso(),
            organization_id=data.get('organization_id')
        )
