"""
Embedding Cache Module

Per-organization cache of member descriptors so the scanner can start matching
without downloading photos and recomputing descriptors.
"""

import logging
import time
from typing import Any, Dict, List, Optional

from .kv_store import KeyValueStore
from .models import Member

logger = logging.getLogger(__name__)

CACHE_KEY_PREFIX = 'face_embeddings_cache_'
LEGACY_ORGANIZATION = 'legacy'
STORAGE_LIMIT_BYTES = 5 * 1024 * 1024


class EmbeddingCache:
    """Descriptor cache keyed by organization, stored in a KeyValueStore."""

    def __init__(self, config: Dict[str, Any], kv_store: KeyValueStore):
        """
        Initialize embedding cache.

        Args:
            config: Configuration dictionary with cache settings
            kv_store: Backing key-value store
        """
        cache_config = config.get('cache', {})
        self.expiry_seconds = cache_config.get('embedding_expiry_seconds', 24 * 60 * 60)
        self.version = cache_config.get('cache_version', '1.0')
        self.kv_store = kv_store

    def _key(self, organization_id: Optional[str]) -> str:
        return f"{CACHE_KEY_PREFIX}{organization_id or LEGACY_ORGANIZATION}"

    def _is_valid(self, payload: Any) -> bool:
        if not isinstance(payload, dict):
            return False
        if payload.get('version') != self.version:
            logger.info(f"Embedding cache version mismatch: {payload.get('version')} != {self.version}")
            return False
        age = time.time() - float(payload.get('timestamp', 0))
        if age > self.expiry_seconds:
            logger.info(f"Embedding cache expired ({age / 3600:.1f}h old)")
            return False
        return True

    def get(self, organization_id: Optional[str]) -> Optional[List[Member]]:
        """
        Cached members for an organization.

        Returns:
            Fresh list of members, or None when missing, expired or written
            by another cache version
        """
        key = self._key(organization_id)
        payload = self.kv_store.get(key)
        if payload is None:
            return None

        if not self._is_valid(payload):
            self.kv_store.remove(key)
            return None

        members = [Member.from_dict(data) for data in payload.get('members', [])]
        logger.debug(f"Embedding cache hit: {len(members)} members for {organization_id or LEGACY_ORGANIZATION}")
        return members

    def _accepts(self, member: Member, organization_id: Optional[str]) -> bool:
        if not member.id or not member.name or member.face_descriptor is None:
            return False
        if member.organization_id and organization_id and member.organization_id != organization_id:
            return False
        return True

    def set(self, organization_id: Optional[str], members: List[Member]) -> int:
        """
        Replace the cached members of an organization.

        Members without id, name or descriptor, or belonging to another
        organization, are dropped.

        Returns:
            Number of members cached
        """
        valid = [member for member in members if self._accepts(member, organization_id)]
        dropped = len(members) - len(valid)
        if dropped:
            logger.warning(f"Dropped {dropped} members without descriptors or from another organization")

        payload = {
            'version': self.version,
            'timestamp': time.time(),
            'organization_id': organization_id,
            'members': [member.to_dict(include_photo=False) for member in valid]
        }
        self.kv_store.set(self._key(organization_id), payload)

        if self.is_near_limit():
            logger.warning(f"Embedding cache is close to the storage limit ({self.size_bytes()} bytes)")

        logger.info(f"Cached {len(valid)} member descriptors for {organization_id or LEGACY_ORGANIZATION}")
        return len(valid)

    def add(self, organization_id: Optional[str], member: Member) -> bool:
        """
        Add or replace one member in an existing cache.

        A missing or expired cache is left alone: a cache holding only this
        member would be taken for the full member list on the next load.
        """
        if not self._accepts(member, organization_id):
            logger.warning(f"Not caching member {member.name!r}: missing data or wrong organization")
            return False

        members = self.get(organization_id)
        if members is None:
            logger.debug(f"No valid embedding cache to extend with {member.name!r}")
            return False
        members = [cached for cached in members if cached.id != member.id]
        members.append(member)
        self.set(organization_id, members)
        return True

    def remove(self, organization_id: Optional[str], member_id: str) -> bool:
        members = self.get(organization_id)
        if not members:
            return False
        remaining = [member for member in members if member.id != member_id]
        if len(remaining) == len(members):
            return False
        self.set(organization_id, remaining)
        return True

    def clear(self, organization_id: Optional[str] = None):
        """Clear one organization, or every organization when none is given."""
        if organization_id is not None:
            self.kv_store.remove(self._key(organization_id))
            return
        for key in self.kv_store.keys(CACHE_KEY_PREFIX):
            self.kv_store.remove(key)
        logger.info("Embedding cache cleared")

    def info(self, organization_id: Optional[str]) -> Dict[str, Any]:
        key = self._key(organization_id)
        payload = self.kv_store.get(key)
        if not isinstance(payload, dict):
            return {'exists': False}

        age = time.time() - float(payload.get('timestamp', 0))
        return {
            'exists': True,
            'valid': self._is_valid(payload),
            'version': payload.get('version'),
            'member_count': len(payload.get('members', [])),
            'age_seconds': age,
            'size_bytes': self.kv_store.size_bytes(key)
        }

    def organizations(self) -> List[str]:
        return [key[len(CACHE_KEY_PREFIX):] for key in self.kv_store.keys(CACHE_KEY_PREFIX)]

    def cleanup(self) -> int:
        """Remove expired or outdated caches. Returns the number removed."""
        removed = 0
        for key in self.kv_store.keys(CACHE_KEY_PREFIX):
            if not self._is_valid(self.kv_store.get(key)):
                self.kv_store.remove(key)
                removed += 1
        if removed:
            logger.info(f"Removed {removed} stale embedding caches")
        return removed

    def size_bytes(self) -> int:
        return sum(self.kv_store.size_bytes(key) for key in self.kv_store.keys(CACHE_KEY_PREFIX))

    def is_near_limit(self) -> bool:
        return self.size_bytes() > STORAGE_LIMIT_BYTES * 0.8
