"""
Local Face Cache Module

Bounded cache of faces captured on this device. New people are registered here
first (unsynced) and pushed to the backend later by the batch sync job.
"""

import logging
import random
import threading
import time
from collections import OrderedDict
from typing import Any, Dict, List, Optional, Tuple

import numpy as np

from .descriptor_extractor import euclidean_distance, distance_to_similarity
from .kv_store import KeyValueStore
from .models import CacheEntry

logger = logging.getLogger(__name__)

CACHE_KEY = 'local_face_cache'


def generate_entry_id() -> str:
    return f"local_{int(time.time() * 1000)}_{random.randint(0, 99999):05d}"


class LocalFaceCache:
    """LRU cache of CacheEntry items with age pruning, persisted to a KeyValueStore."""

    def __init__(self, config: Dict[str, Any], kv_store: KeyValueStore):
        """
        Initialize the cache and restore persisted entries.

        Args:
            config: Configuration dictionary with cache settings
            kv_store: Backing key-value store
        """
        cache_config = config.get('cache', {})
        self.max_entries = cache_config.get('local_max_entries', 50)
        self.max_age = cache_config.get('local_max_age_seconds', 600)
        self.match_window = cache_config.get('local_match_window_seconds', 300)
        self.match_similarity = cache_config.get('local_match_similarity', 0.60)
        self.recent_window = cache_config.get('recent_capture_window_seconds', 30)
        self.recent_similarity = cache_config.get('recent_capture_similarity', 0.90)

        self.kv_store = kv_store
        self._entries: 'OrderedDict[str, CacheEntry]' = OrderedDict()
        self._lock = threading.RLock()
        self._load()

    def _load(self):
        stored = self.kv_store.get(CACHE_KEY, [])
        for data in stored:
            try:
                entry = CacheEntry.from_dict(data)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping corrupt cache entry: {e}")
                continue
            self._entries[entry.id] = entry
        if self._entries:
            logger.info(f"Restored {len(self._entries)} local cache entries")

    def _persist(self):
        self.kv_store.set(CACHE_KEY, [entry.to_dict() for entry in self._entries.values()])

    def _prune(self, now: float) -> int:
        expired = [entry_id for entry_id, entry in self._entries.items() if entry.age(now) > self.max_age]
        for entry_id in expired:
            del self._entries[entry_id]

        evicted = 0
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)
            evicted += 1

        if expired or evicted:
            logger.debug(f"Pruned {len(expired)} expired and {evicted} least recently used entries")
        return len(expired) + evicted

    def __len__(self) -> int:
        return len(self._entries)

    def add(self, name: str, image: str, synced: bool = False,
            descriptor: Optional[np.ndarray] = None) -> CacheEntry:
        """
        Add a captured face.

        Args:
            name: Display name
            image: Photo as a data URL
            synced: Whether the entry already exists on the backend
            descriptor: Descriptor of the captured face, if known

        Returns:
            The new cache entry
        """
        with self._lock:
            entry = CacheEntry(id=generate_entry_id(), name=name, image=image,
                               synced=synced, descriptor=descriptor)
            self._entries[entry.id] = entry
            self._prune(time.time())
            self._persist()
            logger.info(f"Cached {name} ({'synced' if synced else 'pending sync'})")
            return entry

    def get(self, entry_id: str) -> Optional[CacheEntry]:
        with self._lock:
            return self._entries.get(entry_id)

    def touch(self, entry_id: str) -> bool:
        """Mark an entry as recently used."""
        with self._lock:
            if entry_id not in self._entries:
                return False
            self._entries.move_to_end(entry_id)
            return True

    def mark_synced(self, entry_id: str) -> bool:
        with self._lock:
            entry = self._entries.get(entry_id)
            if entry is None:
                return False
            entry.synced = True
            self._persist()
            return True

    def remove(self, entry_id: str) -> bool:
        with self._lock:
            if self._entries.pop(entry_id, None) is None:
                return False
            self._persist()
            return True

    def entries(self) -> List[CacheEntry]:
        with self._lock:
            return list(self._entries.values())

    def unsynced(self) -> List[CacheEntry]:
        """Entries waiting for sync, oldest first."""
        with self._lock:
            pending = [entry for entry in self._entries.values() if not entry.synced]
        return sorted(pending, key=lambda entry: entry.capture_time)

    def recent(self, window_seconds: float) -> List[CacheEntry]:
        now = time.time()
        with self._lock:
            return [entry for entry in self._entries.values() if entry.age(now) <= window_seconds]

    def _ensure_descriptor(self, entry: CacheEntry, extractor) -> Optional[np.ndarray]:
        if entry.descriptor is None and extractor is not None and entry.image:
            entry.descriptor = extractor.extract_from_data_url(entry.image)
        return entry.descriptor

    def _similarity(self, descriptor: np.ndarray, entry: CacheEntry, extractor) -> Optional[float]:
        stored = self._ensure_descriptor(entry, extractor)
        if stored is None or stored.size != np.asarray(descriptor).size:
            return None
        return distance_to_similarity(euclidean_distance(descriptor, stored))

    def find_recent_similar(self, descriptor: np.ndarray, extractor=None) -> Optional[CacheEntry]:
        """
        Look for the same face captured in the last few seconds.

        Missing descriptors are computed with the extractor and kept on the
        entry.

        Returns:
            The most similar recent entry above the similarity limit, or None
        """
        if descriptor is None:
            return None

        best_entry, best_similarity = None, self.recent_similarity
        for entry in self.recent(self.recent_window):
            similarity = self._similarity(descriptor, entry, extractor)
            if similarity is not None and similarity > best_similarity:
                best_entry, best_similarity = entry, similarity

        if best_entry is not None:
            logger.info(f"Recent capture of {best_entry.name} ({best_similarity:.3f}), skipping registration")
        return best_entry

    def find_local_match(self, descriptor: np.ndarray,
                         extractor=None) -> Optional[Tuple[CacheEntry, float]]:
        """
        Match against entries captured in the local match window.

        Entries younger than one minute are accepted with a threshold lowered
        by 0.10.

        Returns:
            (entry, similarity) of the best match, or None
        """
        if descriptor is None:
            return None

        now = time.time()
        best = None
        for entry in self.recent(self.match_window):
            similarity = self._similarity(descriptor, entry, extractor)
            if similarity is None:
                continue
            threshold = self.match_similarity - 0.10 if entry.age(now) < 60 else self.match_similarity
            if similarity > threshold and (best is None or similarity > best[1]):
                best = (entry, similarity)

        if best is not None:
            entry, similarity = best
            entry.similarity = similarity
            self.touch(entry.id)
            logger.debug(f"Local match {entry.name} ({similarity:.3f})")
        return best

    def clear(self):
        with self._lock:
            self._entries.clear()
            self._persist()
        logger.info("Local face cache cleared")

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            entries = list(self._entries.values())
        now = time.time()
        return {
            'total': len(entries),
            'synced': sum(1 for entry in entries if entry.synced),
            'unsynced': sum(1 for entry in entries if not entry.synced),
            'with_descriptor': sum(1 for entry in entries if entry.descriptor is not None),
            'oldest_age_seconds': max((entry.age(now) for entry in entries), default=0.0),
            'max_entries': self.max_entries
        }
