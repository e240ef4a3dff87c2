"""
Batch Sync Module

Periodically pushes faces registered on this device into the remote members
table, skipping duplicates and invalid photos.
"""

import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional

import numpy as np

from .errors import RemoteBackendError
from .face_cache import LocalFaceCache
from .matcher import FaceMatcher
from .models import CacheEntry, Member, MemberStatus

logger = logging.getLogger(__name__)


class BatchSync:
    """One-way sync of unsynced local cache entries to the backend."""

    def __init__(self, cache: LocalFaceCache, repository, extractor, matcher: FaceMatcher,
                 config: Dict[str, Any],
                 known_members: Optional[Callable[[], List[Member]]] = None,
                 on_member_added: Optional[Callable[[Member], None]] = None):
        """
        Initialize batch sync.

        Args:
            cache: Local face cache holding captured entries
            repository: Remote member repository
            extractor: Descriptor extractor for entries captured without one
            matcher: Face matcher used for duplicate checks
            config: Configuration dictionary with sync settings
            known_members: Returns the members already on the backend
            on_member_added: Called with each member created by a sync
        """
        sync_config = config.get('sync', {})
        self.batch_duplicate_similarity = sync_config.get('batch_duplicate_similarity', 0.70)
        self.remote_duplicate_similarity = sync_config.get('remote_duplicate_similarity', 0.80)
        self.min_image_length = sync_config.get('min_image_length', 5000)
        self.max_image_length = sync_config.get('max_image_length', 2000000)
        self.item_delay = sync_config.get('item_delay_seconds', 0.1)

        self.cache = cache
        self.repository = repository
        self.extractor = extractor
        self.matcher = matcher
        self.known_members = known_members or (lambda: [])
        self.on_member_added = on_member_added

        self.last_sync_time: Optional[float] = None
        self.last_result: Optional[Dict[str, int]] = None
        self._lock = threading.Lock()

    def validate_image(self, image: Optional[str]) -> bool:
        """A photo is syncable when it is a data URL of a plausible size."""
        if not image or not image.startswith('data:image/'):
            logger.debug("Invalid image format")
            return False
        if len(image) < self.min_image_length:
            logger.debug(f"Image too small ({len(image)} characters)")
            return False
        if len(image) > self.max_image_length:
            logger.debug(f"Image too large ({len(image)} characters)")
            return False
        return True

    def _descriptor(self, entry: CacheEntry) -> Optional[np.ndarray]:
        if entry.descriptor is None and self.extractor is not None:
            entry.descriptor = self.extractor.extract_from_data_url(entry.image)
        return entry.descriptor

    def _find_remote_duplicate(self, descriptor: np.ndarray,
                               members: List[Member]) -> Optional[Dict[str, Any]]:
        scores = self.matcher.score_candidates(descriptor, members)
        if scores and scores[0]['similarity'] >= self.remote_duplicate_similarity:
            return scores[0]
        return None

    def _skip_reason(self, entry: CacheEntry, pushed: List[np.ndarray],
                     members: List[Member]) -> Optional[str]:
        descriptor = self._descriptor(entry)

        if descriptor is not None:
            for other in pushed:
                if self.matcher.is_duplicate(descriptor, other, self.batch_duplicate_similarity):
                    return 'duplicate in batch'

            duplicate = self._find_remote_duplicate(descriptor, members)
            if duplicate is not None:
                return f"already exists as {duplicate['name']} ({duplicate['similarity']:.3f})"

        if not self.validate_image(entry.image):
            return 'invalid image'

        return None

    def run(self) -> Dict[str, Any]:
        """
        Push unsynced entries, oldest first.

        Duplicates and invalid photos are marked synced without an insert.
        Entries whose insert fails stay unsynced and are retried on the next
        run.

        Returns:
            Counts of synced, skipped, failed and total entries
        """
        if not self._lock.acquire(blocking=False):
            logger.info("Batch sync already running, skipping")
            return {'synced': 0, 'skipped': 0, 'failed': 0, 'total': 0, 'in_progress': True}

        try:
            return self._run_locked()
        finally:
            self._lock.release()

    def _run_locked(self) -> Dict[str, Any]:
        entries = self.cache.unsynced()
        result = {'synced': 0, 'skipped': 0, 'failed': 0, 'total': len(entries)}

        if not entries:
            logger.debug("No unsynced entries to batch sync")
            self.last_sync_time = time.time()
            self.last_result = result
            return result

        logger.info(f"Starting batch sync of {len(entries)} entries")

        try:
            members = list(self.known_members())
        except Exception as e:
            logger.error(f"Could not load known members for duplicate checks: {e}")
            members = []

        pushed: List[np.ndarray] = []
        for position, entry in enumerate(entries, start=1):
            logger.debug(f"[{position}/{len(entries)}] Processing {entry.name}")

            reason = self._skip_reason(entry, pushed, members)
            if reason is not None:
                logger.info(f"Skipping {entry.name}: {reason}")
                self.cache.mark_synced(entry.id)
                result['skipped'] += 1
                continue

            try:
                member = self.repository.add_member(
                    name=entry.name,
                    photo_url=entry.image,
                    status=MemberStatus.ALLOWED,
                    face_descriptor=entry.descriptor
                )
            except RemoteBackendError as e:
                logger.error(f"Failed to sync {entry.name}: {e}")
                result['failed'] += 1
                continue

            self.cache.mark_synced(entry.id)
            result['synced'] += 1
            if entry.descriptor is not None:
                pushed.append(entry.descriptor)
            members.append(member)
            if self.on_member_added is not None:
                self.on_member_added(member)
            logger.info(f"Synced {entry.name} to backend (id {member.id})")

            if self.item_delay and position < len(entries):
                time.sleep(self.item_delay)

        self.last_sync_time = time.time()
        self.last_result = result
        logger.info(f"Batch sync complete: {result['synced']} synced, {result['skipped']} skipped, "
                    f"{result['failed']} failed")
        return result


class SyncScheduler:
    """Runs a BatchSync on a background thread at a fixed interval."""

    def __init__(self, sync: BatchSync, interval_seconds: float = 120):
        self.sync = sync
        self.interval_seconds = interval_seconds
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        if self.is_running():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name='facecheck-sync', daemon=True)
        self._thread.start()
        logger.info(f"Batch sync scheduled every {self.interval_seconds}s")

    def _loop(self):
        while not self._stop_event.wait(self.interval_seconds):
            try:
                self.sync.run()
            except Exception as e:
                # Retried on the next tick
                logger.error(f"Scheduled batch sync failed: {e}")

    def stop(self, timeout: Optional[float] = 5.0):
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Batch sync scheduler stopped")
