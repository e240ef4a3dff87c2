"""
Unit tests for the batch sync job and its scheduler.
"""

import os
import shutil
import sys
import tempfile
import threading
import time
import unittest
from unittest.mock import MagicMock

sys.path.insert(0, os.path.dirname(__file__))

from helpers import FAKE_PHOTO, FakeExtractor, offset_descriptor, unit_descriptor
from facecheck.config import get_default_config
from facecheck.errors import RemoteBackendError
from facecheck.face_cache import LocalFaceCache
from facecheck.kv_store import KeyValueStore
from facecheck.matcher import FaceMatcher
from facecheck.models import Member
from facecheck.sync import BatchSync, SyncScheduler


class TestBatchSync(unittest.TestCase):

    def setUp(self):
        self.test_dir = tempfile.mkdtemp()
        self.config = get_default_config()
        self.config['sync']['item_delay_seconds'] = 0
        self.cache = LocalFaceCache(self.config, KeyValueStore(os.path.join(self.test_dir, 'store.json')))
        self.repository = MagicMock()
        self.repository.add_member.side_effect = self._add_member
        self.extractor = FakeExtractor()
        self.known = []
        self.added = []
        self.sync = BatchSync(self.cache, self.repository, self.extractor,
                              FaceMatcher(self.config), self.config,
                              known_members=lambda: self.known,
                              on_member_added=self.added.append)

    def tearDown(self):
        shutil.rmtree(self.test_dir)

    def _add_member(self, name, photo_url, status='Allowed', face_descriptor=None, details=None):
        return Member(id=f"id-{name}", name=name, photo_url=photo_url, status=status,
                      face_descriptor=face_descriptor)

    def _add_entry(self, name, descriptor, age=0.0, image=FAKE_PHOTO):
        entry = self.cache.add(name, image, descriptor=descriptor)
        entry.capture_time = time.time() - age
        return entry

    def test_nothing_to_sync(self):
        result = self.sync.run()
        self.assertEqual(result, {'synced': 0, 'skipped': 0, 'failed': 0, 'total': 0})
        self.repository.add_member.assert_not_called()

    def test_pushes_oldest_first_and_marks_synced(self):
        newer = self._add_entry('Person_new', unit_descriptor(1), age=5)
        older = self._add_entry('Person_old', unit_descriptor(2), age=50)

        result = self.sync.run()

        self.assertEqual(result['synced'], 2)
        names = [call.kwargs['name'] for call in self.repository.add_member.call_args_list]
        self.assertEqual(names, ['Person_old', 'Person_new'])
        self.assertTrue(self.cache.get(newer.id).synced)
        self.assertTrue(self.cache.get(older.id).synced)
        self.assertEqual([member.name for member in self.added], ['Person_old', 'Person_new'])

    def test_sends_descriptor_with_member(self):
        self._add_entry('Person_a', unit_descriptor(1))
        self.sync.run()
        self.assertIsNotNone(self.repository.add_member.call_args.kwargs['face_descriptor'])

    def test_skips_duplicate_within_batch(self):
        base = unit_descriptor(1)
        self._add_entry('first', base, age=20)
        duplicate = self._add_entry('second', offset_descriptor(base, 0.2), age=10)

        result = self.sync.run()

        self.assertEqual(result['synced'], 1)
        self.assertEqual(result['skipped'], 1)
        self.assertTrue(self.cache.get(duplicate.id).synced)

    def test_skips_known_remote_member(self):
        base = unit_descriptor(1)
        self.known.append(Member(id='m1', name='Ann', face_descriptor=offset_descriptor(base, 0.15)))
        self._add_entry('Person_a', base)

        result = self.sync.run()

        self.assertEqual(result, {'synced': 0, 'skipped': 1, 'failed': 0, 'total': 1})
        self.repository.add_member.assert_not_called()

    def test_weak_remote_similarity_is_not_duplicate(self):
        base = unit_descriptor(1)
        # similarity 0.75: not a remote duplicate (< 0.80)
        self.known.append(Member(id='m1', name='Ann', face_descriptor=offset_descriptor(base, 0.25)))
        self._add_entry('Person_a', base)
        self.assertEqual(self.sync.run()['synced'], 1)

    def test_skips_invalid_images(self):
        self._add_entry('tiny', unit_descriptor(1), image='data:image/jpeg;base64,AAAA')
        self._add_entry('not_image', unit_descriptor(2), image='A' * 6000)
        self._add_entry('huge', unit_descriptor(3), image='data:image/jpeg;base64,' + 'A' * 2000001)

        result = self.sync.run()

        self.assertEqual(result['skipped'], 3)
        self.assertEqual(self.cache.unsynced(), [])

    def test_failed_insert_stays_unsynced(self):
        entry = self._add_entry('Person_a', unit_descriptor(1))
        self.repository.add_member.side_effect = RemoteBackendError('add_member')

        result = self.sync.run()

        self.assertEqual(result['failed'], 1)
        self.assertFalse(self.cache.get(entry.id).synced)

        self.repository.add_member.side_effect = self._add_member
        self.assertEqual(self.sync.run()['synced'], 1)

    def test_extracts_missing_descriptors(self):
        photo = FAKE_PHOTO + 'C'
        base = unit_descriptor(1)
        self.extractor.photos[photo] = base
        self.known.append(Member(id='m1', name='Ann', face_descriptor=base))
        self._add_entry('Person_a', None, image=photo)

        result = self.sync.run()

        self.assertEqual(result['skipped'], 1)
        self.assertEqual(self.extractor.photo_calls, 1)

    def test_overlapping_runs_are_skipped(self):
        self.sync._lock.acquire()
        try:
            result = self.sync.run()
        finally:
            self.sync._lock.release()
        self.assertTrue(result['in_progress'])

    def test_validate_image(self):
        self.assertTrue(self.sync.validate_image(FAKE_PHOTO))
        self.assertFalse(self.sync.validate_image(None))
        self.assertFalse(self.sync.validate_image('data:image/jpeg;base64,AAAA'))


class TestSyncScheduler(unittest.TestCase):

    def test_runs_until_stopped(self):
        ran = threading.Event()
        sync = MagicMock()
        sync.run.side_effect = lambda: ran.set()

        scheduler = SyncScheduler(sync, interval_seconds=0.01)
        scheduler.start()
        self.assertTrue(ran.wait(2))
        scheduler.stop()

        self.assertFalse(scheduler.is_running())
        self.assertGreaterEqual(sync.run.call_count, 1)

    def test_errors_do_not_stop_scheduler(self):
        calls = []

        def failing_run():
            calls.append(1)
            raise RuntimeError('backend down')

        sync = MagicMock()
        sync.run.side_effect = failing_run
        scheduler = SyncScheduler(sync, interval_seconds=0.01)
        scheduler.start()
        deadline = time.time() + 2
        while len(calls) < 2 and time.time() < deadline:
            time.sleep(0.01)
        scheduler.stop()
        self.assertGreaterEqual(len(calls), 2)


if __name__ == '__main__':
    unittest.main()
