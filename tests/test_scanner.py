"""
Unit tests for the scanning pipeline and frame poller.
"""

import os
import shutil
import sys
import tempfile
import unittest
from unittest import mock
from unittest.mock import MagicMock

import numpy as np

sys.path.insert(0, os.path.dirname(__file__))

from helpers import FAKE_PHOTO, FakeDetector, FakeExtractor, offset_descriptor, unit_descriptor
from facecheck.attendance import AttendanceCooldown, AttendanceLogger
from facecheck.config import get_default_config
from facecheck.embedding_cache import EmbeddingCache
from facecheck.errors import RemoteBackendError
from facecheck.face_cache import LocalFaceCache
from facecheck.kv_store import KeyValueStore
from facecheck.local_store import JsonMemberStore
from facecheck.matcher import FaceMatcher
from facecheck.models import AttendanceLog, Member
from facecheck.processing_guard import ProcessingGuard
from facecheck.scanner import FaceScanner, FramePoller, generate_person_name


class ScannerTestCase(unittest.TestCase):

    def setUp(self):
        self.test_dir = tempfile.mkdtemp()
        self.config = get_default_config()
        self.kv_store = KeyValueStore(os.path.join(self.test_dir, 'store.json'))
        self.face_cache = LocalFaceCache(self.config, self.kv_store)
        self.embedding_cache = EmbeddingCache(self.config, self.kv_store)
        self.repository = MagicMock()
        self.repository.organization_id = 'org'
        self.repository.add_attendance_log.side_effect = (
            lambda member_id, confidence: AttendanceLog(member_id=member_id, confidence=confidence))
        self.attendance = AttendanceLogger(self.repository, AttendanceCooldown(self.kv_store))
        self.detector = FakeDetector()
        self.base = unit_descriptor(1)
        self.extractor = FakeExtractor(descriptor=self.base)
        self.frame = np.zeros((120, 120, 3), dtype=np.uint8)

    def tearDown(self):
        shutil.rmtree(self.test_dir)

    def make_scanner(self, **kwargs):
        options = dict(embedding_cache=self.embedding_cache, repository=self.repository,
                       attendance_logger=self.attendance)
        options.update(kwargs)
        return FaceScanner(self.config, self.detector, self.extractor,
                           FaceMatcher(self.config), self.face_cache, **options)

    def cache_members(self, *members):
        self.embedding_cache.set('org', list(members))


class TestFaceScannerPipeline(ScannerTestCase):

    def test_busy_when_guard_held(self):
        scanner = self.make_scanner()
        scanner.guard.try_acquire()
        self.assertEqual(scanner.process_frame(self.frame)['status'], 'busy')

    def test_no_face(self):
        self.detector.found = False
        result = self.make_scanner().process_frame(self.frame)
        self.assertEqual(result['status'], 'no_face')

    def test_low_quality(self):
        self.detector.valid = False
        result = self.make_scanner().process_frame(self.frame)
        self.assertEqual(result['status'], 'low_quality')
        self.assertIn('blurry', result['message'])

    def test_valid_face_used_when_first_face_is_poor(self):
        poor = FakeDetector(valid=False).process_frame(self.frame)[0]
        poor['bbox'] = [0, 0, 90, 90]
        good = FakeDetector().process_frame(self.frame)[0]
        self.detector.process_frame = MagicMock(return_value=[poor, good])

        result = self.make_scanner().process_frame(self.frame)

        self.assertEqual(result['status'], 'registered')
        self.assertEqual(result['bbox'], [10, 10, 80, 80])

    def test_descriptor_failure(self):
        self.extractor.descriptor = None
        result = self.make_scanner().process_frame(self.frame)
        self.assertEqual(result['status'], 'error')
        self.assertIn('descriptor', result['error'])

    def test_exception_reported_and_guard_released(self):
        self.detector.process_frame = MagicMock(side_effect=RuntimeError('camera glitch'))
        scanner = self.make_scanner()
        result = scanner.process_frame(self.frame)
        self.assertEqual(result['status'], 'error')
        self.assertFalse(scanner.guard.is_busy())

    def test_matched_member_logs_attendance(self):
        self.cache_members(Member(id='m1', name='Ann', face_descriptor=offset_descriptor(self.base, 0.1)))
        scanner = self.make_scanner()
        scanner.load_members()

        result = scanner.process_frame(self.frame)

        self.assertEqual(result['status'], 'matched')
        self.assertEqual(result['member'].id, 'm1')
        self.assertEqual(result['access'], 'granted')
        self.assertEqual(result['display_seconds'], 3)
        self.assertTrue(result['attendance']['logged'])
        self.assertFalse(scanner.guard.is_busy())

    def test_second_scan_hits_attendance_cooldown(self):
        self.cache_members(Member(id='m1', name='Ann', face_descriptor=self.base))
        scanner = self.make_scanner()
        scanner.load_members()
        scanner.process_frame(self.frame)
        result = scanner.process_frame(self.frame)
        self.assertEqual(result['attendance']['reason'], 'cooldown')
        self.assertEqual(self.repository.add_attendance_log.call_count, 1)

    def test_banned_member_denied_without_attendance(self):
        self.cache_members(Member(id='m1', name='Bob', status='Banned', face_descriptor=self.base))
        scanner = self.make_scanner()
        scanner.load_members()

        result = scanner.process_frame(self.frame)

        self.assertEqual(result['access'], 'denied')
        self.assertEqual(result['display_seconds'], 5)
        self.assertIsNone(result['attendance'])
        self.repository.add_attendance_log.assert_not_called()

    def test_vip_member(self):
        self.cache_members(Member(id='m1', name='Cid', status='VIP', face_descriptor=self.base))
        scanner = self.make_scanner()
        scanner.load_members()
        self.assertEqual(scanner.process_frame(self.frame)['access'], 'vip')

    def test_unknown_face_registered_locally(self):
        scanner = self.make_scanner()
        result = scanner.process_frame(self.frame)

        self.assertEqual(result['status'], 'registered')
        self.assertTrue(result['name'].startswith('Person_'))
        entry = self.face_cache.get(result['entry'].id)
        self.assertFalse(entry.synced)
        self.assertTrue(entry.image.startswith('data:image/jpeg;base64,'))
        self.repository.add_member.assert_not_called()

    def test_ambiguous_match_falls_through_to_registration(self):
        self.cache_members(
            Member(id='m1', name='Ann', face_descriptor=offset_descriptor(self.base, 0.10, seed=1)),
            Member(id='m2', name='Amy', face_descriptor=offset_descriptor(self.base, 0.12, seed=2)),
        )
        scanner = self.make_scanner()
        scanner.load_members()
        self.assertEqual(scanner.process_frame(self.frame)['status'], 'registered')

    def test_same_face_again_is_duplicate(self):
        scanner = self.make_scanner()
        scanner.process_frame(self.frame)
        result = scanner.process_frame(self.frame)
        self.assertEqual(result['status'], 'duplicate')
        self.assertEqual(len(self.face_cache), 1)

    def test_recent_face_matched_from_local_cache(self):
        scanner = self.make_scanner()
        first = scanner.process_frame(self.frame)
        # similarity 0.8: below the recent capture limit, above the local match threshold
        self.extractor.descriptor = offset_descriptor(self.base, 0.2)
        result = scanner.process_frame(self.frame)
        self.assertEqual(result['status'], 'matched')
        self.assertEqual(result['source'], 'local_cache')
        self.assertEqual(result['entry'].id, first['entry'].id)

    def test_registration_cooldown(self):
        scanner = self.make_scanner()
        scanner.process_frame(self.frame)
        self.extractor.descriptor = unit_descriptor(2)
        result = scanner.process_frame(self.frame)
        self.assertEqual(result['status'], 'cooldown')

        scanner.last_registration_time -= 10
        self.assertEqual(scanner.process_frame(self.frame)['status'], 'registered')

    def test_auto_register_disabled(self):
        self.config['scanner']['auto_register'] = False
        result = self.make_scanner().process_frame(self.frame)
        self.assertEqual(result['status'], 'unknown')
        self.assertEqual(len(self.face_cache), 0)

    def test_statistics(self):
        scanner = self.make_scanner()
        scanner.process_frame(self.frame)
        stats = scanner.get_statistics()
        self.assertEqual(stats['frames_processed'], 1)
        self.assertEqual(stats['registrations'], 1)
        self.assertEqual(stats['local_cache']['unsynced'], 1)


class TestFaceScannerMembers(ScannerTestCase):

    def test_load_from_embedding_cache(self):
        self.cache_members(Member(id='m1', name='Ann', face_descriptor=self.base))
        scanner = self.make_scanner()
        self.assertEqual(scanner.load_members(), 1)
        self.assertEqual(scanner.members_source, 'embedding_cache')
        self.repository.get_members.assert_not_called()

    def test_load_from_local_store(self):
        store = JsonMemberStore(self.kv_store)
        store.initialize()
        store.upsert_local(Member(id='m1', name='Ann', face_descriptor=self.base))
        scanner = self.make_scanner(local_store=store)

        self.assertEqual(scanner.load_members(), 1)
        self.assertEqual(scanner.members_source, 'local_store')
        self.assertEqual(len(self.embedding_cache.get('org')), 1)

    def test_member_added_to_expired_cache_keeps_full_list(self):
        store = JsonMemberStore(self.kv_store)
        store.initialize()
        store.upsert_local(Member(id='m1', name='Ann', face_descriptor=unit_descriptor(11)))
        store.upsert_local(Member(id='m2', name='Bob', status='Banned', face_descriptor=self.base))
        store.upsert_local(Member(id='m3', name='Cid', status='VIP', face_descriptor=unit_descriptor(13)))
        scanner = self.make_scanner(local_store=store)
        self.assertEqual(scanner.load_members(), 3)

        key = 'face_embeddings_cache_org'
        payload = self.kv_store.get(key)
        payload['timestamp'] -= 25 * 3600
        self.kv_store.set(key, payload)
        scanner.add_known_member(Member(id='m9', name='New', face_descriptor=unit_descriptor(19)))

        restarted = self.make_scanner(local_store=store)
        self.assertEqual(restarted.load_members(), 3)
        self.assertEqual(restarted.members_source, 'local_store')
        result = restarted.process_frame(self.frame)
        self.assertEqual(result['status'], 'matched')
        self.assertEqual(result['access'], 'denied')

    def test_load_from_remote_computes_missing_descriptors(self):
        self.extractor.photos[FAKE_PHOTO] = unit_descriptor(5)
        self.repository.get_members.return_value = [
            Member(id='m1', name='Ann', photo_url=FAKE_PHOTO),
            Member(id='m2', name='Bob', face_descriptor=self.base),
            Member(id='m3', name='NoPhoto'),
        ]
        scanner = self.make_scanner()

        self.assertEqual(scanner.load_members(), 2)
        self.assertEqual(scanner.members_source, 'remote')
        self.repository.update_member_descriptor.assert_called_once()
        self.assertEqual(self.repository.update_member_descriptor.call_args[0][0], 'm1')

    def test_load_with_backend_down(self):
        self.repository.get_members.side_effect = RemoteBackendError('get_members')
        scanner = self.make_scanner()
        self.assertEqual(scanner.load_members(), 0)
        self.assertIsNone(scanner.members_source)

    def test_add_known_member(self):
        scanner = self.make_scanner()
        scanner.add_known_member(Member(id='m9', name='New', face_descriptor=self.base))
        scanner.add_known_member(Member(id='m10', name='NoDescriptor'))
        self.assertEqual([member.id for member in scanner.known_members()], ['m9'])
        self.assertEqual(scanner.match_member(self.base)['candidate'].id, 'm9')


class TestRegisterMember(ScannerTestCase):

    def setUp(self):
        super().setUp()
        self.repository.add_member.side_effect = (
            lambda name, photo_url, status, face_descriptor=None, details=None:
            Member(id='new-id', name=name, status=status, photo_url=photo_url,
                   face_descriptor=face_descriptor))

    def test_register_member(self):
        self.cache_members(Member(id='m1', name='Ann', face_descriptor=unit_descriptor(11)))
        scanner = self.make_scanner()
        scanner.load_members()
        result = scanner.register_member(' Dee ', self.frame, 'VIP')

        self.assertTrue(result['success'])
        self.assertEqual(result['member'].name, 'Dee')
        kwargs = self.repository.add_member.call_args.kwargs
        self.assertEqual(kwargs['status'], 'VIP')
        self.assertIsNotNone(kwargs['face_descriptor'])
        self.assertIn('new-id', scanner.members)
        self.assertEqual(len(self.embedding_cache.get('org')), 2)

    def test_register_member_validation(self):
        scanner = self.make_scanner()
        self.assertEqual(scanner.register_member('', self.frame)['error'], 'Name cannot be empty')
        self.assertIn('Invalid status', scanner.register_member('Dee', self.frame, 'Guest')['error'])
        self.assertEqual(self.make_scanner(repository=None).register_member('Dee', self.frame)['error'],
                         'No backend configured')

    def test_register_member_without_usable_face(self):
        self.detector.valid = False
        result = self.make_scanner().register_member('Dee', self.frame)
        self.assertFalse(result['success'])
        self.repository.add_member.assert_not_called()

    def test_register_member_backend_error(self):
        self.repository.add_member.side_effect = RemoteBackendError('add_member')
        result = self.make_scanner().register_member('Dee', self.frame)
        self.assertFalse(result['success'])
        self.assertIn('add_member', result['error'])


class TestFramePoller(unittest.TestCase):

    def test_generate_person_name(self):
        parts = generate_person_name().split('_')
        self.assertEqual(parts[0], 'Person')
        self.assertTrue(parts[1].isdigit())
        self.assertLess(int(parts[2]), 1000)

    @mock.patch('facecheck.scanner.cv2.VideoCapture')
    def test_feeds_frames_until_source_ends(self, video_capture):
        frame = np.zeros((10, 10, 3), dtype=np.uint8)
        capture = MagicMock()
        capture.isOpened.return_value = True
        capture.read.side_effect = [(True, frame), (True, frame), (False, None)]
        video_capture.return_value = capture

        guard = MagicMock(spec=ProcessingGuard)
        frames = []
        poller = FramePoller('clip.mp4', interval_ms=0, guard=guard)
        poller.run(frames.append)

        self.assertEqual(len(frames), 2)
        self.assertEqual(guard.check_timeout.call_count, 3)
        capture.release.assert_called_once()

    @mock.patch('facecheck.scanner.cv2.VideoCapture')
    def test_max_frames(self, video_capture):
        capture = MagicMock()
        capture.isOpened.return_value = True
        capture.read.return_value = (True, np.zeros((10, 10, 3), dtype=np.uint8))
        video_capture.return_value = capture

        poller = FramePoller(0, interval_ms=0, max_frames=3)
        frames = []
        poller.run(frames.append)
        self.assertEqual(len(frames), 3)

    @mock.patch('facecheck.scanner.cv2.VideoCapture')
    def test_source_not_opened(self, video_capture):
        video_capture.return_value.isOpened.return_value = False
        poller = FramePoller('missing.mp4')
        frames = []
        poller.run(frames.append)
        self.assertEqual(frames, [])


if __name__ == '__main__':
    unittest.main()
