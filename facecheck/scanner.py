"""
Face Scanner Module

The scanning pipeline: detect a face in a camera frame, extract its
descriptor, match it against the cached member list, log attendance for
members and register unknown faces in the local cache. Also provides the
frame poller that samples a camera or video file on a timer.
"""

import logging
import random
import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Union

import cv2
import numpy as np

from .errors import InvalidImageError, RemoteBackendError, StorageNotInitializedError
from .image_utils import data_url_to_image, image_to_data_url, is_data_url
from .matcher import DescriptorIndex, FaceMatcher
from .models import Member, MemberStatus, is_valid_status
from .processing_guard import ProcessingGuard, ProcessingState

logger = logging.getLogger(__name__)


def generate_person_name() -> str:
    """Name given to automatically registered people."""
    return f"Person_{int(time.time() * 1000)}_{random.randint(0, 999)}"


class FaceScanner:
    """Membership check pipeline for single frames."""

    def __init__(self, config: Dict[str, Any], detector, extractor, matcher: FaceMatcher,
                 face_cache, embedding_cache=None, local_store=None, repository=None,
                 attendance_logger=None, photo_loader=None,
                 index: Optional[DescriptorIndex] = None,
                 guard: Optional[ProcessingGuard] = None):
        """
        Initialize face scanner.

        Args:
            config: Configuration dictionary
            detector: FaceDetector
            extractor: DescriptorExtractor
            matcher: FaceMatcher
            face_cache: LocalFaceCache for captures not yet on the backend
            embedding_cache: EmbeddingCache of member descriptors
            local_store: Local member store
            repository: Remote member repository
            attendance_logger: AttendanceLogger for matched members
            photo_loader: PhotoLoader used to compute missing descriptors
            index: Descriptor index; a linear index is created when omitted
            guard: Processing guard; created from the scanner settings when omitted
        """
        self.config = config
        self.scanner_config = config.get('scanner', {})
        self.auto_register = self.scanner_config.get('auto_register', True)
        self.registration_cooldown = self.scanner_config.get('registration_cooldown_seconds', 5)
        self.banned_display_seconds = self.scanner_config.get('banned_display_seconds', 5)
        self.default_display_seconds = self.scanner_config.get('default_display_seconds', 3)

        self.detector = detector
        self.extractor = extractor
        self.matcher = matcher
        self.face_cache = face_cache
        self.embedding_cache = embedding_cache
        self.local_store = local_store
        self.repository = repository
        self.attendance_logger = attendance_logger
        self.photo_loader = photo_loader
        self.index = index or DescriptorIndex({'matching': {'backend': 'linear'}})
        self.guard = guard or ProcessingGuard(
            self.scanner_config.get('processing_timeout_seconds', 15))

        self.members: Dict[str, Member] = {}
        self.members_source: Optional[str] = None
        self.last_registration_time = 0.0

        self.stats = {
            'frames_processed': 0,
            'faces_detected': 0,
            'matches': 0,
            'registrations': 0,
            'duplicates_skipped': 0,
            'failed_descriptors': 0,
            'session_start': datetime.now().isoformat()
        }

        logger.info("Face scanner initialized")

    @property
    def organization_id(self) -> Optional[str]:
        if self.repository is not None:
            return self.repository.organization_id
        return self.config.get('backend', {}).get('organization_id')

    # Member list

    def _fetch_members(self) -> List[Member]:
        if self.embedding_cache is not None:
            cached = self.embedding_cache.get(self.organization_id)
            if cached:
                self.members_source = 'embedding_cache'
                return cached

        if self.local_store is not None and self.local_store.is_ready():
            try:
                members = self.local_store.get_all_members()
            except StorageNotInitializedError as e:
                logger.error(f"Local member store unavailable: {e}")
                members = []
            if members:
                self.members_source = 'local_store'
                return members

        if self.repository is not None:
            try:
                members = self.repository.get_members()
            except RemoteBackendError as e:
                logger.error(f"Could not load members from backend: {e}")
                members = []
            if members:
                self.members_source = 'remote'
                return members

        self.members_source = None
        return []

    def _compute_missing_descriptor(self, member: Member) -> Optional[np.ndarray]:
        if self.photo_loader is not None:
            photo = self.photo_loader.load(member)
        else:
            photo = member.photo_url if is_data_url(member.photo_url) else None
        if not photo:
            return None

        descriptor = self.extractor.extract_from_data_url(photo)
        if descriptor is None:
            logger.warning(f"Could not compute descriptor for {member.name}")
            return None

        if self.repository is not None:
            try:
                self.repository.update_member_descriptor(member.id, descriptor)
            except RemoteBackendError as e:
                logger.error(f"Failed to store descriptor for {member.name}: {e}")
        return descriptor

    def load_members(self) -> int:
        """
        Fill the matching list.

        Members come from the embedding cache, else the local store, else the
        backend. Descriptors missing from stored members are computed from
        their photos and written back to the backend and the embedding cache.

        Returns:
            Number of members available for matching
        """
        members = self._fetch_members()

        computed = 0
        for member in members:
            if member.face_descriptor is None:
                member.face_descriptor = self._compute_missing_descriptor(member)
                if member.face_descriptor is not None:
                    computed += 1

        usable = [member for member in members if member.face_descriptor is not None]
        self.members = {member.id: member for member in usable}
        self.index.rebuild(usable)

        if self.embedding_cache is not None and usable and (
                self.members_source != 'embedding_cache' or computed):
            self.embedding_cache.set(self.organization_id, usable)

        logger.info(f"Loaded {len(usable)} members from {self.members_source or 'nowhere'} "
                    f"({computed} descriptors computed, {len(members) - len(usable)} without descriptor)")
        return len(usable)

    def add_known_member(self, member: Member):
        """Make a member created elsewhere (e.g. by batch sync) matchable."""
        if member.face_descriptor is None:
            return
        self.members[member.id] = member
        try:
            self.index.add(member.id, member.face_descriptor)
        except ValueError as e:
            logger.warning(f"Cannot index {member.name}: {e}")
        if self.embedding_cache is not None:
            self.embedding_cache.add(self.organization_id, member)

    def known_members(self) -> List[Member]:
        return list(self.members.values())

    # Matching

    def match_member(self, descriptor: np.ndarray) -> Dict[str, Any]:
        return self.matcher.match_index(descriptor, self.index, self.members)

    def _decision(self, member: Member) -> Dict[str, Any]:
        if member.status == MemberStatus.BANNED:
            return {'access': 'denied', 'display_seconds': self.banned_display_seconds,
                    'message': f"Access Denied - {member.name} is banned"}
        if member.status == MemberStatus.VIP:
            return {'access': 'vip', 'display_seconds': self.default_display_seconds,
                    'message': f"Welcome VIP {member.name}!"}
        return {'access': 'granted', 'display_seconds': self.default_display_seconds,
                'message': f"Welcome {member.name}!"}

    def _handle_member_match(self, result: Dict[str, Any], member: Member, similarity: float):
        result.update(self._decision(member))
        result.update({
            'status': 'matched',
            'source': 'members',
            'member': member,
            'name': member.name,
            'similarity': similarity
        })
        self.stats['matches'] += 1
        logger.info(f"Matched {member.name} ({member.status}) with similarity {similarity:.3f}")

        if member.status == MemberStatus.BANNED or self.attendance_logger is None:
            return
        result['attendance'] = self.attendance_logger.log(member, similarity)

    # Registration

    def _register_capture(self, result: Dict[str, Any], descriptor: np.ndarray,
                          face_image: np.ndarray):
        self.guard.set_state(ProcessingState.REGISTERING)

        since_last = time.time() - self.last_registration_time
        if since_last < self.registration_cooldown:
            result['status'] = 'cooldown'
            result['message'] = (f"Registration cooldown: wait "
                                 f"{self.registration_cooldown - since_last:.1f}s")
            return

        name = generate_person_name()
        entry = self.face_cache.add(name, image_to_data_url(face_image), synced=False,
                                    descriptor=descriptor)
        self.last_registration_time = time.time()
        self.stats['registrations'] += 1
        result.update({
            'status': 'registered',
            'entry': entry,
            'name': name,
            'access': 'granted',
            'display_seconds': self.default_display_seconds,
            'message': f"New person registered as {name}"
        })

    # Frame pipeline

    def process_frame(self, frame: np.ndarray) -> Dict[str, Any]:
        """
        Run the scanning pipeline on one frame.

        Args:
            frame: BGR camera frame

        Returns:
            Result dictionary with 'status' (busy, no_face, low_quality,
            cooldown, duplicate, matched, registered, unknown or error),
            'message' and, depending on the status, 'member', 'entry',
            'similarity', 'access', 'display_seconds' and 'attendance'
        """
        result = {
            'status': None,
            'message': '',
            'timestamp': datetime.now().isoformat(),
            'bbox': None,
            'member': None,
            'entry': None,
            'name': None,
            'source': None,
            'similarity': 0.0,
            'access': None,
            'display_seconds': None,
            'attendance': None,
            'error': None
        }

        with self.guard.hold(ProcessingState.CAPTURING) as acquired:
            if not acquired:
                result['status'] = 'busy'
                result['message'] = f"Processing in progress ({self.guard.state})"
                return result

            try:
                self._process_locked(frame, result)
            except Exception as e:
                logger.error(f"Frame processing error: {e}")
                result['status'] = 'error'
                result['error'] = str(e)
                result['message'] = 'Scan failed, please try again'

        return result

    def _process_locked(self, frame: np.ndarray, result: Dict[str, Any]):
        self.stats['frames_processed'] += 1

        faces = self.detector.process_frame(frame)
        if not faces:
            result['status'] = 'no_face'
            result['message'] = 'No face detected'
            return

        self.stats['faces_detected'] += 1
        face = next((face for face in faces if face['quality']['valid']), None)
        if face is None:
            result['bbox'] = faces[0]['bbox']
            result['status'] = 'low_quality'
            result['message'] = f"Face quality too low: {faces[0]['quality'].get('reason', 'unknown')}"
            return
        result['bbox'] = face['bbox']

        self.guard.set_state(ProcessingState.MATCHING)
        descriptor = self.extractor.extract(face['face_image'])
        validation = self.extractor.validate_descriptor(descriptor)
        if not validation['valid']:
            self.stats['failed_descriptors'] += 1
            result['status'] = 'error'
            result['error'] = f"Invalid descriptor: {validation['reason']}"
            result['message'] = 'Could not read face, please try again'
            return

        match = self.match_member(descriptor)
        if match['matched']:
            self._handle_member_match(result, match['candidate'], match['similarity'])
            return

        # Same unknown face still in front of the camera
        recent = self.face_cache.find_recent_similar(descriptor, self.extractor)
        if recent is not None:
            self.stats['duplicates_skipped'] += 1
            result.update({
                'status': 'duplicate',
                'entry': recent,
                'name': recent.name,
                'message': f"Already captured as {recent.name}"
            })
            return

        local = self.face_cache.find_local_match(descriptor, self.extractor)
        if local is not None:
            entry, similarity = local
            result.update({
                'status': 'matched',
                'source': 'local_cache',
                'entry': entry,
                'name': entry.name,
                'similarity': similarity,
                'access': 'granted',
                'display_seconds': self.default_display_seconds,
                'message': f"Welcome back {entry.name}!"
            })
            self.stats['matches'] += 1
            return

        if not self.auto_register:
            result['status'] = 'unknown'
            result['similarity'] = match['similarity']
            result['message'] = 'Face not recognized'
            return

        self._register_capture(result, descriptor, face['face_image'])

    def register_member(self, name: str, image: Union[np.ndarray, str],
                        status: str = MemberStatus.ALLOWED,
                        details: Optional[str] = None) -> Dict[str, Any]:
        """
        Enroll a named member from a photo.

        Args:
            name: Member name
            image: BGR image or data URL containing the face
            status: Allowed, Banned or VIP
            details: Free-form notes

        Returns:
            Dictionary with 'success', 'member', 'similarity_check' and 'error'
        """
        result = {'success': False, 'member': None, 'similarity_check': 0.0, 'error': None}

        if not name or not name.strip():
            result['error'] = 'Name cannot be empty'
            return result
        if not is_valid_status(status):
            result['error'] = f"Invalid status: {status}"
            return result
        if self.repository is None:
            result['error'] = 'No backend configured'
            return result

        try:
            frame = data_url_to_image(image) if isinstance(image, str) else image
        except InvalidImageError as e:
            result['error'] = str(e)
            return result

        faces = [face for face in self.detector.process_frame(frame) if face['quality']['valid']]
        if not faces:
            result['error'] = 'No usable face detected in photo'
            return result

        face = faces[0]
        descriptor = self.extractor.extract(face['face_image'])
        if not self.extractor.validate_descriptor(descriptor)['valid']:
            result['error'] = 'Failed to generate descriptor'
            return result

        existing = self.match_member(descriptor)
        if existing['matched']:
            result['similarity_check'] = existing['similarity']
            logger.warning(f"Similar face already registered as {existing['candidate'].name}, "
                           f"enrolling anyway")

        try:
            member = self.repository.add_member(
                name=name.strip(),
                photo_url=image_to_data_url(face['face_image']),
                status=status,
                face_descriptor=descriptor,
                details=details
            )
        except RemoteBackendError as e:
            result['error'] = str(e)
            return result

        if self.local_store is not None and self.local_store.is_ready():
            self.local_store.upsert_local(member)
        if self.photo_loader is not None and member.has_photo:
            self.photo_loader.storage.save_image(member.id, member.photo_url, name=member.name)
        if member.face_descriptor is None:
            member.face_descriptor = descriptor
        self.add_known_member(member)

        result['success'] = True
        result['member'] = member
        logger.info(f"Registered member {member.name} ({member.status})")
        return result

    def get_statistics(self) -> Dict[str, Any]:
        return {
            **self.stats,
            'members_loaded': len(self.members),
            'members_source': self.members_source,
            'local_cache': self.face_cache.stats(),
            'match_rate': self.stats['matches'] / max(1, self.stats['faces_detected'])
        }


class FramePoller:
    """Samples frames from a camera or video file at a fixed interval."""

    def __init__(self, source: Union[int, str], interval_ms: int = 100,
                 guard: Optional[ProcessingGuard] = None, max_frames: Optional[int] = None):
        """
        Initialize frame poller.

        Args:
            source: Camera device id or video file path
            interval_ms: Time between sampled frames
            guard: Processing guard checked for timeouts on every tick
            max_frames: Stop after this many frames
        """
        self.source = source
        self.interval = interval_ms / 1000.0
        self.guard = guard
        self.max_frames = max_frames
        self.cap = None
        self.is_running = False
        self.frame_count = 0

    def open(self) -> bool:
        try:
            self.cap = cv2.VideoCapture(self.source)
            if not self.cap.isOpened():
                logger.error(f"Failed to open video source {self.source}")
                return False

            if isinstance(self.source, int):
                self.cap.set(cv2.CAP_PROP_FRAME_WIDTH, 640)
                self.cap.set(cv2.CAP_PROP_FRAME_HEIGHT, 480)

            logger.info(f"Video source {self.source} opened")
            return True
        except Exception as e:
            logger.error(f"Video source initialization error: {e}")
            return False

    def run(self, callback: Callable[[np.ndarray], Any]):
        """
        Feed frames to the callback until stopped or the source ends.

        Args:
            callback: Called with each sampled frame
        """
        if self.cap is None and not self.open():
            return

        self.is_running = True
        logger.info(f"Polling frames every {self.interval * 1000:.0f}ms")

        try:
            while self.is_running:
                tick_start = time.time()

                if self.guard is not None:
                    self.guard.check_timeout()

                ret, frame = self.cap.read()
                if not ret:
                    logger.info("No more frames from video source")
                    break

                self.frame_count += 1
                callback(frame)

                if self.max_frames is not None and self.frame_count >= self.max_frames:
                    break

                time.sleep(max(0.0, self.interval - (time.time() - tick_start)))
        except KeyboardInterrupt:
            logger.info("Interrupted by user")
        finally:
            self.close()

    def stop(self):
        self.is_running = False

    def close(self):
        self.is_running = False
        if self.cap is not None:
            self.cap.release()
            self.cap = None
