"""
Main Application Module

Wires the scanner, stores, backend and sync job together and provides the
command line interface: live camera or video scanning, single image scans,
manual registration and maintenance commands.
"""

import argparse
import logging
import sys
from typing import Any, Dict, Optional

import cv2
import numpy as np

from .attendance import AttendanceCooldown, AttendanceLogger
from .config import DEFAULT_CONFIG_PATH, load_config
from .descriptor_extractor import DescriptorExtractor
from .embedding_cache import EmbeddingCache
from .errors import FaceCheckError, RemoteBackendError
from .face_cache import LocalFaceCache
from .face_detector import FaceDetector
from .image_storage import ImageStorage, PhotoLoader
from .image_utils import load_image_file
from .kv_store import KeyValueStore
from .local_store import create_local_store
from .matcher import DescriptorIndex, FaceMatcher
from .models import MemberStatus
from .repository import MemberRepository, create_backend_client
from .scanner import FaceScanner, FramePoller
from .sync import BatchSync, SyncScheduler

logger = logging.getLogger(__name__)

STATUS_COLORS = {
    'granted': (0, 255, 0),
    'vip': (0, 215, 255),
    'denied': (0, 0, 255)
}


def setup_logging(verbose: bool = False, log_file: str = 'facecheck.log'):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.FileHandler(log_file),
            logging.StreamHandler(sys.stdout)
        ]
    )


class FaceCheckApp:
    """Membership check application."""

    def __init__(self, config: Dict[str, Any], offline: bool = False):
        """
        Initialize the application.

        Args:
            config: Complete configuration dictionary
            offline: Skip connecting to the backend
        """
        self.config = config
        storage = config.get('storage', {})

        self.kv_store = KeyValueStore(storage.get('kv_file', 'data/facecheck_store.json'))

        self.repository: Optional[MemberRepository] = None
        if not offline:
            try:
                client = create_backend_client(config)
                self.repository = MemberRepository(
                    client, config.get('backend', {}).get('organization_id'))
            except RemoteBackendError as e:
                logger.warning(f"Running without backend: {e}")

        self.detector = FaceDetector(config)
        self.extractor = DescriptorExtractor(config)
        self.matcher = FaceMatcher(config)
        self.index = DescriptorIndex(config)

        self.embedding_cache = EmbeddingCache(config, self.kv_store)
        self.face_cache = LocalFaceCache(config, self.kv_store)
        self.image_storage = ImageStorage(config, self.kv_store)
        self.photo_loader = PhotoLoader(self.image_storage, self.repository)
        self.local_store = create_local_store(config, self.repository, self.kv_store)
        self.local_store.initialize()

        cooldown = AttendanceCooldown(self.kv_store, config.get('attendance', {}).get('cooldown_hours', 8))
        self.attendance_logger = AttendanceLogger(self.repository, cooldown)

        self.scanner = FaceScanner(
            config, self.detector, self.extractor, self.matcher, self.face_cache,
            embedding_cache=self.embedding_cache,
            local_store=self.local_store,
            repository=self.repository,
            attendance_logger=self.attendance_logger,
            photo_loader=self.photo_loader,
            index=self.index
        )

        self.batch_sync = BatchSync(
            self.face_cache, self.repository, self.extractor, self.matcher, config,
            known_members=self.scanner.known_members,
            on_member_added=self.scanner.add_known_member
        )
        self.scheduler = SyncScheduler(self.batch_sync, config.get('sync', {}).get('interval_seconds', 120))

        logger.info("FaceCheck application initialized")

    def refresh(self) -> Dict[str, Any]:
        """Pull members from the backend into the local store and photo storage."""
        if self.repository is None:
            raise FaceCheckError('Refresh needs a backend connection')

        count = self.local_store.sync_from_remote()
        photos = self.image_storage.sync_from_members(self.local_store.get_all_members())
        self.embedding_cache.clear(self.repository.organization_id)
        loaded = self.scanner.load_members()
        return {'members': count, 'photos': photos, 'matchable': loaded}

    def scan_image(self, image: np.ndarray) -> Dict[str, Any]:
        self.scanner.load_members()
        return self.scanner.process_frame(image)

    def annotate_frame(self, frame: np.ndarray, result: Dict[str, Any]) -> np.ndarray:
        annotated = frame.copy()
        if result.get('bbox'):
            x, y, w, h = result['bbox']
            color = STATUS_COLORS.get(result.get('access'), (200, 200, 200))
            cv2.rectangle(annotated, (x, y), (x + w, y + h), color, 2)
            label = result.get('name') or result['status']
            cv2.putText(annotated, label, (x, max(15, y - 5)),
                        cv2.FONT_HERSHEY_SIMPLEX, 0.6, color, 2)
        return annotated

    def _on_frame(self, frame: np.ndarray, display: bool):
        result = self.scanner.process_frame(frame)
        if result['status'] in ('matched', 'registered', 'duplicate', 'error'):
            logger.info(f"{result['status']}: {result['message']}")

        if display:
            cv2.imshow('FaceCheck', self.annotate_frame(frame, result))
            if cv2.waitKey(1) & 0xFF == ord('q'):
                logger.info("Quit requested by user")
                self.poller.stop()

    def run(self, source, display: bool = False):
        """Scan a camera or video file until it ends or is interrupted."""
        self.scanner.load_members()
        if self.repository is not None:
            self.scheduler.start()

        interval = self.config.get('scanner', {}).get('scanning_interval_ms', 100)
        self.poller = FramePoller(source, interval, guard=self.scanner.guard)
        try:
            self.poller.run(lambda frame: self._on_frame(frame, display))
        finally:
            self.scheduler.stop()
            if display:
                cv2.destroyAllWindows()
            logger.info(f"Session statistics: {self.scanner.get_statistics()}")

    def status(self) -> Dict[str, Any]:
        organization_id = self.repository.organization_id if self.repository else None
        return {
            'backend': 'connected' if self.repository else 'offline',
            'organization_id': organization_id,
            'local_store': self.local_store.stats(),
            'embedding_cache': self.embedding_cache.info(organization_id),
            'local_cache': self.face_cache.stats(),
            'photos': self.image_storage.stats(),
            'attendance': self.attendance_logger.cooldown.stats(),
            'last_sync': self.batch_sync.last_result
        }


def _print_dict(title: str, data: Dict[str, Any], indent: int = 0):
    print(f"{' ' * indent}{title}:")
    for key, value in data.items():
        if isinstance(value, dict):
            _print_dict(key, value, indent + 2)
        else:
            print(f"{' ' * (indent + 2)}{key}: {value}")


def main(argv=None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(description='FaceCheck membership scanner')
    parser.add_argument('--config', '-c', default=DEFAULT_CONFIG_PATH,
                        help='Configuration file path')
    parser.add_argument('--camera', type=int, default=0,
                        help='Camera device ID')
    parser.add_argument('--video', '-v', type=str,
                        help='Video file path (instead of camera)')
    parser.add_argument('--image', type=str,
                        help='Scan a single image, or the photo used with --register')
    parser.add_argument('--register', metavar='NAME',
                        help='Register a member from --image')
    parser.add_argument('--status', choices=MemberStatus.ALL, default=MemberStatus.ALLOWED,
                        help='Status of the member registered with --register')
    parser.add_argument('--sync', action='store_true',
                        help='Run one batch sync of locally registered faces')
    parser.add_argument('--refresh', action='store_true',
                        help='Pull members and photos from the backend')
    parser.add_argument('--list', action='store_true',
                        help='List members in the local store')
    parser.add_argument('--stats', action='store_true',
                        help='Print storage and cache statistics')
    parser.add_argument('--display', action='store_true',
                        help='Show annotated frames while scanning')
    parser.add_argument('--offline', action='store_true',
                        help='Do not connect to the backend')
    parser.add_argument('--verbose', action='store_true',
                        help='Enable debug logging')

    args = parser.parse_args(argv)
    setup_logging(args.verbose)

    try:
        app = FaceCheckApp(load_config(args.config), offline=args.offline)

        if args.register:
            if not args.image:
                parser.error('--register needs --image')
            image = load_image_file(args.image)
            if image is None:
                return 1
            app.scanner.load_members()
            result = app.scanner.register_member(args.register, image, args.status)
            if not result['success']:
                logger.error(f"Registration failed: {result['error']}")
                return 1
            print(f"Registered {result['member'].name} with id {result['member'].id}")
            return 0

        if args.image:
            image = load_image_file(args.image)
            if image is None:
                return 1
            result = app.scan_image(image)
            print(f"{result['status']}: {result['message']}")
            return 1 if result['status'] == 'error' else 0

        if args.refresh:
            _print_dict('Refresh', app.refresh())
            return 0

        if args.sync:
            if app.repository is None:
                logger.error("Sync needs a backend connection")
                return 1
            app.scanner.load_members()
            _print_dict('Sync', app.batch_sync.run())
            return 0

        if args.list:
            members = app.local_store.get_all_members()
            print(f"Members ({len(members)}):")
            for member in members:
                print(f"  {member.id}: {member.name} [{member.status}]")
            return 0

        if args.stats:
            _print_dict('Status', app.status())
            return 0

        app.run(args.video if args.video else args.camera, display=args.display)
        return 0

    except FaceCheckError as e:
        logger.error(f"{e}")
        return 1
    except Exception as e:
        logger.error(f"Application error: {e}")
        return 1


if __name__ == '__main__':
    sys.exit(main())
