"""
Image Storage Module

Keeps member photos as files on disk so the scanner does not download them from
the backend on every start, and loads photos through local file, in-memory and
remote tiers.
"""

import logging
import os
import shutil
import time
from typing import Any, Dict, List, Optional

from .errors import InvalidImageError, RemoteBackendError
from .image_utils import bytes_to_data_url, data_url_to_bytes, is_data_url
from .kv_store import KeyValueStore
from .models import Member

logger = logging.getLogger(__name__)

INDEX_KEY = 'face_image_index'


class ImageStorage:
    """Member photos stored as ``<photos_dir>/<member_id>.jpg``."""

    def __init__(self, config: Dict[str, Any], kv_store: KeyValueStore):
        self.photos_dir = config.get('storage', {}).get('photos_dir', 'data/face_photos')
        self.kv_store = kv_store
        os.makedirs(self.photos_dir, exist_ok=True)

    def _index(self) -> Dict[str, Any]:
        return dict(self.kv_store.get(INDEX_KEY, {}))

    def get_image_path(self, member_id: str) -> str:
        # Ids come from the backend; keep them from escaping the photos directory
        safe_id = str(member_id).replace(os.sep, '_').replace('/', '_')
        return os.path.join(self.photos_dir, f"{safe_id}.jpg")

    def save_image(self, member_id: str, data_url: str, name: Optional[str] = None) -> Optional[str]:
        """
        Write a member photo to disk.

        Args:
            member_id: Member id
            data_url: Photo as a data URL
            name: Member name stored in the index

        Returns:
            File path, or None if the photo could not be decoded or written
        """
        try:
            data = data_url_to_bytes(data_url)
        except InvalidImageError as e:
            logger.error(f"Cannot save photo for {member_id}: {e}")
            return None

        path = self.get_image_path(member_id)
        try:
            with open(path, 'wb') as f:
                f.write(data)
        except OSError as e:
            logger.error(f"Failed to write photo {path}: {e}")
            return None

        index = self._index()
        index[member_id] = {
            'path': path,
            'name': name,
            'size': len(data),
            'saved_at': time.time()
        }
        self.kv_store.set(INDEX_KEY, index)
        logger.debug(f"Saved photo for {member_id} ({len(data)} bytes)")
        return path

    def load_image(self, member_id: str) -> Optional[str]:
        """Photo of a member as a data URL, or None if not stored."""
        path = self.get_image_path(member_id)
        if not os.path.exists(path):
            return None
        try:
            with open(path, 'rb') as f:
                return bytes_to_data_url(f.read())
        except OSError as e:
            logger.error(f"Failed to read photo {path}: {e}")
            return None

    def has_image(self, member_id: str) -> bool:
        return os.path.exists(self.get_image_path(member_id))

    def delete_image(self, member_id: str) -> bool:
        path = self.get_image_path(member_id)
        existed = os.path.exists(path)
        if existed:
            os.remove(path)

        index = self._index()
        if index.pop(member_id, None) is not None:
            self.kv_store.set(INDEX_KEY, index)
        return existed

    def all_metadata(self) -> Dict[str, Any]:
        return self._index()

    def clear_all(self):
        shutil.rmtree(self.photos_dir, ignore_errors=True)
        os.makedirs(self.photos_dir, exist_ok=True)
        self.kv_store.remove(INDEX_KEY)
        logger.info("All stored photos deleted")

    def sync_from_members(self, members: List[Member]) -> Dict[str, int]:
        """
        Store photos for members that have one and are not on disk yet.

        Returns:
            Counts of saved, skipped and failed photos
        """
        result = {'saved': 0, 'skipped': 0, 'failed': 0}
        for member in members:
            if not member.has_photo or self.has_image(member.id):
                result['skipped'] += 1
                continue
            path = self.save_image(member.id, member.photo_url, name=member.name)
            if path:
                member.local_photo_path = path
                result['saved'] += 1
            else:
                result['failed'] += 1

        logger.info(f"Photo sync: {result['saved']} saved, {result['skipped']} skipped, "
                    f"{result['failed']} failed")
        return result

    def stats(self) -> Dict[str, Any]:
        index = self._index()
        return {
            'count': len(index),
            'total_bytes': sum(item.get('size', 0) for item in index.values()),
            'photos_dir': self.photos_dir
        }


class PhotoLoader:
    """Loads member photos from disk, then memory, then the backend."""

    def __init__(self, storage: ImageStorage, repository=None):
        self.storage = storage
        self.repository = repository
        self.local_loads = 0
        self.memory_loads = 0
        self.remote_loads = 0

    def load(self, member: Member) -> Optional[str]:
        """
        Photo of a member as a data URL.

        Photos fetched from the backend are written to disk and kept on the
        member for later calls.
        """
        photo = self.storage.load_image(member.id)
        if photo:
            self.local_loads += 1
            return photo

        if is_data_url(member.photo_url):
            self.memory_loads += 1
            self.storage.save_image(member.id, member.photo_url, name=member.name)
            return member.photo_url

        if self.repository is None:
            return None

        try:
            photo = self.repository.get_member_photo(member.id)
        except RemoteBackendError as e:
            logger.error(f"Could not fetch photo for {member.name}: {e}")
            return None

        if not is_data_url(photo):
            return None

        self.remote_loads += 1
        member.photo_url = photo
        member.local_photo_path = self.storage.save_image(member.id, photo, name=member.name)
        return photo

    def stats(self) -> Dict[str, int]:
        return {
            'local_loads': self.local_loads,
            'memory_loads': self.memory_loads,
            'remote_loads': self.remote_loads
        }
