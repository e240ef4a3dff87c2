"""
Shared fakes for the test suite.

The descriptor model and face detector are replaced by objects returning
prepared values, and the Supabase client by MagicMock query chains.
"""

import os
import sys
from unittest.mock import MagicMock

import numpy as np

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from facecheck.descriptor_extractor import DescriptorExtractor

QUERY_METHODS = ('select', 'eq', 'is_', 'order', 'limit', 'insert', 'update',
                 'delete', 'gte', 'lt')

FAKE_PHOTO = 'data:image/jpeg;base64,' + 'A' * 6000


def unit_descriptor(seed: int, size: int = 128) -> np.ndarray:
    """Random unit-length descriptor; different seeds are ~1.4 apart."""
    rng = np.random.RandomState(seed)
    vector = rng.randn(size).astype(np.float32)
    return vector / np.linalg.norm(vector)


def offset_descriptor(base: np.ndarray, distance: float, seed: int = 99) -> np.ndarray:
    """Descriptor exactly `distance` away from base."""
    rng = np.random.RandomState(seed)
    direction = rng.randn(base.size).astype(np.float32)
    direction /= np.linalg.norm(direction)
    return (base + direction * distance).astype(np.float32)


def mock_query(data=None, count=None) -> MagicMock:
    """Supabase query builder whose chain methods return itself."""
    query = MagicMock()
    for name in QUERY_METHODS:
        getattr(query, name).return_value = query
    query.not_ = query
    query.execute.return_value = MagicMock(data=data if data is not None else [], count=count)
    return query


def mock_client(tables=None) -> MagicMock:
    """
    Supabase client returning prepared queries per table.

    Args:
        tables: Mapping of table name to the query returned by table()
    """
    tables = tables or {}
    client = MagicMock()
    client.table.side_effect = lambda name: tables.setdefault(name, mock_query())
    return client


class FakeExtractor(DescriptorExtractor):
    """Extractor returning prepared descriptors instead of running a model."""

    def __init__(self, descriptor=None, photos=None):
        super().__init__({'descriptor': {'model': 'face_recognition'}})
        self.descriptor = descriptor
        self.photos = photos or {}
        self.extract_calls = 0
        self.photo_calls = 0

    def extract(self, face_image):
        self.extract_calls += 1
        return self.descriptor

    def extract_from_data_url(self, data_url):
        self.photo_calls += 1
        return self.photos.get(data_url)


class FakeDetector:
    """Detector returning one prepared face per frame."""

    def __init__(self, valid=True, found=True, reason='blurry'):
        self.valid = valid
        self.found = found
        self.reason = reason

    def process_frame(self, frame):
        if not self.found:
            return []
        quality = {'valid': self.valid, 'score': 0.9}
        if not self.valid:
            quality['reason'] = self.reason
        return [{
            'bbox': [10, 10, 80, 80],
            'confidence': 1.0,
            'face_image': np.full((100, 100, 3), 128, dtype=np.uint8),
            'quality': quality,
            'method': 'fake'
        }]
