"""
FaceCheck

Camera based membership checks: detects faces in camera frames, matches their
descriptors against the member list of a hosted backend, logs attendance and
registers unknown faces locally before syncing them to the backend in batches.
"""

__version__ = "1.0.0"
__author__ = "FaceCheck Team"

from .face_detector import FaceDetector
from .descriptor_extractor import DescriptorExtractor
from .matcher import FaceMatcher, DescriptorIndex
from .embedding_cache import EmbeddingCache
from .face_cache import LocalFaceCache
from .repository import MemberRepository
from .local_store import create_local_store
from .scanner import FaceScanner, FramePoller
from .sync import BatchSync, SyncScheduler

__all__ = [
    "FaceDetector",
    "DescriptorExtractor",
    "FaceMatcher",
    "DescriptorIndex",
    "EmbeddingCache",
    "LocalFaceCache",
    "MemberRepository",
    "create_local_store",
    "FaceScanner",
    "FramePoller",
    "BatchSync",
    "SyncScheduler"
]
