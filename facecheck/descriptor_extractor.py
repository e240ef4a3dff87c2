"""
Descriptor Extraction Module

Converts face images into fixed-length descriptors using the face_recognition
library (dlib ResNet, 128-d) or FaceNet (facenet-pytorch, 512-d), and provides
the distance and similarity helpers used for matching.
"""

import logging
from typing import Any, Dict, List, Optional

import cv2
import numpy as np

from .errors import InvalidImageError
from .image_utils import data_url_to_image

logger = logging.getLogger(__name__)


def euclidean_distance(descriptor1: np.ndarray, descriptor2: np.ndarray) -> float:
    """Euclidean distance between two descriptors of equal length."""
    a = np.asarray(descriptor1, dtype=np.float32)
    b = np.asarray(descriptor2, dtype=np.float32)
    if a.shape != b.shape:
        raise ValueError(f"Descriptor size mismatch: {a.shape} vs {b.shape}")
    return float(np.linalg.norm(a - b))


def distance_to_similarity(distance: float) -> float:
    """Map a descriptor distance onto a [0, 1] similarity."""
    return max(0.0, 1.0 - float(distance))


class DescriptorExtractor:
    """Generate face descriptors with a third-party model."""

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize descriptor extractor.

        Args:
            config: Configuration dictionary with descriptor settings
        """
        self.config = config.get('descriptor', {})
        self.model_name = self.config.get('model', 'face_recognition')
        self.normalization = self.config.get('normalization', False)
        self.num_jitters = self.config.get('num_jitters', 1)
        self.use_gpu = config.get('performance', {}).get('use_gpu', False)

        self.model = None
        self.device = None
        self._initialized = False

        logger.info(f"Descriptor extractor configured with model: {self.model_name}")

    def _ensure_model(self):
        """Load the selected model on first use."""
        if self._initialized:
            return

        if self.model_name == 'facenet':
            try:
                self._initialize_facenet()
            except Exception as e:
                logger.error(f"Failed to load FaceNet model: {e}")
                self.model_name = 'face_recognition'
                logger.info("Falling back to face_recognition library")
        elif self.model_name != 'face_recognition':
            logger.warning(f"Unsupported descriptor model: {self.model_name}, using face_recognition")
            self.model_name = 'face_recognition'

        self._initialized = True

    def _initialize_facenet(self):
        """Initialize FaceNet model."""
        import torch
        from facenet_pytorch import InceptionResnetV1

        self.device = torch.device('cuda' if torch.cuda.is_available() and self.use_gpu else 'cpu')
        self.model = InceptionResnetV1(pretrained='vggface2').eval().to(self.device)
        logger.info("FaceNet model loaded successfully")

    @property
    def descriptor_size(self) -> int:
        return 512 if self.model_name == 'facenet' else 128

    def extract(self, face_image: np.ndarray) -> Optional[np.ndarray]:
        """
        Generate a descriptor from a cropped face image.

        Args:
            face_image: BGR face crop

        Returns:
            Descriptor vector or None if extraction fails
        """
        if face_image is None or face_image.size == 0:
            return None

        self._ensure_model()

        try:
            if self.model_name == 'facenet':
                descriptor = self._extract_facenet(face_image)
            else:
                descriptor = self._extract_face_recognition(face_image)
        except Exception as e:
            logger.error(f"Descriptor extraction failed: {e}")
            return None

        if descriptor is None:
            return None

        descriptor = np.asarray(descriptor, dtype=np.float32)
        if self.normalization:
            descriptor = self.normalize_descriptor(descriptor)
        return descriptor

    def _to_uint8(self, face_image: np.ndarray) -> np.ndarray:
        if face_image.dtype != np.uint8:
            if face_image.max() <= 1.0:
                face_image = (face_image * 255).astype(np.uint8)
            else:
                face_image = np.clip(face_image, 0, 255).astype(np.uint8)
        return face_image

    def _extract_face_recognition(self, face_image: np.ndarray) -> Optional[np.ndarray]:
        """Generate descriptor using face_recognition library."""
        import face_recognition

        face_image = self._to_uint8(face_image)
        if face_image.ndim == 3:
            rgb_image = cv2.cvtColor(face_image, cv2.COLOR_BGR2RGB)
        else:
            rgb_image = cv2.cvtColor(face_image, cv2.COLOR_GRAY2RGB)

        # The crop is already a face; use the whole image as the location
        # so the library does not run its own detector a second time.
        h, w = rgb_image.shape[:2]
        encodings = face_recognition.face_encodings(
            rgb_image,
            known_face_locations=[(0, w, h, 0)],
            num_jitters=self.num_jitters
        )

        if len(encodings) == 0:
            logger.warning("No face encoding generated")
            return None

        return encodings[0]

    def _extract_facenet(self, face_image: np.ndarray) -> Optional[np.ndarray]:
        """Generate descriptor using FaceNet."""
        import torch

        face_image = self._to_uint8(face_image)
        if face_image.ndim == 2:
            face_image = cv2.cvtColor(face_image, cv2.COLOR_GRAY2BGR)

        rgb_image = cv2.cvtColor(face_image, cv2.COLOR_BGR2RGB)
        resized = cv2.resize(rgb_image, (160, 160), interpolation=cv2.INTER_AREA)

        # Same fixed standardization facenet-pytorch applies after MTCNN
        tensor = torch.from_numpy(resized).permute(2, 0, 1).float()
        tensor = ((tensor - 127.5) / 128.0).unsqueeze(0).to(self.device)

        with torch.no_grad():
            embedding = self.model(tensor)

        return embedding.cpu().numpy().flatten()

    def extract_from_frame(self, frame: np.ndarray, bbox: List[int],
                           padding: float = 0.2) -> Optional[np.ndarray]:
        """
        Generate a descriptor for a face box inside a full frame.

        Args:
            frame: Full BGR frame
            bbox: Bounding box [x, y, width, height]
            padding: Padding factor around the box

        Returns:
            Descriptor vector or None
        """
        if frame is None or len(bbox) != 4:
            return None

        x, y, w, h = bbox
        pad_w, pad_h = int(w * padding), int(h * padding)
        crop = frame[max(0, y - pad_h):min(frame.shape[0], y + h + pad_h),
                     max(0, x - pad_w):min(frame.shape[1], x + w + pad_w)]
        return self.extract(crop)

    def extract_from_data_url(self, data_url: str) -> Optional[np.ndarray]:
        """
        Generate a descriptor from a stored photo.

        Member photos are whole-face captures, so the decoded image is used
        as the face crop.

        Args:
            data_url: ``data:image/...;base64,...`` string

        Returns:
            Descriptor vector or None
        """
        try:
            image = data_url_to_image(data_url)
        except InvalidImageError as e:
            logger.warning(f"Cannot extract descriptor from photo: {e}")
            return None
        return self.extract(image)

    def normalize_descriptor(self, descriptor: np.ndarray) -> np.ndarray:
        """
        Normalize descriptor vector using L2 normalization.

        Args:
            descriptor: Raw descriptor vector

        Returns:
            Normalized descriptor vector
        """
        if descriptor is None or len(descriptor) == 0:
            return descriptor

        norm = np.linalg.norm(descriptor)
        if norm == 0:
            return descriptor

        return descriptor / norm

    def validate_descriptor(self, descriptor: Optional[np.ndarray]) -> Dict[str, Any]:
        """
        Validate descriptor quality and consistency.

        Args:
            descriptor: Generated descriptor vector

        Returns:
            Validation results
        """
        if descriptor is None:
            return {'valid': False, 'reason': 'None descriptor'}

        descriptor = np.asarray(descriptor)
        if descriptor.size == 0:
            return {'valid': False, 'reason': 'Empty descriptor'}

        if descriptor.size not in (128, 512):
            logger.warning(f"Unexpected descriptor size: {descriptor.size}")

        if np.any(np.isnan(descriptor)) or np.any(np.isinf(descriptor)):
            return {'valid': False, 'reason': 'NaN or infinite values'}

        magnitude = float(np.linalg.norm(descriptor))
        if magnitude == 0:
            return {'valid': False, 'reason': 'Zero magnitude'}

        # Mostly-zero vectors come from failed or degenerate extractions
        zero_ratio = float(np.mean(descriptor == 0))
        if zero_ratio > 0.2:
            return {'valid': False, 'reason': f'{zero_ratio:.0%} zero values'}

        return {
            'valid': True,
            'size': int(descriptor.size),
            'magnitude': magnitude,
            'is_normalized': abs(magnitude - 1.0) < 0.01
        }
