"""
Face Detection Module

Detects faces in camera frames using OpenCV Haar cascades, the face_recognition
HOG detector or DeepFace. Includes cropping, low-light enhancement and the
quality checks that decide whether a face is worth matching.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

import cv2
import numpy as np

logger = logging.getLogger(__name__)


class FaceDetector:
    """Face detection with cropping and quality checks."""

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize face detector.

        Args:
            config: Configuration dictionary with face detection settings
        """
        self.config = config.get('face_detection', {})
        self.method = self.config.get('method', 'haar')
        self.min_confidence = self.config.get('min_confidence', 0.5)
        self.min_face_size = self.config.get('min_face_size', 80)
        self.max_faces = self.config.get('max_faces', 5)
        self.quality_threshold = self.config.get('quality_threshold', 0.45)
        self.aspect_ratio_min = self.config.get('aspect_ratio_min', 0.75)
        self.aspect_ratio_max = self.config.get('aspect_ratio_max', 1.3)
        self.blur_threshold = self.config.get('blur_threshold', 100.0)
        self.min_brightness = self.config.get('min_brightness', 50)
        self.max_brightness = self.config.get('max_brightness', 200)
        self.enhance_on_miss = self.config.get('enhance_on_miss', True)
        self.detector_backend = self.config.get('detector_backend', 'opencv')
        self.detector = None

        if self.method == 'haar':
            self.detector = cv2.CascadeClassifier(
                cv2.data.haarcascades + 'haarcascade_frontalface_default.xml'
            )
        elif self.method not in ('hog', 'deepface'):
            logger.warning(f"Unsupported detection method: {self.method}, falling back to haar")
            self.method = 'haar'
            self.detector = cv2.CascadeClassifier(
                cv2.data.haarcascades + 'haarcascade_frontalface_default.xml'
            )

        logger.info(f"Face detector initialized with method: {self.method}")

    def detect_faces(self, image: np.ndarray) -> List[Dict[str, Any]]:
        """
        Detect faces in an image.

        Args:
            image: Input image as numpy array (BGR format)

        Returns:
            List of face detection dictionaries containing bounding box and confidence
        """
        if image is None or image.size == 0:
            return []

        try:
            if self.method == 'hog':
                faces = self._detect_hog(image)
            elif self.method == 'deepface':
                faces = self._detect_deepface(image)
            else:
                faces = self._detect_haar(image)
        except Exception as e:
            logger.error(f"Face detection failed: {e}")
            return []

        faces = [face for face in faces if face['confidence'] >= self.min_confidence]
        faces.sort(key=lambda face: face['bbox'][2] * face['bbox'][3], reverse=True)
        return faces[:self.max_faces]

    def _detect_haar(self, image: np.ndarray) -> List[Dict[str, Any]]:
        """Detect faces using Haar Cascades."""
        gray = cv2.cvtColor(image, cv2.COLOR_BGR2GRAY) if image.ndim == 3 else image

        faces_rect = self.detector.detectMultiScale(
            gray,
            scaleFactor=1.1,
            minNeighbors=5,
            minSize=(self.min_face_size, self.min_face_size)
        )

        return [{
            'bbox': [int(x), int(y), int(w), int(h)],
            'confidence': 1.0,  # Haar doesn't provide confidence
            'method': 'haar'
        } for (x, y, w, h) in faces_rect]

    def _detect_hog(self, image: np.ndarray) -> List[Dict[str, Any]]:
        """Detect faces using the face_recognition HOG detector."""
        import face_recognition

        rgb_image = cv2.cvtColor(image, cv2.COLOR_BGR2RGB)
        locations = face_recognition.face_locations(rgb_image, model='hog')

        faces = []
        for top, right, bottom, left in locations:
            faces.append({
                'bbox': [int(left), int(top), int(right - left), int(bottom - top)],
                'confidence': 1.0,
                'method': 'hog'
            })
        return faces

    def _detect_deepface(self, image: np.ndarray) -> List[Dict[str, Any]]:
        """Detect faces using DeepFace."""
        from deepface import DeepFace

        face_objs = DeepFace.extract_faces(
            img_path=image,
            detector_backend=self.detector_backend,
            enforce_detection=False,
            align=False
        )

        faces = []
        for face_obj in face_objs or []:
            area = face_obj.get('facial_area') or {}
            w, h = int(area.get('w', 0)), int(area.get('h', 0))
            # DeepFace reports the whole image with confidence 0 when nothing is found
            if w <= 0 or h <= 0 or (w >= image.shape[1] and h >= image.shape[0]):
                continue
            faces.append({
                'bbox': [int(area.get('x', 0)), int(area.get('y', 0)), w, h],
                'confidence': float(face_obj.get('confidence') or 0.0),
                'method': 'deepface'
            })
        return faces

    def enhance_image(self, image: np.ndarray, contrast: float = 1.5,
                      brightness: float = 30) -> np.ndarray:
        """
        Boost contrast and brightness for low-light frames.

        Args:
            image: BGR image
            contrast: Contrast factor applied around mid-grey
            brightness: Value added after the contrast stretch

        Returns:
            Enhanced image
        """
        enhanced = (image.astype(np.float32) - 128.0) * contrast + 128.0 + brightness
        return np.clip(enhanced, 0, 255).astype(np.uint8)

    def crop_face(self, image: np.ndarray, bbox: List[int],
                  padding: float = 0.2) -> Optional[np.ndarray]:
        """
        Crop face from image with padding.

        Args:
            image: Input image
            bbox: Bounding box [x, y, width, height]
            padding: Padding factor (0.2 = 20% padding)

        Returns:
            Cropped face image or None if invalid
        """
        if image is None or len(bbox) != 4:
            return None

        x, y, w, h = bbox

        pad_w = int(w * padding)
        pad_h = int(h * padding)

        x1 = max(0, x - pad_w)
        y1 = max(0, y - pad_h)
        x2 = min(image.shape[1], x + w + pad_w)
        y2 = min(image.shape[0], y + h + pad_h)

        if x2 <= x1 or y2 <= y1:
            return None

        face_crop = image[y1:y2, x1:x2]
        return face_crop if face_crop.size > 0 else None

    def _position_score(self, bbox: List[int], frame_shape: Tuple[int, ...]) -> float:
        x, y, w, h = bbox
        frame_h, frame_w = frame_shape[:2]
        center_x, center_y = frame_w / 2.0, frame_h / 2.0
        distance = np.hypot(x + w / 2.0 - center_x, y + h / 2.0 - center_y)
        max_distance = np.hypot(center_x, center_y)
        if max_distance == 0:
            return 0.0
        return float(max(0.0, 1.0 - distance / max_distance))

    def quality_check(self, face_image: np.ndarray,
                      bbox: Optional[List[int]] = None,
                      frame_shape: Optional[Tuple[int, ...]] = None,
                      confidence: float = 1.0) -> Dict[str, Any]:
        """
        Perform quality checks on face image.

        Args:
            face_image: Cropped face image
            bbox: Detection box in frame coordinates (enables shape checks)
            frame_shape: Shape of the full frame (enables position scoring)
            confidence: Detector confidence

        Returns:
            Dictionary with quality metrics, 'valid', 'score' and 'reason'
        """
        if face_image is None or face_image.size == 0:
            return {'valid': False, 'score': 0.0, 'reason': 'Invalid image'}

        if face_image.ndim == 3:
            gray = cv2.cvtColor(face_image, cv2.COLOR_BGR2GRAY)
        else:
            gray = face_image

        blur_score = float(cv2.Laplacian(gray, cv2.CV_64F).var())
        is_blurry = blur_score < self.blur_threshold

        brightness = float(np.mean(gray))
        is_too_dark = brightness < self.min_brightness
        is_too_bright = brightness > self.max_brightness

        face_w = bbox[2] if bbox else face_image.shape[1]
        face_h = bbox[3] if bbox else face_image.shape[0]
        is_too_small = min(face_w, face_h) < self.min_face_size

        aspect_ratio = face_w / float(face_h) if face_h else 0.0
        bad_aspect = bbox is not None and not (
            self.aspect_ratio_min <= aspect_ratio <= self.aspect_ratio_max
        )

        size_score = min(min(face_w, face_h) / float(self.min_face_size), 1.0)
        if bbox is not None and frame_shape is not None:
            position_score = self._position_score(bbox, frame_shape)
        else:
            position_score = 1.0
        score = confidence * 0.5 + size_score * 0.3 + position_score * 0.2

        reasons = []
        if is_blurry:
            reasons.append('blurry')
        if is_too_dark:
            reasons.append('too dark')
        if is_too_bright:
            reasons.append('too bright')
        if is_too_small:
            reasons.append('too small')
        if bad_aspect:
            reasons.append(f'unusual aspect ratio {aspect_ratio:.2f}')
        if score < self.quality_threshold:
            reasons.append(f'low score {score:.2f}')

        quality_info = {
            'valid': not reasons,
            'score': score,
            'blur_score': blur_score,
            'is_blurry': is_blurry,
            'brightness': brightness,
            'is_too_dark': is_too_dark,
            'is_too_bright': is_too_bright,
            'is_too_small': is_too_small,
            'aspect_ratio': aspect_ratio,
            'position_score': position_score,
            'size': face_image.shape[:2]
        }
        if reasons:
            quality_info['reason'] = ', '.join(reasons)

        return quality_info

    def process_frame(self, frame: np.ndarray) -> List[Dict[str, Any]]:
        """
        Detect, crop and quality-check every face in a frame.

        Frames with no detections are retried once on an enhanced copy.

        Args:
            frame: Input frame

        Returns:
            List of face dictionaries (best quality first). Faces failing the
            quality check are included with quality['valid'] set to False.
        """
        if frame is None or frame.size == 0:
            return []

        faces = self.detect_faces(frame)
        if not faces and self.enhance_on_miss:
            logger.debug("No faces in original frame, retrying on enhanced frame")
            faces = self.detect_faces(self.enhance_image(frame))

        processed_faces = []
        for face_data in faces:
            bbox = face_data['bbox']

            face_crop = self.crop_face(frame, bbox)
            if face_crop is None:
                continue

            quality = self.quality_check(
                face_crop, bbox=bbox, frame_shape=frame.shape,
                confidence=face_data['confidence']
            )
            if not quality['valid']:
                logger.debug(f"Face rejected: {quality.get('reason', 'unknown')}")

            processed_faces.append({
                'bbox': bbox,
                'confidence': face_data['confidence'],
                'face_image': face_crop,
                'quality': quality,
                'method': face_data['method']
            })

        processed_faces.sort(key=lambda face: face['quality']['score'], reverse=True)
        return processed_faces
