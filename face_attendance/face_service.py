"""
Face Detection Service using DeepFace

This module implements the pipeline's FaceDetector with DeepFace:
- Frame decoding and downscaling
- Face detection with landmarks (RetinaFace)
- Embedding generation, L2-normalized
"""
import numpy as np
import cv2
from PIL import Image, UnidentifiedImageError
from io import BytesIO
from typing import Optional, List, Tuple
import logging

from deepface import DeepFace

from face_attendance.config import (
    FACE_RECOGNITION_MODEL,
    FACE_DETECTOR_BACKEND,
    MAX_FRAME_WIDTH,
    DETECTOR_MIN_CONFIDENCE
)
from face_attendance.exceptions import DetectionError
from face_attendance.types import BoundingBox, DetectionOptions, FaceDetection

logger = logging.getLogger(__name__)


def _sorted_pair(a, b) -> List[Tuple[float, float]]:
    """Order two points left to right in image coordinates."""
    points = [(float(a[0]), float(a[1])), (float(b[0]), float(b[1]))]
    return sorted(points, key=lambda p: p[0])


def five_point_landmarks(facial_area: dict) -> Tuple[Tuple[float, float], ...]:
    """
    Build the 5-point layout from a DeepFace facial_area.

    DeepFace names eyes and mouth corners from the subject's point of view, so
    pairs are re-ordered by image x. Returns an empty tuple when the backend
    does not report all five points.
    """
    keys = ("left_eye", "right_eye", "nose", "mouth_left", "mouth_right")
    if any(facial_area.get(k) is None for k in keys):
        return ()

    eyes = _sorted_pair(facial_area["left_eye"], facial_area["right_eye"])
    mouth = _sorted_pair(facial_area["mouth_left"], facial_area["mouth_right"])
    nose = facial_area["nose"]

    return (eyes[0], eyes[1], (float(nose[0]), float(nose[1])), mouth[0], mouth[1])


class DeepFaceDetector:
    """
    FaceDetector backed by DeepFace.

    Returns at most one detection per frame: the most confident face.
    """

    def __init__(
        self,
        model_name: str = FACE_RECOGNITION_MODEL,
        detector_backend: str = FACE_DETECTOR_BACKEND,
        max_width: int = MAX_FRAME_WIDTH,
        min_confidence: float = DETECTOR_MIN_CONFIDENCE
    ):
        self.model_name = model_name
        self.detector_backend = detector_backend
        self.max_width = max_width
        self.min_confidence = min_confidence
        self._model_loaded = False

    @property
    def model_loaded(self) -> bool:
        return self._model_loaded

    def warm_up(self):
        """Load the model by running a dummy inference."""
        if self._model_loaded:
            return
        logger.info(f"Loading {self.model_name} model...")
        try:
            dummy_img = np.zeros((160, 160, 3), dtype=np.uint8)
            DeepFace.represent(
                img_path=dummy_img,
                model_name=self.model_name,
                detector_backend="skip",
                enforce_detection=False
            )
            logger.info(f"{self.model_name} model loaded successfully")
        except Exception as e:
            logger.warning(f"Model warmup warning: {e}")
        self._model_loaded = True

    def preprocess_image(self, image_bytes: bytes) -> np.ndarray:
        """
        Decode frame bytes into a BGR array.

        Frames wider than max_width are downscaled, preserving aspect ratio.

        Raises:
            DetectionError: If the bytes are not a decodable image
        """
        if not image_bytes:
            raise DetectionError("Empty frame")
        try:
            image = Image.open(BytesIO(image_bytes))

            if image.mode != "RGB":
                image = image.convert("RGB")

            if image.size[0] > self.max_width:
                scale = self.max_width / image.size[0]
                new_size = (self.max_width, max(1, int(round(image.size[1] * scale))))
                image = image.resize(new_size, Image.Resampling.LANCZOS)

            return cv2.cvtColor(np.array(image), cv2.COLOR_RGB2BGR)

        except (UnidentifiedImageError, OSError) as e:
            logger.error(f"Frame decoding failed: {e}")
            raise DetectionError(f"Failed to decode frame: {e}")

    def detect(self, image: bytes, options: DetectionOptions = None) -> Optional[FaceDetection]:
        """
        Detect the most confident face in a frame.

        Args:
            image: Encoded frame bytes (JPEG/PNG/WebP)
            options: Detection options; with skip_quality_check the detector's
                own confidence floor is not applied

        Returns:
            FaceDetection, or None if no face was found
        """
        options = options or DetectionOptions()
        self.warm_up()

        img_array = self.preprocess_image(image)
        height, width = img_array.shape[:2]

        try:
            representations = DeepFace.represent(
                img_path=img_array,
                model_name=self.model_name,
                detector_backend=self.detector_backend,
                enforce_detection=True,
                align=True
            )
        except ValueError as e:
            # DeepFace raises ValueError when enforce_detection finds no face
            logger.debug(f"No face detected: {e}")
            return None

        if isinstance(representations, dict):
            representations = [representations]
        if not representations:
            return None

        best = max(representations, key=lambda r: r.get("face_confidence") or 0.0)
        confidence = float(best.get("face_confidence") or 0.0)

        if not options.skip_quality_check and confidence < self.min_confidence:
            logger.debug(f"Face below detector confidence floor: {confidence:.2f}")
            return None

        embedding = np.asarray(best.get("embedding", []), dtype=np.float32)
        if embedding.size == 0:
            return None
        norm = np.linalg.norm(embedding)
        if norm > 0:
            embedding = embedding / norm

        area = best.get("facial_area") or {}
        return FaceDetection(
            bounding_box=BoundingBox(
                x=float(area.get("x", 0)),
                y=float(area.get("y", 0)),
                width=float(area.get("w", 0)),
                height=float(area.get("h", 0))
            ),
            confidence=confidence,
            landmarks=five_point_landmarks(area),
            embedding=embedding,
            frame_width=width,
            frame_height=height
        )
