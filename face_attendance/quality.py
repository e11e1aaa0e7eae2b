"""
Frame Quality Assessment

Decides whether a single face detection is usable for verification or
registration. Each check is independently togglable through a QualityProfile:
- Detection confidence
- Face width relative to the frame (too far / too close)
- Face centering
- Frontality (head turn, tilt and mouth symmetry from five landmarks)

A verdict passes only if every enabled check passes. Its score is the minimum
of the enabled checks' sub-scores.
"""
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from face_attendance.config import (
    FACE_MIN_CONFIDENCE,
    MIN_FACE_WIDTH_RATIO,
    MAX_FACE_WIDTH_RATIO,
    MAX_CENTER_OFFSET,
    FACE_FRONTALITY_TOLERANCE,
    FACE_TILT_TOLERANCE
)
from face_attendance.exceptions import InputValidationError
from face_attendance.types import (
    DetectionOptions,
    FaceDetection,
    FrontalityHint,
    IssueCode,
    Pose,
    QualityVerdict
)

Point = Tuple[float, float]

# 68-point layout indices: eye outer corners, nose tip, mouth corners
_LANDMARKS_68 = (36, 45, 30, 48, 54)

_MESSAGES = {
    IssueCode.LOW_CONFIDENCE: "Face detection confidence is too low. Please ensure good lighting and clear visibility.",
    IssueCode.TOO_FAR: "Face is too small. Please move closer to the camera.",
    IssueCode.TOO_CLOSE: "Face is too close. Please move back a bit.",
    IssueCode.NOT_CENTERED: "Face is not centered. Please position your face in the center of the frame.",
}

_HINT_MESSAGES = {
    FrontalityHint.TURNED_LEFT: "Face is turned to the side. Please look straight at the camera.",
    FrontalityHint.TURNED_RIGHT: "Face is turned to the side. Please look straight at the camera.",
    FrontalityHint.TILTED: "Face is tilted. Please keep your head straight.",
    FrontalityHint.ANGLED: "Face angle is not optimal. Please face the camera directly.",
    FrontalityHint.NO_LANDMARKS: "Facial landmarks could not be located. Please face the camera directly.",
}


@dataclass(frozen=True)
class QualityProfile:
    """Which checks are enforced."""
    check_confidence: bool = True
    check_size: bool = True
    check_centering: bool = True
    check_frontality: bool = True

    def detection_options(self) -> DetectionOptions:
        return DetectionOptions(
            skip_frontality_check=not self.check_frontality,
            skip_quality_check=not (self.check_confidence or self.check_size or self.check_centering)
        )


# Attendance enforces everything
ATTENDANCE_PROFILE = QualityProfile()

# Registration accepts turned heads so left/right poses can be scored
REGISTRATION_PROFILE = QualityProfile(check_frontality=False)

# Legacy single-image verification skips every check
UNCHECKED_PROFILE = QualityProfile(
    check_confidence=False,
    check_size=False,
    check_centering=False,
    check_frontality=False
)


@dataclass(frozen=True)
class FrontalityMetrics:
    symmetry_ratio: float
    tilt_ratio: float
    mouth_symmetry_ratio: float
    # True when the nose sits closer to the eye on the left of the image
    nose_toward_left: bool


def key_landmarks(landmarks: Sequence[Point]) -> Optional[List[Point]]:
    """
    Pick eye outer corners, nose tip and mouth corners.

    Accepts the 5-point layout (left eye, right eye, nose, left mouth,
    right mouth) or the 68-point layout. Returns None for anything else.
    """
    if landmarks is None:
        return None
    points = [(float(p[0]), float(p[1])) for p in landmarks]
    if len(points) >= 68:
        return [points[i] for i in _LANDMARKS_68]
    if len(points) == 5:
        return points
    return None


def frontality_metrics(landmarks: Sequence[Point]) -> Optional[FrontalityMetrics]:
    points = key_landmarks(landmarks)
    if points is None:
        return None
    left_eye, right_eye, nose, left_mouth, right_mouth = points

    eye_distance = abs(right_eye[0] - left_eye[0])
    if eye_distance == 0:
        return None

    left_nose_distance = abs(nose[0] - left_eye[0])
    right_nose_distance = abs(right_eye[0] - nose[0])
    symmetry_ratio = abs(left_nose_distance - right_nose_distance) / eye_distance

    tilt_ratio = abs(left_eye[1] - right_eye[1]) / eye_distance

    mouth_distance = abs(right_mouth[0] - left_mouth[0])
    if mouth_distance == 0:
        mouth_symmetry_ratio = 1.0
    else:
        left_mouth_nose = abs(nose[0] - left_mouth[0])
        right_mouth_nose = abs(right_mouth[0] - nose[0])
        mouth_symmetry_ratio = abs(left_mouth_nose - right_mouth_nose) / mouth_distance

    return FrontalityMetrics(
        symmetry_ratio=symmetry_ratio,
        tilt_ratio=tilt_ratio,
        mouth_symmetry_ratio=mouth_symmetry_ratio,
        nose_toward_left=left_nose_distance < right_nose_distance
    )


class FrameQualityAssessor:
    """Scores one detection for usability."""

    def __init__(
        self,
        min_confidence: float = FACE_MIN_CONFIDENCE,
        min_width_ratio: float = MIN_FACE_WIDTH_RATIO,
        max_width_ratio: float = MAX_FACE_WIDTH_RATIO,
        max_center_offset: float = MAX_CENTER_OFFSET,
        frontality_tolerance: float = FACE_FRONTALITY_TOLERANCE,
        tilt_tolerance: float = FACE_TILT_TOLERANCE
    ):
        self.min_confidence = min_confidence
        self.min_width_ratio = min_width_ratio
        self.max_width_ratio = max_width_ratio
        self.max_center_offset = max_center_offset
        self.frontality_tolerance = frontality_tolerance
        self.tilt_tolerance = tilt_tolerance

    def classify_pose(self, metrics: Optional[FrontalityMetrics]) -> Optional[Pose]:
        if metrics is None:
            return None
        if metrics.symmetry_ratio <= self.frontality_tolerance:
            return Pose.FRONT
        return Pose.LEFT if metrics.nose_toward_left else Pose.RIGHT

    def _frontality_hint(self, metrics: Optional[FrontalityMetrics]) -> Optional[FrontalityHint]:
        if metrics is None:
            return FrontalityHint.NO_LANDMARKS
        if metrics.symmetry_ratio > self.frontality_tolerance:
            return FrontalityHint.TURNED_LEFT if metrics.nose_toward_left else FrontalityHint.TURNED_RIGHT
        if metrics.tilt_ratio > self.tilt_tolerance:
            return FrontalityHint.TILTED
        if metrics.mouth_symmetry_ratio > self.frontality_tolerance:
            return FrontalityHint.ANGLED
        return None

    def assess(
        self,
        detection: FaceDetection,
        frame_width: int = None,
        frame_height: int = None,
        profile: QualityProfile = ATTENDANCE_PROFILE
    ) -> QualityVerdict:
        """
        Assess a detection against the enabled checks.

        Args:
            detection: Face detection from the detector
            frame_width: Frame width in pixels, defaults to the detection's
            frame_height: Frame height in pixels, defaults to the detection's
            profile: Checks to enforce

        Returns:
            QualityVerdict with pass/fail, min sub-score and issue codes
        """
        width = frame_width or detection.frame_width
        height = frame_height or detection.frame_height
        if not width or not height or width <= 0 or height <= 0:
            raise InputValidationError("Frame dimensions must be positive")

        issues: List[IssueCode] = []
        sub_scores: Dict[str, float] = {}
        box = detection.bounding_box
        confidence = float(detection.confidence)

        if profile.check_confidence:
            sub_scores["confidence"] = confidence
            if confidence < self.min_confidence:
                issues.append(IssueCode.LOW_CONFIDENCE)

        if profile.check_size:
            width_ratio = box.width / width
            if width_ratio < self.min_width_ratio:
                issues.append(IssueCode.TOO_FAR)
                sub_scores["size"] = width_ratio / self.min_width_ratio
            elif width_ratio > self.max_width_ratio:
                issues.append(IssueCode.TOO_CLOSE)
                sub_scores["size"] = self.max_width_ratio / width_ratio
            else:
                sub_scores["size"] = 1.0

        if profile.check_centering:
            center_x, center_y = box.center
            horizontal_offset = abs(center_x - width / 2) / width
            vertical_offset = abs(center_y - height / 2) / height
            sub_scores["centering"] = 1.0 - max(horizontal_offset, vertical_offset)
            if horizontal_offset > self.max_center_offset or vertical_offset > self.max_center_offset:
                issues.append(IssueCode.NOT_CENTERED)

        metrics = frontality_metrics(detection.landmarks)
        hint = None
        if profile.check_frontality:
            hint = self._frontality_hint(metrics)
            if metrics is None:
                sub_scores["frontality"] = 0.0
            else:
                worst = max(metrics.symmetry_ratio, metrics.tilt_ratio, metrics.mouth_symmetry_ratio)
                sub_scores["frontality"] = 1.0 - worst
            if hint is not None:
                issues.append(IssueCode.NOT_FRONTAL)

        if sub_scores:
            score = min(sub_scores.values())
        else:
            score = confidence
        score = max(0.0, min(1.0, score))

        if issues:
            first = issues[0]
            message = _HINT_MESSAGES[hint] if first is IssueCode.NOT_FRONTAL else _MESSAGES[first]
        else:
            message = "Face quality is good"

        return QualityVerdict(
            passed=not issues,
            score=score,
            issues=frozenset(issues),
            hint=hint,
            pose=self.classify_pose(metrics),
            message=message
        )
