"""Value types shared by the verification pipeline and its stores."""
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Dict, FrozenSet, Optional, Tuple

import numpy as np


class IssueCode(str, Enum):
    LOW_CONFIDENCE = "LOW_CONFIDENCE"
    TOO_FAR = "TOO_FAR"
    TOO_CLOSE = "TOO_CLOSE"
    NOT_CENTERED = "NOT_CENTERED"
    NOT_FRONTAL = "NOT_FRONTAL"


class FrontalityHint(str, Enum):
    TURNED_LEFT = "TURNED_LEFT"
    TURNED_RIGHT = "TURNED_RIGHT"
    TILTED = "TILTED"
    ANGLED = "ANGLED"
    NO_LANDMARKS = "NO_LANDMARKS"


class Pose(str, Enum):
    FRONT = "front"
    LEFT = "left"
    RIGHT = "right"


class PipelineState(str, Enum):
    RECEIVED = "RECEIVED"
    ADMITTED = "ADMITTED"
    LIVENESS_CHECK = "LIVENESS_CHECK"
    IDENTITY_MATCH = "IDENTITY_MATCH"
    LOCATION_CHECK = "LOCATION_CHECK"
    PASSED = "PASSED"
    FAILED = "FAILED"


class FailureReason(str, Enum):
    ADMISSION_REJECTED = "ADMISSION_REJECTED"
    INSUFFICIENT_FRAMES = "INSUFFICIENT_FRAMES"
    LIVENESS_FAILED = "LIVENESS_FAILED"
    NO_STORED_IDENTITY = "NO_STORED_IDENTITY"
    FACE_MISMATCH = "FACE_MISMATCH"
    OUT_OF_RANGE = "OUT_OF_RANGE"


@dataclass(frozen=True)
class BoundingBox:
    x: float
    y: float
    width: float
    height: float

    @property
    def center(self) -> Tuple[float, float]:
        return self.x + self.width / 2, self.y + self.height / 2


@dataclass(frozen=True)
class FaceDetection:
    """One detected face. Box and landmarks are in frame pixel coordinates."""
    bounding_box: BoundingBox
    confidence: float
    landmarks: Tuple[Tuple[float, float], ...]
    embedding: np.ndarray
    frame_width: int
    frame_height: int


@dataclass(frozen=True)
class DetectionOptions:
    skip_frontality_check: bool = False
    skip_quality_check: bool = False


@dataclass(frozen=True)
class QualityVerdict:
    passed: bool
    score: float
    issues: FrozenSet[IssueCode] = frozenset()
    hint: Optional[FrontalityHint] = None
    pose: Optional[Pose] = None
    message: str = "Face quality is good"


@dataclass(frozen=True)
class FrameOutcome:
    index: int
    detected: bool
    verdict: Optional[QualityVerdict] = None
    embedding: Optional[np.ndarray] = None
    error: Optional[str] = None

    @property
    def valid(self) -> bool:
        return self.detected and self.verdict is not None and self.verdict.passed


@dataclass(frozen=True)
class LivenessResult:
    frames_analyzed: int
    valid_frame_count: int
    liveness_score: float
    passed: bool


@dataclass(frozen=True)
class FrameCollection:
    """Per-frame outcomes of one attempt plus the valid embeddings among them."""
    outcomes: Tuple[FrameOutcome, ...]
    embeddings: Tuple[np.ndarray, ...]

    @property
    def frames_analyzed(self) -> int:
        return len(self.outcomes)

    @property
    def valid_count(self) -> int:
        return len(self.embeddings)


@dataclass(frozen=True)
class MatchResult:
    match: bool
    distance: float
    similarity: float
    threshold: float
    confidence: float


@dataclass(frozen=True)
class StoredIdentity:
    identity_id: str
    reference_embedding: np.ndarray
    registered_at: datetime


@dataclass(frozen=True)
class VerificationOutcome:
    matched: bool
    similarity: float
    distance: float
    liveness_passed: bool
    location_matched: bool
    distance_meters: Optional[float]
    confidence: float = 0.0
    liveness_score: float = 0.0
    frames_analyzed: int = 0
    valid_frames: int = 0


@dataclass(frozen=True)
class VerificationReport:
    state: PipelineState
    reason: Optional[FailureReason] = None
    outcome: Optional[VerificationOutcome] = None
    liveness: Optional[LivenessResult] = None
    frames: Tuple[FrameOutcome, ...] = ()

    @property
    def passed(self) -> bool:
        return self.state is PipelineState.PASSED


@dataclass(frozen=True)
class RegistrationOutcome:
    identity_id: str
    embedding: np.ndarray
    frames_analyzed: int
    valid_frames: int
    quality_scores: Dict[str, float]
    liveness_score: float


@dataclass(frozen=True)
class RegistrationReport:
    state: PipelineState
    reason: Optional[FailureReason] = None
    outcome: Optional[RegistrationOutcome] = None
    frames: Tuple[FrameOutcome, ...] = ()

    @property
    def passed(self) -> bool:
        return self.state is PipelineState.PASSED
