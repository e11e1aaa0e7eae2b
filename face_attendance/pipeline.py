"""
Verification Pipeline

Orchestrates one attendance verification or face registration attempt:

    RECEIVED -> ADMITTED -> LIVENESS_CHECK -> IDENTITY_MATCH -> LOCATION_CHECK -> PASSED
                                    (any stage) -> FAILED(reason)

Shared resources (admission counter, embedding cache) are constructed once by
the caller and injected, as are the face detector, the identity store and the
progress sink. Frames are analyzed sequentially; the blocking detector call
runs in a worker thread and control returns to the event loop after every
frame so concurrent attempts interleave.
"""
import asyncio
import logging
import time
import uuid
from typing import Dict, List, Optional, Protocol, Sequence, Tuple, Union

import numpy as np

from face_attendance.admission import AdmissionController
from face_attendance.cache import EmbeddingCache
from face_attendance.config import (
    LEGACY_MATCH_THRESHOLD,
    LIVENESS_REQUIRED,
    LIVENESS_MIN_VALID_FRAMES,
    REGISTRATION_MIN_FRAMES
)
from face_attendance.exceptions import CapacityError
from face_attendance.geo import Geofence, GeoPoint, office_geofence
from face_attendance.liveness import LivenessAggregator
from face_attendance.matcher import DescriptorMatcher
from face_attendance.progress import ProgressEvent, ProgressSink, emit_safely
from face_attendance.quality import (
    ATTENDANCE_PROFILE,
    REGISTRATION_PROFILE,
    UNCHECKED_PROFILE,
    FrameQualityAssessor,
    QualityProfile
)
from face_attendance.types import (
    DetectionOptions,
    FaceDetection,
    FailureReason,
    FrameCollection,
    FrameOutcome,
    LivenessResult,
    PipelineState,
    Pose,
    RegistrationOutcome,
    RegistrationReport,
    VerificationOutcome,
    VerificationReport
)

logger = logging.getLogger(__name__)

Location = Union[GeoPoint, Tuple[float, float]]


class FaceDetector(Protocol):
    """Black-box detector: zero or one face per image."""

    def detect(self, image: bytes, options: DetectionOptions) -> Optional[FaceDetection]:
        ...


class IdentityStore(Protocol):
    """Read access to registered reference embeddings."""

    async def get_reference_embedding(self, identity_id: str) -> Optional[np.ndarray]:
        ...


def _to_point(location: Location) -> GeoPoint:
    if isinstance(location, GeoPoint):
        return location
    latitude, longitude = location
    return GeoPoint(latitude, longitude)


class _Attempt:
    """Progress bookkeeping for one attempt."""

    def __init__(self, sink: Optional[ProgressSink], identity_id: Optional[str], total_frames: int):
        self.attempt_id = uuid.uuid4().hex
        self.identity_id = identity_id
        self.total_frames = total_frames
        self.state = PipelineState.RECEIVED
        self.started = time.time()
        self._sink = sink

    @property
    def elapsed_ms(self) -> float:
        return (time.time() - self.started) * 1000

    def emit(self, status: str, message: str, **kwargs) -> None:
        emit_safely(self._sink, ProgressEvent(
            attempt_id=self.attempt_id,
            identity_id=self.identity_id,
            state=self.state.value,
            status=status,
            message=message,
            total_frames=self.total_frames,
            **kwargs
        ))

    def enter(self, state: PipelineState, message: str) -> None:
        self.state = state
        self.emit(state.value.lower(), message)

    def on_frame(self, index: int, valid_so_far: int, outcome: Optional[FrameOutcome]) -> None:
        if outcome is None:
            self.emit(
                "processing_frame",
                f"Processing frame {index + 1}/{self.total_frames}",
                frame_index=index,
                valid_so_far=valid_so_far
            )
        elif outcome.valid:
            self.emit(
                "face_detected",
                "Face detected in frame",
                frame_index=index,
                valid_so_far=valid_so_far,
                details={"score": outcome.verdict.score}
            )
        else:
            if outcome.verdict is not None:
                message = outcome.verdict.message
            else:
                message = "No face detected in frame"
            self.emit(
                "face_not_detected",
                message,
                frame_index=index,
                valid_so_far=valid_so_far
            )


class VerificationPipeline:
    """
    Verification and registration over bursts of camera frames.

    Args:
        detector: FaceDetector implementation
        identity_store: Source of reference embeddings on cache miss
        cache: Shared reference embedding cache
        admission: Shared admission controller
        assessor: Frame quality assessor
        matcher: Descriptor matcher for the video flow
        liveness: Liveness aggregator
        geofence: Authorized location, the configured office by default
        progress_sink: Best-effort progress observer
        require_liveness: Enforce liveness on every verify_frames call
        min_frames: Fewest frames a verification may submit
        registration_min_frames: Fewest frames a registration may submit
        legacy_matcher: Matcher for the single-image path
    """

    def __init__(
        self,
        detector: FaceDetector,
        identity_store: IdentityStore,
        cache: EmbeddingCache,
        admission: AdmissionController,
        assessor: FrameQualityAssessor = None,
        matcher: DescriptorMatcher = None,
        liveness: LivenessAggregator = None,
        geofence: Geofence = None,
        progress_sink: ProgressSink = None,
        require_liveness: bool = LIVENESS_REQUIRED,
        min_frames: int = LIVENESS_MIN_VALID_FRAMES,
        registration_min_frames: int = REGISTRATION_MIN_FRAMES,
        legacy_matcher: DescriptorMatcher = None
    ):
        self.detector = detector
        self.identity_store = identity_store
        self.cache = cache
        self.admission = admission
        self.assessor = assessor or FrameQualityAssessor()
        self.matcher = matcher or DescriptorMatcher()
        self.liveness = liveness or LivenessAggregator()
        self.geofence = geofence or office_geofence()
        self.progress_sink = progress_sink
        self.require_liveness = require_liveness
        self.min_frames = min_frames
        self.registration_min_frames = registration_min_frames
        self.legacy_matcher = legacy_matcher or DescriptorMatcher(LEGACY_MATCH_THRESHOLD)

    # ------------------------------------------------------------------
    # Frame analysis
    # ------------------------------------------------------------------

    async def _analyze(self, index: int, frame: bytes, profile: QualityProfile) -> FrameOutcome:
        detection = await asyncio.to_thread(
            self.detector.detect, frame, profile.detection_options()
        )
        if detection is None:
            return FrameOutcome(index=index, detected=False, error="No face detected")

        verdict = self.assessor.assess(detection, profile=profile)
        return FrameOutcome(
            index=index,
            detected=True,
            verdict=verdict,
            embedding=np.asarray(detection.embedding, dtype=np.float32)
        )

    async def _collect(
        self,
        frames: Sequence[bytes],
        profile: QualityProfile,
        attempt: _Attempt,
        exit_after: Optional[int]
    ) -> FrameCollection:
        async def analyze(index: int, frame: bytes) -> FrameOutcome:
            return await self._analyze(index, frame, profile)

        aggregator = self.liveness
        if exit_after is not None and exit_after != aggregator.target_valid_frames:
            aggregator = LivenessAggregator(
                target_valid_frames=exit_after,
                min_valid_frames=self.liveness.min_valid_frames,
                full_score_frames=self.liveness.full_score_frames,
                min_score=self.liveness.min_score
            )

        return await aggregator.collect(
            frames,
            analyze,
            early_exit=exit_after is not None,
            on_frame=attempt.on_frame
        )

    def _liveness_exit_target(self, require_liveness: bool) -> int:
        """
        Valid frames to collect before stopping.

        When liveness is enforced, keep going until enough valid frames exist
        for the liveness verdict to pass.
        """
        target = self.liveness.target_valid_frames
        if not require_liveness:
            return target
        needed = self.liveness.full_score_frames
        for count in range(max(1, self.liveness.min_valid_frames), self.liveness.full_score_frames + 1):
            if self.liveness.evaluate(count, count).passed:
                needed = count
                break
        return max(target, needed)

    async def _reference_embedding(self, identity_id: str) -> Optional[np.ndarray]:
        reference = self.cache.get(identity_id)
        if reference is not None:
            return reference

        generation = self.cache.generation(identity_id)
        reference = await self.identity_store.get_reference_embedding(identity_id)
        if reference is None:
            return None

        reference = np.asarray(reference, dtype=np.float32)
        self.cache.put(identity_id, reference, generation=generation)
        return reference

    def reference_changed(self, identity_id: str) -> None:
        """Called after the stored reference embedding for an identity changes."""
        self.cache.invalidate(identity_id)

    def _admit(self, attempt: _Attempt):
        try:
            ticket = self.admission.acquire()
        except CapacityError as e:
            attempt.state = PipelineState.FAILED
            attempt.emit("failed", e.message, details={"reason": FailureReason.ADMISSION_REJECTED.value})
            return None
        attempt.enter(PipelineState.ADMITTED, "Attempt admitted")
        return ticket

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def _fail(
        self,
        attempt: _Attempt,
        reason: FailureReason,
        message: str,
        outcome: VerificationOutcome = None,
        liveness: LivenessResult = None,
        collection: FrameCollection = None
    ) -> VerificationReport:
        attempt.state = PipelineState.FAILED
        attempt.emit("failed", message, details={"reason": reason.value})
        logger.info(
            f"Attempt {attempt.attempt_id} for {attempt.identity_id} failed: "
            f"{reason.value} in {attempt.elapsed_ms:.1f}ms"
        )
        return VerificationReport(
            state=PipelineState.FAILED,
            reason=reason,
            outcome=outcome,
            liveness=liveness,
            frames=collection.outcomes if collection else ()
        )

    async def verify_frames(
        self,
        frames: Sequence[bytes],
        identity_id: str,
        location: Location,
        require_liveness: bool = None
    ) -> VerificationReport:
        """
        Verify a burst of frames against the registered identity and the office geofence.

        Args:
            frames: Encoded camera frames in capture order
            identity_id: Claimed identity
            location: Device coordinate as GeoPoint or (lat, lon)
            require_liveness: Also fail attempts whose liveness verdict does not
                pass. Can only tighten the pipeline setting, never relax it

        Returns:
            VerificationReport ending in PASSED or FAILED(reason)

        Raises:
            InvalidCoordinateError: If the coordinate is not finite or out of range
        """
        point = _to_point(location)
        require_liveness = self.require_liveness or bool(require_liveness)

        attempt = _Attempt(self.progress_sink, str(identity_id), len(frames))
        attempt.emit("received", "Verification request received")

        ticket = self._admit(attempt)
        if ticket is None:
            return VerificationReport(state=PipelineState.FAILED, reason=FailureReason.ADMISSION_REJECTED)

        with ticket:
            if len(frames) < self.min_frames:
                return self._fail(
                    attempt, FailureReason.INSUFFICIENT_FRAMES,
                    f"At least {self.min_frames} video frames are required for verification"
                )

            collection = await self._collect(
                frames, ATTENDANCE_PROFILE, attempt,
                exit_after=self._liveness_exit_target(require_liveness)
            )
            liveness = self.liveness.evaluate_collection(collection)

            if collection.valid_count < self.liveness.min_valid_frames:
                return self._fail(
                    attempt, FailureReason.INSUFFICIENT_FRAMES,
                    f"Only {collection.valid_count} usable frame(s) found",
                    liveness=liveness, collection=collection
                )

            attempt.enter(PipelineState.LIVENESS_CHECK, "Checking liveness")
            if require_liveness and not liveness.passed:
                return self._fail(
                    attempt, FailureReason.LIVENESS_FAILED,
                    "Liveness check failed - verification denied",
                    liveness=liveness, collection=collection
                )

            attempt.enter(PipelineState.IDENTITY_MATCH, "Verifying face match")
            reference = await self._reference_embedding(str(identity_id))
            if reference is None:
                return self._fail(
                    attempt, FailureReason.NO_STORED_IDENTITY,
                    "Face data not registered. Please register your face first.",
                    liveness=liveness, collection=collection
                )

            candidate = self.liveness.average_embedding(collection.embeddings)
            match = self.matcher.compare(candidate, reference)

            if not match.match:
                outcome = VerificationOutcome(
                    matched=False,
                    similarity=match.similarity,
                    distance=match.distance,
                    liveness_passed=liveness.passed,
                    location_matched=False,
                    distance_meters=None,
                    confidence=match.confidence,
                    liveness_score=liveness.liveness_score,
                    frames_analyzed=liveness.frames_analyzed,
                    valid_frames=liveness.valid_frame_count
                )
                return self._fail(
                    attempt, FailureReason.FACE_MISMATCH,
                    f"Face does not match (similarity {match.similarity:.0%})",
                    outcome=outcome, liveness=liveness, collection=collection
                )

            attempt.enter(PipelineState.LOCATION_CHECK, "Checking location")
            distance_meters = self.geofence.distance_to(point)
            location_matched = distance_meters <= self.geofence.radius_meters

            outcome = VerificationOutcome(
                matched=True,
                similarity=match.similarity,
                distance=match.distance,
                liveness_passed=liveness.passed,
                location_matched=location_matched,
                distance_meters=distance_meters,
                confidence=match.confidence,
                liveness_score=liveness.liveness_score,
                frames_analyzed=liveness.frames_analyzed,
                valid_frames=liveness.valid_frame_count
            )

            if not location_matched:
                return self._fail(
                    attempt, FailureReason.OUT_OF_RANGE,
                    f"You are not within office premises. Distance: {round(distance_meters)}m",
                    outcome=outcome, liveness=liveness, collection=collection
                )

            attempt.state = PipelineState.PASSED
            attempt.emit("complete", "Face verified successfully", details={"similarity": match.similarity})
            logger.info(
                f"Verified {identity_id} (similarity: {match.similarity:.2%}, "
                f"distance: {distance_meters:.0f}m) in {attempt.elapsed_ms:.1f}ms"
            )
            return VerificationReport(
                state=PipelineState.PASSED,
                outcome=outcome,
                liveness=liveness,
                frames=collection.outcomes
            )

    async def verify_single_frame(
        self,
        frame: bytes,
        identity_id: str,
        location: Location
    ) -> VerificationReport:
        """
        Legacy single-image verification.

        No liveness check, quality checks skipped and a looser match threshold.
        """
        point = _to_point(location)
        attempt = _Attempt(self.progress_sink, str(identity_id), 1)
        attempt.emit("received", "Single-image verification request received")

        ticket = self._admit(attempt)
        if ticket is None:
            return VerificationReport(state=PipelineState.FAILED, reason=FailureReason.ADMISSION_REJECTED)

        with ticket:
            collection = await self._collect([frame], UNCHECKED_PROFILE, attempt, exit_after=None)
            if collection.valid_count == 0:
                return self._fail(
                    attempt, FailureReason.INSUFFICIENT_FRAMES,
                    "No face detected in the image", collection=collection
                )

            attempt.enter(PipelineState.IDENTITY_MATCH, "Verifying face match")
            reference = await self._reference_embedding(str(identity_id))
            if reference is None:
                return self._fail(
                    attempt, FailureReason.NO_STORED_IDENTITY,
                    "Face data not registered. Please register your face first.",
                    collection=collection
                )

            match = self.legacy_matcher.compare(collection.embeddings[0], reference)
            if not match.match:
                outcome = VerificationOutcome(
                    matched=False,
                    similarity=match.similarity,
                    distance=match.distance,
                    liveness_passed=False,
                    location_matched=False,
                    distance_meters=None,
                    frames_analyzed=1,
                    valid_frames=1
                )
                return self._fail(
                    attempt, FailureReason.FACE_MISMATCH,
                    f"Face verification failed. Similarity: {match.similarity:.0%}",
                    outcome=outcome, collection=collection
                )

            attempt.enter(PipelineState.LOCATION_CHECK, "Checking location")
            distance_meters = self.geofence.distance_to(point)
            location_matched = distance_meters <= self.geofence.radius_meters
            outcome = VerificationOutcome(
                matched=True,
                similarity=match.similarity,
                distance=match.distance,
                liveness_passed=False,
                location_matched=location_matched,
                distance_meters=distance_meters,
                confidence=match.confidence,
                frames_analyzed=1,
                valid_frames=1
            )
            if not location_matched:
                return self._fail(
                    attempt, FailureReason.OUT_OF_RANGE,
                    f"You are not within office premises. Distance: {round(distance_meters)}m",
                    outcome=outcome, collection=collection
                )

            attempt.state = PipelineState.PASSED
            attempt.emit("complete", "Face verified successfully")
            return VerificationReport(state=PipelineState.PASSED, outcome=outcome, frames=collection.outcomes)

    # ------------------------------------------------------------------
    # Liveness and frame feedback
    # ------------------------------------------------------------------

    async def check_liveness(self, frames: Sequence[bytes]) -> VerificationReport:
        """Score liveness over every submitted frame, without identity or location checks."""
        attempt = _Attempt(self.progress_sink, None, len(frames))
        attempt.emit("received", "Liveness check received")

        ticket = self._admit(attempt)
        if ticket is None:
            return VerificationReport(state=PipelineState.FAILED, reason=FailureReason.ADMISSION_REJECTED)

        with ticket:
            if len(frames) < self.min_frames:
                return self._fail(
                    attempt, FailureReason.INSUFFICIENT_FRAMES,
                    f"At least {self.min_frames} video frames are required for liveness check"
                )

            collection = await self._collect(frames, ATTENDANCE_PROFILE, attempt, exit_after=None)
            liveness = self.liveness.evaluate_collection(collection)

            if collection.valid_count == 0:
                return self._fail(
                    attempt, FailureReason.INSUFFICIENT_FRAMES,
                    "No valid faces detected in video frames",
                    liveness=liveness, collection=collection
                )

            attempt.enter(PipelineState.LIVENESS_CHECK, "Checking liveness")
            if not liveness.passed:
                return self._fail(
                    attempt, FailureReason.LIVENESS_FAILED,
                    "Liveness check failed - insufficient valid frames",
                    liveness=liveness, collection=collection
                )

            attempt.state = PipelineState.PASSED
            attempt.emit("complete", "Liveness check passed")
            return VerificationReport(state=PipelineState.PASSED, liveness=liveness, frames=collection.outcomes)

    async def analyze_frame(self, frame: bytes, profile: QualityProfile = ATTENDANCE_PROFILE) -> FrameOutcome:
        """
        Quality feedback for one frame, for live capture guidance.

        Raises:
            CapacityError: If the service is at capacity
        """
        with self.admission.admit():
            try:
                return await self._analyze(0, frame, profile)
            except Exception as e:
                logger.warning(f"Frame analysis failed: {e}")
                return FrameOutcome(index=0, detected=False, error=str(e))

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    @staticmethod
    def _pose_scores(outcomes: Sequence[FrameOutcome]) -> Dict[str, float]:
        by_pose: Dict[str, List[float]] = {pose.value: [] for pose in Pose}
        for outcome in outcomes:
            if outcome.valid and outcome.verdict.pose is not None:
                by_pose[outcome.verdict.pose.value].append(outcome.verdict.score)
        return {
            pose: round(float(np.mean(scores)), 4) if scores else 0.0
            for pose, scores in by_pose.items()
        }

    async def register_frames(self, frames: Sequence[bytes], identity_id: str) -> RegistrationReport:
        """
        Build a reference embedding from a recorded burst of frames.

        Every frame is analyzed with the registration quality profile. The
        caller persists the embedding and then calls reference_changed().

        Args:
            frames: Encoded camera frames in capture order
            identity_id: Identity being registered

        Returns:
            RegistrationReport with the averaged embedding and per-pose quality scores
        """
        attempt = _Attempt(self.progress_sink, str(identity_id), len(frames))
        attempt.emit("received", "Registration request received")

        ticket = self._admit(attempt)
        if ticket is None:
            return RegistrationReport(state=PipelineState.FAILED, reason=FailureReason.ADMISSION_REJECTED)

        with ticket:
            if len(frames) < self.registration_min_frames:
                attempt.state = PipelineState.FAILED
                attempt.emit("failed", "Not enough frames for registration",
                             details={"reason": FailureReason.INSUFFICIENT_FRAMES.value})
                return RegistrationReport(state=PipelineState.FAILED, reason=FailureReason.INSUFFICIENT_FRAMES)

            collection = await self._collect(frames, REGISTRATION_PROFILE, attempt, exit_after=None)
            if collection.valid_count == 0:
                attempt.state = PipelineState.FAILED
                attempt.emit("failed", "No valid faces detected in video frames",
                             details={"reason": FailureReason.INSUFFICIENT_FRAMES.value})
                return RegistrationReport(
                    state=PipelineState.FAILED,
                    reason=FailureReason.INSUFFICIENT_FRAMES,
                    frames=collection.outcomes
                )

            outcome = RegistrationOutcome(
                identity_id=str(identity_id),
                embedding=self.liveness.average_embedding(collection.embeddings),
                frames_analyzed=collection.frames_analyzed,
                valid_frames=collection.valid_count,
                quality_scores=self._pose_scores(collection.outcomes),
                liveness_score=collection.valid_count / collection.frames_analyzed
            )

            attempt.state = PipelineState.PASSED
            attempt.emit("complete", "Face registered successfully",
                         valid_so_far=collection.valid_count)
            logger.info(
                f"Registered {identity_id} from {collection.valid_count}/{collection.frames_analyzed} "
                f"valid frames in {attempt.elapsed_ms:.1f}ms"
            )
            return RegistrationReport(state=PipelineState.PASSED, outcome=outcome, frames=collection.outcomes)
