"""
Liveness Aggregation

Runs per-frame analysis over a burst of frames and turns the outcomes into a
liveness verdict and an averaged embedding.

The heuristic is frame-count based: a live person in front of the camera
produces several usable frames, a photo or replay usually does not. Analysis
stops as soon as the target number of valid frames is collected, which bounds
latency at the cost of a lower liveness score.
"""
import asyncio
import logging
from typing import Awaitable, Callable, List, Optional, Sequence

import numpy as np

from face_attendance.config import (
    LIVENESS_TARGET_VALID_FRAMES,
    LIVENESS_MIN_VALID_FRAMES,
    LIVENESS_FULL_SCORE_FRAMES,
    LIVENESS_MIN_SCORE
)
from face_attendance.exceptions import DescriptorLengthError
from face_attendance.types import FrameCollection, FrameOutcome, LivenessResult

logger = logging.getLogger(__name__)

FrameAnalyzer = Callable[[int, bytes], Awaitable[FrameOutcome]]
FrameCallback = Callable[[int, int, Optional[FrameOutcome]], None]


class LivenessAggregator:
    """
    Collects valid frames and scores liveness.

    score = min(1, valid / full_score_frames)
    passed = valid >= min_valid_frames and score > min_score
    """

    def __init__(
        self,
        target_valid_frames: int = LIVENESS_TARGET_VALID_FRAMES,
        min_valid_frames: int = LIVENESS_MIN_VALID_FRAMES,
        full_score_frames: int = LIVENESS_FULL_SCORE_FRAMES,
        min_score: float = LIVENESS_MIN_SCORE
    ):
        self.target_valid_frames = target_valid_frames
        self.min_valid_frames = min_valid_frames
        self.full_score_frames = full_score_frames
        self.min_score = min_score

    def score(self, valid_frame_count: int) -> float:
        return min(1.0, valid_frame_count / self.full_score_frames)

    def evaluate(self, frames_analyzed: int, valid_frame_count: int) -> LivenessResult:
        score = self.score(valid_frame_count)
        return LivenessResult(
            frames_analyzed=frames_analyzed,
            valid_frame_count=valid_frame_count,
            liveness_score=score,
            passed=valid_frame_count >= self.min_valid_frames and score > self.min_score
        )

    def evaluate_collection(self, collection: FrameCollection) -> LivenessResult:
        return self.evaluate(collection.frames_analyzed, collection.valid_count)

    @staticmethod
    def average_embedding(embeddings: Sequence[np.ndarray]) -> Optional[np.ndarray]:
        """Element-wise mean, the embedding itself when there is only one."""
        if not embeddings:
            return None
        if len(embeddings) == 1:
            return np.asarray(embeddings[0], dtype=np.float32)

        lengths = {len(e) for e in embeddings}
        if len(lengths) != 1:
            raise DescriptorLengthError(f"Frame embeddings differ in length: {sorted(lengths)}")

        return np.mean(np.stack(embeddings).astype(np.float32), axis=0)

    async def collect(
        self,
        frames: Sequence[bytes],
        analyze: FrameAnalyzer,
        early_exit: bool = True,
        on_frame: FrameCallback = None
    ) -> FrameCollection:
        """
        Analyze frames in order until the target valid count is reached.

        Control is yielded to the event loop after every frame. A frame whose
        analysis raises is recorded as invalid and never aborts the attempt.

        Args:
            frames: Encoded frames in capture order
            analyze: Coroutine producing a FrameOutcome for (index, frame)
            early_exit: Stop once target_valid_frames valid frames are collected
            on_frame: Called with (index, valid_so_far, None) before a frame and
                (index, valid_so_far, outcome) after it

        Returns:
            FrameCollection of the analyzed frames
        """
        outcomes: List[FrameOutcome] = []
        embeddings: List[np.ndarray] = []

        for index, frame in enumerate(frames):
            if early_exit and len(embeddings) >= self.target_valid_frames:
                break

            if on_frame is not None:
                on_frame(index, len(embeddings), None)

            try:
                outcome = await analyze(index, frame)
            except Exception as e:
                logger.warning(f"Frame {index} analysis failed: {e}")
                outcome = FrameOutcome(index=index, detected=False, error=str(e))

            outcomes.append(outcome)
            if outcome.valid and outcome.embedding is not None:
                embeddings.append(outcome.embedding)

            if on_frame is not None:
                on_frame(index, len(embeddings), outcome)

            await asyncio.sleep(0)

        return FrameCollection(outcomes=tuple(outcomes), embeddings=tuple(embeddings))
