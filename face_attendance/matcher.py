"""Face descriptor matching by Euclidean distance."""
import numpy as np

from face_attendance.config import FACE_MATCH_THRESHOLD
from face_attendance.exceptions import DescriptorLengthError, InputValidationError
from face_attendance.types import MatchResult


def _as_vector(descriptor, name: str) -> np.ndarray:
    if descriptor is None:
        raise InputValidationError(f"{name} is required for comparison")
    vector = np.asarray(descriptor, dtype=np.float64).reshape(-1)
    if vector.size == 0:
        raise InputValidationError(f"{name} is empty")
    if not np.all(np.isfinite(vector)):
        raise InputValidationError(f"{name} contains non-finite values")
    return vector


class DescriptorMatcher:
    """
    Compares face descriptors by Euclidean distance.

    distance < threshold is a match; similarity is 1 - distance floored at 0.
    """

    def __init__(self, threshold: float = FACE_MATCH_THRESHOLD):
        if threshold <= 0:
            raise InputValidationError("Match threshold must be positive")
        self.threshold = float(threshold)

    def distance(self, descriptor1, descriptor2) -> float:
        """
        Euclidean distance between two descriptors.

        Raises:
            DescriptorLengthError: If the descriptors differ in length
        """
        a = _as_vector(descriptor1, "descriptor1")
        b = _as_vector(descriptor2, "descriptor2")
        if a.shape != b.shape:
            raise DescriptorLengthError(
                f"Descriptors must have the same length ({a.size} != {b.size})"
            )
        return float(np.linalg.norm(a - b))

    def compare(self, descriptor1, descriptor2, threshold: float = None) -> MatchResult:
        threshold = self.threshold if threshold is None else float(threshold)
        distance = self.distance(descriptor1, descriptor2)
        match = distance < threshold

        return MatchResult(
            match=match,
            distance=distance,
            similarity=max(0.0, 1.0 - distance),
            threshold=threshold,
            confidence=(1.0 - distance / threshold) if match else 0.0
        )
