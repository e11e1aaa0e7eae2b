"""
Error taxonomy for the verification pipeline.

Only malformed input, capacity and detector problems are raised. Liveness,
face mismatch and out-of-range locations are terminal outcomes of a
verification attempt and are returned, not raised.
"""


class FaceAttendanceError(Exception):
    """Base class for all pipeline errors."""

    code = "ERROR"

    def __init__(self, message: str, code: str = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


class InputValidationError(FaceAttendanceError):
    """Malformed input, rejected immediately and never retried."""

    code = "INVALID_INPUT"


class InvalidCoordinateError(InputValidationError):
    code = "INVALID_COORDINATE"


class DescriptorLengthError(InputValidationError):
    code = "LENGTH_MISMATCH"


class CapacityError(FaceAttendanceError):
    """Admission denied. Callers retry with backoff."""

    code = "SERVICE_BUSY"


class DetectionError(FaceAttendanceError):
    """A frame could not be analyzed (undecodable image, no face)."""

    code = "NO_FACE"
