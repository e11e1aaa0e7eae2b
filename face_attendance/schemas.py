"""
Pydantic models for API request/response schemas

Frames travel as base64 strings, optionally with a data URL prefix
(data:image/jpeg;base64,...), which is how browsers hand out canvas captures.
"""
import base64
import binascii
import re
from pydantic import BaseModel, Field, field_validator
from typing import Dict, List, Optional
from datetime import datetime

from face_attendance.config import MAX_FRAMES_PER_REQUEST

_DATA_URL_PREFIX = re.compile(r"^data:image/[a-zA-Z0-9.+-]+;base64,")


def decode_frame(value: str) -> bytes:
    """
    Decode one base64 frame, stripping a data URL prefix if present.

    Raises:
        ValueError: If the payload is empty or not valid base64
    """
    payload = _DATA_URL_PREFIX.sub("", value.strip(), count=1)
    if not payload:
        raise ValueError("Frame is empty")
    try:
        return base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError):
        raise ValueError("Frame is not valid base64")


def _check_frames(frames: List[str]) -> List[str]:
    for i, frame in enumerate(frames):
        try:
            decode_frame(frame)
        except ValueError as e:
            raise ValueError(f"frames[{i}]: {e}")
    return frames


class Location(BaseModel):
    """Device coordinate in decimal degrees"""
    latitude: float = Field(..., description="Latitude in degrees (-90..90)")
    longitude: float = Field(..., description="Longitude in degrees (-180..180)")


class FramesRequest(BaseModel):
    """Base schema for requests carrying a burst of frames"""
    frames: List[str] = Field(
        ...,
        min_length=1,
        max_length=MAX_FRAMES_PER_REQUEST,
        description="Base64-encoded frames in capture order"
    )

    @field_validator("frames")
    @classmethod
    def frames_are_base64(cls, v: List[str]) -> List[str]:
        return _check_frames(v)

    def frame_bytes(self) -> List[bytes]:
        return [decode_frame(frame) for frame in self.frames]


class VerifyRequest(FramesRequest):
    """Schema for verifying attendance from a burst of frames"""
    identity_id: str = Field(..., min_length=1, max_length=64, description="Claimed identity (employee user id)")
    location: Location = Field(..., description="Device location at capture time")
    require_liveness: Optional[bool] = Field(
        default=None,
        description="Reject when the liveness heuristic fails. Ignored when the server already enforces liveness"
    )

    class Config:
        json_schema_extra = {
            "example": {
                "identity_id": "emp-1042",
                "frames": ["data:image/jpeg;base64,/9j/4AAQSkZJRg...", "/9j/4AAQSkZJRg..."],
                "location": {"latitude": 22.2989, "longitude": 73.1313},
                "require_liveness": False
            }
        }


class RegisterRequest(FramesRequest):
    """Schema for registering a face from a recorded burst of frames"""
    identity_id: str = Field(..., min_length=1, max_length=64, description="Identity being registered")

    class Config:
        json_schema_extra = {
            "example": {
                "identity_id": "emp-1042",
                "frames": ["/9j/4AAQSkZJRg..."]
            }
        }


class LivenessRequest(FramesRequest):
    """Schema for a standalone liveness check"""

    class Config:
        json_schema_extra = {
            "example": {
                "frames": ["/9j/4AAQSkZJRg...", "/9j/4AAQSkZJRg..."]
            }
        }


class AnalyzeFrameRequest(BaseModel):
    """Schema for real-time quality feedback on one frame"""
    frame: str = Field(..., description="Base64-encoded frame")
    registration: bool = Field(default=False, description="Use registration rules (frontality not enforced)")

    @field_validator("frame")
    @classmethod
    def frame_is_base64(cls, v: str) -> str:
        decode_frame(v)
        return v

    def frame_bytes(self) -> bytes:
        return decode_frame(self.frame)


class SingleImageVerifyRequest(BaseModel):
    """Schema for the legacy single-image verification"""
    identity_id: str = Field(..., min_length=1, max_length=64, description="Claimed identity")
    image: str = Field(..., description="Base64-encoded image")
    location: Location = Field(..., description="Device location at capture time")

    @field_validator("image")
    @classmethod
    def image_is_base64(cls, v: str) -> str:
        decode_frame(v)
        return v

    def frame_bytes(self) -> bytes:
        return decode_frame(self.image)


class VerificationResponse(BaseModel):
    """Schema for verification responses, successful or not"""
    success: bool = Field(..., description="Whether attendance was verified")
    state: str = Field(..., description="Final pipeline state (PASSED or FAILED)")
    reason: Optional[str] = Field(default=None, description="Failure reason code")
    message: str = Field(..., description="Human-readable status message")
    matched: Optional[bool] = Field(default=None, description="Whether the face matched, when matching ran")
    similarity: Optional[float] = Field(default=None, ge=0, le=1, description="1 - distance, floored at 0")
    distance: Optional[float] = Field(default=None, description="Euclidean descriptor distance (lower is better)")
    confidence: Optional[float] = Field(default=None, ge=0, le=1, description="Match confidence")
    liveness_passed: Optional[bool] = Field(default=None, description="Liveness heuristic verdict")
    liveness_score: Optional[float] = Field(default=None, ge=0, le=1, description="Liveness score")
    location_matched: Optional[bool] = Field(default=None, description="Whether the device is inside the geofence")
    distance_meters: Optional[float] = Field(default=None, description="Distance from the office in meters")
    frames_analyzed: int = Field(default=0, description="Frames actually analyzed")
    valid_frames: int = Field(default=0, description="Frames that passed quality checks")
    processing_time_ms: float = Field(..., description="Processing time in milliseconds")

    class Config:
        json_schema_extra = {
            "example": {
                "success": True,
                "state": "PASSED",
                "reason": None,
                "message": "Face verified successfully",
                "matched": True,
                "similarity": 0.74,
                "distance": 0.26,
                "confidence": 0.42,
                "liveness_passed": False,
                "liveness_score": 0.2,
                "location_matched": True,
                "distance_meters": 12.4,
                "frames_analyzed": 3,
                "valid_frames": 2,
                "processing_time_ms": 845.2
            }
        }


class RegistrationResponse(BaseModel):
    """Schema for registration responses"""
    success: bool = Field(..., description="Whether the face was registered")
    reason: Optional[str] = Field(default=None, description="Failure reason code")
    message: str = Field(..., description="Status message")
    identity_id: str = Field(..., description="Registered identity")
    frames_analyzed: int = Field(default=0, description="Frames analyzed")
    valid_frames: int = Field(default=0, description="Frames that passed quality checks")
    quality_scores: Dict[str, float] = Field(default_factory=dict, description="Mean quality score per pose")
    liveness_score: float = Field(default=0.0, ge=0, le=1, description="Valid frames over analyzed frames")
    processing_time_ms: float = Field(..., description="Processing time in milliseconds")

    class Config:
        json_schema_extra = {
            "example": {
                "success": True,
                "reason": None,
                "message": "Face registered successfully",
                "identity_id": "emp-1042",
                "frames_analyzed": 12,
                "valid_frames": 10,
                "quality_scores": {"front": 0.86, "left": 0.0, "right": 0.71},
                "liveness_score": 0.83,
                "processing_time_ms": 3120.7
            }
        }


class LivenessResponse(BaseModel):
    """Schema for liveness check responses"""
    success: bool = Field(..., description="Whether the liveness heuristic passed")
    reason: Optional[str] = Field(default=None, description="Failure reason code")
    message: str = Field(..., description="Status message")
    frames_analyzed: int = Field(default=0, description="Frames analyzed")
    valid_frames: int = Field(default=0, description="Frames that passed quality checks")
    liveness_score: float = Field(default=0.0, ge=0, le=1, description="min(1, valid_frames / 10)")
    processing_time_ms: float = Field(..., description="Processing time in milliseconds")


class FrameAnalysisResponse(BaseModel):
    """Schema for single-frame quality feedback"""
    face_detected: bool = Field(..., description="Whether a face was detected")
    valid: bool = Field(..., description="Whether the frame passed every enabled check")
    score: float = Field(default=0.0, ge=0, le=1, description="Overall quality score")
    issues: List[str] = Field(default_factory=list, description="Failed quality checks")
    hint: Optional[str] = Field(default=None, description="Frontality hint")
    pose: Optional[str] = Field(default=None, description="Classified head pose")
    message: str = Field(..., description="Guidance for the user")
    processing_time_ms: float = Field(..., description="Processing time in milliseconds")

    class Config:
        json_schema_extra = {
            "example": {
                "face_detected": True,
                "valid": False,
                "score": 0.62,
                "issues": ["NOT_FRONTAL"],
                "hint": "TURNED_LEFT",
                "pose": "left",
                "message": "Please turn your face slightly to the right",
                "processing_time_ms": 210.3
            }
        }


class IdentityRecord(BaseModel):
    """Schema for a registered identity (the embedding itself is never returned)"""
    identity_id: str = Field(..., description="Identity id")
    embedding_dimensions: int = Field(..., description="Length of the stored reference embedding")
    quality_scores: Dict[str, float] = Field(default_factory=dict, description="Mean quality score per pose")
    frames_analyzed: int = Field(..., description="Frames analyzed at registration")
    valid_frames: int = Field(..., description="Valid frames at registration")
    registered_at: datetime = Field(..., description="First registration timestamp")
    updated_at: datetime = Field(..., description="Last re-registration timestamp")


class DeleteResponse(BaseModel):
    """Schema for delete identity response"""
    success: bool = Field(..., description="Whether the operation succeeded")
    message: str = Field(..., description="Status message")
    deleted_id: Optional[str] = Field(default=None, description="Deleted identity id")


class HealthResponse(BaseModel):
    """Schema for health check response"""
    status: str = Field(..., description="Service status")
    model_loaded: bool = Field(..., description="Whether the face model is loaded")
    in_flight: int = Field(..., description="Face processing jobs currently running")
    capacity: int = Field(..., description="Maximum concurrent face processing jobs")
    cached_embeddings: int = Field(..., description="Live reference embedding cache entries")


class ErrorResponse(BaseModel):
    """Schema for error responses"""
    error: str = Field(..., description="Error type")
    detail: str = Field(..., description="Detailed error message")

    class Config:
        json_schema_extra = {
            "example": {
                "error": "SERVICE_BUSY",
                "detail": "Server is currently busy with face processing tasks. Please try again in a moment."
            }
        }
