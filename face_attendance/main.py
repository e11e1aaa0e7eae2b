"""
Face Attendance Verification API

Biometric attendance verification powered by DeepFace, with PostgreSQL for
reference embedding storage.

Endpoints:
- POST /verify - Verify attendance from a burst of frames
- POST /register - Register a face from a recorded burst of frames
- POST /liveness - Standalone liveness check
- POST /analyze-frame - Quality feedback for one frame
- POST /verify-single - Legacy single-image verification (disabled by default)
- GET /identities/{identity_id} - Get a registered identity
- DELETE /identities/{identity_id} - Delete a registered identity
- WS /ws/progress/{identity_id} - Live progress events
"""
import asyncio
import time
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Depends, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.requests import HTTPConnection

from face_attendance.admission import AdmissionController
from face_attendance.cache import EmbeddingCache, purge_periodically
from face_attendance.config import (
    API_TITLE,
    API_DESCRIPTION,
    API_VERSION,
    DATABASE_URL,
    FACE_RECOGNITION_MODEL,
    FACE_DETECTOR_BACKEND,
    LEGACY_SINGLE_IMAGE_ENABLED
)
from face_attendance.database import Database
from face_attendance.event_broadcaster import WebSocketProgressBroker
from face_attendance.exceptions import CapacityError, FaceAttendanceError
from face_attendance.geo import GeoPoint
from face_attendance.pipeline import VerificationPipeline
from face_attendance.quality import ATTENDANCE_PROFILE, REGISTRATION_PROFILE
from face_attendance.repository import FaceIdentityRepository, SqlIdentityStore
from face_attendance.schemas import (
    VerifyRequest,
    RegisterRequest,
    LivenessRequest,
    AnalyzeFrameRequest,
    SingleImageVerifyRequest,
    VerificationResponse,
    RegistrationResponse,
    LivenessResponse,
    FrameAnalysisResponse,
    IdentityRecord,
    DeleteResponse,
    HealthResponse,
    ErrorResponse
)
from face_attendance.types import FailureReason, RegistrationReport, VerificationReport

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


FAILURE_MESSAGES = {
    FailureReason.ADMISSION_REJECTED: "Server is currently busy with face processing tasks. Please try again in a moment.",
    FailureReason.INSUFFICIENT_FRAMES: "Not enough usable video frames. Please ensure your face is clearly visible.",
    FailureReason.LIVENESS_FAILED: "Liveness check failed - verification denied",
    FailureReason.NO_STORED_IDENTITY: "Face data not registered. Please register your face first.",
    FailureReason.FACE_MISMATCH: "Face does not match the registered face",
    FailureReason.OUT_OF_RANGE: "You are not within office premises",
}

FAILURE_STATUS = {
    FailureReason.ADMISSION_REJECTED: 503,
    FailureReason.NO_STORED_IDENTITY: 404,
}


def status_for(report) -> int:
    if report.passed:
        return 200
    return FAILURE_STATUS.get(report.reason, 400)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup
    logger.info("Starting Face Attendance API...")
    logger.info(f"Model: {FACE_RECOGNITION_MODEL}")
    logger.info(f"Detector: {FACE_DETECTOR_BACKEND}")

    database = Database(DATABASE_URL)
    await database.init()

    # Imported here so the TensorFlow stack only loads in the running service
    from face_attendance.face_service import DeepFaceDetector
    detector = DeepFaceDetector()
    await asyncio.to_thread(detector.warm_up)

    broker = WebSocketProgressBroker()
    broker.start()

    cache = EmbeddingCache()
    purger = asyncio.create_task(purge_periodically(cache))

    app.state.database = database
    app.state.broker = broker
    app.state.pipeline = VerificationPipeline(
        detector=detector,
        identity_store=SqlIdentityStore(database.session_maker),
        cache=cache,
        admission=AdmissionController(),
        progress_sink=broker
    )
    yield

    # Shutdown
    purger.cancel()
    try:
        await purger
    except asyncio.CancelledError:
        pass
    await broker.stop()
    await database.close()
    logger.info("Shutting down Face Attendance API...")


# Create FastAPI app
app = FastAPI(
    title=API_TITLE,
    description=API_DESCRIPTION,
    version=API_VERSION,
    lifespan=lifespan
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


async def get_db(conn: HTTPConnection) -> AsyncSession:
    """Dependency to get database session."""
    async for session in conn.app.state.database.session():
        yield session


def get_pipeline(conn: HTTPConnection) -> VerificationPipeline:
    return conn.app.state.pipeline


def get_broker(conn: HTTPConnection) -> WebSocketProgressBroker:
    return conn.app.state.broker


def legacy_single_image_enabled() -> bool:
    return LEGACY_SINGLE_IMAGE_ENABLED


def verification_response(report: VerificationReport, processing_time: float) -> VerificationResponse:
    outcome = report.outcome
    liveness = report.liveness

    if report.passed:
        message = "Face verified successfully"
    else:
        message = FAILURE_MESSAGES[report.reason]
        if report.reason is FailureReason.OUT_OF_RANGE and outcome is not None:
            message = f"{message}. Distance: {round(outcome.distance_meters)}m"

    response = VerificationResponse(
        success=report.passed,
        state=report.state.value,
        reason=report.reason.value if report.reason else None,
        message=message,
        frames_analyzed=liveness.frames_analyzed if liveness else len(report.frames),
        valid_frames=liveness.valid_frame_count if liveness else sum(1 for f in report.frames if f.valid),
        processing_time_ms=round(processing_time, 2)
    )
    if liveness is not None:
        response.liveness_passed = liveness.passed
        response.liveness_score = liveness.liveness_score
    if outcome is not None:
        response.matched = outcome.matched
        response.similarity = outcome.similarity
        response.distance = outcome.distance
        response.confidence = outcome.confidence
        response.location_matched = outcome.location_matched
        response.distance_meters = outcome.distance_meters
        response.frames_analyzed = outcome.frames_analyzed
        response.valid_frames = outcome.valid_frames
    return response


def registration_response(report: RegistrationReport, identity_id: str, processing_time: float) -> RegistrationResponse:
    outcome = report.outcome
    if outcome is None:
        return RegistrationResponse(
            success=False,
            reason=report.reason.value,
            message=FAILURE_MESSAGES[report.reason],
            identity_id=identity_id,
            frames_analyzed=len(report.frames),
            valid_frames=sum(1 for f in report.frames if f.valid),
            processing_time_ms=round(processing_time, 2)
        )
    return RegistrationResponse(
        success=True,
        message="Face registered successfully",
        identity_id=outcome.identity_id,
        frames_analyzed=outcome.frames_analyzed,
        valid_frames=outcome.valid_frames,
        quality_scores=outcome.quality_scores,
        liveness_score=round(outcome.liveness_score, 4),
        processing_time_ms=round(processing_time, 2)
    )


def json_for(model, status_code: int) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=model.model_dump(mode="json"))


@app.get("/", include_in_schema=False)
async def root():
    """Root endpoint with API info."""
    return {
        "name": API_TITLE,
        "version": API_VERSION,
        "model": FACE_RECOGNITION_MODEL,
        "detector": FACE_DETECTOR_BACKEND,
        "endpoints": {
            "verify": "POST /verify",
            "register": "POST /register",
            "liveness": "POST /liveness",
            "analyze_frame": "POST /analyze-frame",
            "identity": "GET /identities/{identity_id}",
            "delete": "DELETE /identities/{identity_id}",
            "progress": "WS /ws/progress/{identity_id}"
        }
    }


@app.get("/health", response_model=HealthResponse)
async def health_check(pipeline: VerificationPipeline = Depends(get_pipeline)):
    """Health check endpoint."""
    admission = pipeline.admission
    return HealthResponse(
        status="healthy" if admission.available > 0 else "busy",
        model_loaded=getattr(pipeline.detector, "model_loaded", False),
        in_flight=admission.in_flight,
        capacity=admission.max_concurrent,
        cached_embeddings=len(pipeline.cache)
    )


# ============================================================================
# API 1: VERIFY ATTENDANCE
# ============================================================================
@app.post(
    "/verify",
    response_model=VerificationResponse,
    responses={
        400: {"model": VerificationResponse, "description": "Verification failed"},
        404: {"model": VerificationResponse, "description": "Identity not registered"},
        503: {"model": VerificationResponse, "description": "Service at capacity"}
    },
    summary="Verify attendance from a burst of frames",
    description="""
    Verify that the person in front of the camera is the registered identity
    and is inside the office geofence.

    **Pipeline:**
    1. Admission control (rejects immediately when at capacity)
    2. Frame-by-frame detection and quality checks, stopping early once enough valid frames exist
    3. Liveness heuristic over the valid frame count
    4. Averaged embedding compared with the registered reference (Euclidean distance)
    5. Haversine distance to the configured office location
    """
)
async def verify(
    request: VerifyRequest,
    pipeline: VerificationPipeline = Depends(get_pipeline)
):
    """Verify attendance for the claimed identity."""
    start_time = time.time()

    report = await pipeline.verify_frames(
        request.frame_bytes(),
        request.identity_id,
        GeoPoint(request.location.latitude, request.location.longitude),
        require_liveness=request.require_liveness
    )

    processing_time = (time.time() - start_time) * 1000
    response = verification_response(report, processing_time)
    logger.info(
        f"Verification for {request.identity_id}: {report.state.value}"
        f"{' (' + report.reason.value + ')' if report.reason else ''} in {processing_time:.1f}ms"
    )
    return json_for(response, status_for(report))


# ============================================================================
# API 2: REGISTER FACE
# ============================================================================
@app.post(
    "/register",
    response_model=RegistrationResponse,
    responses={
        400: {"model": RegistrationResponse, "description": "Registration failed"},
        503: {"model": RegistrationResponse, "description": "Service at capacity"}
    },
    summary="Register a face from a recorded burst of frames",
    description="""
    Build and store the reference embedding for an identity.

    **Requirements:**
    - At least 10 frames
    - At least one frame with a clear, well-sized, centered face
    - Head turns are allowed; quality scores are reported per pose
    """
)
async def register(
    request: RegisterRequest,
    pipeline: VerificationPipeline = Depends(get_pipeline),
    db: AsyncSession = Depends(get_db)
):
    """Register or re-register the face of an identity."""
    start_time = time.time()

    report = await pipeline.register_frames(request.frame_bytes(), request.identity_id)

    if report.passed:
        try:
            await FaceIdentityRepository.upsert(db, report.outcome)
        except Exception as e:
            logger.error(f"Failed to store reference embedding for {request.identity_id}: {e}")
            raise HTTPException(status_code=500, detail="Failed to store face data in database")
        pipeline.reference_changed(request.identity_id)

    processing_time = (time.time() - start_time) * 1000
    response = registration_response(report, request.identity_id, processing_time)
    logger.info(
        f"Registration for {request.identity_id}: {report.state.value} "
        f"({response.valid_frames}/{response.frames_analyzed} valid frames) in {processing_time:.1f}ms"
    )
    return json_for(response, status_for(report))


# ============================================================================
# API 3: LIVENESS CHECK
# ============================================================================
@app.post(
    "/liveness",
    response_model=LivenessResponse,
    responses={
        400: {"model": LivenessResponse, "description": "Liveness check failed"},
        503: {"model": LivenessResponse, "description": "Service at capacity"}
    },
    summary="Run the liveness heuristic only",
    description="Analyze every submitted frame and score liveness from the valid frame count."
)
async def liveness_check(
    request: LivenessRequest,
    pipeline: VerificationPipeline = Depends(get_pipeline)
):
    """Standalone liveness check."""
    start_time = time.time()

    report = await pipeline.check_liveness(request.frame_bytes())
    liveness = report.liveness

    processing_time = (time.time() - start_time) * 1000
    response = LivenessResponse(
        success=report.passed,
        reason=report.reason.value if report.reason else None,
        message="Liveness check passed" if report.passed else FAILURE_MESSAGES[report.reason],
        frames_analyzed=liveness.frames_analyzed if liveness else 0,
        valid_frames=liveness.valid_frame_count if liveness else 0,
        liveness_score=liveness.liveness_score if liveness else 0.0,
        processing_time_ms=round(processing_time, 2)
    )
    logger.info(f"Liveness check: {report.state.value} in {processing_time:.1f}ms")
    return json_for(response, status_for(report))


# ============================================================================
# API 4: ANALYZE FRAME
# ============================================================================
@app.post(
    "/analyze-frame",
    response_model=FrameAnalysisResponse,
    responses={
        503: {"model": ErrorResponse, "description": "Service at capacity"}
    },
    summary="Quality feedback for one frame",
    description="Detect the face in one frame and report which quality checks fail, for live capture guidance."
)
async def analyze_frame(
    request: AnalyzeFrameRequest,
    pipeline: VerificationPipeline = Depends(get_pipeline)
):
    """Real-time frame analysis."""
    start_time = time.time()

    profile = REGISTRATION_PROFILE if request.registration else ATTENDANCE_PROFILE
    outcome = await pipeline.analyze_frame(request.frame_bytes(), profile)

    processing_time = (time.time() - start_time) * 1000
    verdict = outcome.verdict
    if verdict is None:
        return FrameAnalysisResponse(
            face_detected=False,
            valid=False,
            message=outcome.error or "No face detected",
            processing_time_ms=round(processing_time, 2)
        )
    return FrameAnalysisResponse(
        face_detected=True,
        valid=outcome.valid,
        score=verdict.score,
        issues=sorted(issue.value for issue in verdict.issues),
        hint=verdict.hint.value if verdict.hint else None,
        pose=verdict.pose.value if verdict.pose else None,
        message=verdict.message,
        processing_time_ms=round(processing_time, 2)
    )


# ============================================================================
# API 5: LEGACY SINGLE-IMAGE VERIFICATION
# ============================================================================
@app.post(
    "/verify-single",
    response_model=VerificationResponse,
    responses={
        400: {"model": VerificationResponse, "description": "Verification failed"},
        404: {"model": ErrorResponse, "description": "Disabled, or identity not registered"},
        503: {"model": VerificationResponse, "description": "Service at capacity"}
    },
    summary="Legacy single-image verification",
    description="One image, no liveness check, quality checks skipped. Disabled unless LEGACY_SINGLE_IMAGE_ENABLED is set."
)
async def verify_single(
    request: SingleImageVerifyRequest,
    pipeline: VerificationPipeline = Depends(get_pipeline),
    enabled: bool = Depends(legacy_single_image_enabled)
):
    """Verify attendance from a single image."""
    if not enabled:
        raise HTTPException(status_code=404, detail="Single-image verification is disabled")

    start_time = time.time()
    report = await pipeline.verify_single_frame(
        request.frame_bytes(),
        request.identity_id,
        GeoPoint(request.location.latitude, request.location.longitude)
    )

    processing_time = (time.time() - start_time) * 1000
    logger.info(f"Single-image verification for {request.identity_id}: {report.state.value} in {processing_time:.1f}ms")
    return json_for(verification_response(report, processing_time), status_for(report))


# ============================================================================
# Identity Management
# ============================================================================
@app.get(
    "/identities/{identity_id}",
    response_model=IdentityRecord,
    responses={
        404: {"model": ErrorResponse, "description": "Identity not found"}
    },
    summary="Get a registered identity",
    description="Registration metadata for an identity. The embedding itself is not returned."
)
async def get_identity(
    identity_id: str,
    db: AsyncSession = Depends(get_db)
):
    """Get a registered identity by id."""
    db_record = await FaceIdentityRepository.get_by_id(db, identity_id)
    if not db_record:
        raise HTTPException(
            status_code=404,
            detail=f"Identity '{identity_id}' not found"
        )
    return FaceIdentityRepository.db_to_schema(db_record)


@app.delete(
    "/identities/{identity_id}",
    response_model=DeleteResponse,
    responses={
        404: {"model": ErrorResponse, "description": "Identity not found"}
    },
    summary="Delete a registered identity",
    description="Deactivate the stored reference embedding and drop it from the cache."
)
async def delete_identity(
    identity_id: str,
    pipeline: VerificationPipeline = Depends(get_pipeline),
    db: AsyncSession = Depends(get_db)
):
    """Delete a registered identity."""
    success = await FaceIdentityRepository.soft_delete(db, identity_id)
    if not success:
        raise HTTPException(
            status_code=404,
            detail=f"Identity '{identity_id}' not found"
        )

    pipeline.reference_changed(identity_id)
    logger.info(f"Deleted identity {identity_id}")
    return DeleteResponse(
        success=True,
        message=f"Successfully deleted face data for '{identity_id}'",
        deleted_id=identity_id
    )


# ============================================================================
# Live progress
# ============================================================================
@app.websocket("/ws/progress/{identity_id}")
async def progress_stream(
    ws: WebSocket,
    identity_id: str,
    broker: WebSocketProgressBroker = Depends(get_broker)
):
    await broker.connect(identity_id, ws)
    try:
        while True:
            # Keep-alive: client may send pings; payload is ignored
            await ws.receive_text()
    except WebSocketDisconnect:
        broker.disconnect(identity_id, ws)


# Exception handlers
@app.exception_handler(FaceAttendanceError)
async def face_attendance_exception_handler(request, exc):
    """Domain errors: capacity maps to 503, everything else is bad input."""
    status_code = 503 if isinstance(exc, CapacityError) else 400
    return JSONResponse(
        status_code=status_code,
        content={
            "error": exc.code,
            "detail": exc.message
        }
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request, exc):
    """Custom HTTP exception handler."""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": "HTTPException",
            "detail": exc.detail
        }
    )


@app.exception_handler(Exception)
async def general_exception_handler(request, exc):
    """General exception handler."""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={
            "error": "InternalServerError",
            "detail": "An unexpected error occurred"
        }
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
