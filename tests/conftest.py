import math
import threading

import numpy as np
import pytest

from face_attendance.admission import AdmissionController
from face_attendance.cache import EmbeddingCache
from face_attendance.geo import EARTH_RADIUS_METERS, GeoPoint, Geofence
from face_attendance.liveness import LivenessAggregator
from face_attendance.pipeline import VerificationPipeline
from face_attendance.progress import RecordingProgressSink
from face_attendance.repository import InMemoryIdentityStore
from face_attendance.types import BoundingBox, FaceDetection

OFFICE = GeoPoint(22.298873262930066, 73.13129619568713)

FRAME_WIDTH = 320
FRAME_HEIGHT = 240

DIMS = 128


def unit_vector(index: int, dims: int = DIMS) -> np.ndarray:
    v = np.zeros(dims, dtype=np.float32)
    v[index] = 1.0
    return v


ALICE = unit_vector(0)
BOB = unit_vector(1)


def north_of(point: GeoPoint, meters: float) -> GeoPoint:
    """Point the given great-circle distance due north."""
    return GeoPoint(point.latitude + math.degrees(meters / EARTH_RADIUS_METERS), point.longitude)


def frontal_landmarks(nose_x: float = 160.0, eye_y=(100.0, 100.0)):
    return (
        (130.0, eye_y[0]),
        (190.0, eye_y[1]),
        (nose_x, 130.0),
        (140.0, 160.0),
        (180.0, 160.0),
    )


def make_detection(
    embedding=ALICE,
    confidence: float = 0.99,
    box: BoundingBox = None,
    landmarks=None,
    frame_width: int = FRAME_WIDTH,
    frame_height: int = FRAME_HEIGHT
) -> FaceDetection:
    """A centered, well-sized, frontal face unless overridden."""
    return FaceDetection(
        bounding_box=box or BoundingBox(x=100.0, y=60.0, width=120.0, height=120.0),
        confidence=confidence,
        landmarks=frontal_landmarks() if landmarks is None else landmarks,
        embedding=np.asarray(embedding, dtype=np.float32),
        frame_width=frame_width,
        frame_height=frame_height
    )


class FakeDetector:
    """
    Scripted FaceDetector.

    Frames are looked up by their bytes: a FaceDetection is returned as-is,
    None means no face, an exception instance is raised.
    """

    model_loaded = True

    def __init__(self, script=None):
        self.script = dict(script or {})
        self.calls = []
        self.entered = None
        self.release = None

    def detect(self, image, options=None):
        self.calls.append((image, options))
        if self.entered is not None:
            self.entered.set()
            self.release.wait(timeout=5)
        result = self.script.get(image)
        if isinstance(result, Exception):
            raise result
        return result

    def block(self):
        """Make detect() wait until unblock() is called."""
        self.entered = threading.Event()
        self.release = threading.Event()

    def unblock(self):
        self.release.set()


@pytest.fixture
def detector():
    return FakeDetector({
        b"alice-1": make_detection(ALICE),
        b"alice-2": make_detection(ALICE),
        b"alice-3": make_detection(ALICE),
        b"alice-4": make_detection(ALICE),
        b"alice-5": make_detection(ALICE),
        b"bob-1": make_detection(BOB),
        b"bob-2": make_detection(BOB),
        b"bob-3": make_detection(BOB),
        b"bob-4": make_detection(BOB),
        b"blank": None,
        b"broken": RuntimeError("detector crashed"),
    })


@pytest.fixture
def identity_store():
    return InMemoryIdentityStore({"alice": ALICE})


@pytest.fixture
def sink():
    return RecordingProgressSink()


@pytest.fixture
def admission():
    return AdmissionController(max_concurrent=5)


@pytest.fixture
def cache():
    return EmbeddingCache(ttl_seconds=1800)


@pytest.fixture
def pipeline(detector, identity_store, cache, admission, sink):
    return VerificationPipeline(
        detector=detector,
        identity_store=identity_store,
        cache=cache,
        admission=admission,
        liveness=LivenessAggregator(
            target_valid_frames=2,
            min_valid_frames=2,
            full_score_frames=10,
            min_score=0.3
        ),
        geofence=Geofence(anchor=OFFICE, radius_meters=100.0),
        progress_sink=sink,
        require_liveness=False,
        min_frames=2,
        registration_min_frames=10
    )
