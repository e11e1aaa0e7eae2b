import asyncio

import numpy as np
import pytest

from face_attendance.exceptions import CapacityError, InvalidCoordinateError
from face_attendance.quality import REGISTRATION_PROFILE
from face_attendance.repository import InMemoryIdentityStore
from face_attendance.types import FailureReason, IssueCode, PipelineState, Pose

from conftest import ALICE, BOB, OFFICE, make_detection, frontal_landmarks, north_of


# ----------------------------------------------------------------------------
# Verification scenarios
# ----------------------------------------------------------------------------

async def test_scenario_a_passes(pipeline):
    report = await pipeline.verify_frames(
        [b"alice-1", b"alice-2", b"alice-3"], "alice", north_of(OFFICE, 50)
    )
    assert report.passed
    assert report.state is PipelineState.PASSED
    assert report.reason is None

    outcome = report.outcome
    assert outcome.matched
    assert outcome.location_matched
    assert outcome.distance_meters == pytest.approx(50, abs=1e-3)
    assert outcome.similarity == pytest.approx(1.0)
    assert outcome.valid_frames == 2
    # analysis stops once two valid frames exist
    assert outcome.frames_analyzed == 2


async def test_scenario_b_out_of_range(pipeline):
    report = await pipeline.verify_frames(
        [b"alice-1", b"alice-2", b"alice-3"], "alice", north_of(OFFICE, 150)
    )
    assert not report.passed
    assert report.reason is FailureReason.OUT_OF_RANGE
    assert report.outcome.matched
    assert not report.outcome.location_matched
    assert report.outcome.distance_meters == pytest.approx(150, abs=1e-3)


async def test_scenario_c_insufficient_frames(pipeline, detector):
    report = await pipeline.verify_frames(
        [b"alice-1", b"blank", b"blank"], "alice", north_of(OFFICE, 50)
    )
    assert report.reason is FailureReason.INSUFFICIENT_FRAMES
    assert report.outcome is None
    assert report.liveness.valid_frame_count == 1
    assert len(detector.calls) == 3


async def test_scenario_d_face_mismatch(pipeline):
    report = await pipeline.verify_frames(
        [b"bob-1", b"bob-2", b"bob-3", b"bob-4"], "alice", north_of(OFFICE, 50),
        require_liveness=True
    )
    assert report.reason is FailureReason.FACE_MISMATCH
    assert report.liveness.passed
    assert report.outcome.liveness_passed
    assert not report.outcome.matched
    assert report.outcome.distance_meters is None


async def test_too_few_frames_submitted(pipeline, detector):
    report = await pipeline.verify_frames([b"alice-1"], "alice", OFFICE)
    assert report.reason is FailureReason.INSUFFICIENT_FRAMES
    assert detector.calls == []


async def test_unknown_identity(pipeline):
    report = await pipeline.verify_frames([b"alice-1", b"alice-2"], "mallory", OFFICE)
    assert report.reason is FailureReason.NO_STORED_IDENTITY


async def test_liveness_required_without_enough_frames(pipeline):
    report = await pipeline.verify_frames(
        [b"alice-1", b"alice-2", b"alice-3"], "alice", OFFICE, require_liveness=True
    )
    assert report.reason is FailureReason.LIVENESS_FAILED
    assert report.liveness.valid_frame_count == 3
    assert report.liveness.liveness_score == pytest.approx(0.3)


async def test_request_cannot_relax_enforced_liveness(pipeline):
    pipeline.require_liveness = True
    report = await pipeline.verify_frames(
        [b"alice-1", b"alice-2", b"alice-3"], "alice", OFFICE, require_liveness=False
    )
    assert report.reason is FailureReason.LIVENESS_FAILED

    report = await pipeline.verify_frames([b"alice-1", b"alice-2", b"alice-3"], "alice", OFFICE)
    assert report.reason is FailureReason.LIVENESS_FAILED


async def test_liveness_required_collects_past_early_exit(pipeline, detector):
    frames = [b"alice-1", b"alice-2", b"alice-3", b"alice-4", b"alice-5"]
    report = await pipeline.verify_frames(frames, "alice", OFFICE, require_liveness=True)
    assert report.passed
    assert report.liveness.valid_frame_count == 4
    assert len(detector.calls) == 4


async def test_invalid_coordinate_raises_before_admission(pipeline, admission, detector):
    with pytest.raises(InvalidCoordinateError):
        await pipeline.verify_frames([b"alice-1", b"alice-2"], "alice", (float("nan"), 73.0))
    assert admission.in_flight == 0
    assert detector.calls == []


async def test_accepts_coordinate_tuple(pipeline):
    report = await pipeline.verify_frames(
        [b"alice-1", b"alice-2"], "alice", (OFFICE.latitude, OFFICE.longitude)
    )
    assert report.passed


async def test_detector_failure_is_an_invalid_frame(pipeline):
    report = await pipeline.verify_frames(
        [b"broken", b"alice-1", b"alice-2"], "alice", OFFICE
    )
    assert report.passed
    assert report.frames[0].error == "detector crashed"
    assert report.outcome.frames_analyzed == 3


async def test_low_quality_frames_are_skipped(pipeline, detector):
    detector.script[b"blurry"] = make_detection(ALICE, confidence=0.4)
    detector.script[b"turned"] = make_detection(ALICE, landmarks=frontal_landmarks(nose_x=140.0))
    report = await pipeline.verify_frames(
        [b"blurry", b"turned", b"alice-1", b"alice-2"], "alice", OFFICE
    )
    assert report.passed
    assert report.frames[0].verdict.issues == {IssueCode.LOW_CONFIDENCE}
    assert report.frames[1].verdict.issues == {IssueCode.NOT_FRONTAL}


async def test_averaged_embedding_is_matched(pipeline, detector, identity_store):
    near = ALICE.copy()
    near[2] = 0.2
    detector.script[b"near"] = make_detection(near)
    report = await pipeline.verify_frames([b"alice-1", b"near"], "alice", OFFICE)
    # mean of ALICE and near is 0.1 away from ALICE
    assert report.outcome.distance == pytest.approx(0.1, abs=1e-6)


# ----------------------------------------------------------------------------
# Shared resources
# ----------------------------------------------------------------------------

async def test_admission_rejected_when_at_capacity(pipeline, admission, detector):
    tickets = [admission.acquire() for _ in range(admission.max_concurrent)]
    report = await pipeline.verify_frames([b"alice-1", b"alice-2"], "alice", OFFICE)
    assert report.reason is FailureReason.ADMISSION_REJECTED
    assert detector.calls == []
    for ticket in tickets:
        ticket.release()


async def test_slot_released_after_every_outcome(pipeline, admission):
    await pipeline.verify_frames([b"alice-1", b"alice-2"], "alice", OFFICE)
    await pipeline.verify_frames([b"bob-1", b"bob-2"], "alice", OFFICE)
    await pipeline.verify_frames([b"alice-1"], "alice", OFFICE)
    assert admission.in_flight == 0


async def test_slot_held_while_frames_are_analyzed(pipeline, admission, detector):
    detector.block()
    task = asyncio.create_task(
        pipeline.verify_frames([b"alice-1", b"alice-2"], "alice", OFFICE)
    )
    await asyncio.to_thread(detector.entered.wait, 5)
    assert admission.in_flight == 1
    detector.unblock()
    report = await task
    assert report.passed
    assert admission.in_flight == 0


async def test_reference_embedding_is_cached(pipeline, cache, identity_store):
    await pipeline.verify_frames([b"alice-1", b"alice-2"], "alice", OFFICE)
    np.testing.assert_array_equal(cache.get("alice"), ALICE)

    # a stale cache entry wins until it is invalidated
    identity_store.save("alice", BOB)
    report = await pipeline.verify_frames([b"alice-1", b"alice-2"], "alice", OFFICE)
    assert report.passed

    pipeline.reference_changed("alice")
    report = await pipeline.verify_frames([b"alice-1", b"alice-2"], "alice", OFFICE)
    assert report.reason is FailureReason.FACE_MISMATCH


class GatedStore(InMemoryIdentityStore):
    """Holds each read after it is taken until the gate opens."""

    def __init__(self, identities):
        super().__init__(identities)
        self.entered = asyncio.Event()
        self.gate = asyncio.Event()

    async def get_reference_embedding(self, identity_id):
        reference = await super().get_reference_embedding(identity_id)
        self.entered.set()
        await self.gate.wait()
        return reference


async def test_invalidation_during_store_read_is_not_undone(pipeline, cache):
    store = GatedStore({"alice": ALICE})
    pipeline.identity_store = store

    attempt = asyncio.create_task(pipeline.verify_frames([b"alice-1", b"alice-2"], "alice", OFFICE))
    await asyncio.wait_for(store.entered.wait(), timeout=5)

    # re-registration lands while the old reference is in flight
    store.save("alice", BOB)
    pipeline.reference_changed("alice")
    store.gate.set()

    assert (await attempt).passed
    assert cache.get("alice") is None

    report = await pipeline.verify_frames([b"alice-1", b"alice-2"], "alice", OFFICE)
    assert report.reason is FailureReason.FACE_MISMATCH
    np.testing.assert_array_equal(cache.get("alice"), BOB)


async def test_attempts_interleave_frame_by_frame(pipeline, detector, sink):
    first = pipeline.verify_frames([b"blank", b"alice-1", b"alice-2"], "alice", OFFICE)
    second = pipeline.verify_frames([b"blank", b"alice-3", b"alice-4"], "alice", OFFICE)
    reports = await asyncio.gather(first, second)

    assert all(report.passed for report in reports)
    assert len(detector.calls) == 6

    order = [event.attempt_id for event in sink.events if event.status == "processing_frame"]
    first_id = sink.events[0].attempt_id
    assert len(set(order)) == 2
    # the second attempt starts its first frame before the first attempt moves on
    assert order[0] == first_id
    assert order[1] != first_id


# ----------------------------------------------------------------------------
# Progress events
# ----------------------------------------------------------------------------

async def test_progress_events(pipeline, sink):
    await pipeline.verify_frames([b"alice-1", b"alice-2"], "alice", OFFICE)
    statuses = [event.status for event in sink.events]
    assert statuses[0] == "received"
    assert statuses[1] == "admitted"
    assert statuses.count("processing_frame") == 2
    assert statuses.count("face_detected") == 2
    assert statuses[-1] == "complete"
    assert len({event.attempt_id for event in sink.events}) == 1
    assert all(event.identity_id == "alice" for event in sink.events)


async def test_failure_event_carries_reason(pipeline, sink):
    await pipeline.verify_frames([b"blank", b"blank"], "alice", OFFICE)
    last = sink.events[-1]
    assert last.status == "failed"
    assert last.details == {"reason": "INSUFFICIENT_FRAMES"}


async def test_failing_sink_does_not_affect_attempt(pipeline):
    class ExplodingSink:
        def emit(self, event):
            raise RuntimeError("socket closed")

    pipeline.progress_sink = ExplodingSink()
    report = await pipeline.verify_frames([b"alice-1", b"alice-2"], "alice", OFFICE)
    assert report.passed


# ----------------------------------------------------------------------------
# Legacy single-image verification
# ----------------------------------------------------------------------------

async def test_single_frame_skips_quality_checks(pipeline, detector):
    detector.script[b"poor"] = make_detection(ALICE, confidence=0.3, landmarks=())
    report = await pipeline.verify_single_frame(b"poor", "alice", OFFICE)
    assert report.passed
    assert report.liveness is None
    assert detector.calls[0][1].skip_quality_check


async def test_single_frame_uses_looser_threshold(pipeline, detector):
    nearby = ALICE.copy()
    nearby[1] = 0.48
    detector.script[b"close"] = make_detection(nearby)
    single = await pipeline.verify_single_frame(b"close", "alice", OFFICE)
    assert single.passed

    detector.script[b"close-2"] = make_detection(nearby)
    burst = await pipeline.verify_frames([b"close", b"close-2"], "alice", OFFICE)
    assert burst.reason is FailureReason.FACE_MISMATCH


async def test_single_frame_without_face(pipeline):
    report = await pipeline.verify_single_frame(b"blank", "alice", OFFICE)
    assert report.reason is FailureReason.INSUFFICIENT_FRAMES


# ----------------------------------------------------------------------------
# Liveness check and frame analysis
# ----------------------------------------------------------------------------

async def test_check_liveness_scans_every_frame(pipeline, detector):
    frames = [b"alice-1", b"alice-2", b"alice-3", b"alice-4", b"blank"]
    report = await pipeline.check_liveness(frames)
    assert report.passed
    assert report.liveness.frames_analyzed == 5
    assert report.liveness.valid_frame_count == 4
    assert report.liveness.liveness_score == pytest.approx(0.4)


async def test_check_liveness_fails_with_few_valid_frames(pipeline):
    report = await pipeline.check_liveness([b"alice-1", b"alice-2", b"blank"])
    assert report.reason is FailureReason.LIVENESS_FAILED


async def test_check_liveness_without_faces(pipeline):
    report = await pipeline.check_liveness([b"blank", b"blank"])
    assert report.reason is FailureReason.INSUFFICIENT_FRAMES


async def test_analyze_frame(pipeline, detector):
    detector.script[b"turned"] = make_detection(ALICE, landmarks=frontal_landmarks(nose_x=140.0))
    outcome = await pipeline.analyze_frame(b"turned")
    assert outcome.detected
    assert not outcome.valid
    assert outcome.verdict.pose is Pose.LEFT

    outcome = await pipeline.analyze_frame(b"turned", REGISTRATION_PROFILE)
    assert outcome.valid


async def test_analyze_frame_reports_detector_errors(pipeline):
    outcome = await pipeline.analyze_frame(b"broken")
    assert not outcome.detected
    assert outcome.error == "detector crashed"


async def test_analyze_frame_raises_when_at_capacity(pipeline, admission):
    tickets = [admission.acquire() for _ in range(admission.max_concurrent)]
    with pytest.raises(CapacityError):
        await pipeline.analyze_frame(b"alice-1")
    for ticket in tickets:
        ticket.release()


# ----------------------------------------------------------------------------
# Registration
# ----------------------------------------------------------------------------

def _registration_script(detector):
    frames = []
    for i in range(6):
        key = f"reg-front-{i}".encode()
        detector.script[key] = make_detection(ALICE)
        frames.append(key)
    for i in range(2):
        key = f"reg-left-{i}".encode()
        detector.script[key] = make_detection(ALICE, landmarks=frontal_landmarks(nose_x=140.0))
        frames.append(key)
    frames.extend([b"blank", b"blank"])
    return frames


async def test_register_frames(pipeline, detector):
    frames = _registration_script(detector)
    report = await pipeline.register_frames(frames, "carol")
    assert report.passed

    outcome = report.outcome
    assert outcome.identity_id == "carol"
    assert outcome.frames_analyzed == 10
    assert outcome.valid_frames == 8
    assert outcome.liveness_score == pytest.approx(0.8)
    assert outcome.quality_scores["front"] == pytest.approx(0.99)
    assert outcome.quality_scores["left"] > 0
    assert outcome.quality_scores["right"] == 0.0
    np.testing.assert_allclose(outcome.embedding, ALICE)
    assert all(options.skip_frontality_check for _, options in detector.calls)


async def test_register_needs_ten_frames(pipeline, detector):
    report = await pipeline.register_frames([b"alice-1"] * 9, "carol")
    assert report.reason is FailureReason.INSUFFICIENT_FRAMES
    assert detector.calls == []


async def test_register_needs_a_valid_frame(pipeline):
    report = await pipeline.register_frames([b"blank"] * 10, "carol")
    assert report.reason is FailureReason.INSUFFICIENT_FRAMES
    assert len(report.frames) == 10
