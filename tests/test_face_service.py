import pytest

pytest.importorskip("deepface")

from face_attendance.face_service import five_point_landmarks  # noqa: E402


def test_five_points_from_retinaface_area():
    # facial_area as reported by current DeepFace releases; left/right are the subject's
    area = {
        "x": 100, "y": 60, "w": 120, "h": 120,
        "left_eye": (190, 100), "right_eye": (130, 100),
        "nose": (160, 130),
        "mouth_left": (180, 160), "mouth_right": (140, 160),
    }
    assert five_point_landmarks(area) == (
        (130.0, 100.0), (190.0, 100.0), (160.0, 130.0), (140.0, 160.0), (180.0, 160.0)
    )


def test_eyes_only_area_has_no_landmarks():
    area = {"x": 100, "y": 60, "w": 120, "h": 120, "left_eye": (190, 100), "right_eye": (130, 100)}
    assert five_point_landmarks(area) == ()
