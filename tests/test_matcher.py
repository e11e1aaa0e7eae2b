import math

import numpy as np
import pytest

from face_attendance.exceptions import DescriptorLengthError, InputValidationError
from face_attendance.matcher import DescriptorMatcher

from conftest import ALICE, BOB


def test_self_compare_is_a_perfect_match():
    result = DescriptorMatcher().compare(ALICE, ALICE)
    assert result.match
    assert result.distance == 0.0
    assert result.similarity == 1.0
    assert result.confidence == 1.0


def test_distinct_faces_do_not_match():
    result = DescriptorMatcher().compare(ALICE, BOB)
    assert not result.match
    assert result.distance == pytest.approx(math.sqrt(2))
    assert result.similarity == 0.0
    assert result.confidence == 0.0


def test_threshold_is_strict():
    a = np.zeros(4)
    b = np.array([0.5, 0.0, 0.0, 0.0])
    assert not DescriptorMatcher(threshold=0.5).compare(a, b).match
    assert DescriptorMatcher(threshold=0.51).compare(a, b).match


def test_per_call_threshold_override():
    a = np.zeros(4)
    b = np.array([0.48, 0.0, 0.0, 0.0])
    matcher = DescriptorMatcher(threshold=0.45)
    result = matcher.compare(a, b, threshold=0.5)
    assert result.match
    assert result.threshold == 0.5
    assert result.similarity == pytest.approx(0.52)
    assert result.confidence == pytest.approx(1 - 0.48 / 0.5)


def test_length_mismatch():
    with pytest.raises(DescriptorLengthError) as exc_info:
        DescriptorMatcher().distance(np.zeros(128), np.zeros(512))
    assert exc_info.value.code == "LENGTH_MISMATCH"


@pytest.mark.parametrize("descriptor", [None, [], [0.1, float("nan")]])
def test_malformed_descriptor(descriptor):
    with pytest.raises(InputValidationError):
        DescriptorMatcher().distance(descriptor, [0.1, 0.2])


def test_threshold_must_be_positive():
    with pytest.raises(InputValidationError):
        DescriptorMatcher(threshold=0)
