"""
Facial geometry measurements used by the liveness predicates
"""
from typing import Sequence

import numpy as np

from ..models.data_models import FaceLandmarks, Point


def euclidean_distance(point1: Sequence[float], point2: Sequence[float]) -> float:
    """Straight-line distance between two 2D points"""
    return float(np.linalg.norm(np.asarray(point1, dtype=np.float64) - np.asarray(point2, dtype=np.float64)))


def eye_aspect_ratio(eye: Sequence[Point]) -> float:
    """
    Eye aspect ratio of a six-point eye contour.

    EAR = (|p2 - p6| + |p3 - p5|) / (2 * |p1 - p4|)

    Open eyes sit around 0.25-0.35 and the ratio collapses towards zero
    while the lids are closed.

    Args:
        eye: Six (x, y) points: outer corner, two upper-lid points,
             inner corner, two lower-lid points

    Returns:
        float: The eye aspect ratio; infinite for a degenerate contour so
               collapsed landmarks never read as a closed eye
    """
    if len(eye) != 6:
        raise ValueError(f"eye contour needs 6 points, got {len(eye)}")
    vertical_a = euclidean_distance(eye[1], eye[5])
    vertical_b = euclidean_distance(eye[2], eye[4])
    horizontal = euclidean_distance(eye[0], eye[3])
    if horizontal == 0.0:
        return float("inf")
    return (vertical_a + vertical_b) / (2.0 * horizontal)


def mean_eye_aspect_ratio(landmarks: FaceLandmarks) -> float:
    """Average EAR of both eyes"""
    return (eye_aspect_ratio(landmarks.left_eye) + eye_aspect_ratio(landmarks.right_eye)) / 2.0


def nose_displacement(previous: FaceLandmarks, current: FaceLandmarks) -> float:
    """Euclidean movement of the nose tip between two observations"""
    return euclidean_distance(previous.nose_tip, current.nose_tip)
