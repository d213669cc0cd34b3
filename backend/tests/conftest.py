"""
Shared pytest configuration.

The service module builds its stores at import time, so the environment is
pointed at an in-memory database and a missing model file before anything
imports ``voterauth.config``.
"""
import os

os.environ.setdefault("DATABASE_PATH", ":memory:")
os.environ.setdefault("MEDIAPIPE_MODEL_PATH", "/nonexistent/face_landmarker.task")
os.environ.setdefault("LOG_LEVEL", "DEBUG")

import pytest

from voterauth.config import LivenessConfig, MatcherConfig
from voterauth.services.challenge_engine import ChallengeEngine

from builders import FakeClock


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def liveness_config():
    return LivenessConfig(time_budget_seconds=30.0, max_frames=50, face_lost_ticks=3)


@pytest.fixture
def matcher_config():
    return MatcherConfig(threshold=0.5, duplicate_threshold=0.3, dimension=128)


@pytest.fixture
def challenge(liveness_config):
    """The default blink -> smile -> turn challenge"""
    return ChallengeEngine(liveness_config).generate_challenge(randomize=False)
