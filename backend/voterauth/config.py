"""
Configuration management for the verification service
"""
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Tuple

from dotenv import load_dotenv

load_dotenv()


@dataclass
class LivenessConfig:
    """Thresholds and budgets for one liveness check."""

    # Budget of a single check; whichever runs out first fails it with Timeout
    time_budget_seconds: float = 30.0
    max_frames: int = 300
    # Consecutive "no face" observations tolerated before FaceLost
    face_lost_ticks: int = 10
    min_detection_confidence: float = 0.5

    blink_ear_threshold: float = 0.25
    smile_happy_threshold: float = 0.7
    surprise_threshold: float = 0.3
    turn_displacement_pixels: float = 10.0

    steps: Tuple[str, ...] = ("blink", "smile", "turn")
    randomize_step_order: bool = False

    def __post_init__(self):
        if self.time_budget_seconds <= 0:
            raise ValueError("time_budget_seconds must be positive")
        if self.max_frames < 1:
            raise ValueError("max_frames must be at least 1")
        if self.face_lost_ticks < 1:
            raise ValueError("face_lost_ticks must be at least 1")
        if not 0.0 <= self.min_detection_confidence <= 1.0:
            raise ValueError("min_detection_confidence must be within [0, 1]")
        for name in ("smile_happy_threshold", "surprise_threshold"):
            if not 0.0 <= getattr(self, name) <= 1.0:
                raise ValueError(f"{name} must be within [0, 1]")
        if self.blink_ear_threshold <= 0:
            raise ValueError("blink_ear_threshold must be positive")
        if self.turn_displacement_pixels <= 0:
            raise ValueError("turn_displacement_pixels must be positive")
        if not self.steps:
            raise ValueError("at least one liveness step is required")
        self.steps = tuple(self.steps)


@dataclass
class MatcherConfig:
    # Euclidean distance below which a probe is accepted as the candidate
    threshold: float = 0.5
    # Much tighter bound used to reject near-duplicate registrations
    duplicate_threshold: float = 0.3
    dimension: int = 128

    def __post_init__(self):
        if self.threshold < 0 or self.duplicate_threshold < 0:
            raise ValueError("thresholds must be non-negative")
        if self.dimension < 1:
            raise ValueError("dimension must be at least 1")


def _split(value: str) -> Tuple[str, ...]:
    return tuple(part.strip() for part in value.split(',') if part.strip())


class Config:
    """Application configuration"""

    # Liveness Configuration
    LIVENESS_TIME_BUDGET_SECONDS = float(os.getenv('LIVENESS_TIME_BUDGET_SECONDS', '30'))
    LIVENESS_MAX_FRAMES = int(os.getenv('LIVENESS_MAX_FRAMES', '300'))
    FACE_LOST_TICKS = int(os.getenv('FACE_LOST_TICKS', '10'))
    MIN_DETECTION_CONFIDENCE = float(os.getenv('MIN_DETECTION_CONFIDENCE', '0.5'))
    BLINK_EAR_THRESHOLD = float(os.getenv('BLINK_EAR_THRESHOLD', '0.25'))
    SMILE_HAPPY_THRESHOLD = float(os.getenv('SMILE_HAPPY_THRESHOLD', '0.7'))
    SURPRISE_THRESHOLD = float(os.getenv('SURPRISE_THRESHOLD', '0.3'))
    TURN_DISPLACEMENT_PIXELS = float(os.getenv('TURN_DISPLACEMENT_PIXELS', '10'))
    LIVENESS_STEPS = _split(os.getenv('LIVENESS_STEPS', 'blink,smile,turn'))
    RANDOMIZE_STEP_ORDER = os.getenv('RANDOMIZE_STEP_ORDER', 'false').lower() == 'true'

    # Matching Configuration
    MATCH_THRESHOLD = float(os.getenv('MATCH_THRESHOLD', '0.5'))
    DUPLICATE_THRESHOLD = float(os.getenv('DUPLICATE_THRESHOLD', '0.3'))
    EMBEDDING_DIMENSION = int(os.getenv('EMBEDDING_DIMENSION', '128'))
    IDENTITY_KEY_PATTERN = os.getenv('IDENTITY_KEY_PATTERN', r'^1\d{15}$')

    # Database Configuration
    DATABASE_PATH = os.getenv('DATABASE_PATH', 'data/identities.db')

    # ML Model Configuration
    MEDIAPIPE_MODEL_PATH = os.getenv(
        'MEDIAPIPE_MODEL_PATH',
        str(Path.home() / '.mediapipe_models' / 'face_landmarker.task')
    )
    EMBEDDING_MODEL = os.getenv('EMBEDDING_MODEL', 'Facenet')
    CAMERA_INDEX = int(os.getenv('CAMERA_INDEX', '0'))

    # JWT Configuration
    JWT_PRIVATE_KEY_PATH = os.getenv('JWT_PRIVATE_KEY_PATH', 'keys/private_key.pem')
    JWT_PUBLIC_KEY_PATH = os.getenv('JWT_PUBLIC_KEY_PATH', 'keys/public_key.pem')
    SESSION_TOKEN_EXPIRY_MINUTES = int(os.getenv('SESSION_TOKEN_EXPIRY_MINUTES', '5'))

    # Server Configuration
    HOST = os.getenv('HOST', '0.0.0.0')
    PORT = int(os.getenv('PORT', '8000'))
    CORS_ORIGINS = os.getenv('CORS_ORIGINS', 'http://localhost:3000').split(',')
    LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')

    @classmethod
    def liveness_config(cls) -> LivenessConfig:
        """Build the liveness settings from the environment"""
        return LivenessConfig(
            time_budget_seconds=cls.LIVENESS_TIME_BUDGET_SECONDS,
            max_frames=cls.LIVENESS_MAX_FRAMES,
            face_lost_ticks=cls.FACE_LOST_TICKS,
            min_detection_confidence=cls.MIN_DETECTION_CONFIDENCE,
            blink_ear_threshold=cls.BLINK_EAR_THRESHOLD,
            smile_happy_threshold=cls.SMILE_HAPPY_THRESHOLD,
            surprise_threshold=cls.SURPRISE_THRESHOLD,
            turn_displacement_pixels=cls.TURN_DISPLACEMENT_PIXELS,
            steps=cls.LIVENESS_STEPS,
            randomize_step_order=cls.RANDOMIZE_STEP_ORDER,
        )

    @classmethod
    def matcher_config(cls) -> MatcherConfig:
        """Build the matcher settings from the environment"""
        return MatcherConfig(
            threshold=cls.MATCH_THRESHOLD,
            duplicate_threshold=cls.DUPLICATE_THRESHOLD,
            dimension=cls.EMBEDDING_DIMENSION,
        )

    @classmethod
    def load_jwt_keys(cls):
        """Load JWT keys from files, or (None, None) when they are absent"""
        try:
            with open(cls.JWT_PRIVATE_KEY_PATH, 'r') as f:
                private_key = f.read()
            with open(cls.JWT_PUBLIC_KEY_PATH, 'r') as f:
                public_key = f.read()
            return private_key, public_key
        except FileNotFoundError:
            return None, None
