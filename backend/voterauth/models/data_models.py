"""
Data models for the biometric verification core
"""
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, ClassVar, Dict, Mapping, Optional, Sequence, Tuple

Point = Tuple[float, float]


def _as_points(points: Sequence[Sequence[float]]) -> Tuple[Point, ...]:
    return tuple((float(p[0]), float(p[1])) for p in points)


def as_vector(values: Optional[Sequence[float]]) -> Optional[Tuple[float, ...]]:
    """Copy an embedding-like sequence into an immutable tuple of floats"""
    if values is None:
        return None
    return tuple(float(v) for v in values)


@dataclass(frozen=True)
class FaceLandmarks:
    """
    Facial landmark regions in image coordinates (pixels).

    Each eye is six points in the usual eye-aspect-ratio order: outer corner,
    two upper-lid points, inner corner, two lower-lid points. The nose run
    goes from the bridge down to the tip and the tip is ``nose[3]``, matching
    the 68-point face layout.
    """

    left_eye: Tuple[Point, ...]
    right_eye: Tuple[Point, ...]
    nose: Tuple[Point, ...]
    mouth: Tuple[Point, ...] = ()

    EYE_POINTS: ClassVar[int] = 6
    NOSE_TIP_INDEX: ClassVar[int] = 3

    def __post_init__(self):
        for name in ("left_eye", "right_eye", "nose", "mouth"):
            object.__setattr__(self, name, _as_points(getattr(self, name)))
        if len(self.left_eye) != self.EYE_POINTS or len(self.right_eye) != self.EYE_POINTS:
            raise ValueError(f"each eye needs exactly {self.EYE_POINTS} landmark points")
        if not self.nose:
            raise ValueError("nose landmarks are required")

    @property
    def nose_tip(self) -> Point:
        return self.nose[min(self.NOSE_TIP_INDEX, len(self.nose) - 1)]

    @classmethod
    def from_points68(cls, points: Sequence[Sequence[float]]) -> "FaceLandmarks":
        """
        Build regions from a flat 68-point face landmark list.

        Indices follow the common 68-point annotation: nose 27-35,
        left eye 36-41, right eye 42-47, mouth 48-67.
        """
        if len(points) != 68:
            raise ValueError(f"expected 68 landmark points, got {len(points)}")
        return cls(
            left_eye=points[36:42],
            right_eye=points[42:48],
            nose=points[27:36],
            mouth=points[48:68],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "leftEye": [list(p) for p in self.left_eye],
            "rightEye": [list(p) for p in self.right_eye],
            "nose": [list(p) for p in self.nose],
            "mouth": [list(p) for p in self.mouth],
        }

    @classmethod
    def from_dict(cls, data: Any) -> "FaceLandmarks":
        # A bare list is taken to be the 68-point layout
        if isinstance(data, (list, tuple)):
            return cls.from_points68(data)
        return cls(
            left_eye=data["leftEye"],
            right_eye=data["rightEye"],
            nose=data["nose"],
            mouth=data.get("mouth", ()),
        )


@dataclass(frozen=True)
class Observation:
    """One per-tick reading from the frame observation source."""

    timestamp: float
    detection_confidence: float
    landmarks: Optional[FaceLandmarks] = None
    expressions: Mapping[str, float] = field(default_factory=dict)
    embedding: Optional[Tuple[float, ...]] = None

    def __post_init__(self):
        if not 0.0 <= self.detection_confidence <= 1.0:
            raise ValueError("detection_confidence must be within [0, 1]")
        expressions = {str(k): float(v) for k, v in dict(self.expressions).items()}
        for label, probability in expressions.items():
            if not 0.0 <= probability <= 1.0:
                raise ValueError(f"expression '{label}' probability must be within [0, 1]")
        object.__setattr__(self, "expressions", MappingProxyType(expressions))
        object.__setattr__(self, "embedding", as_vector(self.embedding))

    @property
    def face_detected(self) -> bool:
        return self.landmarks is not None and self.detection_confidence > 0.0

    @classmethod
    def no_face(cls, timestamp: float) -> "Observation":
        return cls(timestamp=timestamp, detection_confidence=0.0)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "timestamp": self.timestamp,
            "detectionConfidence": self.detection_confidence,
            "expressions": dict(self.expressions),
        }
        if self.landmarks is not None:
            data["landmarks"] = self.landmarks.to_dict()
        if self.embedding is not None:
            data["embedding"] = list(self.embedding)
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Observation":
        """Parse the JSON wire form produced by ``to_dict``"""
        landmarks = data.get("landmarks")
        return cls(
            timestamp=float(data.get("timestamp", 0.0)),
            detection_confidence=float(data.get("detectionConfidence", 0.0)),
            landmarks=FaceLandmarks.from_dict(landmarks) if landmarks else None,
            expressions=data.get("expressions") or {},
            embedding=data.get("embedding"),
        )


class StepKind(Enum):
    """Predicate family a liveness step is evaluated with"""
    EYE_CLOSURE = "eye_closure"
    EXPRESSION = "expression"
    HEAD_MOVEMENT = "head_movement"


@dataclass(frozen=True)
class LivenessStep:
    """
    One behavioural challenge.

    EYE_CLOSURE passes when the mean eye aspect ratio drops below
    ``threshold``; EXPRESSION when ``expressions[expression_label]`` rises
    above it; HEAD_MOVEMENT when the nose tip moves further than it between
    two consecutive observations.
    """
    name: str
    kind: StepKind
    threshold: float
    expression_label: Optional[str] = None
    instruction: str = ""

    def __post_init__(self):
        if self.kind == StepKind.EXPRESSION and not self.expression_label:
            raise ValueError(f"expression step '{self.name}' needs an expression_label")


@dataclass(frozen=True)
class LivenessChallenge:
    steps: Tuple[LivenessStep, ...]
    nonce: str = ""

    def __post_init__(self):
        object.__setattr__(self, "steps", tuple(self.steps))
        if not self.steps:
            raise ValueError("a liveness challenge needs at least one step")
        names = [step.name for step in self.steps]
        if len(names) != len(set(names)):
            raise ValueError("liveness step names must be unique")

    @property
    def step_names(self) -> Tuple[str, ...]:
        return tuple(step.name for step in self.steps)

    def __len__(self) -> int:
        return len(self.steps)


class LivenessState(Enum):
    AWAITING_STEP = "awaiting_step"
    PASSED = "passed"
    FAILED = "failed"


class FailureReason(Enum):
    TIMEOUT = "timeout"
    FACE_LOST = "face_lost"
    SOURCE_ERROR = "source_error"


@dataclass(frozen=True)
class StepProgress:
    """Emitted each time the current liveness step is satisfied"""
    step_index: int
    step_name: str
    total_steps: int
    timestamp: float


@dataclass(frozen=True)
class LivenessResult:
    passed: bool
    per_step_satisfied: Dict[str, bool]
    captured_embedding: Optional[Tuple[float, ...]] = None
    failure_reason: Optional[FailureReason] = None
    detail: str = ""
    frames_processed: int = 0
    elapsed_seconds: float = 0.0


@dataclass(frozen=True)
class RegisteredIdentity:
    identity_id: str
    embedding: Tuple[float, ...]
    registered_at: float = 0.0

    def __post_init__(self):
        object.__setattr__(self, "embedding", as_vector(self.embedding))


@dataclass(frozen=True)
class MatchResult:
    matched: bool
    identity_id: Optional[str]
    distance: float
    similarity: float
    # Set when the nearest candidate was close enough but not the claimed identity
    claim_mismatch: bool = False


class VerificationReason(Enum):
    ACCEPTED = "accepted"
    TIMEOUT = "timeout"
    FACE_LOST = "face_lost"
    SOURCE_ERROR = "source_error"
    NO_EMBEDDING_CAPTURED = "no_embedding_captured"
    NO_MATCH = "no_match"
    IDENTITY_MISMATCH = "identity_mismatch"

    @classmethod
    def from_failure(cls, failure: FailureReason) -> "VerificationReason":
        return cls(failure.value)


class UserOutcome(Enum):
    """The only outcomes ever shown to the person being verified"""
    KEEP_TRYING = "keep_trying"
    CAMERA_UNAVAILABLE = "camera_unavailable"
    NOT_RECOGNIZED = "not_recognized"
    VERIFIED = "verified"


USER_OUTCOMES = {
    VerificationReason.ACCEPTED: UserOutcome.VERIFIED,
    VerificationReason.TIMEOUT: UserOutcome.KEEP_TRYING,
    VerificationReason.FACE_LOST: UserOutcome.KEEP_TRYING,
    VerificationReason.SOURCE_ERROR: UserOutcome.CAMERA_UNAVAILABLE,
    VerificationReason.NO_EMBEDDING_CAPTURED: UserOutcome.CAMERA_UNAVAILABLE,
    VerificationReason.NO_MATCH: UserOutcome.NOT_RECOGNIZED,
    VerificationReason.IDENTITY_MISMATCH: UserOutcome.NOT_RECOGNIZED,
}


class SessionState(Enum):
    """Orchestrator-level lifecycle of one verification attempt"""
    IDLE = "idle"
    LIVENESS_RUNNING = "liveness_running"
    LIVENESS_FAILED = "liveness_failed"
    EMBEDDING_CAPTURED = "embedding_captured"
    MATCHING = "matching"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


@dataclass(frozen=True)
class VerificationVerdict:
    accepted: bool
    reason: VerificationReason
    final_state: SessionState
    identity_id: Optional[str] = None
    similarity: Optional[float] = None
    distance: Optional[float] = None
    liveness: Optional[LivenessResult] = None

    @property
    def user_outcome(self) -> UserOutcome:
        return USER_OUTCOMES[self.reason]

    @property
    def retryable(self) -> bool:
        return self.user_outcome == UserOutcome.KEEP_TRYING

    def to_response(self) -> Dict[str, Any]:
        """JSON body returned to the login flow"""
        response: Dict[str, Any] = {
            "accepted": self.accepted,
            "reason": self.reason.value,
            "outcome": self.user_outcome.value,
        }
        if self.accepted:
            response["matchedIdentityKey"] = self.identity_id
            response["similarity"] = self.similarity
        return response


@dataclass(frozen=True)
class RegistrationCapture:
    embedding: Optional[Tuple[float, ...]] = None
    reason: Optional[VerificationReason] = None
    liveness: Optional[LivenessResult] = None

    @property
    def succeeded(self) -> bool:
        return self.embedding is not None

    @property
    def user_outcome(self) -> Optional[UserOutcome]:
        return USER_OUTCOMES[self.reason] if self.reason else None


class SessionPurpose(Enum):
    LOGIN = "login"
    REGISTER = "register"


class FeedbackType(Enum):
    """Message types sent to the client during a streaming session"""
    CHALLENGE_ISSUED = "challenge_issued"
    STEP_SATISFIED = "step_satisfied"
    VERDICT = "verdict"
    ERROR = "error"


@dataclass
class VerificationFeedback:
    type: FeedbackType
    message: str
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class TokenValidation:
    valid: bool
    session_id: Optional[str] = None
    identity_key: Optional[str] = None
    purpose: Optional[SessionPurpose] = None
    issued_at: Optional[float] = None
    expires_at: Optional[float] = None
    error: Optional[str] = None
