"""
Liveness state machine.

Consumes observations one at a time and decides whether the subject
performs the configured challenge steps, strictly in order, within the
time and frame budget.
"""
import logging
import time
from typing import Callable, List, Optional, Tuple

from ..config import LivenessConfig
from ..models.data_models import (
    FaceLandmarks,
    FailureReason,
    LivenessChallenge,
    LivenessResult,
    LivenessState,
    LivenessStep,
    Observation,
    StepKind,
    StepProgress,
)
from .geometry import mean_eye_aspect_ratio, nose_displacement

logger = logging.getLogger(__name__)


class LivenessStateMachine:
    """
    States are ``AWAITING_STEP`` (with the index of the step being waited
    for), ``PASSED`` and ``FAILED``. Only the current step's predicate is
    evaluated for an observation, and a single observation can advance the
    machine by at most one step, so a contorted face that happens to satisfy
    a later step never skips ahead.

    The only history kept is the previous face observation's landmarks
    (needed for head movement) and the most recent embedding seen.

    The time budget is enforced twice: against the server clock, so a
    stalled source cannot hold a check open, and against the observations'
    own timestamps, so a pre-recorded capture replayed quickly still has to
    fit inside the budget.
    """

    def __init__(
        self,
        challenge: LivenessChallenge,
        config: Optional[LivenessConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.challenge = challenge
        self.config = config or LivenessConfig()
        self._clock = clock

        self._state = LivenessState.AWAITING_STEP
        self._step_index = 0
        self._satisfied: List[bool] = [False] * len(challenge.steps)
        self._failure_reason: Optional[FailureReason] = None
        self._detail = ""

        self._started_at: Optional[float] = None
        self._first_timestamp: Optional[float] = None
        self._last_timestamp: Optional[float] = None
        self._finished_at: Optional[float] = None
        self._frames = 0
        self._consecutive_misses = 0
        self._previous_landmarks: Optional[FaceLandmarks] = None
        self._last_embedding: Optional[Tuple[float, ...]] = None
        self._captured_embedding: Optional[Tuple[float, ...]] = None

        self._predicates = {
            StepKind.EYE_CLOSURE: self._eye_closed,
            StepKind.EXPRESSION: self._expression_shown,
            StepKind.HEAD_MOVEMENT: self._head_moved,
        }

    # -- inspection -------------------------------------------------------

    @property
    def state(self) -> LivenessState:
        return self._state

    @property
    def step_index(self) -> int:
        return self._step_index

    @property
    def current_step(self) -> Optional[LivenessStep]:
        if self._state != LivenessState.AWAITING_STEP:
            return None
        return self.challenge.steps[self._step_index]

    @property
    def is_terminal(self) -> bool:
        return self._state != LivenessState.AWAITING_STEP

    @property
    def failure_reason(self) -> Optional[FailureReason]:
        return self._failure_reason

    @property
    def frames_processed(self) -> int:
        return self._frames

    @property
    def wants_embedding(self) -> bool:
        """True while the final step is pending; sources attach an embedding then"""
        return (
            self._state == LivenessState.AWAITING_STEP
            and self._step_index == len(self.challenge.steps) - 1
        )

    def start(self) -> None:
        if self._started_at is not None:
            raise RuntimeError("Liveness check already started")
        self._started_at = self._clock()
        logger.debug(
            f"Liveness check {self.challenge.nonce or '-'} started: "
            f"{' -> '.join(self.challenge.step_names)}"
        )

    def remaining_time(self) -> float:
        """Seconds left in the time budget"""
        if self._started_at is None:
            self.start()
        elapsed = self._clock() - self._started_at
        return max(0.0, self.config.time_budget_seconds - elapsed)

    # -- transitions ------------------------------------------------------

    def feed(self, observation: Observation) -> Optional[StepProgress]:
        """
        Advance the machine with one observation.

        Args:
            observation: The next reading from the source

        Returns:
            StepProgress when the observation satisfied the current step,
            otherwise None

        Raises:
            RuntimeError: If the machine already reached a terminal state
        """
        if self.is_terminal:
            raise RuntimeError(f"Liveness check already finished ({self._state.value})")
        if self._started_at is None:
            self.start()

        if self.remaining_time() <= 0.0:
            self.fail(FailureReason.TIMEOUT, "time budget elapsed")
            return None
        if self._capture_span(observation) > self.config.time_budget_seconds:
            self.fail(
                FailureReason.TIMEOUT,
                f"observations span more than {self.config.time_budget_seconds:g}s of capture time",
            )
            return None

        self._frames += 1
        if observation.embedding is not None:
            self._last_embedding = observation.embedding

        if not self._face_present(observation):
            self._consecutive_misses += 1
            # Motion is only measured between consecutive face observations
            self._previous_landmarks = None
            logger.debug(f"No face in observation ({self._consecutive_misses} consecutive)")
            if self._consecutive_misses >= self.config.face_lost_ticks:
                self.fail(
                    FailureReason.FACE_LOST,
                    f"no face for {self._consecutive_misses} consecutive observations",
                )
            else:
                self._check_frame_budget()
            return None

        self._consecutive_misses = 0
        step = self.challenge.steps[self._step_index]
        satisfied = self._predicates[step.kind](step, observation)
        self._previous_landmarks = observation.landmarks

        progress = None
        if satisfied:
            progress = self._advance(step, observation)
        if not self.is_terminal:
            self._check_frame_budget()
        return progress

    def fail(self, reason: FailureReason, detail: str = "") -> None:
        """Move to FAILED; a no-op once the machine is terminal"""
        if self.is_terminal:
            return
        self._state = LivenessState.FAILED
        self._failure_reason = reason
        self._detail = detail
        self._finished_at = self._clock()
        logger.info(
            f"Liveness check {self.challenge.nonce or '-'} failed: {reason.value}"
            f" at step {self._step_index} after {self._frames} frames ({detail})"
        )

    def result(self) -> LivenessResult:
        if not self.is_terminal:
            raise RuntimeError("Liveness check has not finished")
        started = self._started_at if self._started_at is not None else self._finished_at
        return LivenessResult(
            passed=self._state == LivenessState.PASSED,
            per_step_satisfied=dict(zip(self.challenge.step_names, self._satisfied)),
            captured_embedding=self._captured_embedding,
            failure_reason=self._failure_reason,
            detail=self._detail,
            frames_processed=self._frames,
            elapsed_seconds=max(0.0, self._finished_at - started),
        )

    def _advance(self, step: LivenessStep, observation: Observation) -> StepProgress:
        self._satisfied[self._step_index] = True
        progress = StepProgress(
            step_index=self._step_index,
            step_name=step.name,
            total_steps=len(self.challenge.steps),
            timestamp=observation.timestamp,
        )
        logger.info(f"Liveness step '{step.name}' satisfied ({self._step_index + 1}/{progress.total_steps})")

        if self._step_index == len(self.challenge.steps) - 1:
            self._state = LivenessState.PASSED
            self._finished_at = self._clock()
            self._captured_embedding = (
                observation.embedding if observation.embedding is not None else self._last_embedding
            )
            logger.info(
                f"Liveness check {self.challenge.nonce or '-'} passed after {self._frames} frames"
                f" (embedding captured: {self._captured_embedding is not None})"
            )
        else:
            self._step_index += 1
        return progress

    def _capture_span(self, observation: Observation) -> float:
        """Seconds of capture time covered by the observations fed so far"""
        if self._first_timestamp is None:
            self._first_timestamp = self._last_timestamp = observation.timestamp
        else:
            self._first_timestamp = min(self._first_timestamp, observation.timestamp)
            self._last_timestamp = max(self._last_timestamp, observation.timestamp)
        return self._last_timestamp - self._first_timestamp

    def _check_frame_budget(self) -> None:
        if self._frames >= self.config.max_frames:
            self.fail(FailureReason.TIMEOUT, f"frame budget of {self.config.max_frames} exhausted")

    # -- predicates -------------------------------------------------------

    def _face_present(self, observation: Observation) -> bool:
        return (
            observation.face_detected
            and observation.detection_confidence >= self.config.min_detection_confidence
        )

    def _eye_closed(self, step: LivenessStep, observation: Observation) -> bool:
        ear = mean_eye_aspect_ratio(observation.landmarks)
        logger.debug(f"  {step.name}: EAR={ear:.4f} threshold={step.threshold}")
        return ear < step.threshold

    def _expression_shown(self, step: LivenessStep, observation: Observation) -> bool:
        probability = observation.expressions.get(step.expression_label, 0.0)
        logger.debug(f"  {step.name}: {step.expression_label}={probability:.3f} threshold={step.threshold}")
        return probability > step.threshold

    def _head_moved(self, step: LivenessStep, observation: Observation) -> bool:
        if self._previous_landmarks is None:
            return False
        movement = nose_displacement(self._previous_landmarks, observation.landmarks)
        logger.debug(f"  {step.name}: nose displacement={movement:.2f} threshold={step.threshold}")
        return movement > step.threshold
