"""
Verification Orchestrator sequencing liveness, embedding capture and matching
"""
import asyncio
import logging
import secrets
import time
from typing import Awaitable, Callable, List, Optional, Sequence, Union

from ..config import LivenessConfig
from ..exceptions import DimensionMismatchError, SourceError
from ..models.data_models import (
    FailureReason,
    LivenessChallenge,
    LivenessResult,
    RegisteredIdentity,
    RegistrationCapture,
    SessionPurpose,
    SessionState,
    StepProgress,
    VerificationReason,
    VerificationVerdict,
)
from .challenge_engine import ChallengeEngine
from .encoding_matcher import EncodingMatcher, as_embedding
from .frame_adapter import FaceModels
from .identity_registry import IdentityRegistry
from .liveness_machine import LivenessStateMachine
from .observation_source import ObservationSource

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[StepProgress], Awaitable[None]]
Population = Union[Sequence[RegisteredIdentity], IdentityRegistry]


class VerificationSession:
    """Orchestrator-level state of one verification attempt."""

    TRANSITIONS = {
        SessionState.IDLE: {SessionState.LIVENESS_RUNNING},
        SessionState.LIVENESS_RUNNING: {
            SessionState.LIVENESS_FAILED,
            SessionState.EMBEDDING_CAPTURED,
            # liveness passed but the source never produced an embedding
            SessionState.REJECTED,
        },
        SessionState.EMBEDDING_CAPTURED: {SessionState.MATCHING},
        SessionState.MATCHING: {SessionState.ACCEPTED, SessionState.REJECTED},
    }

    def __init__(self, purpose: SessionPurpose, session_id: Optional[str] = None):
        self.purpose = purpose
        self.session_id = session_id or secrets.token_hex(8)
        self.state = SessionState.IDLE
        self.history: List[SessionState] = [SessionState.IDLE]

    def transition(self, new_state: SessionState) -> None:
        if new_state not in self.TRANSITIONS.get(self.state, set()):
            raise RuntimeError(f"Invalid session transition {self.state.value} -> {new_state.value}")
        logger.debug(f"Session {self.session_id}: {self.state.value} -> {new_state.value}")
        self.state = new_state
        self.history.append(new_state)


class VerificationOrchestrator:
    """
    Runs the liveness check on an observation source and turns its outcome
    into a single verdict for the login or registration flow.

    Liveness failures, missing embeddings and non-matches are returned as
    verdicts. A ``DimensionMismatchError`` is a defect and propagates.
    """

    def __init__(
        self,
        matcher: EncodingMatcher,
        challenge_engine: Optional[ChallengeEngine] = None,
        liveness_config: Optional[LivenessConfig] = None,
        models: Optional[FaceModels] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            matcher: Encoding matcher shared by login and registration
            challenge_engine: Builds the per-session challenge
            liveness_config: Budgets and thresholds for the state machine
            models: Loaded face models, when observations come from frames
                    processed in this process; None when the source
                    delivers ready-made observations
            clock: Monotonic clock used for the time budget
        """
        self.matcher = matcher
        self.liveness_config = liveness_config or (
            challenge_engine.config if challenge_engine else LivenessConfig()
        )
        self.challenge_engine = challenge_engine or ChallengeEngine(self.liveness_config)
        self.models = models
        self._clock = clock

    async def run_liveness(
        self,
        source: ObservationSource,
        challenge: Optional[LivenessChallenge] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> LivenessResult:
        """
        Drive a fresh state machine from ``source`` until it is terminal.

        Every wait for an observation is bounded by the remaining time
        budget, so a stalled source ends the check with a timeout. The
        source is entered as a context manager and released on every exit
        path, cancellation included.
        """
        challenge = challenge or self.challenge_engine.generate_challenge()
        machine = LivenessStateMachine(challenge, self.liveness_config, clock=self._clock)
        machine.start()

        if self.models is not None and not self.models.loaded:
            machine.fail(FailureReason.SOURCE_ERROR, "face models not loaded")
            return machine.result()

        try:
            async with source:
                while not machine.is_terminal:
                    remaining = machine.remaining_time()
                    if remaining <= 0.0:
                        machine.fail(FailureReason.TIMEOUT, "time budget elapsed")
                        break
                    try:
                        observation = await asyncio.wait_for(
                            source.next_observation(want_embedding=machine.wants_embedding),
                            timeout=remaining,
                        )
                    except asyncio.TimeoutError:
                        machine.fail(FailureReason.TIMEOUT, "no observation before the time budget elapsed")
                        break
                    except SourceError as e:
                        logger.error(f"Observation source failed: {e}")
                        machine.fail(FailureReason.SOURCE_ERROR, str(e))
                        break
                    except DimensionMismatchError:
                        raise
                    except Exception as e:
                        logger.exception(f"Observation source raised {type(e).__name__}: {e}")
                        machine.fail(FailureReason.SOURCE_ERROR, f"{type(e).__name__}: {e}")
                        break

                    progress = machine.feed(observation)
                    if progress is not None and on_progress is not None:
                        await on_progress(progress)
        except SourceError as e:
            logger.error(f"Observation source could not be opened: {e}")
            machine.fail(FailureReason.SOURCE_ERROR, str(e))

        return machine.result()

    async def verify_login(
        self,
        claimed_identity_key: str,
        source: ObservationSource,
        population: Population,
        challenge: Optional[LivenessChallenge] = None,
        threshold: Optional[float] = None,
        on_progress: Optional[ProgressCallback] = None,
        session_id: Optional[str] = None,
    ) -> VerificationVerdict:
        """
        Liveness, then matching against the population with the claimed
        identity as a constraint.

        Args:
            claimed_identity_key: Identity the subject claims to be
            source: Live observation stream
            population: Registered identities, or a registry to snapshot
            threshold: Override of the configured match threshold

        Returns:
            VerificationVerdict: Accepted only for a live subject whose
            nearest registered face is the claimed identity
        """
        session = VerificationSession(SessionPurpose.LOGIN, session_id)
        session.transition(SessionState.LIVENESS_RUNNING)
        liveness = await self.run_liveness(source, challenge, on_progress)

        if not liveness.passed:
            session.transition(SessionState.LIVENESS_FAILED)
            return self._verdict(
                session, False, VerificationReason.from_failure(liveness.failure_reason), liveness
            )

        if liveness.captured_embedding is None:
            session.transition(SessionState.REJECTED)
            return self._verdict(session, False, VerificationReason.NO_EMBEDDING_CAPTURED, liveness)

        session.transition(SessionState.EMBEDDING_CAPTURED)
        session.transition(SessionState.MATCHING)
        match = self.matcher.match(
            liveness.captured_embedding,
            self._snapshot(population),
            threshold=threshold,
            claimed_identity=claimed_identity_key,
        )

        if match.matched:
            session.transition(SessionState.ACCEPTED)
            return self._verdict(
                session, True, VerificationReason.ACCEPTED, liveness,
                identity_id=match.identity_id, similarity=match.similarity, distance=match.distance,
            )

        session.transition(SessionState.REJECTED)
        reason = VerificationReason.IDENTITY_MISMATCH if match.claim_mismatch else VerificationReason.NO_MATCH
        return self._verdict(
            session, False, reason, liveness, similarity=match.similarity, distance=match.distance
        )

    async def capture_for_registration(
        self,
        source: ObservationSource,
        challenge: Optional[LivenessChallenge] = None,
        on_progress: Optional[ProgressCallback] = None,
        session_id: Optional[str] = None,
    ) -> RegistrationCapture:
        """
        Liveness and embedding capture without matching.

        Uniqueness against the population is the caller's step
        (``IdentityRegistry.register`` performs it before persisting).
        """
        session = VerificationSession(SessionPurpose.REGISTER, session_id)
        session.transition(SessionState.LIVENESS_RUNNING)
        liveness = await self.run_liveness(source, challenge, on_progress)

        if not liveness.passed:
            session.transition(SessionState.LIVENESS_FAILED)
            reason = VerificationReason.from_failure(liveness.failure_reason)
            logger.info(f"Registration capture {session.session_id} failed: {reason.value}")
            return RegistrationCapture(reason=reason, liveness=liveness)

        if liveness.captured_embedding is None:
            session.transition(SessionState.REJECTED)
            logger.warning(f"Registration capture {session.session_id}: liveness passed without an embedding")
            return RegistrationCapture(reason=VerificationReason.NO_EMBEDDING_CAPTURED, liveness=liveness)

        as_embedding(liveness.captured_embedding, self.matcher.config.dimension)
        session.transition(SessionState.EMBEDDING_CAPTURED)
        logger.info(f"Registration capture {session.session_id} succeeded")
        return RegistrationCapture(embedding=liveness.captured_embedding, liveness=liveness)

    @staticmethod
    def _snapshot(population: Population):
        if isinstance(population, IdentityRegistry):
            return population.snapshot()
        return tuple(population)

    @staticmethod
    def _verdict(
        session: VerificationSession,
        accepted: bool,
        reason: VerificationReason,
        liveness: LivenessResult,
        identity_id: Optional[str] = None,
        similarity: Optional[float] = None,
        distance: Optional[float] = None,
    ) -> VerificationVerdict:
        if accepted:
            logger.info(f"Session {session.session_id}: verified as {identity_id}")
        else:
            logger.info(f"Session {session.session_id}: rejected ({reason.value})")
        return VerificationVerdict(
            accepted=accepted,
            reason=reason,
            final_state=session.state,
            identity_id=identity_id,
            similarity=similarity,
            distance=distance,
            liveness=liveness,
        )
