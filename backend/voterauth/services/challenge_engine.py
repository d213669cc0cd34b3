"""
Challenge Engine for building liveness challenge sequences
"""
import logging
import secrets
from typing import Dict, Optional

from ..config import LivenessConfig
from ..models.data_models import LivenessChallenge, LivenessStep, StepKind

logger = logging.getLogger(__name__)


class ChallengeEngine:
    """
    Turns the configured step names and thresholds into ordered
    LivenessChallenge values, one per verification session.

    The catalogue is resolved once at construction so a misspelt step name
    or threshold fails when the service starts, not mid-session.
    """

    STEP_INSTRUCTIONS = {
        "blink": "Blink your eyes",
        "smile": "Smile",
        "surprise": "Look surprised",
        "turn": "Turn your head slowly",
    }

    def __init__(self, config: Optional[LivenessConfig] = None):
        self.config = config or LivenessConfig()
        self._catalogue = self._build_catalogue(self.config)
        unknown = [name for name in self.config.steps if name not in self._catalogue]
        if unknown:
            raise ValueError(
                f"Unknown liveness steps {unknown}; "
                f"available: {sorted(self._catalogue)}"
            )
        self._random = secrets.SystemRandom()

    @classmethod
    def _build_catalogue(cls, config: LivenessConfig) -> Dict[str, LivenessStep]:
        return {
            "blink": LivenessStep(
                name="blink",
                kind=StepKind.EYE_CLOSURE,
                threshold=config.blink_ear_threshold,
                instruction=cls.STEP_INSTRUCTIONS["blink"],
            ),
            "smile": LivenessStep(
                name="smile",
                kind=StepKind.EXPRESSION,
                threshold=config.smile_happy_threshold,
                expression_label="happy",
                instruction=cls.STEP_INSTRUCTIONS["smile"],
            ),
            "surprise": LivenessStep(
                name="surprise",
                kind=StepKind.EXPRESSION,
                threshold=config.surprise_threshold,
                expression_label="surprised",
                instruction=cls.STEP_INSTRUCTIONS["surprise"],
            ),
            "turn": LivenessStep(
                name="turn",
                kind=StepKind.HEAD_MOVEMENT,
                threshold=config.turn_displacement_pixels,
                instruction=cls.STEP_INSTRUCTIONS["turn"],
            ),
        }

    @property
    def available_steps(self):
        return tuple(self._catalogue)

    def generate_nonce(self) -> str:
        """
        Generate a cryptographic nonce identifying one challenge.

        Returns:
            str: A 32-character hexadecimal nonce
        """
        return secrets.token_hex(16)

    def step(self, name: str) -> LivenessStep:
        try:
            return self._catalogue[name]
        except KeyError:
            raise ValueError(f"Unknown liveness step: {name}") from None

    def generate_challenge(self, randomize: Optional[bool] = None) -> LivenessChallenge:
        """
        Build the ordered step sequence for one session.

        Args:
            randomize: Shuffle the configured steps; defaults to
                       ``config.randomize_step_order``

        Returns:
            LivenessChallenge: Steps in the order they must be satisfied
        """
        names = list(self.config.steps)
        if self.config.randomize_step_order if randomize is None else randomize:
            self._random.shuffle(names)

        challenge = LivenessChallenge(
            steps=tuple(self.step(name) for name in names),
            nonce=self.generate_nonce(),
        )
        logger.debug(f"Generated challenge {challenge.nonce}: {' -> '.join(challenge.step_names)}")
        return challenge
