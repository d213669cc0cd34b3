"""
Unit tests for ChallengeEngine
"""
import pytest

from voterauth.config import LivenessConfig
from voterauth.models.data_models import StepKind
from voterauth.services.challenge_engine import ChallengeEngine


class TestChallengeEngine:
    """Test suite for ChallengeEngine class"""

    def setup_method(self):
        """Set up test fixtures"""
        self.engine = ChallengeEngine()

    def test_default_order(self):
        challenge = self.engine.generate_challenge()
        assert challenge.step_names == ("blink", "smile", "turn")

    def test_steps_carry_configured_thresholds(self):
        config = LivenessConfig(blink_ear_threshold=0.2, smile_happy_threshold=0.8, turn_displacement_pixels=15)
        challenge = ChallengeEngine(config).generate_challenge()
        blink, smile, turn = challenge.steps

        assert blink.kind == StepKind.EYE_CLOSURE and blink.threshold == 0.2
        assert smile.kind == StepKind.EXPRESSION and smile.threshold == 0.8
        assert smile.expression_label == "happy"
        assert turn.kind == StepKind.HEAD_MOVEMENT and turn.threshold == 15

    def test_every_step_has_an_instruction(self):
        for name in self.engine.available_steps:
            assert self.engine.step(name).instruction

    def test_surprise_step_available(self):
        engine = ChallengeEngine(LivenessConfig(steps=("surprise", "blink")))
        challenge = engine.generate_challenge()
        assert challenge.steps[0].expression_label == "surprised"

    def test_unknown_step_rejected_at_construction(self):
        with pytest.raises(ValueError, match="Unknown liveness steps"):
            ChallengeEngine(LivenessConfig(steps=("blink", "wink")))

    def test_step_lookup_unknown(self):
        with pytest.raises(ValueError, match="Unknown liveness step"):
            self.engine.step("nod")

    def test_generate_nonce_format(self):
        nonce = self.engine.generate_nonce()
        assert len(nonce) == 32
        int(nonce, 16)

    def test_nonces_are_unique(self):
        nonces = {self.engine.generate_challenge().nonce for _ in range(50)}
        assert len(nonces) == 50


class TestRandomizedOrder:
    """Test shuffled step order"""

    def setup_method(self):
        self.engine = ChallengeEngine(LivenessConfig(steps=("blink", "smile", "surprise", "turn")))

    def test_randomized_challenge_is_a_permutation(self):
        for _ in range(20):
            challenge = self.engine.generate_challenge(randomize=True)
            assert sorted(challenge.step_names) == ["blink", "smile", "surprise", "turn"]

    def test_randomization_changes_order(self):
        orders = {self.engine.generate_challenge(randomize=True).step_names for _ in range(100)}
        assert len(orders) > 1

    def test_config_flag_enables_randomization(self):
        engine = ChallengeEngine(LivenessConfig(randomize_step_order=True))
        orders = {engine.generate_challenge().step_names for _ in range(100)}
        assert len(orders) > 1
