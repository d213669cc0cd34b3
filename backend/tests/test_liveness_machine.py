"""
Unit tests for the liveness state machine
"""
from dataclasses import replace

import pytest

from voterauth.config import LivenessConfig
from voterauth.models.data_models import FailureReason, LivenessState, Observation
from voterauth.services.challenge_engine import ChallengeEngine
from voterauth.services.liveness_machine import LivenessStateMachine

from builders import make_embedding, make_observation, scenario_a_observations


@pytest.fixture
def machine(challenge, liveness_config, clock):
    m = LivenessStateMachine(challenge, liveness_config, clock=clock)
    m.start()
    return m


class TestStepOrdering:
    """Steps are satisfied strictly in configured order"""

    def test_later_step_does_not_advance_first(self, machine):
        """A smile before the blink leaves the machine waiting for the blink"""
        progress = machine.feed(make_observation(0.0, happy=0.95))

        assert progress is None
        assert machine.step_index == 0
        assert machine.current_step.name == "blink"

    def test_one_step_per_observation(self, machine):
        """An observation satisfying blink and smile together advances by one step only"""
        progress = machine.feed(make_observation(0.0, eyes_closed=True, happy=0.95))

        assert progress.step_name == "blink"
        assert machine.step_index == 1

    def test_smile_after_blink(self, machine):
        machine.feed(make_observation(0.0, eyes_closed=True))
        progress = machine.feed(make_observation(0.1, happy=0.9))

        assert progress.step_name == "smile"
        assert progress.step_index == 1
        assert progress.total_steps == 3

    def test_happy_at_threshold_is_not_a_smile(self, machine):
        machine.feed(make_observation(0.0, eyes_closed=True))
        assert machine.feed(make_observation(0.1, happy=0.7)) is None

    def test_turn_needs_previous_face_observation(self, machine):
        machine.feed(make_observation(0.0, eyes_closed=True))
        machine.feed(make_observation(0.1, happy=0.9))
        # Interrupted by a missing face: motion is only measured between consecutive faces
        machine.feed(Observation.no_face(0.2))
        assert machine.feed(make_observation(0.3, nose_offset=(30.0, 0.0))) is None
        assert machine.feed(make_observation(0.4, nose_offset=(0.0, 0.0))).step_name == "turn"

    def test_small_movement_is_not_a_turn(self, machine):
        machine.feed(make_observation(0.0, eyes_closed=True))
        machine.feed(make_observation(0.1, happy=0.9))
        assert machine.feed(make_observation(0.2, nose_offset=(6.0, 8.0))) is None
        assert machine.state == LivenessState.AWAITING_STEP

    def test_movement_during_earlier_steps_is_ignored(self, machine):
        machine.feed(make_observation(0.0, nose_offset=(40.0, 0.0)))
        assert machine.step_index == 0


class TestScenarioA:
    """Three-step challenge satisfied once each in order"""

    def test_passes_with_final_embedding(self, machine):
        final = make_embedding(1)
        progress = [machine.feed(o) for o in scenario_a_observations(final, make_embedding(2))]

        assert [p.step_name for p in progress if p] == ["blink", "smile", "turn"]
        result = machine.result()
        assert result.passed
        assert result.failure_reason is None
        assert result.captured_embedding == final
        assert result.per_step_satisfied == {"blink": True, "smile": True, "turn": True}
        assert result.frames_processed == 4

    def test_falls_back_to_last_seen_embedding(self, machine):
        earlier = make_embedding(3)
        observations = scenario_a_observations(None, earlier)
        for observation in observations:
            machine.feed(observation)

        assert machine.result().captured_embedding == earlier

    def test_passes_without_any_embedding(self, machine):
        for observation in scenario_a_observations(None):
            machine.feed(observation)

        result = machine.result()
        assert result.passed
        assert result.captured_embedding is None

    def test_wants_embedding_only_on_last_step(self, machine):
        assert not machine.wants_embedding
        machine.feed(make_observation(0.0, eyes_closed=True))
        machine.feed(make_observation(0.1, happy=0.9))
        assert machine.wants_embedding


class TestTermination:
    """Timeout, face lost and terminal-state handling"""

    def test_face_lost_after_consecutive_misses(self, machine):
        for t in range(3):
            machine.feed(Observation.no_face(float(t)))

        assert machine.state == LivenessState.FAILED
        assert machine.failure_reason == FailureReason.FACE_LOST
        assert machine.result().per_step_satisfied == {"blink": False, "smile": False, "turn": False}

    def test_face_reappearing_resets_miss_count(self, machine):
        machine.feed(Observation.no_face(0.0))
        machine.feed(Observation.no_face(0.1))
        machine.feed(make_observation(0.2))
        machine.feed(Observation.no_face(0.3))
        machine.feed(Observation.no_face(0.4))

        assert not machine.is_terminal

    def test_low_confidence_counts_as_no_face(self, machine):
        for t in range(3):
            machine.feed(make_observation(float(t), eyes_closed=True, confidence=0.2))

        assert machine.failure_reason == FailureReason.FACE_LOST
        assert machine.step_index == 0

    def test_time_budget(self, machine, clock):
        machine.feed(make_observation(0.0))
        clock.advance(31.0)
        machine.feed(make_observation(31.0, eyes_closed=True))

        result = machine.result()
        assert not result.passed
        assert result.failure_reason == FailureReason.TIMEOUT
        assert result.per_step_satisfied["blink"] is False

    def test_capture_time_budget(self, machine, clock):
        """A recording spanning more than the budget fails even when replayed instantly"""
        observations = [
            make_observation(0.0),
            make_observation(200.0, eyes_closed=True),
            make_observation(400.0, happy=0.9),
            make_observation(600.0, nose_offset=(15.0, 0.0), embedding=make_embedding(1)),
        ]
        for observation in observations:
            if machine.is_terminal:
                break
            machine.feed(observation)

        result = machine.result()
        assert not result.passed
        assert result.failure_reason == FailureReason.TIMEOUT
        assert "capture time" in result.detail
        assert result.per_step_satisfied["blink"] is False
        assert clock.now == 1000.0

    def test_capture_span_counts_out_of_order_timestamps(self, machine):
        machine.feed(make_observation(10.0))
        machine.feed(make_observation(0.0, eyes_closed=True))
        assert not machine.is_terminal

        machine.feed(make_observation(-25.0, happy=0.9))
        assert machine.failure_reason == FailureReason.TIMEOUT

    def test_capture_within_budget_passes(self, machine):
        for t, observation in zip((0.0, 9.0, 18.0, 29.5), scenario_a_observations(make_embedding(1))):
            machine.feed(replace(observation, timestamp=t))

        assert machine.result().passed

    def test_collapsed_eye_landmarks_are_not_a_blink(self, machine):
        collapsed = [(100.0, 100.0)] * 6
        observation = make_observation(0.0)
        observation = replace(observation, landmarks=replace(observation.landmarks, left_eye=collapsed, right_eye=collapsed))

        assert machine.feed(observation) is None
        assert machine.step_index == 0

    def test_frame_budget(self, challenge, clock):
        machine = LivenessStateMachine(challenge, LivenessConfig(max_frames=5), clock=clock)
        for t in range(5):
            machine.feed(make_observation(float(t)))

        assert machine.failure_reason == FailureReason.TIMEOUT
        assert machine.frames_processed == 5

    def test_passing_on_last_frame_of_budget(self, challenge, clock):
        machine = LivenessStateMachine(challenge, LivenessConfig(max_frames=4), clock=clock)
        for observation in scenario_a_observations(make_embedding(1)):
            machine.feed(observation)

        assert machine.result().passed

    def test_feed_after_terminal_raises(self, machine):
        machine.fail(FailureReason.SOURCE_ERROR, "camera unplugged")
        with pytest.raises(RuntimeError, match="already finished"):
            machine.feed(make_observation(0.0))

    def test_fail_is_idempotent(self, machine):
        machine.fail(FailureReason.SOURCE_ERROR)
        machine.fail(FailureReason.TIMEOUT)
        assert machine.failure_reason == FailureReason.SOURCE_ERROR

    def test_result_before_terminal_raises(self, machine):
        with pytest.raises(RuntimeError, match="not finished"):
            machine.result()

    def test_start_twice_raises(self, machine):
        with pytest.raises(RuntimeError, match="already started"):
            machine.start()

    def test_remaining_time(self, machine, clock):
        clock.advance(10.0)
        assert machine.remaining_time() == pytest.approx(20.0)
        clock.advance(25.0)
        assert machine.remaining_time() == 0.0


class TestExpressionThresholdsAreConfigurable:
    """Expression predicates read the label and threshold from the step"""

    def test_surprise_step(self, clock):
        config = LivenessConfig(steps=("surprise",), surprise_threshold=0.3)
        challenge = ChallengeEngine(config).generate_challenge()
        machine = LivenessStateMachine(challenge, config, clock=clock)

        assert machine.feed(make_observation(0.0, surprised=0.25)) is None
        assert machine.feed(make_observation(0.1, surprised=0.35)).step_name == "surprise"
        assert machine.result().passed
