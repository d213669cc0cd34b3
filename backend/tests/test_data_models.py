"""
Unit tests for data models and their JSON wire form
"""
import pytest

from voterauth.models.data_models import (
    FaceLandmarks,
    FailureReason,
    LivenessChallenge,
    LivenessStep,
    Observation,
    RegisteredIdentity,
    SessionState,
    StepKind,
    UserOutcome,
    VerificationReason,
    VerificationVerdict,
)

from builders import make_landmarks, make_observation


class TestFaceLandmarks:
    """Test landmark region validation and import"""

    def test_requires_six_point_eyes(self):
        with pytest.raises(ValueError, match="exactly 6"):
            FaceLandmarks(left_eye=[(0, 0)] * 5, right_eye=[(0, 0)] * 6, nose=[(0, 0)])

    def test_requires_nose(self):
        with pytest.raises(ValueError, match="nose"):
            FaceLandmarks(left_eye=[(0, 0)] * 6, right_eye=[(0, 0)] * 6, nose=[])

    def test_from_points68(self):
        points = [(float(i), float(i) * 2) for i in range(68)]
        landmarks = FaceLandmarks.from_points68(points)

        assert landmarks.left_eye[0] == (36.0, 72.0)
        assert landmarks.right_eye[-1] == (47.0, 94.0)
        assert len(landmarks.nose) == 9
        assert landmarks.nose_tip == (30.0, 60.0)
        assert len(landmarks.mouth) == 20

    def test_from_points68_rejects_other_lengths(self):
        with pytest.raises(ValueError, match="68"):
            FaceLandmarks.from_points68([(0.0, 0.0)] * 67)

    def test_dict_round_trip(self):
        landmarks = make_landmarks(nose_offset=(2.0, 1.0))
        assert FaceLandmarks.from_dict(landmarks.to_dict()) == landmarks

    def test_from_dict_accepts_flat_68_point_list(self):
        points = [[float(i), 0.0] for i in range(68)]
        assert FaceLandmarks.from_dict(points).nose_tip == (30.0, 0.0)


class TestObservation:
    """Test Observation validation and immutability"""

    def test_confidence_out_of_range(self):
        with pytest.raises(ValueError, match="detection_confidence"):
            Observation(timestamp=0.0, detection_confidence=1.5)

    def test_expression_out_of_range(self):
        with pytest.raises(ValueError, match="happy"):
            Observation(timestamp=0.0, detection_confidence=0.9, expressions={"happy": 2.0})

    def test_expressions_are_read_only(self):
        observation = make_observation(happy=0.4)
        with pytest.raises(TypeError):
            observation.expressions["happy"] = 1.0

    def test_embedding_copied_to_tuple(self):
        values = [0.1, 0.2, 0.3]
        observation = Observation(timestamp=0.0, detection_confidence=0.9, embedding=values)
        values[0] = 9.0
        assert observation.embedding == (0.1, 0.2, 0.3)

    def test_no_face(self):
        observation = Observation.no_face(3.0)
        assert not observation.face_detected
        assert observation.timestamp == 3.0

    def test_from_dict(self):
        data = {
            "timestamp": 1.5,
            "detectionConfidence": 0.8,
            "landmarks": make_landmarks().to_dict(),
            "expressions": {"happy": 0.9},
            "embedding": [0.5] * 4,
        }
        observation = Observation.from_dict(data)

        assert observation.face_detected
        assert observation.expressions["happy"] == 0.9
        assert observation.embedding == (0.5, 0.5, 0.5, 0.5)
        assert Observation.from_dict(observation.to_dict()) == observation

    def test_from_dict_without_landmarks_is_no_face(self):
        observation = Observation.from_dict({"timestamp": 2.0, "detectionConfidence": 0.0})
        assert not observation.face_detected


class TestChallengeModels:
    """Test LivenessStep and LivenessChallenge constraints"""

    def test_expression_step_needs_label(self):
        with pytest.raises(ValueError, match="expression_label"):
            LivenessStep(name="smile", kind=StepKind.EXPRESSION, threshold=0.7)

    def test_empty_challenge_rejected(self):
        with pytest.raises(ValueError, match="at least one step"):
            LivenessChallenge(steps=())

    def test_duplicate_step_names_rejected(self):
        step = LivenessStep(name="blink", kind=StepKind.EYE_CLOSURE, threshold=0.25)
        with pytest.raises(ValueError, match="unique"):
            LivenessChallenge(steps=(step, step))


class TestVerdict:
    """Test verdict to user outcome mapping"""

    @pytest.mark.parametrize("reason, outcome", [
        (VerificationReason.ACCEPTED, UserOutcome.VERIFIED),
        (VerificationReason.TIMEOUT, UserOutcome.KEEP_TRYING),
        (VerificationReason.FACE_LOST, UserOutcome.KEEP_TRYING),
        (VerificationReason.SOURCE_ERROR, UserOutcome.CAMERA_UNAVAILABLE),
        (VerificationReason.NO_EMBEDDING_CAPTURED, UserOutcome.CAMERA_UNAVAILABLE),
        (VerificationReason.NO_MATCH, UserOutcome.NOT_RECOGNIZED),
        (VerificationReason.IDENTITY_MISMATCH, UserOutcome.NOT_RECOGNIZED),
    ])
    def test_user_outcomes(self, reason, outcome):
        verdict = VerificationVerdict(accepted=False, reason=reason, final_state=SessionState.REJECTED)
        assert verdict.user_outcome == outcome

    def test_only_timeouts_and_face_lost_are_retryable(self):
        retryable = {
            reason for reason in VerificationReason
            if VerificationVerdict(False, reason, SessionState.REJECTED).retryable
        }
        assert retryable == {VerificationReason.TIMEOUT, VerificationReason.FACE_LOST}

    def test_from_failure(self):
        for failure in FailureReason:
            assert VerificationReason.from_failure(failure).value == failure.value

    def test_accepted_response(self):
        verdict = VerificationVerdict(
            accepted=True,
            reason=VerificationReason.ACCEPTED,
            final_state=SessionState.ACCEPTED,
            identity_id="1234567890123456",
            similarity=0.92,
            distance=0.08,
        )
        assert verdict.to_response() == {
            "accepted": True,
            "reason": "accepted",
            "outcome": "verified",
            "matchedIdentityKey": "1234567890123456",
            "similarity": 0.92,
        }

    def test_rejected_response_hides_identity(self):
        verdict = VerificationVerdict(
            accepted=False,
            reason=VerificationReason.IDENTITY_MISMATCH,
            final_state=SessionState.REJECTED,
            similarity=0.95,
        )
        response = verdict.to_response()
        assert "matchedIdentityKey" not in response
        assert "similarity" not in response

    def test_registered_identity_embedding_is_tuple(self):
        identity = RegisteredIdentity("1000000000000001", [1, 2, 3])
        assert identity.embedding == (1.0, 2.0, 3.0)
