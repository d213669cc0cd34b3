"""
Unit tests for the frame adapter and the face models handle
"""
from types import SimpleNamespace

import numpy as np
import pytest

from voterauth.exceptions import ModelsNotLoadedError, SourceError
from voterauth.services.expression_analyzer import ExpressionAnalyzer
from voterauth.services.face_embedder import FaceEmbedder
from voterauth.services.frame_adapter import FaceModels, FaceObservationAdapter
from voterauth.services.observation_source import FrameObservationSource


def mesh_points():
    """468-point normalized mesh with every point at the frame centre"""
    return [SimpleNamespace(x=0.5, y=0.5, z=0.0) for _ in range(468)]


@pytest.fixture
def frame():
    return np.zeros((720, 1280, 3), dtype=np.uint8)


@pytest.fixture
def adapter(mocker):
    expression_analyzer = mocker.MagicMock()
    expression_analyzer.analyze.return_value = ({"happy": 0.8}, 0.9)
    embedder = mocker.MagicMock()
    embedder.embed.return_value = tuple([0.1] * 128)

    adapter = FaceObservationAdapter(
        model_path="dummy_path.task",
        expression_analyzer=expression_analyzer,
        embedder=embedder,
    )
    landmarker = mocker.MagicMock()
    landmarker.detect.return_value = SimpleNamespace(face_landmarks=[mesh_points()])
    adapter._face_landmarker = landmarker
    return adapter


class TestFaceLandmarker:
    """Test lazy model initialization"""

    def test_initialization_without_model(self):
        adapter = FaceObservationAdapter()
        assert adapter.model_path is None
        assert adapter._face_landmarker is None

    def test_missing_model_path_gives_no_landmarker(self):
        assert FaceObservationAdapter().face_landmarker is None

    def test_missing_model_file_gives_no_landmarker(self, tmp_path):
        adapter = FaceObservationAdapter(model_path=str(tmp_path / "missing.task"))
        assert adapter.face_landmarker is None

    def test_extract_without_landmarker_is_source_error(self, frame):
        with pytest.raises(SourceError, match="not available"):
            FaceObservationAdapter().extract_landmarks(frame)


class TestPreprocessing:
    """Test frame preprocessing"""

    def test_resizes_to_target(self, frame):
        assert FaceObservationAdapter().preprocess_frame(frame).shape == (480, 640, 3)

    def test_custom_target_size(self, frame):
        adapter = FaceObservationAdapter(target_size=(320, 240))
        assert adapter.preprocess_frame(frame).shape == (240, 320, 3)

    def test_converts_bgr_to_rgb(self):
        blue = np.zeros((480, 640, 3), dtype=np.uint8)
        blue[:, :] = [255, 0, 0]
        processed = FaceObservationAdapter().preprocess_frame(blue)
        assert list(processed[0, 0]) == [0, 0, 255]


class TestObserve:
    """Test observation construction"""

    def test_landmarks_in_pixels(self, adapter, frame):
        landmarks = adapter.extract_landmarks(frame)
        assert landmarks.nose_tip == pytest.approx((320.0, 240.0))
        assert len(landmarks.left_eye) == 6

    def test_observation_with_face(self, adapter, frame):
        observation = adapter.observe(frame, timestamp=3.0)

        assert observation.face_detected
        assert observation.timestamp == 3.0
        assert observation.detection_confidence == 0.9
        assert observation.expressions["happy"] == 0.8
        assert observation.embedding is None
        adapter.embedder.embed.assert_not_called()

    def test_embedding_only_when_requested(self, adapter, frame):
        observation = adapter.observe(frame, timestamp=3.0, want_embedding=True)
        assert len(observation.embedding) == 128

    def test_no_face(self, adapter, frame):
        adapter._face_landmarker.detect.return_value = SimpleNamespace(face_landmarks=[])

        observation = adapter.observe(frame, timestamp=1.0)

        assert not observation.face_detected
        adapter.expression_analyzer.analyze.assert_not_called()

    def test_confidence_defaults_when_unreported(self, adapter, frame):
        adapter.expression_analyzer.analyze.return_value = ({}, None)
        assert adapter.observe(frame, timestamp=0.0).detection_confidence == 1.0

    def test_detector_failure_is_source_error(self, adapter, frame):
        adapter._face_landmarker.detect.side_effect = RuntimeError("graph crashed")
        with pytest.raises(SourceError, match="detection failed"):
            adapter.observe(frame, timestamp=0.0)

    def test_empty_frame(self, adapter):
        with pytest.raises(SourceError, match="Empty frame"):
            adapter.observe(np.zeros((0, 0, 3), dtype=np.uint8), timestamp=0.0)

    def test_close_releases_landmarker(self, adapter):
        landmarker = adapter._face_landmarker
        adapter.close()
        landmarker.close.assert_called_once()
        assert adapter._face_landmarker is None


class TestFaceModels:
    """Test the explicit load barrier"""

    @pytest.fixture
    def no_deepface(self, mocker):
        mocker.patch.object(ExpressionAnalyzer, "deepface_available", new_callable=mocker.PropertyMock, return_value=False)
        mocker.patch.object(FaceEmbedder, "deepface_available", new_callable=mocker.PropertyMock, return_value=False)

    def test_unloaded_handle_refuses_work(self, frame):
        models = FaceModels(model_path=None)
        assert not models.loaded
        with pytest.raises(ModelsNotLoadedError):
            models.observe_frame(frame, 0.0)
        with pytest.raises(ModelsNotLoadedError):
            models.create_source()

    def test_failed_load_is_remembered(self, tmp_path):
        models = FaceModels(model_path=str(tmp_path / "missing.task"))
        assert models.load() is False
        assert models.error is not None
        assert models.load() is False

    def test_successful_load(self, mocker, no_deepface):
        mocker.patch.object(FaceObservationAdapter, "face_landmarker", new_callable=mocker.PropertyMock,
                            return_value=mocker.MagicMock())
        models = FaceModels(model_path="dummy_path.task")

        assert models.load() is True
        assert models.loaded
        assert isinstance(models.create_source(camera_index=1), FrameObservationSource)

    def test_load_runs_once(self, mocker, no_deepface):
        landmarker = mocker.patch.object(
            FaceObservationAdapter, "face_landmarker", new_callable=mocker.PropertyMock,
            return_value=mocker.MagicMock()
        )
        models = FaceModels(model_path="dummy_path.task")
        models.load()
        models.load()
        assert landmarker.call_count == 1
