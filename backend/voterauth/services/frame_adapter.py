"""
Frame adapter turning camera frames into liveness observations
"""
import logging
import os
import threading
from typing import List, Optional, Sequence

import cv2
import mediapipe as mp
import numpy as np

from ..exceptions import ModelsNotLoadedError, SourceError
from ..models.data_models import FaceLandmarks, Observation, Point
from .expression_analyzer import ExpressionAnalyzer
from .face_embedder import FaceEmbedder
from .observation_source import FrameObservationSource

logger = logging.getLogger(__name__)


class FaceObservationAdapter:
    """
    Builds Observations from frames using MediaPipe FaceLandmarker for
    landmarks, an ExpressionAnalyzer for expression probabilities and a
    FaceEmbedder for the face encoding.

    Landmarks are reported in pixels of the preprocessed frame so that the
    head-turn threshold is a pixel displacement.
    """

    # MediaPipe FaceMesh topology, eyes in EAR order p1..p6
    LEFT_EYE = [33, 160, 158, 133, 153, 144]
    RIGHT_EYE = [362, 385, 387, 263, 373, 380]
    # Bridge to tip; the tip (1) sits at index 3
    NOSE = [168, 6, 197, 1, 2, 98, 327]
    MOUTH = [61, 40, 37, 0, 267, 270, 291, 321, 314, 17, 84, 91]

    def __init__(
        self,
        model_path: Optional[str] = None,
        expression_analyzer: Optional[ExpressionAnalyzer] = None,
        embedder: Optional[FaceEmbedder] = None,
        target_size: tuple = (640, 480),
    ):
        """
        The FaceLandmarker is initialized lazily when first needed so the
        preprocessing and geometry code can be exercised without a model file.

        Args:
            model_path: Path to the MediaPipe face landmarker model file
            expression_analyzer: Source of expression probabilities
            embedder: Source of face encodings
            target_size: (width, height) frames are resized to
        """
        self.model_path = model_path
        self.expression_analyzer = expression_analyzer or ExpressionAnalyzer()
        self.embedder = embedder or FaceEmbedder()
        self.target_size = target_size
        self._face_landmarker = None

    @property
    def face_landmarker(self):
        """
        Lazy initialization of MediaPipe FaceLandmarker.

        Returns None if the model cannot be loaded.
        """
        if self._face_landmarker is None:
            if self.model_path is None:
                logger.warning(
                    "Model path not provided. Face landmarker will not be available. "
                    "Download the model using: voterauth-setup"
                )
                return None

            if not os.path.exists(self.model_path):
                logger.warning(
                    f"MediaPipe model not found at {self.model_path}. "
                    "Download it using: voterauth-setup"
                )
                return None

            try:
                base_options = mp.tasks.BaseOptions(model_asset_path=self.model_path)
                options = mp.tasks.vision.FaceLandmarkerOptions(
                    base_options=base_options,
                    running_mode=mp.tasks.vision.RunningMode.IMAGE,
                    num_faces=1,
                    min_face_detection_confidence=0.3,
                    min_face_presence_confidence=0.3,
                    output_face_blendshapes=False,
                    output_facial_transformation_matrixes=False
                )
                self._face_landmarker = mp.tasks.vision.FaceLandmarker.create_from_options(options)
            except Exception as e:
                logger.error(f"Failed to initialize MediaPipe FaceLandmarker: {e}")
                return None

        return self._face_landmarker

    def preprocess_frame(self, frame: np.ndarray) -> np.ndarray:
        """
        Resize to the target size and convert BGR (OpenCV) to RGB (MediaPipe).

        Args:
            frame: Input frame in BGR format

        Returns:
            np.ndarray: Preprocessed frame in RGB format
        """
        resized = cv2.resize(frame, self.target_size, interpolation=cv2.INTER_LINEAR)
        return cv2.cvtColor(resized, cv2.COLOR_BGR2RGB)

    def extract_landmarks(self, frame: np.ndarray) -> Optional[FaceLandmarks]:
        """
        Detect the face mesh in a BGR frame.

        Returns:
            FaceLandmarks in pixel coordinates, or None if no face was found

        Raises:
            SourceError: If the landmarker is unavailable or fails
        """
        landmarker = self.face_landmarker
        if landmarker is None:
            raise SourceError("Face landmarker is not available", {"model_path": self.model_path})

        rgb_frame = self.preprocess_frame(frame)
        mp_image = mp.Image(image_format=mp.ImageFormat.SRGB, data=rgb_frame)
        try:
            detection_result = landmarker.detect(mp_image)
        except Exception as e:
            logger.error(f"Face landmark detection failed: {e}")
            raise SourceError("Face landmark detection failed", {"error": str(e)}) from e

        if not detection_result.face_landmarks:
            return None
        return self.to_face_landmarks(detection_result.face_landmarks[0])

    def to_face_landmarks(self, mesh: Sequence) -> FaceLandmarks:
        """Convert normalized MediaPipe mesh points to pixel-space regions"""
        width, height = self.target_size

        def points(indices: List[int]) -> List[Point]:
            return [(mesh[i].x * width, mesh[i].y * height) for i in indices]

        return FaceLandmarks(
            left_eye=points(self.LEFT_EYE),
            right_eye=points(self.RIGHT_EYE),
            nose=points(self.NOSE),
            mouth=points(self.MOUTH),
        )

    def observe(self, frame: np.ndarray, timestamp: float, want_embedding: bool = False) -> Observation:
        """
        Produce one Observation for a BGR frame.

        Expressions and the embedding are only computed when a face mesh was
        found; the embedding only when requested.
        """
        if frame is None or frame.size == 0:
            raise SourceError("Empty frame received")

        landmarks = self.extract_landmarks(frame)
        if landmarks is None:
            return Observation.no_face(timestamp)

        expressions, face_confidence = self.expression_analyzer.analyze(frame)
        embedding = self.embedder.embed(frame) if want_embedding else None

        return Observation(
            timestamp=timestamp,
            detection_confidence=1.0 if face_confidence is None else face_confidence,
            landmarks=landmarks,
            expressions=expressions,
            embedding=embedding,
        )

    def close(self) -> None:
        """Release MediaPipe resources"""
        if self._face_landmarker is not None:
            self._face_landmarker.close()
            self._face_landmarker = None


class FaceModels:
    """
    Explicit handle on the loaded face models.

    The owner calls ``load()`` once (typically at service start-up) and
    passes the handle to whoever needs observations. Nothing is loaded
    implicitly on first use.
    """

    def __init__(
        self,
        model_path: Optional[str],
        embedding_model: str = 'Facenet',
        target_size: tuple = (640, 480),
    ):
        self.model_path = model_path
        self.embedding_model = embedding_model
        self.target_size = target_size
        self.adapter: Optional[FaceObservationAdapter] = None
        self.error: Optional[str] = None
        self._loaded = False
        self._lock = threading.Lock()

    @property
    def loaded(self) -> bool:
        return self._loaded

    def load(self) -> bool:
        """
        Initialize the models; later calls return the first outcome.

        Returns:
            bool: True when landmarks can be produced
        """
        with self._lock:
            if self._loaded or self.error is not None:
                return self._loaded

            adapter = FaceObservationAdapter(
                model_path=self.model_path,
                expression_analyzer=ExpressionAnalyzer(),
                embedder=FaceEmbedder(model_name=self.embedding_model),
                target_size=self.target_size,
            )
            if adapter.face_landmarker is None:
                self.error = f"Face landmarker could not be loaded from {self.model_path}"
                logger.error(self.error)
                return False
            if not adapter.expression_analyzer.deepface_available:
                logger.warning("Expression steps will not be satisfiable without DeepFace")
            if not adapter.embedder.deepface_available:
                logger.warning("Embeddings will not be captured without DeepFace")

            self.adapter = adapter
            self._loaded = True
            logger.info("Face models loaded")
            return True

    def create_source(self, camera_index: int = 0, interval: float = 0.1) -> FrameObservationSource:
        """Observation source reading from a local camera"""
        if not self._loaded:
            raise ModelsNotLoadedError("Face models have not been loaded")
        return FrameObservationSource(self.adapter, camera_index=camera_index, interval=interval)

    def observe_frame(self, frame: np.ndarray, timestamp: float, want_embedding: bool = False) -> Observation:
        if not self._loaded:
            raise ModelsNotLoadedError("Face models have not been loaded")
        return self.adapter.observe(frame, timestamp, want_embedding)

    def close(self) -> None:
        if self.adapter is not None:
            self.adapter.close()
