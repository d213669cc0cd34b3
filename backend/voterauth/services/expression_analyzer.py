"""
Expression Analyzer producing per-frame expression probabilities
"""
import logging
from typing import Dict, Optional, Tuple

import numpy as np

from ..exceptions import SourceError

logger = logging.getLogger(__name__)


class ExpressionAnalyzer:
    """
    Estimates expression probabilities for a single frame using DeepFace.

    DeepFace reports percentages under its own label names; they are
    rescaled to [0, 1] and renamed to the labels the liveness steps use
    (``happy``, ``surprised``, ``neutral``, ...).
    """

    LABELS = {
        "angry": "angry",
        "disgust": "disgusted",
        "fear": "fearful",
        "happy": "happy",
        "sad": "sad",
        "surprise": "surprised",
        "neutral": "neutral",
    }

    def __init__(self, detector_backend: str = 'opencv'):
        """
        DeepFace is imported lazily when first needed so that the service
        can start (with expression steps unavailable) without it.
        """
        self.detector_backend = detector_backend
        self._deepface_available = None
        self._deepface = None

    @property
    def deepface_available(self) -> bool:
        """
        Check if DeepFace is available for expression analysis.

        Returns:
            bool: True if DeepFace can be imported, False otherwise
        """
        if self._deepface_available is None:
            try:
                from deepface import DeepFace
                self._deepface = DeepFace
                self._deepface_available = True
            except ImportError:
                logger.warning("DeepFace is not installed; expression probabilities unavailable")
                self._deepface_available = False

        return self._deepface_available

    def analyze(self, frame: np.ndarray) -> Tuple[Dict[str, float], Optional[float]]:
        """
        Estimate expression probabilities for the first face in a frame.

        Args:
            frame: Video frame in BGR format (OpenCV default)

        Returns:
            (expressions, face_confidence): probabilities keyed by label, and
            the detector confidence when DeepFace reports one

        Raises:
            SourceError: If DeepFace fails on a valid frame
        """
        if not self.deepface_available or frame is None or frame.size == 0:
            return {}, None

        try:
            result = self._deepface.analyze(
                img_path=frame,
                actions=['emotion'],
                enforce_detection=False,  # Don't fail if no face detected
                detector_backend=self.detector_backend,
                silent=True
            )
        except Exception as e:
            logger.error(f"Expression analysis failed: {e}")
            raise SourceError("Expression model failed", {"error": str(e)}) from e

        # DeepFace returns a list of faces in recent versions, a dict in older ones
        if isinstance(result, list):
            if not result:
                return {}, None
            result = result[0]

        scores = result.get('emotion') or {}
        expressions = {
            self.LABELS.get(label, label): float(np.clip(score / 100.0, 0.0, 1.0))
            for label, score in scores.items()
        }
        face_confidence = result.get('face_confidence')
        if face_confidence is not None:
            face_confidence = float(np.clip(face_confidence, 0.0, 1.0))
        return expressions, face_confidence
