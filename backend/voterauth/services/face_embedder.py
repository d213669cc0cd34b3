"""
Face embedder producing fixed-length face encodings
"""
import logging
from typing import Optional, Tuple

import numpy as np

from ..exceptions import SourceError

logger = logging.getLogger(__name__)


class FaceEmbedder:
    """Computes a face encoding with a DeepFace recognition model (Facenet: 128 floats)."""

    def __init__(self, model_name: str = 'Facenet', detector_backend: str = 'opencv'):
        self.model_name = model_name
        self.detector_backend = detector_backend
        self._deepface_available = None
        self._deepface = None

    @property
    def deepface_available(self) -> bool:
        if self._deepface_available is None:
            try:
                from deepface import DeepFace
                self._deepface = DeepFace
                self._deepface_available = True
            except ImportError:
                logger.warning("DeepFace is not installed; face embeddings unavailable")
                self._deepface_available = False
        return self._deepface_available

    def embed(self, frame: np.ndarray) -> Optional[Tuple[float, ...]]:
        """
        Encode the first face in a frame.

        Returns None when DeepFace is unavailable or no face was found.

        Raises:
            SourceError: If the recognition model fails
        """
        if not self.deepface_available or frame is None or frame.size == 0:
            return None

        try:
            representations = self._deepface.represent(
                img_path=frame,
                model_name=self.model_name,
                enforce_detection=False,
                detector_backend=self.detector_backend,
            )
        except Exception as e:
            logger.error(f"Face embedding failed: {e}")
            raise SourceError("Embedding model failed", {"model": self.model_name}) from e

        if isinstance(representations, dict):
            representations = [representations]
        if not representations:
            return None
        embedding = representations[0].get('embedding')
        if not embedding:
            return None
        return tuple(float(v) for v in embedding)
