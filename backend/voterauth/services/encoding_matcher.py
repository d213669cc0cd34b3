"""
Encoding Matcher for comparing face embeddings against the registered population.

A single metric is used everywhere: Euclidean distance between the raw
embedding vectors (lower = closer). Registration uniqueness checks and login
matching both go through ``EncodingMatcher`` so their thresholds are always
expressed in the same units.
"""
import logging
from abc import ABC, abstractmethod
from typing import Optional, Sequence, Tuple

import numpy as np

from ..config import MatcherConfig
from ..exceptions import DimensionMismatchError
from ..models.data_models import MatchResult, RegisteredIdentity

logger = logging.getLogger(__name__)


def as_embedding(values: Sequence[float], dimension: Optional[int] = None) -> np.ndarray:
    """
    Convert an embedding to a 1-D float64 array.

    Args:
        values: Embedding components
        dimension: Required length, if any

    Raises:
        DimensionMismatchError: If the length differs from ``dimension``
        ValueError: If the vector is not 1-D or holds NaN/inf
    """
    vector = np.asarray(values, dtype=np.float64)
    if vector.ndim != 1:
        raise ValueError(f"Embedding must be one-dimensional, got shape {vector.shape}")
    if dimension is not None and vector.shape[0] != dimension:
        raise DimensionMismatchError(dimension, int(vector.shape[0]))
    if not np.all(np.isfinite(vector)):
        raise ValueError("Embedding contains non-finite values")
    return vector


def embedding_distance(a: Sequence[float], b: Sequence[float]) -> float:
    """
    Euclidean distance between two embeddings of equal length.

    Raises:
        DimensionMismatchError: If the embeddings differ in length
    """
    va = as_embedding(a)
    vb = as_embedding(b)
    if va.shape != vb.shape:
        raise DimensionMismatchError(int(va.shape[0]), int(vb.shape[0]))
    return float(np.linalg.norm(va - vb))


def similarity_from_distance(distance: float) -> float:
    """Human-readable confidence: 1 - distance, clamped to [0, 1]"""
    return float(np.clip(1.0 - distance, 0.0, 1.0))


class NearestNeighborSearch(ABC):
    """Strategy returning the closest registered identity to a probe."""

    @abstractmethod
    def nearest(
        self,
        probe: np.ndarray,
        candidates: Sequence[RegisteredIdentity],
        preferred_identity: Optional[str] = None,
    ) -> Optional[Tuple[RegisteredIdentity, float]]:
        """
        Args:
            probe: Validated probe embedding
            candidates: Population snapshot to search
            preferred_identity: Wins ties at equal distance

        Returns:
            (identity, distance) of the nearest candidate, or None when
            ``candidates`` is empty
        """


class LinearScanSearch(NearestNeighborSearch):
    """
    Exact O(n) scan of the whole population.

    Distances are computed in one vectorised pass; the minimum is then
    picked in population order so the first of several equally close
    candidates wins unless one of them is the preferred identity.
    """

    def nearest(self, probe, candidates, preferred_identity=None):
        if not candidates:
            return None

        dimension = int(probe.shape[0])
        rows = []
        for candidate in candidates:
            if len(candidate.embedding) != dimension:
                raise DimensionMismatchError(
                    dimension,
                    len(candidate.embedding),
                    f"Registered embedding for '{candidate.identity_id}' has "
                    f"{len(candidate.embedding)} components, probe has {dimension}",
                )
            rows.append(candidate.embedding)

        distances = np.linalg.norm(np.asarray(rows, dtype=np.float64) - probe, axis=1)

        best_index = 0
        best_distance = float(distances[0])
        for index in range(1, len(candidates)):
            distance = float(distances[index])
            if distance < best_distance or (
                distance == best_distance
                and preferred_identity is not None
                and candidates[index].identity_id == preferred_identity
            ):
                best_index = index
                best_distance = distance
        return candidates[best_index], best_distance


class EncodingMatcher:
    """
    Finds the nearest registered identity and applies the acceptance threshold.

    A candidate is accepted only if its distance is below the threshold. An
    exact copy of a registered embedding (distance 0.0) is always accepted,
    including at a threshold of 0.
    """

    METRIC = "euclidean"

    def __init__(
        self,
        config: Optional[MatcherConfig] = None,
        search: Optional[NearestNeighborSearch] = None,
    ):
        self.config = config or MatcherConfig()
        self.search = search or LinearScanSearch()

    def distance(self, a: Sequence[float], b: Sequence[float]) -> float:
        """Distance between two embeddings, both checked against the configured dimension"""
        as_embedding(a, self.config.dimension)
        as_embedding(b, self.config.dimension)
        return embedding_distance(a, b)

    def match(
        self,
        probe: Sequence[float],
        candidates: Sequence[RegisteredIdentity],
        threshold: Optional[float] = None,
        claimed_identity: Optional[str] = None,
    ) -> MatchResult:
        """
        Match a probe embedding against a population snapshot.

        Args:
            probe: Captured embedding
            candidates: Registered identities to scan
            threshold: Acceptance distance; defaults to ``config.threshold``
            claimed_identity: When given, the nearest candidate must be this
                              identity for the match to succeed

        Returns:
            MatchResult: ``matched`` is False for an empty population, for a
            nearest distance at or above the threshold, and for a close match
            bound to a different identity than the one claimed

        Raises:
            DimensionMismatchError: If the probe or any candidate has the
                                    wrong number of components
        """
        threshold = self.config.threshold if threshold is None else float(threshold)
        if threshold < 0:
            raise ValueError("threshold must be non-negative")

        vector = as_embedding(probe, self.config.dimension)
        nearest = self.search.nearest(vector, candidates, preferred_identity=claimed_identity)
        if nearest is None:
            logger.info("Match attempted against an empty population")
            return MatchResult(matched=False, identity_id=None, distance=float("inf"), similarity=0.0)

        best, distance = nearest
        similarity = similarity_from_distance(distance)
        within_threshold = distance < threshold or distance == 0.0

        if not within_threshold:
            logger.info(f"No match: nearest distance {distance:.4f} >= threshold {threshold}")
            return MatchResult(matched=False, identity_id=None, distance=distance, similarity=similarity)

        if claimed_identity is not None and best.identity_id != claimed_identity:
            logger.warning(
                f"Nearest embedding (distance {distance:.4f}) belongs to a different "
                f"identity than the one claimed"
            )
            return MatchResult(
                matched=False,
                identity_id=None,
                distance=distance,
                similarity=similarity,
                claim_mismatch=True,
            )

        logger.info(f"Matched identity at distance {distance:.4f} (similarity {similarity:.3f})")
        return MatchResult(matched=True, identity_id=best.identity_id, distance=distance, similarity=similarity)

    def find_near_duplicate(
        self,
        embedding: Sequence[float],
        candidates: Sequence[RegisteredIdentity],
    ) -> MatchResult:
        """Match with the tight registration threshold; ``matched`` means a duplicate exists"""
        return self.match(embedding, candidates, threshold=self.config.duplicate_threshold)
