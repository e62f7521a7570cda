"""
Embedding matching module.

Matches probe face embeddings against enrolled identities using Euclidean
distance and nearest-neighbour search over each identity's stored embeddings.
"""

from dataclasses import dataclass
from typing import List, Mapping, Optional, Sequence

import numpy as np


def euclidean_distance(a: np.ndarray, b: np.ndarray) -> float:
    """
    Euclidean distance between two raw embedding vectors.

    Args:
        a: First embedding
        b: Second embedding

    Returns:
        L2 distance (0.0 = identical)
    """
    return float(np.linalg.norm(np.asarray(a, dtype=np.float32) - np.asarray(b, dtype=np.float32)))


@dataclass(frozen=True)
class MatchResult:
    """
    Classification outcome for one probe.

    identity_key is None when the best candidate is farther than the threshold
    (or the index is empty). distance is the best candidate's distance either way.
    """

    identity_key: Optional[str]
    distance: float

    @property
    def is_unknown(self) -> bool:
        return self.identity_key is None


class FaceMatcher:
    """
    Nearest-embedding classifier over a fixed set of identities.

    Each identity keeps all of its stored embeddings; a probe's distance to an
    identity is the minimum over those embeddings (no centroid). Identities are
    scanned in sorted key order and only a strictly smaller distance replaces
    the current best, so ties go to the lexicographically smallest key.
    """

    def __init__(self, identity_embeddings: Mapping[str, Sequence[np.ndarray]], threshold: float):
        """
        Args:
            identity_embeddings: identity_key -> stored embeddings
            threshold: Maximum distance for a match (inclusive)
        """
        self.threshold = threshold
        self._keys: List[str] = []
        self._matrices: List[np.ndarray] = []
        self.dim: Optional[int] = None

        for identity_key in sorted(identity_embeddings):
            vectors = [np.asarray(v, dtype=np.float32).ravel() for v in identity_embeddings[identity_key]]
            if not vectors:
                continue
            matrix = np.vstack(vectors)
            if self.dim is None:
                self.dim = matrix.shape[1]
            elif matrix.shape[1] != self.dim:
                raise ValueError(
                    f'Identity {identity_key} has {matrix.shape[1]}-dim embeddings, expected {self.dim}'
                )
            self._keys.append(identity_key)
            self._matrices.append(matrix)

    def __len__(self) -> int:
        return len(self._keys)

    @property
    def identity_keys(self) -> List[str]:
        return list(self._keys)

    def classify(self, probe: np.ndarray) -> MatchResult:
        """
        Find the best-matching identity for a probe embedding.

        Args:
            probe: Face embedding extracted from a class image

        Returns:
            MatchResult with the identity key, or None if no identity is
            within the threshold

        Raises:
            ValueError: If the probe dimensionality differs from the index
        """
        if not self._keys:
            return MatchResult(None, float('inf'))

        probe = np.asarray(probe, dtype=np.float32).ravel()
        if probe.shape[0] != self.dim:
            raise ValueError(f'Probe has {probe.shape[0]} dims, index expects {self.dim}')

        best_key: Optional[str] = None
        best_distance = float('inf')

        for identity_key, matrix in zip(self._keys, self._matrices):
            distance = float(np.min(np.linalg.norm(matrix - probe, axis=1)))
            if distance < best_distance:
                best_key, best_distance = identity_key, distance

        if best_distance <= self.threshold:
            return MatchResult(best_key, best_distance)

        return MatchResult(None, best_distance)


def build_index(
    identity_embeddings: Mapping[str, Sequence[np.ndarray]],
    threshold: float
) -> FaceMatcher:
    """
    Build a matcher from grouped stored embeddings.

    Args:
        identity_embeddings: identity_key -> stored embeddings
            (see descriptors.group_descriptors)
        threshold: Maximum distance for a match

    Returns:
        FaceMatcher instance
    """
    return FaceMatcher(identity_embeddings, threshold)
