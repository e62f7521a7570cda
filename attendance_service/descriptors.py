"""
Descriptor store adapter.

Stored embeddings are JSON arrays of floats. This module converts them to and
from the float32 vectors the matcher works with and groups them by identity.
"""

import json
from collections import Counter
from typing import Dict, Iterable, List, Tuple

import numpy as np

from .logging_config import get_logger

logger = get_logger(__name__)


def encode_descriptor(vector: np.ndarray) -> str:
    """
    Serialize an embedding for storage.

    Args:
        vector: 1-D embedding

    Returns:
        JSON array string
    """
    return json.dumps([float(v) for v in np.asarray(vector, dtype=np.float32).ravel()])


def decode_descriptor(raw: str) -> np.ndarray:
    """
    Parse a stored embedding.

    Args:
        raw: JSON array string as written by encode_descriptor

    Returns:
        float32 vector

    Raises:
        ValueError: If the payload is not a non-empty flat array of finite numbers
    """
    try:
        values = json.loads(raw)
    except (TypeError, json.JSONDecodeError) as e:
        raise ValueError(f'descriptor is not valid JSON: {e}') from e

    if not isinstance(values, list) or not values:
        raise ValueError('descriptor must be a non-empty array')

    try:
        vector = np.asarray(values, dtype=np.float32)
    except (TypeError, ValueError) as e:
        raise ValueError(f'descriptor has non-numeric values: {e}') from e

    if vector.ndim != 1:
        raise ValueError('descriptor must be a flat array')
    if not np.all(np.isfinite(vector)):
        raise ValueError('descriptor contains NaN or infinite values')

    return vector


def group_descriptors(rows: Iterable[Tuple[str, str]]) -> Dict[str, List[np.ndarray]]:
    """
    Group stored descriptors by identity, skipping malformed ones.

    A corrupt record only drops that single embedding. Vectors whose length
    differs from the most common length in the batch are dropped as well,
    since they cannot be compared against the rest of the roster.

    Args:
        rows: (identity_key, raw_descriptor) pairs

    Returns:
        Mapping identity_key -> list of vectors (identities with no usable
        vectors are omitted)
    """
    parsed: List[Tuple[str, np.ndarray]] = []

    for identity_key, raw in rows:
        try:
            parsed.append((identity_key, decode_descriptor(raw)))
        except ValueError as e:
            logger.warning(f'Invalid descriptor for identity {identity_key}, skipping: {e}')

    if not parsed:
        return {}

    dims = Counter(vec.shape[0] for _, vec in parsed)
    expected_dim = dims.most_common(1)[0][0]

    grouped: Dict[str, List[np.ndarray]] = {}
    for identity_key, vector in parsed:
        if vector.shape[0] != expected_dim:
            logger.warning(
                f'Descriptor for identity {identity_key} has {vector.shape[0]} dims, '
                f'expected {expected_dim}, skipping'
            )
            continue
        grouped.setdefault(identity_key, []).append(vector)

    return grouped
