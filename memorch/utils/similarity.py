"""
Vectorized similarity functions shared by the vector stores, writer and trigger matcher.
"""

from typing import List, Sequence, Union

import numpy as np

Embedding = Union[Sequence[float], np.ndarray]


def cosine_similarity(a: Embedding, b: Embedding) -> float:
    """
    Compute cosine similarity between two embeddings.

    Args:
        a: First embedding vector
        b: Second embedding vector

    Returns:
        Cosine similarity in range [-1, 1], or 0.0 if either vector has zero norm
    """
    a_arr = np.asarray(a, dtype=np.float32)
    b_arr = np.asarray(b, dtype=np.float32)

    if a_arr.shape != b_arr.shape:
        return 0.0

    norm_a = np.linalg.norm(a_arr)
    norm_b = np.linalg.norm(b_arr)

    if norm_a == 0 or norm_b == 0:
        return 0.0

    return float(np.dot(a_arr, b_arr) / (norm_a * norm_b))


def batch_cosine_similarity(query: Embedding, candidates: List[Embedding]) -> np.ndarray:
    """
    Compute cosine similarity between a query and multiple candidates.

    Args:
        query: Query embedding
        candidates: Candidate embeddings, all with the query's dimension

    Returns:
        Array of similarities, one per candidate; zero-norm rows score 0.0
    """
    if not candidates:
        return np.zeros(0, dtype=np.float32)

    matrix = np.asarray(candidates, dtype=np.float32)
    q = np.asarray(query, dtype=np.float32)

    q_norm = np.linalg.norm(q)
    if q_norm == 0:
        return np.zeros(len(candidates), dtype=np.float32)

    row_norms = np.linalg.norm(matrix, axis=1)
    safe_norms = np.where(row_norms == 0, 1.0, row_norms)
    scores = matrix @ q / (safe_norms * q_norm)
    return np.where(row_norms == 0, 0.0, scores)
