from __future__ import annotations

import numpy as np


def l2_normalize(vec: np.ndarray, eps: float = 1e-12) -> np.ndarray:
    """Unit-length copy of a 1D descriptor; near-zero vectors are returned unchanged."""
    arr = np.asarray(vec, dtype=np.float32).reshape(-1)
    norm = float(np.linalg.norm(arr))
    return arr if norm < eps else arr / norm


def euclidean_distances(matrix: np.ndarray, query: np.ndarray) -> np.ndarray:
    """Row-wise Euclidean distance between an (N, D) matrix and a (D,) query."""
    mat = np.asarray(matrix, dtype=np.float64)
    q = np.asarray(query, dtype=np.float64).reshape(1, -1)
    diff = mat - q
    return np.sqrt(np.einsum("ij,ij->i", diff, diff))
