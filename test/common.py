import numpy as np
from beartype import beartype

EPS = 1e-9


@beartype
def is_finite(a: np.ndarray) -> bool:
    """Check if all elements of an array are finite."""
    return bool(np.all(np.isfinite(a)))


@beartype
def rows_at(t: np.ndarray, time: float, tol: float = EPS) -> np.ndarray:
    """Indices of the samples taken at ``time``."""
    return np.flatnonzero(np.abs(t - time) < tol)

