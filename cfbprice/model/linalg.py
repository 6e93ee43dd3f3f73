"""Closed-form 3x3 normal-equation solve and the linear-solver interface."""

from __future__ import annotations

from typing import Protocol, Sequence

import numpy as np

from ..errors import InsufficientDataError, SingularMatrixError

SINGULAR_DET = 1e-10

Matrix3 = Sequence[Sequence[float]]


def det3(m: Matrix3) -> float:
    return (
        m[0][0] * (m[1][1] * m[2][2] - m[1][2] * m[2][1])
        - m[0][1] * (m[1][0] * m[2][2] - m[1][2] * m[2][0])
        + m[0][2] * (m[1][0] * m[2][1] - m[1][1] * m[2][0])
    )


def invert3(m: Matrix3) -> list[list[float]]:
    """Inverse of a 3x3 matrix via the adjugate.

    Raises :class:`SingularMatrixError` when ``|det| < 1e-10``.
    """

    det = det3(m)
    if abs(det) < SINGULAR_DET:
        raise SingularMatrixError(f"3x3 matrix is singular (det={det:.3e})")
    inv = 1.0 / det
    return [
        [
            (m[1][1] * m[2][2] - m[1][2] * m[2][1]) * inv,
            (m[0][2] * m[2][1] - m[0][1] * m[2][2]) * inv,
            (m[0][1] * m[1][2] - m[0][2] * m[1][1]) * inv,
        ],
        [
            (m[1][2] * m[2][0] - m[1][0] * m[2][2]) * inv,
            (m[0][0] * m[2][2] - m[0][2] * m[2][0]) * inv,
            (m[0][2] * m[1][0] - m[0][0] * m[1][2]) * inv,
        ],
        [
            (m[1][0] * m[2][1] - m[1][1] * m[2][0]) * inv,
            (m[0][1] * m[2][0] - m[0][0] * m[2][1]) * inv,
            (m[0][0] * m[1][1] - m[0][1] * m[1][0]) * inv,
        ],
    ]


def solve_normal_equations3(X: np.ndarray, y: np.ndarray) -> np.ndarray:
    """Least-squares coefficients for a 3-column design via (XᵀX)⁻¹Xᵀy."""

    X = np.asarray(X, dtype=float)
    y = np.asarray(y, dtype=float)
    if X.ndim != 2 or X.shape[1] != 3:
        raise ValueError(f"expected an (n, 3) design matrix, got {X.shape}")
    if X.shape[0] < 3:
        raise InsufficientDataError(f"need at least 3 rows for a 3-parameter fit, got {X.shape[0]}")
    xtx = X.T @ X
    xty = X.T @ y
    inv = np.asarray(invert3(xtx.tolist()))
    return inv @ xty


class LinearSolver(Protocol):
    """Fit coefficients for ``X`` (no intercept column) against ``y``.

    Implementations return ``(intercept, coefficients)``.
    """

    def fit(self, X: np.ndarray, y: np.ndarray) -> tuple[float, np.ndarray]:
        ...


class NormalEquationSolver:
    """Two-feature OLS through the 3x3 closed form."""

    def fit(self, X: np.ndarray, y: np.ndarray) -> tuple[float, np.ndarray]:
        X = np.asarray(X, dtype=float)
        design = np.column_stack([np.ones(len(X)), X])
        beta = solve_normal_equations3(design, y)
        return float(beta[0]), beta[1:]
