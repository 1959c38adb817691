"""Sparse normal-equation solver built around a reusable fill-reducing analysis."""

from __future__ import annotations

import numpy as np
from scipy import sparse
from scipy.sparse.csgraph import reverse_cuthill_mckee
from scipy.sparse.linalg import splu


class FactorStateError(RuntimeError):
    """Raised when the symbolic factor is used in the wrong state."""


class CholeskySolver:
    """Solves ``(JᵀJ) δ = Jᵀ r`` for a sparse Jacobian ``J``.

    The ordering of the normal matrix is computed once on the first run and
    reused by later solves until :meth:`free_factor` is called, so every
    Jacobian between those two points must keep the same number of columns.
    """

    def __init__(self) -> None:
        self._ordering: np.ndarray | None = None

    @property
    def analysed(self) -> bool:
        """Whether a symbolic analysis is currently held."""
        return self._ordering is not None

    def free_factor(self) -> None:
        """Drop the stored symbolic analysis."""
        if self._ordering is None:
            raise FactorStateError("no symbolic factor to free")
        self._ordering = None

    def solve(self, jacobian, residual, first_run: bool) -> np.ndarray:
        """Return the least-squares step for ``jacobian`` and ``residual``.

        ``jacobian`` may be any matrix accepted by :func:`scipy.sparse.csr_matrix`.
        When ``first_run`` is true the ordering is analysed and stored.
        """
        j = sparse.csr_matrix(jacobian, dtype=float)
        r = np.asarray(residual, dtype=float).ravel()

        if r.shape[0] != j.shape[0]:
            raise ValueError(
                f"residual has {r.shape[0]} entries but the Jacobian has {j.shape[0]} rows"
            )

        normal = (j.T @ j).tocsr()
        n = normal.shape[0]

        if first_run:
            if self._ordering is not None:
                raise FactorStateError("a symbolic factor is already held; free it first")
            self._ordering = np.asarray(
                reverse_cuthill_mckee(normal, symmetric_mode=True), dtype=np.intp
            )
        elif self._ordering is None:
            raise FactorStateError("no symbolic factor; solve with first_run=True first")
        elif self._ordering.shape[0] != n:
            raise ValueError(
                f"Jacobian has {n} columns but the stored analysis is for {self._ordering.shape[0]}"
            )

        if n == 0:
            return np.zeros(0)

        perm = self._ordering
        permuted = normal[perm, :][:, perm].tocsc()
        rhs = (j.T @ r)[perm]

        try:
            factor = splu(
                permuted,
                permc_spec="NATURAL",
                diag_pivot_thresh=0.0,
                options={"SymmetricMode": True},
            )
        except RuntimeError as exc:
            raise np.linalg.LinAlgError(str(exc)) from exc

        solved = factor.solve(rhs)

        delta = np.empty(n)
        delta[perm] = solved
        return delta