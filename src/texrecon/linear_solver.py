# ABOUTME: Sparse symmetric positive definite solve used by seam leveling
# ABOUTME: Conjugate gradient with Jacobi preconditioning, or a direct factorization

import logging

import numpy as np
from scipy.sparse import csr_matrix, diags
from scipy.sparse.linalg import cg, spsolve, LinearOperator

from .errors import NumericalError

logger = logging.getLogger('texrecon')

SOLVER_METHODS = ('cg', 'direct')


def solve_sparse_system(matrix: csr_matrix, rhs: np.ndarray,
                        tolerance: float = 1e-6,
                        max_iterations: int = 1000,
                        method: str = 'cg') -> np.ndarray:
    """
    Solve ``matrix @ x = rhs`` for one or several right-hand sides.

    Args:
        matrix: (n, n) sparse SPD matrix
        rhs: (n,) or (n, k) right-hand side(s)
        tolerance: Relative residual tolerance for CG
        max_iterations: CG iteration cap per right-hand side
        method: 'cg' or 'direct'

    Returns:
        Solution with the same shape as ``rhs``

    Raises:
        NumericalError: If CG does not converge or the solution is not finite
    """
    if method not in SOLVER_METHODS:
        raise ValueError(f"Unknown solver method: {method}. Must be one of {SOLVER_METHODS}")

    rhs = np.asarray(rhs, dtype=np.float64)
    columns = rhs.reshape(rhs.shape[0], -1)
    solution = np.zeros_like(columns)
    matrix = csr_matrix(matrix, dtype=np.float64)

    if method == 'direct':
        solution[:] = np.asarray(spsolve(matrix.tocsc(), columns)).reshape(columns.shape)
    else:
        diagonal = matrix.diagonal()
        if np.any(diagonal <= 0):
            raise NumericalError("Matrix has a non-positive diagonal entry; not SPD")
        inv_diag = diags(1.0 / diagonal)
        preconditioner = LinearOperator(matrix.shape, matvec=lambda x: inv_diag @ x)

        for c in range(columns.shape[1]):
            b = columns[:, c]
            if not np.any(b):
                continue
            x, info = cg(matrix, b, rtol=tolerance, atol=0.0, maxiter=max_iterations, M=preconditioner)
            if info > 0:
                raise NumericalError(
                    f"Conjugate gradient did not converge within {max_iterations} iterations",
                    iterations=info)
            if info < 0:
                raise NumericalError("Conjugate gradient failed: illegal input or breakdown")
            solution[:, c] = x

    if not np.all(np.isfinite(solution)):
        raise NumericalError("Sparse solve produced non-finite values")

    return solution.reshape(rhs.shape)
