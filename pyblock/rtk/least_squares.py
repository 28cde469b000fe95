# Copyright 2024 inuex35
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Weighted Least Squares Kernel
=============================

Solves ``min ||Q^{-1/2} (y0 - A x - b)||`` for sparse design and cofactor
matrices. Every solve of the batch estimator goes through :func:`solve_ls`.

The cofactor matrix of the double-difference system is block diagonal (one
pivot-correlated block per epoch), so its inverse is computed block by
block and stays sparse.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np
import scipy.sparse as sp
from scipy.linalg import LinAlgError, cho_factor, cho_solve
from scipy.sparse.csgraph import connected_components

logger = logging.getLogger(__name__)


@dataclass
class NormalEquations:
    """Pre-factored normal equations of a design / cofactor pair

    Attributes
    ----------
    P : sp.csr_matrix
        A^T Q^-1 (n_col x n_obs)
    N : np.ndarray
        A^T Q^-1 A (n_col x n_col)
    Q_inv : sp.csr_matrix
        Inverse cofactor matrix (n_obs x n_obs)
    """
    P: sp.csr_matrix
    N: np.ndarray
    Q_inv: sp.csr_matrix


@dataclass
class LSResult:
    """Output of a least squares solve"""
    x: np.ndarray
    Cxx: np.ndarray
    s02: float
    v_hat: np.ndarray
    col_ok: np.ndarray


def invert_spd(M: np.ndarray) -> np.ndarray:
    """Invert a symmetric matrix, Cholesky first then general/pseudo inverse"""
    n = M.shape[0]
    try:
        c = cho_factor(M)
        return cho_solve(c, np.eye(n))
    except LinAlgError:
        logger.debug(f"Cholesky failed on {n}x{n} matrix, using general inverse")
    try:
        return np.linalg.inv(M)
    except np.linalg.LinAlgError:
        logger.debug(f"Matrix {n}x{n} is singular, using pseudo-inverse")
        return np.linalg.pinv(M)


def sparse_inverse(Q) -> sp.csr_matrix:
    """Inverse of a block diagonal (possibly permuted) sparse cofactor matrix

    Each connected component of the sparsity graph is inverted densely.
    """
    Q = sp.csr_matrix(Q)
    n = Q.shape[0]
    if n == 0:
        return sp.csr_matrix((0, 0))
    n_comp, labels = connected_components(Q, directed=False)
    order = np.argsort(labels, kind='stable')
    bounds = np.flatnonzero(np.diff(labels[order])) + 1
    rows, cols, vals = [], [], []
    for idx in np.split(order, bounds):
        block = Q[idx][:, idx].toarray()
        inv = 1.0 / block if idx.size == 1 else invert_spd(block)
        r, c = np.meshgrid(idx, idx, indexing='ij')
        rows.append(r.ravel())
        cols.append(c.ravel())
        vals.append(np.asarray(inv).ravel())
    logger.debug(f"Inverted cofactor matrix with {n_comp} blocks")
    return sp.csr_matrix((np.concatenate(vals), (np.concatenate(rows), np.concatenate(cols))),
                         shape=(n, n))


def normal_equations(A, Q) -> NormalEquations:
    """Compute P = A^T Q^-1 and N = P A for the full column set"""
    A = sp.csr_matrix(A)
    Q_inv = sparse_inverse(Q)
    P = sp.csr_matrix(A.T @ Q_inv)
    N = (P @ A).toarray()
    N = 0.5 * (N + N.T)
    return NormalEquations(P=P, N=N, Q_inv=Q_inv)


def solve_ls(y0: np.ndarray, b: np.ndarray, A, Q,
             col_ok: Optional[Sequence[int]] = None,
             normal: Optional[NormalEquations] = None) -> LSResult:
    """
    Weighted least squares solution

    Parameters
    ----------
    y0 : np.ndarray
        Observations (n_obs,)
    b : np.ndarray
        Known terms (n_obs,)
    A : sparse or dense matrix
        Design matrix (n_obs x n_col)
    Q : sparse or dense matrix
        Cofactor matrix (n_obs x n_obs)
    col_ok : sequence of int, optional
        Columns of A to estimate, all columns when None
    normal : NormalEquations, optional
        Pre-computed normal equations of (A, Q) over all columns, reused to
        amortize repeated solves with different column subsets

    Returns
    -------
    LSResult
        x, Cxx = s02 * N^-1, s02 = v^T Q^-1 v / (n_obs - n_par), residuals v

    Notes
    -----
    With no redundancy (n_obs <= n_par) the a-priori unit variance is kept
    for Cxx and s02 is the plain weighted residual sum.
    """
    A = sp.csr_matrix(A)
    y0 = np.asarray(y0, dtype=float)
    b = np.asarray(b, dtype=float)
    n_obs, n_col = A.shape
    if y0.shape != (n_obs,) or b.shape != (n_obs,):
        raise ValueError(f"y0/b must have {n_obs} entries to match A")

    if normal is None:
        normal = normal_equations(A, Q)
    col_ok = np.arange(n_col) if col_ok is None else np.asarray(col_ok, dtype=int)

    if col_ok.size == n_col:
        P, N, A_ok = normal.P, normal.N, A
    else:
        P = normal.P[col_ok]
        N = normal.N[np.ix_(col_ok, col_ok)]
        A_ok = A[:, col_ok]

    N_inv = invert_spd(N)
    x = N_inv @ (P @ (y0 - b))
    v_hat = y0 - (A_ok @ x + b)

    vPv = float(v_hat @ (normal.Q_inv @ v_hat))
    redundancy = n_obs - col_ok.size
    if redundancy > 0:
        s02 = vPv / redundancy
        Cxx = s02 * N_inv
    else:
        s02 = vPv
        Cxx = N_inv

    return LSResult(x=x, Cxx=Cxx, s02=s02, v_hat=v_hat, col_ok=col_ok)
