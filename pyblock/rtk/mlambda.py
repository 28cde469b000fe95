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
MLAMBDA - Modified LAMBDA Integer Ambiguity Resolution
======================================================

Integer least-squares search used as the default solver of the ambiguity
fixer. Reduction is performed by LAMBDA [1], the search by MLAMBDA [2].

References:
    [1] P.J.G. Teunissen, The least-squares ambiguity decorrelation adjustment:
        a method for fast GPS ambiguity estimation, Journal of Geodesy, 1995
    [2] X.-W. Chang, X. Yang, T. Zhou, MLAMBDA: A modified LAMBDA method for
        integer least-squares estimation, Journal of Geodesy, 2005
"""

import logging
from dataclasses import dataclass
from typing import List, Tuple

import numpy as np

from ..core.stats import THRESAR_RATIO

logger = logging.getLogger(__name__)

# Search loop cap
LOOPMAX = 10000


class AmbiguitySearchError(RuntimeError):
    """The integer search produced no validated fix"""


@dataclass
class IntegerCandidate:
    """One integer solution of the search

    Attributes
    ----------
    values : np.ndarray
        Integer ambiguities (n,)
    squared_norm : float
        Squared distance to the float vector in the metric of Q
    covariance : np.ndarray
        Covariance of the candidate, zero for an integer fix
    """
    values: np.ndarray
    squared_norm: float
    covariance: np.ndarray


def LD(Q: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    Factorize an ambiguity covariance as ``Q = L' diag(d) L``

    The factorization runs from the last ambiguity to the first, which is
    the order the decorrelation and the search work in.

    Parameters
    ----------
    Q : np.ndarray
        Covariance of the float double-difference ambiguities (n x n)

    Returns
    -------
    L : np.ndarray
        Unit lower triangular factor
    d : np.ndarray
        Conditional variances of the ambiguities

    Raises
    ------
    AmbiguitySearchError
        If an ambiguity has a non-positive conditional variance
    """
    n = len(Q)
    L = np.zeros((n, n))
    d = np.zeros(n)
    A = np.array(Q, dtype=float)

    for i in range(n - 1, -1, -1):
        d[i] = A[i, i]
        if d[i] <= 0.0:
            raise AmbiguitySearchError(f"Ambiguity {i} has a non-positive conditional "
                                       f"variance ({d[i]:.3g}), covariance not positive definite")
        L[i, :i + 1] = A[i, :i + 1] / np.sqrt(d[i])
        for j in range(i):
            A[j, :j + 1] -= L[i, :j + 1] * L[i, j]
        L[i, :i + 1] /= L[i, i]

    return L, d


def reduction(L: np.ndarray, d: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Decorrelate the ambiguities with a unimodular transformation

    Integer Gauss transformations shrink the off-diagonal terms of ``L``;
    neighbouring ambiguities are swapped whenever that lowers the later
    conditional variance. The transformed ambiguities ``z = Z' a`` have
    covariance ``Z' Q Z = L' diag(d) L`` with the returned factors.

    Returns
    -------
    L, d : np.ndarray
        Factors of the decorrelated covariance
    Z : np.ndarray
        Unimodular transformation
    """
    L = L.copy()
    d = d.copy()
    n = len(d)
    Z = np.eye(n)
    j = k = n - 2
    n_swaps = 0

    while j >= 0:
        if j <= k:
            for i in range(j + 1, n):
                mu = round(L[i, j])
                if mu != 0:
                    L[i:, j] -= mu * L[i:, i]
                    Z[:, j] -= mu * Z[:, i]

        delta = d[j] + L[j + 1, j] ** 2 * d[j + 1]
        if delta + 1e-6 < d[j + 1]:
            # Swap ambiguities j and j + 1
            eta = d[j] / delta
            lam = d[j + 1] * L[j + 1, j] / delta
            d[j] = eta * d[j + 1]
            d[j + 1] = delta
            L[j:j + 2, :j] = np.array([[-L[j + 1, j], 1], [eta, lam]]) @ L[j:j + 2, :j]
            L[j + 1, j] = lam
            L[j + 2:, [j, j + 1]] = L[j + 2:, [j + 1, j]]
            Z[:, [j, j + 1]] = Z[:, [j + 1, j]]
            n_swaps += 1
            j, k = n - 2, j
        else:
            j -= 1

    logger.debug(f"Decorrelated {n} ambiguities with {n_swaps} swaps")
    return L, d, Z


def search(L: np.ndarray, d: np.ndarray, zs: np.ndarray,
           m: int = 2) -> Tuple[np.ndarray, np.ndarray]:
    """
    Depth-first search of the ``m`` closest integer vectors (MLAMBDA)

    The search ellipsoid shrinks to the worst stored candidate once ``m``
    candidates are found; the integers of each level are visited in zig-zag
    order around the conditional float value.

    Parameters
    ----------
    L, d : np.ndarray
        Factors of the decorrelated covariance
    zs : np.ndarray
        Decorrelated float ambiguities
    m : int
        Number of candidates to find

    Returns
    -------
    zn : np.ndarray
        Integer candidates (n x m), best first
    s : np.ndarray
        Squared norms of the candidates, ascending

    Raises
    ------
    AmbiguitySearchError
        If fewer than ``m`` candidates are found
    """
    n = len(d)
    n_found = 0
    worst = 0
    chi2 = 1e18

    S = np.zeros((n, n))
    dist = np.zeros(n)
    zb = np.zeros(n)
    z = np.zeros(n)
    step = np.zeros(n)
    zn = np.zeros((n, m))
    s = np.zeros(m)

    k = n - 1
    zb[-1] = zs[-1]
    z[-1] = round(zb[-1])
    y = zb[-1] - z[-1]
    step[-1] = np.sign(y) if y != 0 else 1

    for _ in range(LOOPMAX):
        newdist = dist[k] + y ** 2 / d[k]
        if newdist < chi2:
            if k != 0:
                # Next level down, conditioned on the integers above
                k -= 1
                dist[k] = newdist
                S[k, :k + 1] = S[k + 1, :k + 1] + (z[k + 1] - zb[k + 1]) * L[k + 1, :k + 1]
                zb[k] = zs[k] + S[k, k]
                z[k] = round(zb[k])
                y = zb[k] - z[k]
                step[k] = np.sign(y) if y != 0 else 1
            else:
                if n_found < m:
                    if n_found == 0 or newdist > s[worst]:
                        worst = n_found
                    zn[:, n_found] = z
                    s[n_found] = newdist
                    n_found += 1
                else:
                    if newdist < s[worst]:
                        zn[:, worst] = z
                        s[worst] = newdist
                        worst = int(np.argmax(s))
                    chi2 = s[worst]
                z[0] += step[0]
                y = zb[0] - z[0]
                step[0] = -step[0] - np.sign(step[0])
        else:
            if k == n - 1:
                break
            k += 1
            z[k] += step[k]
            y = zb[k] - z[k]
            step[k] = -step[k] - np.sign(step[k])
    else:
        logger.warning(f"Integer search over {n} ambiguities stopped at the loop cap ({LOOPMAX})")

    if n_found < m:
        raise AmbiguitySearchError(f"Integer search found {n_found} of {m} candidates "
                                   f"for {n} ambiguities")
    order = np.argsort(s)
    return zn[:, order], s[order]


def mlambda(a: np.ndarray, Q: np.ndarray, m: int = 2) -> Tuple[np.ndarray, np.ndarray]:
    """
    LAMBDA/MLAMBDA integer least-squares estimation

    Parameters
    ----------
    a : np.ndarray
        Float ambiguities (n,)
    Q : np.ndarray
        Covariance matrix of float ambiguities (n x n)
    m : int
        Number of candidates to return

    Returns
    -------
    afix : np.ndarray
        Integer candidates (n x m), best first
    s : np.ndarray
        Squared norms of the candidates
    """
    L, d = LD(Q)
    L, d, Z = reduction(L, d)
    z = Z.T @ a
    E, s = search(L, d, z, m)
    try:
        # Z is unimodular, its inverse is integer
        afix = np.round(np.linalg.solve(Z.T, E))
    except np.linalg.LinAlgError as e:
        raise AmbiguitySearchError(f"Singular decorrelation matrix: {e}") from e
    return afix.astype(int), s


def ratio_test(s: np.ndarray, threshold: float = THRESAR_RATIO) -> Tuple[bool, float]:
    """
    Ratio test for ambiguity validation

    Parameters
    ----------
    s : np.ndarray
        Squared norms from :func:`mlambda`, ascending
    threshold : float
        Minimum ratio s[1] / s[0] for acceptance

    Returns
    -------
    passed : bool
        Whether the ratio test passed
    ratio : float
        The ratio (inf when the best candidate is at the float solution)
    """
    if len(s) < 2:
        return False, 0.0
    if s[0] < 1e-10:
        return True, float('inf')
    ratio = float(s[1] / s[0])
    return ratio >= threshold, ratio


class IntegerAmbiguitySolver:
    """Default integer solver of the fixer: MLAMBDA search plus ratio test

    Parameters
    ----------
    ratio_threshold : float
        Ratio test threshold
    n_candidates : int
        Number of candidates searched and returned
    accept_unvalidated : bool
        Return the candidates even when the ratio test fails
    """

    def __init__(self, ratio_threshold: float = THRESAR_RATIO, n_candidates: int = 2,
                 accept_unvalidated: bool = False):
        if n_candidates < 2:
            raise ValueError("At least 2 candidates are needed for the ratio test")
        self.ratio_threshold = ratio_threshold
        self.n_candidates = n_candidates
        self.accept_unvalidated = accept_unvalidated
        self.last_ratio = 0.0

    def fix(self, a: np.ndarray, Q: np.ndarray) -> List[IntegerCandidate]:
        """
        Search the integer candidates of a float ambiguity vector

        Returns
        -------
        List[IntegerCandidate]
            Candidates sorted by squared norm; only the best one when the
            ratio test passes

        Raises
        ------
        AmbiguitySearchError
            Non positive definite covariance, or ratio test failed
        """
        a = np.asarray(a, dtype=float)
        Q = 0.5 * (np.asarray(Q, dtype=float) + np.asarray(Q, dtype=float).T)
        if a.size == 0:
            raise AmbiguitySearchError("No ambiguity to fix")
        try:
            np.linalg.cholesky(Q)
        except np.linalg.LinAlgError as e:
            raise AmbiguitySearchError(f"Ambiguity covariance is not positive definite: {e}") from e

        logger.debug(f"Searching {self.n_candidates} integer candidates for {a.size} "
                     f"double-difference ambiguities")
        afix, s = mlambda(a, Q, self.n_candidates)
        passed, ratio = ratio_test(s, self.ratio_threshold)
        self.last_ratio = ratio
        zero = np.zeros((a.size, a.size))
        candidates = [IntegerCandidate(values=afix[:, i], squared_norm=float(s[i]), covariance=zero)
                      for i in range(afix.shape[1])]
        if passed:
            logger.info(f"Ratio test passed: {ratio:.2f} >= {self.ratio_threshold}")
            return candidates[:1]
        if not self.accept_unvalidated:
            raise AmbiguitySearchError(
                f"Ratio test failed: {ratio:.2f} < {self.ratio_threshold}")
        logger.warning(f"Ratio test failed ({ratio:.2f}), using the candidates anyway")
        return candidates
