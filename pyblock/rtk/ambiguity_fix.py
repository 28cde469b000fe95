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
Integer Ambiguity Fixer
=======================

Single to double difference transformation of the float ambiguities,
integer search through an :class:`IntegerAmbiguitySolver`-like object,
candidate selection and conditional adjustment of the position.

The outcome is either :class:`Fixed` or :class:`Degraded`; a failed fix is
a normal result carrying the float solution, never an exception.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Union

import numpy as np
import scipy.sparse as sp
from scipy.linalg import LinAlgError, block_diag, cho_factor, cho_solve

from ..core.config import BlockConfig
from ..core.data_structures import ObservationClass, SolutionStatus
from .least_squares import invert_spd, sparse_inverse
from .mlambda import AmbiguitySearchError, IntegerAmbiguitySolver
from .refiner import FloatSolution
from .system import LSSystem

logger = logging.getLogger(__name__)


@dataclass
class Fixed:
    """Successful integer fix

    Attributes
    ----------
    d_pos : np.ndarray
        Conditioned position correction (3,)
    pos : np.ndarray
        Fixed rover position (3,)
    pos_cov : np.ndarray
        Conditioned position covariance (3, 3)
    amb_fix : np.ndarray
        Double-difference integer ambiguities (n_amb - 1,)
    amb_cov : np.ndarray
        Covariance of the float double-difference ambiguities
    amb_fix_full : np.ndarray
        Value of every estimated ambiguity column consistent with the fix
    ref_index : int
        Position of the fixer reference inside the estimated ambiguities
    D : np.ndarray
        Single to double difference matrix
    s02 : float
        Unit variance of the chosen candidate
    ratio : float
        Ratio test value reported by the solver (0 when unknown)
    """
    d_pos: np.ndarray
    pos: np.ndarray
    pos_cov: np.ndarray
    amb_fix: np.ndarray
    amb_cov: np.ndarray
    amb_fix_full: np.ndarray
    ref_index: int
    D: np.ndarray
    s02: float
    ratio: float = 0.0

    is_fixed = True

    @property
    def status(self) -> SolutionStatus:
        return SolutionStatus.FIXED


@dataclass
class Degraded:
    """Failed fix, the float solution is reported instead

    ``ref_index`` is -1, the marker of a missing fixer reference.
    """
    reason: str
    d_pos: np.ndarray
    pos: np.ndarray
    pos_cov: np.ndarray
    amb_fix_full: np.ndarray
    ref_index: int = -1

    is_fixed = False

    @property
    def status(self) -> SolutionStatus:
        return SolutionStatus.FLOAT


FixOutcome = Union[Fixed, Degraded]


def sd_to_dd_matrix(n_amb: int, ref_index: int = 0) -> np.ndarray:
    """
    Single to double difference transformation

    Row i of the (n_amb - 1) x n_amb matrix computes ``a_ref - a_j`` for the
    j-th non reference ambiguity.
    """
    if n_amb < 2:
        raise ValueError(f"At least 2 ambiguities are needed, got {n_amb}")
    if not 0 <= ref_index < n_amb:
        raise ValueError(f"Reference index {ref_index} out of range for {n_amb} ambiguities")
    D = np.zeros((n_amb - 1, n_amb))
    D[:, ref_index] = 1.0
    others = np.delete(np.arange(n_amb), ref_index)
    D[np.arange(n_amb - 1), others] = -1.0
    return D


def fix_transform(n_pos: int, D: np.ndarray) -> np.ndarray:
    """Full parameter transformation: identity on positions, D on ambiguities"""
    return block_diag(np.eye(3 * n_pos), D)


def apply_fix(x_float: np.ndarray, Cxx: np.ndarray, amb_fix: np.ndarray,
              D: Optional[np.ndarray] = None, n_pos: int = 1):
    """
    Conditional adjustment of the positions on fixed ambiguities

    ``pos = x_pos - C_pa C_aa^-1 (a - a_fix)``,
    ``cov = C_pp - C_pa C_aa^-1 C_ap``

    Parameters
    ----------
    x_float : np.ndarray
        Float parameters, positions first
    Cxx : np.ndarray
        Their covariance
    amb_fix : np.ndarray
        Fixed ambiguities, in the space of ``D @ a`` when D is given
    D : np.ndarray, optional
        Transformation applied to the ambiguity part first
    n_pos : int
        Number of position triples

    Returns
    -------
    d_pos : np.ndarray
        (n_pos, 3) conditioned position corrections
    pos_cov : np.ndarray
        (3 n_pos, 3 n_pos) conditioned covariance
    """
    x_float = np.asarray(x_float, dtype=float)
    Cxx = np.asarray(Cxx, dtype=float)
    if D is not None:
        G = fix_transform(n_pos, D)
        x_float = G @ x_float
        Cxx = G @ Cxx @ G.T
    n = 3 * n_pos
    cov_pos = Cxx[:n, :n]
    cov_amb = Cxx[n:, n:]
    cov_cross = Cxx[:n, n:]
    da = x_float[n:] - np.asarray(amb_fix, dtype=float)
    try:
        c = cho_factor(cov_amb)
        K = cho_solve(c, cov_cross.T).T
    except LinAlgError as e:
        logger.warning(f"Phase ambiguities covariance matrix unstable: {e}")
        K = cov_cross @ invert_spd(cov_amb)
    d_pos = (x_float[:n] - K @ da).reshape(n_pos, 3)
    pos_cov = cov_pos - K @ cov_cross.T
    return d_pos, pos_cov


def _degraded(reason: str, fs: FloatSolution) -> Degraded:
    logger.warning(f"It was not possible to fix the ambiguities, the float solution is kept: {reason}")
    n = 3 * fs.n_pos
    return Degraded(reason=reason, d_pos=fs.x[:n].copy(), pos=fs.pos[0].copy(),
                    pos_cov=fs.pos_cov.copy(), amb_fix_full=fs.x[n:].copy())


def fix_ambiguities(fs: FloatSolution,
                    solver=None,
                    config: Optional[BlockConfig] = None) -> FixOutcome:
    """
    Fix the float ambiguities to integers

    Parameters
    ----------
    fs : FloatSolution
        Refined float solution (one position triple)
    solver : object, optional
        Integer solver with ``fix(a, Q) -> List[IntegerCandidate]`` raising
        :class:`AmbiguitySearchError`; MLAMBDA with the configured ratio
        test by default
    config : BlockConfig, optional
        Processing parameters

    Returns
    -------
    Fixed or Degraded
    """
    config = config or BlockConfig()
    if solver is None:
        solver = IntegerAmbiguitySolver(config.ratio_threshold, config.n_candidates,
                                        config.accept_unvalidated_fix)
    n_pc = 3 * fs.n_pos
    n_amb = fs.x.size - n_pc
    if n_amb < 2:
        return _degraded(f"{n_amb} estimated ambiguities", fs)

    ref = min(config.fix_reference_index, n_amb - 1)
    D = sd_to_dd_matrix(n_amb, ref)
    G = fix_transform(fs.n_pos, D)
    x = G @ fs.x
    Cxx = G @ fs.Cxx @ G.T
    cov_N = 0.5 * (Cxx[n_pc:, n_pc:] + Cxx[n_pc:, n_pc:].T)

    try:
        cho_factor(cov_N)
    except LinAlgError as e:
        return _degraded(f"phase ambiguities covariance matrix unstable ({e})", fs)

    try:
        candidates = solver.fix(x[n_pc:], cov_N)
    except AmbiguitySearchError as e:
        return _degraded(str(e), fs)
    if not candidates:
        return _degraded("the solver returned no candidate", fs)

    system = fs.system
    A_ok = system.A[:, fs.col_ok]
    Q_inv = sparse_inverse(system.Q)
    redundancy = max(system.n_obs - fs.col_ok.size, 1)
    a_ref = fs.x[n_pc + ref]
    others = np.delete(np.arange(n_amb), ref)

    best = None
    for cand in candidates:
        z = np.asarray(cand.values, dtype=float)
        d_pos, pos_cov = apply_fix(x, Cxx, z, n_pos=fs.n_pos)
        full = np.empty(n_amb)
        full[ref] = a_ref
        full[others] = a_ref - z
        x_new = np.concatenate([d_pos.ravel(), full])
        v = system.y0 - (A_ok @ x_new + system.b)
        s02 = float(v @ (Q_inv @ v)) / redundancy
        if best is None or s02 < best[0]:
            best = (s02, z, d_pos, pos_cov, full)

    s02, z, d_pos, pos_cov, full = best
    ratio = getattr(solver, 'last_ratio', 0.0)
    fixed = Fixed(d_pos=d_pos[0], pos=fs.pos0 + d_pos[0], pos_cov=pos_cov,
                  amb_fix=z.astype(int), amb_cov=cov_N, amb_fix_full=full,
                  ref_index=ref, D=D, s02=s02, ratio=ratio)
    logger.info(f"Fixed solution computed from {len(candidates)} candidate(s), s02 = {s02:.4g}")
    return fixed


def add_fix_pseudo_observations(system: LSSystem, col_ok: np.ndarray, fixed: Fixed,
                                variance: float) -> LSSystem:
    """
    Append the fixed double-difference ambiguities as pseudo-observations

    The ambiguity columns of ``col_ok`` are linearized around
    ``fixed.amb_fix_full``: their contribution is moved into the known
    terms, so the unknowns become small corrections to the fixed values.
    Each fixed value then becomes the row ``da_ref - da_i = 0`` with
    variance ``variance``; solving the augmented system over ``col_ok``
    gives the conditionally adjusted position.

    Parameters
    ----------
    system : LSSystem
        System the fix refers to
    col_ok : np.ndarray
        Estimated columns of the float solution
    fixed : Fixed
        Integer fix
    variance : float
        Pseudo-observation variance (cycles^2)

    Returns
    -------
    LSSystem
        Augmented system; pseudo rows have epoch -1 and class AMBIGUITY,
        ambiguity unknowns are corrections to ``fixed.amb_fix_full``
    """
    n_pc = system.n_pos_cols
    col_ok = np.asarray(col_ok)
    amb_cols = col_ok[col_ok >= n_pc]
    if amb_cols.size != fixed.amb_fix_full.size:
        raise ValueError(f"The fix holds {fixed.amb_fix_full.size} ambiguities, "
                         f"{amb_cols.size} ambiguity columns are estimated")
    n_fix = fixed.amb_fix.size
    others = np.delete(np.arange(amb_cols.size), fixed.ref_index)
    rows = np.repeat(np.arange(n_fix), 2)
    cols = np.column_stack([np.full(n_fix, amb_cols[fixed.ref_index]), amb_cols[others]]).ravel()
    vals = np.tile([1.0, -1.0], n_fix)
    A_fix = sp.csr_matrix((vals, (rows, cols)), shape=(n_fix, system.n_cols))

    A = sp.csr_matrix(system.A)
    b = system.b + A[:, amb_cols] @ fixed.amb_fix_full

    amb_idx = amb_cols[others] - n_pc
    track = np.column_stack([np.full(n_fix, -1), system.amb_sat[amb_idx],
                             np.full(n_fix, ObservationClass.AMBIGUITY.value)])
    return LSSystem(A=sp.csr_matrix(sp.vstack([A, A_fix])),
                    y0=np.concatenate([system.y0, np.zeros(n_fix)]),
                    b=np.concatenate([b, np.zeros(n_fix)]),
                    Q=sp.csr_matrix(sp.block_diag([system.Q, variance * sp.eye(n_fix)])),
                    obs_track=np.vstack([system.obs_track, track]).astype(int),
                    amb_sat=system.amb_sat.copy(), arc_id=system.arc_id.copy(),
                    n_pos=system.n_pos)
