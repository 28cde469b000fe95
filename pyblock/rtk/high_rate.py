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
High-Rate Solver
================

Re-estimates the rover position once per sub-interval of the session while
keeping the ambiguity columns of the float solution, then conditions every
position on the fixed ambiguities.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np
import scipy.sparse as sp

from ..core.data_structures import SolutionStatus
from .ambiguity_fix import Degraded, FixOutcome, apply_fix
from .least_squares import solve_ls
from .refiner import FloatSolution

logger = logging.getLogger(__name__)


@dataclass
class HighRateSolution:
    """Positions estimated per sub-interval

    Attributes
    ----------
    time_limits : np.ndarray
        (n + 1,) interval bounds
    pos, d_pos : np.ndarray
        (n, 3) positions and corrections, NaN for intervals without data
    pos_cov : np.ndarray
        (n, 3, 3) covariance of each position, NaN when missing
    valid : np.ndarray
        (n,) intervals that had observations
    cov_valid : np.ndarray
        Joint covariance of the valid positions
    x, Cxx, s02, v_hat
        Raw high-rate least squares output
    is_fixed : int
        ``SolutionStatus.FIXED_HIGH_RATE`` when the fix was applied, else 0
    """
    time_limits: np.ndarray
    pos: np.ndarray
    d_pos: np.ndarray
    pos_cov: np.ndarray
    valid: np.ndarray
    cov_valid: np.ndarray
    x: np.ndarray
    Cxx: np.ndarray
    s02: float
    v_hat: np.ndarray
    is_fixed: int = 0

    @property
    def time_centres(self) -> np.ndarray:
        return 0.5 * (self.time_limits[:-1] + self.time_limits[1:])

    @property
    def n_intervals(self) -> int:
        return self.pos.shape[0]


def time_limits(t0: float, t_end: float, s_rate: float) -> np.ndarray:
    """Interval bounds ``t0, t0 + s_rate, ...`` closed by ``t_end``"""
    if s_rate <= 0:
        raise ValueError(f"s_rate must be positive, got {s_rate}")
    limits = np.unique(np.append(np.arange(t0, t_end, s_rate), t_end))
    if limits.size < 2:
        limits = np.array([t0, t_end], dtype=float)
    return limits


def interval_index(row_times: np.ndarray, limits: np.ndarray) -> np.ndarray:
    """Interval of each time; the last interval is closed on the right"""
    idx = np.searchsorted(limits, row_times, side='right') - 1
    return np.clip(idx, 0, limits.size - 2)


def high_rate_design(A, intervals: np.ndarray, n_int: int, n_pc: int = 3) -> sp.csr_matrix:
    """Replicate the position columns of every row into its interval triple"""
    coo = sp.coo_matrix(A)
    is_pos = coo.col < n_pc
    cols = np.where(is_pos, 3 * intervals[coo.row] + coo.col, coo.col - n_pc + 3 * n_int)
    n_amb = A.shape[1] - n_pc
    return sp.csr_matrix((coo.data, (coo.row, cols)), shape=(A.shape[0], 3 * n_int + n_amb))


def solve_high_rate(fs: FloatSolution,
                    times: np.ndarray,
                    fix: Optional[FixOutcome],
                    s_rate: float,
                    use_float: bool = False) -> HighRateSolution:
    """
    Estimate one position per sub-interval of length ``s_rate``

    Parameters
    ----------
    fs : FloatSolution
        Refined float solution with a single position triple
    times : np.ndarray
        Time of every epoch of the observation set
    fix : Fixed, Degraded or None
        Ambiguity fix applied to the positions when fixed
    s_rate : float
        Sub-interval length, in the unit of ``times``
    use_float : bool
        Keep the float ambiguities even when a fix exists

    Returns
    -------
    HighRateSolution
    """
    times = np.asarray(times, dtype=float)
    system = fs.system
    n_pc = system.n_pos_cols
    limits = time_limits(times[0], times[-1], s_rate)
    n_int = limits.size - 1
    logger.info(f"Computing high rate solution @{s_rate} s ({n_int} intervals)")

    intervals = interval_index(times[system.epochs], limits)
    A_hr = high_rate_design(system.A, intervals, n_int, n_pc)
    valid = np.bincount(intervals, minlength=n_int) > 0
    if not np.all(valid):
        logger.warning(f"{np.count_nonzero(~valid)} high rate positions cannot be estimated "
                       f"(no observation in the interval)")
    ok = np.flatnonzero(valid)
    pos_cols = (3 * ok[:, None] + np.arange(3)[None, :]).ravel()
    amb_cols = fs.col_ok[fs.col_ok >= n_pc] - n_pc + 3 * n_int
    col_ok = np.concatenate([pos_cols, amb_cols])

    res = solve_ls(system.y0, system.b, A_hr, system.Q, col_ok=col_ok)
    n_ok = ok.size
    fixed = fix is not None and not isinstance(fix, Degraded) and not use_float
    if fixed:
        d_pos_ok, cov_ok = apply_fix(res.x, res.Cxx, fix.amb_fix, fix.D, n_pos=n_ok)
        x = np.concatenate([d_pos_ok.ravel(), fix.amb_fix_full])
        v_hat = system.y0 - (A_hr[:, col_ok] @ x + system.b)
    else:
        logger.warning("The computed high rate solution is NOT fixed (float)")
        d_pos_ok = res.x[:3 * n_ok].reshape(n_ok, 3)
        cov_ok = res.Cxx[:3 * n_ok, :3 * n_ok]
        x = res.x
        v_hat = res.v_hat

    d_pos = np.full((n_int, 3), np.nan)
    d_pos[ok] = d_pos_ok
    pos_cov = np.full((n_int, 3, 3), np.nan)
    for i, k in enumerate(ok):
        pos_cov[k] = cov_ok[3 * i:3 * i + 3, 3 * i:3 * i + 3]

    status = SolutionStatus.FIXED_HIGH_RATE if fixed else SolutionStatus.FLOAT
    return HighRateSolution(time_limits=limits, pos=fs.pos0[None, :] + d_pos, d_pos=d_pos,
                            pos_cov=pos_cov, valid=valid, cov_valid=cov_ok, x=x, Cxx=res.Cxx,
                            s02=res.s02, v_hat=v_hat, is_fixed=int(status))


def mean_position(hr: HighRateSolution) -> Tuple[np.ndarray, np.ndarray]:
    """
    Weighted least squares mean of the valid high-rate positions

    Returns
    -------
    pos : np.ndarray
        (3,) mean position
    pos_cov : np.ndarray
        (3, 3) covariance
    """
    pos = hr.pos[hr.valid]
    if pos.shape[0] == 0:
        raise ValueError("No valid high rate position")
    T = np.tile(np.eye(3), (pos.shape[0], 1))
    res = solve_ls(pos.ravel(), np.zeros(T.shape[0]), T, hr.cov_valid)
    return res.x, res.Cxx
