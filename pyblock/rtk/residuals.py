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
Phase Residual Analysis
=======================

Per-arc phase residual series and the integer corrections derived from
them: missed cycle slips found on post-fit residuals and the optional
pre-fit removal of integer jumps in the raw observations.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import numpy as np
import pandas as pd
import scipy.sparse as sp
from scipy.ndimage import median_filter

from .system import LSSystem

logger = logging.getLogger(__name__)

# Threshold on de-trended first differences flagging jumpy phase (m)
JUMP_THRESHOLD = 0.04
JUMP_VARIANCE_FACTOR = 4.0


def moving_median(values: np.ndarray, window: int) -> np.ndarray:
    """Centred moving median, window shrunk at the borders, NaN ignored"""
    values = np.asarray(values, dtype=float)
    if values.size == 0:
        return values.copy()
    median = pd.Series(values).rolling(window, center=True, min_periods=1).median()
    return median.to_numpy(copy=True)


@dataclass
class PhaseResiduals:
    """Epoch x arc phase residual table

    Attributes
    ----------
    values : np.ndarray
        (n_epoch, n_amb) residuals in meters, NaN where the arc is not the
        non-pivot satellite of a row
    sigma : np.ndarray
        (n_epoch, n_amb) formal sigma from the cofactor diagonal
    rows : np.ndarray
        (n_epoch, n_amb) system row of each residual, -1 when missing
    arc_id, amb_sat : np.ndarray
        Arc descriptors of the columns
    """
    values: np.ndarray
    sigma: np.ndarray
    rows: np.ndarray
    arc_id: np.ndarray
    amb_sat: np.ndarray

    @property
    def n_epoch(self) -> int:
        return self.values.shape[0]

    @property
    def n_amb(self) -> int:
        return self.values.shape[1]

    def arc_series(self, a: int) -> Tuple[np.ndarray, np.ndarray]:
        """Residuals of arc ``a`` and their system rows, in epoch order"""
        ok = self.rows[:, a] >= 0
        return self.values[ok, a], self.rows[ok, a]


def compute_phase_residuals(system: LSSystem, v_hat: np.ndarray,
                            n_epoch: Optional[int] = None) -> PhaseResiduals:
    """
    Arrange the phase residuals of the non-pivot rows of every arc

    Parameters
    ----------
    system : LSSystem
        System the residuals refer to
    v_hat : np.ndarray
        Residuals (n_obs,)
    n_epoch : int, optional
        Number of epoch rows of the table, defaults to last epoch + 1
    """
    if n_epoch is None:
        n_epoch = int(system.epochs.max()) + 1 if system.n_obs else 0
    values = np.full((n_epoch, system.n_amb), np.nan)
    sigma = np.full((n_epoch, system.n_amb), np.nan)
    rows = -np.ones((n_epoch, system.n_amb), dtype=int)
    q_diag = system.Q.diagonal()
    M = system.amb_matrix().tocsc()
    epochs = system.epochs
    for a in range(system.n_amb):
        col_rows = M.indices[M.indptr[a]:M.indptr[a + 1]]
        idx = col_rows[M.data[M.indptr[a]:M.indptr[a + 1]] < 0]
        values[epochs[idx], a] = v_hat[idx]
        sigma[epochs[idx], a] = np.sqrt(np.abs(q_diag[idx]))
        rows[epochs[idx], a] = idx
    return PhaseResiduals(values=values, sigma=sigma, rows=rows,
                          arc_id=system.arc_id.copy(), amb_sat=system.amb_sat.copy())


def slip_window(min_arc: int) -> int:
    """Odd moving median window used on residual series"""
    half = max(1, min_arc // 2)
    return half + (1 + half) % 2


def correct_missed_slips(y0: np.ndarray,
                         residuals: PhaseResiduals,
                         system: LSSystem,
                         window: int) -> Tuple[np.ndarray, np.ndarray]:
    """
    Remove integer steps from the phase observations of each arc

    The reference path of an arc is the moving median of its residuals
    quantised to multiples of the wavelength; steps are kept only where the
    path is locally flat. The correction is applied when it strictly
    reduces the standard deviation of the residual first differences.

    Parameters
    ----------
    y0 : np.ndarray
        Observation vector of ``system``
    residuals : PhaseResiduals
        Post-fit residuals of ``system``
    system : LSSystem
        System providing the wavelengths
    window : int
        Odd moving median window (epochs)

    Returns
    -------
    y0 : np.ndarray
        Corrected observations (a copy)
    corrected : np.ndarray
        Arc ids that received a correction
    """
    y0 = np.asarray(y0, dtype=float).copy()
    half = int(round((window + 1) / 2))
    A = sp.csc_matrix(system.A)
    corrected = []
    for a in range(residuals.n_amb):
        y, rows = residuals.arc_series(a)
        if y.size <= 1.5 * window:
            continue
        lam = np.abs(A[rows, system.n_pos_cols + a].toarray().ravel())
        ref = moving_median(np.round(median_filter(y, size=3, mode='nearest') / lam) * lam, window)
        ref[np.abs(moving_median(np.diff(ref, prepend=ref[0]), 3)) > 0] = 0
        ref[:half] = ref[half - 1]
        ref[-half:] = ref[-half]
        if not np.any(ref != 0):
            continue
        if np.std(np.diff(y - ref)) < np.std(np.diff(y)):
            y0[rows] -= ref
            corrected.append(int(residuals.arc_id[a]))
            logger.debug(f"Arc {residuals.arc_id[a]} (sat {residuals.amb_sat[a]}): "
                         f"corrected {np.count_nonzero(ref)} observations")
    return y0, np.asarray(corrected, dtype=int)


def pivot_change_epochs(valid_epochs: np.ndarray, pivot_track: np.ndarray) -> np.ndarray:
    """Epochs whose pivot differs from the previous valid epoch"""
    if pivot_track.size < 2:
        return np.zeros(0, dtype=int)
    change = np.flatnonzero(np.diff(pivot_track) != 0) + 1
    return np.asarray(valid_epochs, dtype=int)[change]


def pre_correct_integer_jumps(system: LSSystem,
                              pivot_changes: Sequence[int] = ()) -> LSSystem:
    """
    Remove integer discontinuities from the raw phase observations

    Works on the de-trended observations ``y0 - b`` of each arc: cumulated
    first differences, minus their moving median, are rounded to whole
    wavelengths. Steps at pivot changes are kept. Rows whose corrected
    series still jumps twice in a row get their variance multiplied by 4.

    This is a heuristic on unadjusted data and is off by default.
    """
    out = system.copy()
    if out.n_obs == 0:
        return out
    y = out.y0 - out.b
    A = sp.csc_matrix(out.A)
    epochs = out.epochs
    pivot_changes = np.asarray(pivot_changes, dtype=int)
    n_pc = out.n_pos_cols
    for a in range(out.n_amb):
        idx = out.arc_rows(a)
        if idx.size <= 3:
            continue
        lam = abs(A[idx[0], n_pc + a])
        d = np.diff(y[idx], prepend=y[idx[0]])
        tmp = np.round(np.cumsum(d - moving_median(d, 3)) / lam) * lam
        tmp = moving_median(tmp, 3)
        # A pivot change is a real step of the DD series, restore it
        for jmp in np.flatnonzero(np.isin(epochs[idx], pivot_changes)):
            if jmp > 0:
                tmp[jmp:] -= tmp[jmp] - tmp[jmp - 1]
        y[idx] -= tmp

    q_diag = out.Q.diagonal().copy()
    inflated = 0
    for a in range(out.n_amb):
        idx = out.arc_rows(a)
        if idx.size <= 3:
            continue
        dy = np.diff(y[idx])
        res = np.concatenate([[0.0], dy - moving_median(dy, 3)])
        ko = np.abs(res) > JUMP_THRESHOLD
        bad = idx[:-1][ko[:-1] & ko[1:]]
        q_diag[bad] *= JUMP_VARIANCE_FACTOR
        inflated += bad.size

    out.y0 = y + out.b
    out.Q = sp.csr_matrix(out.Q + sp.diags(q_diag - out.Q.diagonal()))
    if inflated:
        logger.debug(f"Pre-correction: {inflated} jumpy phase observations down-weighted")
    return out
