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
Ambiguity Arc Utilities
=======================

Pruning of ambiguity arcs that are too short to be estimated and of
isolated observation runs inside otherwise long arcs.
"""

import logging
from typing import List, Sequence, Tuple

import numpy as np
from numba import njit

from .system import LSSystem

logger = logging.getLogger(__name__)


@njit(cache=True)
def _run_bounds(epochs):
    """
    Contiguous runs of a sorted epoch index sequence

    Parameters
    ----------
    epochs : ndarray of int64
        Sorted epoch indices

    Returns
    -------
    starts, stops : ndarray
        Half-open position ranges [start, stop) of each run
    """
    n = epochs.shape[0]
    starts = np.empty(n, dtype=np.int64)
    stops = np.empty(n, dtype=np.int64)
    n_run = 0
    if n == 0:
        return starts[:0], stops[:0]
    starts[0] = 0
    for i in range(1, n):
        if epochs[i] - epochs[i - 1] > 1:
            stops[n_run] = i
            n_run += 1
            starts[n_run] = i
    stops[n_run] = n
    n_run += 1
    return starts[:n_run], stops[:n_run]


def epoch_runs(epochs: np.ndarray) -> List[Tuple[int, int]]:
    """Half-open index ranges of consecutive epochs"""
    starts, stops = _run_bounds(np.ascontiguousarray(epochs, dtype=np.int64))
    return list(zip(starts.tolist(), stops.tolist()))


def remove_short_arcs(system: LSSystem, min_arc: int) -> Tuple[LSSystem, np.ndarray]:
    """
    Remove arcs with fewer than ``min_arc`` observations, with all their rows

    Removing rows can shorten other arcs, so the pruning is repeated until
    no short arc is left.

    Returns
    -------
    system : LSSystem
        Pruned system
    removed : np.ndarray
        Arc ids of the removed columns
    """
    removed = []
    while system.n_amb > 0:
        short = np.flatnonzero(system.arc_lengths() < min_arc)
        if short.size == 0:
            break
        removed.append(system.arc_id[short])
        logger.debug(f"Removing {short.size} arcs shorter than {min_arc} "
                     f"(sat {system.amb_sat[short].tolist()})")
        system = system.remove_arcs(short)
    removed = np.concatenate(removed) if removed else np.zeros(0, dtype=int)
    if removed.size:
        logger.info(f"Removed {removed.size} short arcs, {system.n_amb} left")
    return system, removed


def remove_solitary_observations(system: LSSystem, run_length: int) -> Tuple[LSSystem, int]:
    """
    Remove short runs of consecutive epochs inside each arc

    Only rows where the arc's satellite is the non-pivot satellite are
    considered.

    Parameters
    ----------
    system : LSSystem
        System to clean
    run_length : int
        Runs shorter than this number of epochs are removed

    Returns
    -------
    system : LSSystem
        Cleaned system
    n_removed : int
        Number of removed rows
    """
    if system.n_amb == 0 or run_length <= 1:
        return system, 0
    M = system.amb_matrix().tocsc()
    epochs = system.epochs
    drop = np.zeros(system.n_obs, dtype=bool)
    for j in range(system.n_amb):
        start, stop = M.indptr[j], M.indptr[j + 1]
        rows = M.indices[start:stop][M.data[start:stop] < 0]
        if rows.size == 0:
            continue
        rows = rows[np.argsort(epochs[rows], kind='stable')]
        for lo, hi in epoch_runs(epochs[rows]):
            if hi - lo < run_length:
                drop[rows[lo:hi]] = True
    n_removed = int(np.count_nonzero(drop))
    if n_removed:
        logger.debug(f"Removing {n_removed} solitary observations")
        system = system.remove_rows(drop)
    return system, n_removed


def reference_arc_columns(system: LSSystem, ref_arcs: Sequence[int]) -> np.ndarray:
    """Design matrix columns of the reference arcs present in the system"""
    return system.amb_columns(system.arc_index(ref_arcs))
