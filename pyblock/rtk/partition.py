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
Block Partitioner
=================

Splits the batch system into independent blocks at full outages and picks
the reference arc that removes the rank deficiency of each block.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

import numpy as np

from .arcs import reference_arc_columns
from .system import LSSystem, concatenate_systems

logger = logging.getLogger(__name__)


@dataclass
class Block:
    """Row and ambiguity subset of the global system

    Attributes
    ----------
    index : int
        Block number in time order
    rows : np.ndarray
        Global row indices
    amb_idx : np.ndarray
        Global ambiguity indices touched by the rows
    ref_arc : int
        Arc id of the reference arc, -1 when the block has no ambiguity
    """
    index: int
    rows: np.ndarray
    amb_idx: np.ndarray
    ref_arc: int = -1

    @property
    def n_rows(self) -> int:
        return self.rows.size

    def extract(self, system: LSSystem) -> LSSystem:
        """Independent copy of the block system"""
        return system.select(rows=self.rows, amb_idx=self.amb_idx)


def default_reference_arc(system: LSSystem) -> int:
    """
    Reference arc of a block system

    The arc whose last non-pivot observation is the latest one is chosen,
    ties broken by the highest column. Without non-pivot observations the
    last active column is used.

    Returns
    -------
    int
        Arc id, -1 when the system has no active ambiguity column
    """
    if system.n_amb == 0:
        return -1
    M = system.amb_matrix().tocsc()
    last_neg = np.full(system.n_amb, -1)
    active = np.zeros(system.n_amb, dtype=bool)
    for j in range(system.n_amb):
        rows = M.indices[M.indptr[j]:M.indptr[j + 1]]
        vals = M.data[M.indptr[j]:M.indptr[j + 1]]
        active[j] = np.any(vals != 0)
        neg = rows[vals < 0]
        if neg.size:
            last_neg[j] = neg.max()
    if np.any(last_neg >= 0):
        # Highest column among the latest
        best = np.flatnonzero(last_neg == last_neg.max())[-1]
    elif np.any(active):
        best = np.flatnonzero(active)[-1]
    else:
        return -1
    return int(system.arc_id[best])


def block_boundaries(epochs: np.ndarray, empty_epochs: np.ndarray,
                     full_slip_split: Optional[int]) -> np.ndarray:
    """
    Block number of every row

    Parameters
    ----------
    epochs : np.ndarray
        Epoch of each row, non-decreasing
    empty_epochs : np.ndarray
        Epochs excluded at build time
    full_slip_split : int or None
        Minimum number of empty epochs between two rows that starts a new
        block; None or 0 keeps a single block
    """
    block_of = np.zeros(epochs.size, dtype=int)
    if not full_slip_split or epochs.size == 0:
        return block_of
    empty_epochs = np.sort(np.asarray(empty_epochs, dtype=int))
    prev, cur = epochs[:-1], epochs[1:]
    n_empty = (np.searchsorted(empty_epochs, cur, side='left')
               - np.searchsorted(empty_epochs, prev, side='right'))
    split = (cur > prev) & (n_empty >= full_slip_split)
    block_of[1:] = np.cumsum(split)
    return block_of


def partition_blocks(system: LSSystem, empty_epochs: np.ndarray,
                     full_slip_split: Optional[int]) -> List[Block]:
    """
    Partition the system into blocks separated by full outages

    Returns
    -------
    List[Block]
        Blocks in time order, each with its default reference arc
    """
    if system.is_empty:
        return []
    block_of = block_boundaries(system.epochs, empty_epochs, full_slip_split)
    M = abs(system.amb_matrix()).tocsr()
    blocks = []
    for k in range(block_of.max() + 1):
        rows = np.flatnonzero(block_of == k)
        touched = np.asarray(M[rows].sum(axis=0)).ravel() > 0
        block = Block(index=k, rows=rows, amb_idx=np.flatnonzero(touched))
        block.ref_arc = default_reference_arc(block.extract(system))
        blocks.append(block)
    logger.info(f"System split into {len(blocks)} block(s)")
    return blocks


def global_col_ok(system: LSSystem, ref_arcs: Sequence[int]) -> np.ndarray:
    """Columns of the global system estimated: all but the reference arcs"""
    return np.setdiff1d(np.arange(system.n_cols), reference_arc_columns(system, ref_arcs))


def assemble_blocks(block_systems: Sequence[LSSystem]) -> LSSystem:
    """Stack block systems back into one global system

    Position columns are shared, ambiguity columns stay block diagonal.
    Rows keep the order of the blocks.
    """
    return concatenate_systems(block_systems)
