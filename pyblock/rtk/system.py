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
Batch Double-Difference System
==============================

Container of the sparse weighted least squares system spanning all epochs,
and the assembler that fills it epoch by epoch while tracking carrier phase
arcs. Every ambiguity column carries a stable arc id so that pruning and
block reassembly never depend on raw column positions.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence, Tuple

import numpy as np
import scipy.sparse as sp

from ..core.config import BlockConfig
from ..core.data_structures import ObservationClass, ObservationSet, SatelliteState
from ..core.stats import ElevationWeighting
from ..gnss.ephemeris import EphemerisProvider
from ..gnss.geometry import GeometryService
from .epoch_builder import build_epoch

logger = logging.getLogger(__name__)


@dataclass
class LSSystem:
    """Sparse double-difference system

    Attributes
    ----------
    A : sp.csr_matrix
        Design matrix; 3 position columns per position group, then one
        column per ambiguity arc
    y0, b : np.ndarray
        Observations and known terms
    Q : sp.csr_matrix
        Cofactor matrix
    obs_track : np.ndarray
        (n_obs, 3) integer table: epoch index, satellite index, observation class
    amb_sat : np.ndarray
        Satellite of each ambiguity column
    arc_id : np.ndarray
        Stable identifier of each ambiguity column
    n_pos : int
        Number of position groups
    """
    A: sp.csr_matrix
    y0: np.ndarray
    b: np.ndarray
    Q: sp.csr_matrix
    obs_track: np.ndarray
    amb_sat: np.ndarray
    arc_id: np.ndarray
    n_pos: int = 1

    @classmethod
    def empty(cls, n_pos: int = 1) -> 'LSSystem':
        return cls(A=sp.csr_matrix((0, 3 * n_pos)), y0=np.zeros(0), b=np.zeros(0),
                   Q=sp.csr_matrix((0, 0)), obs_track=np.zeros((0, 3), dtype=int),
                   amb_sat=np.zeros(0, dtype=int), arc_id=np.zeros(0, dtype=int), n_pos=n_pos)

    @property
    def n_obs(self) -> int:
        return self.y0.size

    @property
    def n_amb(self) -> int:
        return self.arc_id.size

    @property
    def n_pos_cols(self) -> int:
        return 3 * self.n_pos

    @property
    def n_cols(self) -> int:
        return self.n_pos_cols + self.n_amb

    @property
    def is_empty(self) -> bool:
        return self.n_obs == 0

    @property
    def epochs(self) -> np.ndarray:
        return self.obs_track[:, 0]

    @property
    def phase_rows(self) -> np.ndarray:
        return self.obs_track[:, 2] == ObservationClass.PHASE.value

    @property
    def code_rows(self) -> np.ndarray:
        return self.obs_track[:, 2] == ObservationClass.CODE.value

    def amb_matrix(self) -> sp.csc_matrix:
        """Ambiguity part of the design matrix (n_obs x n_amb)"""
        return sp.csc_matrix(self.A[:, self.n_pos_cols:])

    def amb_columns(self, amb_idx) -> np.ndarray:
        """Design matrix column indices of ambiguity indices"""
        return np.asarray(amb_idx, dtype=int) + self.n_pos_cols

    def arc_index(self, arc_ids) -> np.ndarray:
        """Ambiguity indices of the given arc ids (ids not present are skipped)"""
        arc_ids = np.atleast_1d(np.asarray(arc_ids, dtype=int))
        return np.flatnonzero(np.isin(self.arc_id, arc_ids))

    def arc_lengths(self) -> np.ndarray:
        """Number of non-zero rows of each ambiguity column"""
        M = self.amb_matrix()
        M.eliminate_zeros()
        return np.diff(M.indptr)

    def arc_rows(self, amb_idx: int, non_pivot: bool = True) -> np.ndarray:
        """Rows of one arc; only rows where it is the non-pivot satellite by default"""
        col = self.A[:, self.n_pos_cols + amb_idx].toarray().ravel()
        return np.flatnonzero(col < 0) if non_pivot else np.flatnonzero(col != 0)

    def copy(self) -> 'LSSystem':
        return LSSystem(A=self.A.copy(), y0=self.y0.copy(), b=self.b.copy(), Q=self.Q.copy(),
                        obs_track=self.obs_track.copy(), amb_sat=self.amb_sat.copy(),
                        arc_id=self.arc_id.copy(), n_pos=self.n_pos)

    def with_observations(self, y0: np.ndarray) -> 'LSSystem':
        """Same system with a different observation vector"""
        out = self.copy()
        out.y0 = np.asarray(y0, dtype=float).copy()
        return out

    def with_cofactor(self, Q) -> 'LSSystem':
        out = self.copy()
        out.Q = sp.csr_matrix(Q)
        return out

    def select(self, rows=None, amb_idx=None) -> 'LSSystem':
        """Sub-system with the given rows and ambiguity columns (orders kept)"""
        rows = np.arange(self.n_obs) if rows is None else _as_index(rows, self.n_obs)
        amb_idx = np.arange(self.n_amb) if amb_idx is None else _as_index(amb_idx, self.n_amb)
        cols = np.concatenate([np.arange(self.n_pos_cols), self.amb_columns(amb_idx)])
        A = self.A[rows][:, cols]
        Q = self.Q[rows][:, rows]
        return LSSystem(A=sp.csr_matrix(A), y0=self.y0[rows].copy(), b=self.b[rows].copy(),
                        Q=sp.csr_matrix(Q), obs_track=self.obs_track[rows].copy(),
                        amb_sat=self.amb_sat[amb_idx].copy(), arc_id=self.arc_id[amb_idx].copy(),
                        n_pos=self.n_pos)

    def remove_rows(self, rows) -> 'LSSystem':
        drop = np.zeros(self.n_obs, dtype=bool)
        drop[_as_index(rows, self.n_obs)] = True
        return self.select(rows=np.flatnonzero(~drop))

    def remove_arcs(self, amb_idx) -> 'LSSystem':
        """Remove ambiguity columns together with every row that references them"""
        amb_idx = _as_index(amb_idx, self.n_amb)
        if amb_idx.size == 0:
            return self.copy()
        touched = np.asarray(abs(self.amb_matrix()[:, amb_idx]).sum(axis=1)).ravel() > 0
        keep_amb = np.setdiff1d(np.arange(self.n_amb), amb_idx)
        return self.select(rows=np.flatnonzero(~touched), amb_idx=keep_amb)


def _as_index(idx, n: int) -> np.ndarray:
    idx = np.asarray(idx)
    if idx.dtype == bool:
        if idx.size != n:
            raise ValueError(f"Boolean mask of size {idx.size} does not match {n}")
        return np.flatnonzero(idx)
    return idx.astype(int).ravel()


class TripletBuilder:
    """Growable COO accumulator compacted to CSR on demand"""

    def __init__(self):
        self._rows: List[np.ndarray] = []
        self._cols: List[np.ndarray] = []
        self._vals: List[np.ndarray] = []

    def add(self, rows, cols, vals):
        self._rows.append(np.asarray(rows, dtype=int).ravel())
        self._cols.append(np.asarray(cols, dtype=int).ravel())
        self._vals.append(np.asarray(vals, dtype=float).ravel())

    def add_dense(self, row0: int, col0: int, block: np.ndarray):
        """Add a dense block with its top-left corner at (row0, col0)"""
        block = np.asarray(block, dtype=float)
        r, c = np.nonzero(block)
        self.add(r + row0, c + col0, block[r, c])

    def tocsr(self, shape: Tuple[int, int]) -> sp.csr_matrix:
        if not self._rows:
            return sp.csr_matrix(shape)
        return sp.csr_matrix((np.concatenate(self._vals),
                              (np.concatenate(self._rows), np.concatenate(self._cols))),
                             shape=shape)


@dataclass
class BuildResult:
    """Output of the system assembler"""
    system: LSSystem
    empty_epochs: np.ndarray
    valid_epochs: np.ndarray
    pivot_track: np.ndarray
    sat_pr_track: np.ndarray
    sat_ph_track: np.ndarray
    n_sat: int = 0
    reasons: dict = field(default_factory=dict)

    @property
    def n_epoch(self) -> int:
        """Number of epochs that entered the system"""
        return self.valid_epochs.size


def count_full_slips(valid_epochs: np.ndarray) -> np.ndarray:
    """Number of empty epochs preceding each valid epoch (0 for the first one)"""
    gaps = np.zeros(valid_epochs.size, dtype=int)
    if valid_epochs.size > 1:
        gaps[1:] = np.diff(valid_epochs) - 1
    return gaps


def track_arcs(sat_ph_track: np.ndarray,
               gaps: np.ndarray,
               lli: Optional[np.ndarray] = None,
               full_slip_split: Optional[int] = None) -> Tuple[np.ndarray, np.ndarray]:
    """
    Assign phase arcs to the tracked satellites

    Parameters
    ----------
    sat_ph_track : np.ndarray
        (n_sat, n_valid) tri-state phase tracking of the valid epochs
    gaps : np.ndarray
        Empty epochs preceding each valid epoch
    lli : np.ndarray, optional
        (n_sat, n_valid) loss of lock flags of the valid epochs
    full_slip_split : int, optional
        Gaps at least this long close every open arc; None or 0 disables

    Returns
    -------
    arc_of : np.ndarray
        (n_sat, n_valid) column index of the open arc, -1 where not tracked
    amb_sat : np.ndarray
        Satellite of each column; the first arc of every satellite gets its
        column in satellite order, later arcs are appended as they open
    """
    n_sat, n_valid = sat_ph_track.shape
    active = sat_ph_track != SatelliteState.ABSENT
    segment_of = -np.ones((n_sat, n_valid), dtype=int)
    segment_sat: List[int] = []
    current = -np.ones(n_sat, dtype=int)

    for k in range(n_valid):
        full_slip = bool(full_slip_split) and k > 0 and gaps[k] >= full_slip_split
        if full_slip:
            current[:] = -1
        current[~active[:, k]] = -1
        if lli is not None:
            current[active[:, k] & (lli[:, k] > 0)] = -1
        for sat in np.flatnonzero(active[:, k] & (current < 0)):
            current[sat] = len(segment_sat)
            segment_sat.append(int(sat))
        segment_of[active[:, k], k] = current[active[:, k]]

    segment_sat = np.asarray(segment_sat, dtype=int)
    first = np.zeros(segment_sat.size, dtype=bool)
    _, first_idx = np.unique(segment_sat, return_index=True)
    first[first_idx] = True
    order = np.concatenate([first_idx[np.argsort(segment_sat[first_idx], kind='stable')],
                            np.flatnonzero(~first)])
    column_of_segment = np.empty(segment_sat.size, dtype=int)
    column_of_segment[order] = np.arange(segment_sat.size)

    arc_of = np.where(segment_of >= 0, column_of_segment[np.maximum(segment_of, 0)], -1)
    return arc_of, segment_sat[order]


def build_system(obs: ObservationSet,
                 ephemeris: EphemerisProvider,
                 geometry: GeometryService,
                 config: Optional[BlockConfig] = None,
                 pcv: Optional[Callable] = None) -> BuildResult:
    """
    Assemble the batch double-difference system of all epochs

    Parameters
    ----------
    obs : ObservationSet
        Two-receiver observations (validated on construction)
    ephemeris : EphemerisProvider
        Satellite position service
    geometry : GeometryService
        Elevation / range / atmosphere service
    config : BlockConfig, optional
        Processing parameters
    pcv : callable, optional
        Antenna phase-centre correction, see :func:`build_epoch`

    Returns
    -------
    BuildResult
        System, empty epochs and tracking tables; an empty system when no
        epoch could be used
    """
    config = config or BlockConfig()
    obs.validate()
    mode = config.mode
    weighting = ElevationWeighting(config.weighting_model)
    n_sat = obs.n_sat

    pos_builder = TripletBuilder()
    q_builder = TripletBuilder()
    y0_parts, b_parts, track_parts = [], [], []
    empty_epochs, valid_epochs, pivots, reasons = [], [], [], {}
    pr_cols, ph_cols = [], []
    n_obs = 0

    for epoch in range(obs.n_epoch):
        dd = build_epoch(epoch, obs, ephemeris, geometry, config, weighting, pcv)
        if dd.is_empty:
            empty_epochs.append(epoch)
            reasons[epoch] = dd.reason
            continue

        n = dd.n_rows
        pos_builder.add_dense(n_obs, 0, dd.A)
        q_builder.add_dense(n_obs, n_obs, dd.Q)
        y0_parts.append(dd.y0)
        b_parts.append(dd.b)
        track_parts.append(np.column_stack([np.full(n, epoch), dd.row_sats, dd.obs_class]))
        n_obs += n

        state = np.zeros(n_sat, dtype=np.int8)
        state[dd.sats] = SatelliteState.ACTIVE
        state[dd.pivot] = SatelliteState.PIVOT
        pr_cols.append(state if mode.uses_code else np.zeros(n_sat, dtype=np.int8))
        ph_cols.append(state if mode.uses_phase else np.zeros(n_sat, dtype=np.int8))
        valid_epochs.append(epoch)
        pivots.append(dd.pivot)

    empty_epochs = np.asarray(empty_epochs, dtype=int)
    valid_epochs = np.asarray(valid_epochs, dtype=int)
    if valid_epochs.size == 0:
        logger.warning(f"No usable epoch among {obs.n_epoch}: the system is empty")
        return BuildResult(system=LSSystem.empty(), empty_epochs=empty_epochs,
                           valid_epochs=valid_epochs, pivot_track=np.zeros(0, dtype=int),
                           sat_pr_track=np.zeros((n_sat, 0), dtype=np.int8),
                           sat_ph_track=np.zeros((n_sat, 0), dtype=np.int8),
                           n_sat=n_sat, reasons=reasons)

    sat_pr_track = np.column_stack(pr_cols)
    sat_ph_track = np.column_stack(ph_cols)
    pivot_track = np.asarray(pivots, dtype=int)
    obs_track = np.vstack(track_parts).astype(int)

    # Ambiguity columns
    amb_sat = np.zeros(0, dtype=int)
    amb_builder = TripletBuilder()
    if mode.uses_phase:
        lli = obs.lli[:, valid_epochs]
        arc_of, amb_sat = track_arcs(sat_ph_track, count_full_slips(valid_epochs), lli,
                                     config.full_slip_split)
        k_of_epoch = np.full(obs.n_epoch, -1, dtype=int)
        k_of_epoch[valid_epochs] = np.arange(valid_epochs.size)

        ph_rows = np.flatnonzero(obs_track[:, 2] == ObservationClass.PHASE.value)
        k = k_of_epoch[obs_track[ph_rows, 0]]
        sat = obs_track[ph_rows, 1]
        piv = pivot_track[k]
        col = arc_of[sat, k]
        piv_col = arc_of[piv, k]
        n_pc = 3
        amb_builder.add(ph_rows, col + n_pc, -obs.wavelength[sat])
        amb_builder.add(ph_rows, piv_col + n_pc, obs.wavelength[piv])

    n_cols = 3 + amb_sat.size
    A = pos_builder.tocsr((n_obs, n_cols)) + amb_builder.tocsr((n_obs, n_cols))
    Q = q_builder.tocsr((n_obs, n_obs))

    system = LSSystem(A=sp.csr_matrix(A), y0=np.concatenate(y0_parts), b=np.concatenate(b_parts),
                      Q=Q, obs_track=obs_track, amb_sat=amb_sat,
                      arc_id=np.arange(amb_sat.size), n_pos=1)
    logger.info(f"Built system: {valid_epochs.size}/{obs.n_epoch} epochs, "
                f"{system.n_obs} observations, {system.n_amb} ambiguity arcs")
    return BuildResult(system=system, empty_epochs=empty_epochs, valid_epochs=valid_epochs,
                       pivot_track=pivot_track, sat_pr_track=sat_pr_track,
                       sat_ph_track=sat_ph_track, n_sat=n_sat, reasons=reasons)


def concatenate_systems(systems: Sequence[LSSystem]) -> LSSystem:
    """Stack systems sharing the position columns, ambiguity columns block-diagonal"""
    systems = [s for s in systems if s.n_obs > 0 or s.n_amb > 0]
    if not systems:
        return LSSystem.empty()
    n_pos = systems[0].n_pos
    n_pc = 3 * n_pos
    n_obs = sum(s.n_obs for s in systems)
    n_amb = sum(s.n_amb for s in systems)

    a_builder = TripletBuilder()
    q_builder = TripletBuilder()
    row0, amb0 = 0, 0
    for s in systems:
        coo = s.A.tocoo()
        is_pos = coo.col < n_pc
        cols = np.where(is_pos, coo.col, coo.col + amb0)
        a_builder.add(coo.row + row0, cols, coo.data)
        q = s.Q.tocoo()
        q_builder.add(q.row + row0, q.col + row0, q.data)
        row0 += s.n_obs
        amb0 += s.n_amb

    return LSSystem(A=a_builder.tocsr((n_obs, n_pc + n_amb)),
                    y0=np.concatenate([s.y0 for s in systems]),
                    b=np.concatenate([s.b for s in systems]),
                    Q=q_builder.tocsr((n_obs, n_obs)),
                    obs_track=np.vstack([s.obs_track for s in systems]),
                    amb_sat=np.concatenate([s.amb_sat for s in systems]),
                    arc_id=np.concatenate([s.arc_id for s in systems]),
                    n_pos=n_pos)
