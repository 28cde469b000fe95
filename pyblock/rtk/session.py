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
Batch Estimation Session
========================

Sequences the build, float, fix and high-rate stages of a static baseline
batch and exposes the results as positions, local coordinates and pandas
diagnostic tables.

Example Usage:
    >>> from pyblock.gnss import LocalGeometry, make_scenario
    >>> from pyblock.rtk import EstimationSession
    >>> sc = make_scenario(n_epoch=60, phase_noise=0.002)
    >>> session = EstimationSession()
    >>> session.build(sc.obs, sc.ephemeris, LocalGeometry(troposphere=False))
    >>> pos, cov = session.solve()
    >>> session.is_fixed
    1
"""

import logging
from typing import Callable, Optional, Tuple

import numpy as np
import pandas as pd

from ..coordinate.transforms import covecef2enu, ecef2enu, ecef2llh
from ..core.config import BlockConfig
from ..core.data_structures import ObservationSet, SolutionStatus
from ..gnss.ephemeris import EphemerisProvider
from ..gnss.geometry import GeometryService
from ..logger import log_marked
from .ambiguity_fix import FixOutcome, Fixed, fix_ambiguities
from .high_rate import HighRateSolution, mean_position, solve_high_rate
from .refiner import FloatSolution, refine_float
from .residuals import pivot_change_epochs
from .system import BuildResult, build_system

logger = logging.getLogger(__name__)


class EstimationSession:
    """
    Batch double-difference baseline estimation of one session

    Stages must run in order: :meth:`build`, :meth:`solve_float`, then
    optionally :meth:`solve_fix` and :meth:`solve_high_rate`. Calling a
    stage before its prerequisite raises ``RuntimeError``.

    Attributes
    ----------
    config : BlockConfig
        Processing parameters
    obs : ObservationSet
        Observations of the last build
    build_result : BuildResult
        Assembled system and tracking tables
    float_solution : FloatSolution
        Refined float solution
    fix : Fixed or Degraded
        Outcome of the integer fix
    high_rate : HighRateSolution
        Sub-interval positions
    """

    def __init__(self, config: Optional[BlockConfig] = None):
        self.config = config or BlockConfig()
        self.obs: Optional[ObservationSet] = None
        self.build_result: Optional[BuildResult] = None
        self.float_solution: Optional[FloatSolution] = None
        self.fix: Optional[FixOutcome] = None
        self.high_rate: Optional[HighRateSolution] = None

    # Stages

    def build(self,
              obs: ObservationSet,
              ephemeris: EphemerisProvider,
              geometry: GeometryService,
              pcv: Optional[Callable] = None) -> BuildResult:
        """Assemble the double-difference system, resetting any previous solution"""
        log_marked(logger, "Building the double-difference system")
        self.obs = obs
        self.build_result = build_system(obs, ephemeris, geometry, self.config, pcv)
        self.float_solution = None
        self.fix = None
        self.high_rate = None
        if self.build_result.empty_epochs.size:
            logger.info(f"{self.build_result.empty_epochs.size} epochs excluded from the system")
        return self.build_result

    def solve_float(self) -> FloatSolution:
        """
        Refined float solution of the built system

        Raises
        ------
        RuntimeError
            If :meth:`build` was not called
        ValueError
            If the built system is empty
        """
        if self.build_result is None:
            raise RuntimeError("build() must be called before solve_float()")
        br = self.build_result
        if br.system.is_empty:
            raise ValueError("The double-difference system is empty, nothing to solve")
        log_marked(logger, "Float solution")
        changes = pivot_change_epochs(br.valid_epochs, br.pivot_track)
        self.float_solution = refine_float(br.system, self.obs.pos_r, self.config,
                                           empty_epochs=br.empty_epochs,
                                           pivot_changes=changes,
                                           n_epoch=self.obs.n_epoch)
        self.fix = None
        self.high_rate = None
        return self.float_solution

    def solve_fix(self, solver=None) -> FixOutcome:
        """Fix the float ambiguities, see :func:`fix_ambiguities`"""
        if self.float_solution is None:
            raise RuntimeError("solve_float() must be called before solve_fix()")
        log_marked(logger, "Ambiguity fixing")
        self.fix = fix_ambiguities(self.float_solution, solver, self.config)
        self.high_rate = None
        return self.fix

    def solve_high_rate(self, s_rate: float, use_float: bool = False) -> HighRateSolution:
        """One position every ``s_rate`` seconds, conditioned on the fix when available"""
        if self.float_solution is None:
            raise RuntimeError("solve_float() must be called before solve_high_rate()")
        log_marked(logger, f"High rate solution @{s_rate} s")
        self.high_rate = solve_high_rate(self.float_solution, self.obs.time, self.fix,
                                         s_rate, use_float=use_float)
        return self.high_rate

    def solve(self, s_rate: Optional[float] = None) -> Tuple[np.ndarray, np.ndarray]:
        """
        Run every solving stage on the built system

        Parameters
        ----------
        s_rate : float, optional
            Sub-interval length of a high-rate solution, none when None

        Returns
        -------
        pos : np.ndarray
            Best rover position (3,)
        cov : np.ndarray
            Its covariance (3, 3)
        """
        self.solve_float()
        if self.config.fix_ambiguities:
            self.solve_fix()
        if s_rate is not None:
            self.solve_high_rate(s_rate)
        pos, cov = self.position()
        logger.info(f"Rover position [{pos[0]:.4f}, {pos[1]:.4f}, {pos[2]:.4f}] "
                    f"status {SolutionStatus(self.is_fixed).name}")
        return pos, cov

    # Results

    def _require_float(self) -> FloatSolution:
        if self.float_solution is None:
            raise RuntimeError("No float solution, call solve_float() first")
        return self.float_solution

    @property
    def empty_epochs(self) -> np.ndarray:
        if self.build_result is None:
            raise RuntimeError("build() must be called first")
        return self.build_result.empty_epochs

    @property
    def master_position(self) -> np.ndarray:
        if self.obs is None:
            raise RuntimeError("build() must be called first")
        return self.obs.pos_m[:, 0]

    @property
    def is_fixed(self) -> int:
        """Fix status of the best solution (see :class:`SolutionStatus`)"""
        if self.high_rate is not None:
            return self.high_rate.is_fixed
        if self.fix is not None:
            return int(self.fix.status)
        return int(SolutionStatus.FLOAT)

    def float_position(self) -> Tuple[np.ndarray, np.ndarray]:
        fs = self._require_float()
        return fs.pos[0].copy(), fs.pos_cov.copy()

    def fixed_position(self) -> Tuple[np.ndarray, np.ndarray]:
        """Position conditioned on the integer fix

        Raises
        ------
        RuntimeError
            If no successful fix is available
        """
        if not isinstance(self.fix, Fixed):
            raise RuntimeError("No fixed solution available")
        return self.fix.pos.copy(), self.fix.pos_cov.copy()

    def position(self) -> Tuple[np.ndarray, np.ndarray]:
        """Best position: high-rate mean, else fixed, else float"""
        if self.high_rate is not None and np.any(self.high_rate.valid):
            return mean_position(self.high_rate)
        if isinstance(self.fix, Fixed):
            return self.fixed_position()
        return self.float_position()

    def high_rate_positions(self) -> pd.DataFrame:
        """Sub-interval positions with their standard deviations, indexed by interval centre"""
        if self.high_rate is None:
            raise RuntimeError("solve_high_rate() must be called first")
        hr = self.high_rate
        std = np.sqrt(np.abs(np.diagonal(hr.pos_cov, axis1=1, axis2=2)))
        df = pd.DataFrame({
            't_start': hr.time_limits[:-1],
            't_end': hr.time_limits[1:],
            'x': hr.pos[:, 0], 'y': hr.pos[:, 1], 'z': hr.pos[:, 2],
            'std_x': std[:, 0], 'std_y': std[:, 1], 'std_z': std[:, 2],
            'valid': hr.valid,
        }, index=pd.Index(hr.time_centres, name='time'))
        return df

    def enu(self, pos: Optional[np.ndarray] = None) -> np.ndarray:
        """Local ENU coordinates of ``pos`` (best position by default) around the master"""
        if pos is None:
            pos, _ = self.position()
        return ecef2enu(np.asarray(pos, dtype=float), ecef2llh(self.master_position))

    def delta_enu(self, pos: Optional[np.ndarray] = None) -> np.ndarray:
        """ENU correction of ``pos`` with respect to the approximate rover position"""
        if pos is None:
            pos, _ = self.position()
        pos0 = self.obs.pos_r
        return ecef2enu(np.asarray(pos, dtype=float), ecef2llh(pos0))

    def enu_covariance(self, cov: Optional[np.ndarray] = None) -> np.ndarray:
        """Rotate a position covariance (best solution by default) into the local ENU frame"""
        if cov is None:
            _, cov = self.position()
        return covecef2enu(ecef2llh(self.master_position), cov)

    def phase_residuals_by_satellite(self) -> np.ndarray:
        """(n_epoch, n_sat) phase residuals (m), arcs of one satellite merged"""
        fs = self._require_float()
        res = fs.phase_residuals
        out = np.full((res.n_epoch, self.obs.n_sat), np.nan)
        for a in range(res.n_amb):
            ok = ~np.isnan(res.values[:, a])
            out[ok, res.amb_sat[a]] = res.values[ok, a]
        return out

    def phase_residual_table(self) -> pd.DataFrame:
        """Phase residuals as an epoch-time x satellite DataFrame"""
        return pd.DataFrame(self.phase_residuals_by_satellite(),
                            index=pd.Index(self.obs.time, name='time'),
                            columns=pd.Index(self.obs.prns, name='prn'))

    def excluded_epochs_table(self) -> pd.DataFrame:
        """Epochs left out of the system with the reason of their exclusion"""
        if self.build_result is None:
            raise RuntimeError("build() must be called first")
        reasons = self.build_result.reasons
        epochs = self.build_result.empty_epochs
        return pd.DataFrame({'epoch': epochs, 'reason': [reasons.get(int(e), "") for e in epochs]},
                            index=pd.Index(self.obs.time[epochs], name='time'))

    def tracking_table(self, phase: bool = True) -> pd.DataFrame:
        """
        Tri-state tracking of every satellite at every epoch

        Values are 1 (tracked), -1 (pivot) and 0 (absent or epoch excluded).

        Parameters
        ----------
        phase : bool
            Phase tracking when True, code tracking otherwise
        """
        if self.build_result is None:
            raise RuntimeError("build() must be called first")
        br = self.build_result
        table = np.zeros((self.obs.n_epoch, br.n_sat), dtype=np.int8)
        track = br.sat_ph_track if phase else br.sat_pr_track
        table[br.valid_epochs] = track.T
        return pd.DataFrame(table, index=pd.Index(self.obs.time, name='time'),
                            columns=pd.Index(self.obs.prns, name='prn'))
