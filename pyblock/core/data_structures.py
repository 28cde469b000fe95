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
Data Structures for Batch Baseline Estimation
=============================================

Input observation container and the enumerations shared by the
double-difference system builder and the solvers.
"""

from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Optional

import numpy as np

from .constants import WAVELENGTH_L1


class ObservationClass(IntEnum):
    """Class of a system row (stored in the third column of obs_track)"""
    CODE = -1
    AMBIGUITY = 0    # pseudo-observation of a fixed ambiguity
    PHASE = 1


class ObservationMode(Enum):
    """Which observables enter the system"""
    CODE = "code"
    PHASE = "phase"
    CODE_PHASE = "code_phase"

    @property
    def uses_code(self) -> bool:
        return self in (ObservationMode.CODE, ObservationMode.CODE_PHASE)

    @property
    def uses_phase(self) -> bool:
        return self in (ObservationMode.PHASE, ObservationMode.CODE_PHASE)


class SatelliteState(IntEnum):
    """Per-epoch tracking state of a satellite"""
    ABSENT = 0
    ACTIVE = 1
    PIVOT = -1


class SolutionStatus(IntEnum):
    """Fix status flag of a solution"""
    FLOAT = 0
    FIXED = 1
    FIXED_HIGH_RATE = 2


def _as_matrix(name: str, value, shape) -> np.ndarray:
    if value is None:
        return np.zeros(shape)
    arr = np.asarray(value, dtype=float)
    if arr.shape != shape:
        raise ValueError(f"{name} has shape {arr.shape}, expected {shape}")
    return arr


@dataclass
class ObservationSet:
    """Raw two-receiver observations for a batch of epochs

    Arrays are laid out satellite x epoch. A zero or NaN entry means the
    observation is missing. Phases are in cycles, codes in meters.

    Attributes
    ----------
    time : np.ndarray
        Epoch times in seconds (n_epoch,), strictly increasing
    pos_r : np.ndarray
        Approximate rover ECEF position (3,)
    pos_m : np.ndarray
        Master ECEF position, (3,) or (3, n_epoch)
    pr_r, pr_m : np.ndarray
        Rover / master pseudoranges
    ph_r, ph_m : np.ndarray
        Rover / master carrier phases
    snr_r, snr_m : np.ndarray, optional
        Signal to noise ratios (dB-Hz), zeros when unknown (NaN is read as zero)
    wavelength : np.ndarray
        Carrier wavelength per satellite (n_sat,) or a scalar
    lli : np.ndarray, optional
        Loss of lock indicators, any positive value starts a new arc (NaN reads as 0)
    prns : np.ndarray, optional
        Satellite labels used for reporting, defaults to 1..n_sat
    """
    time: np.ndarray
    pos_r: np.ndarray
    pos_m: np.ndarray
    pr_r: np.ndarray
    pr_m: np.ndarray
    ph_r: np.ndarray
    ph_m: np.ndarray
    snr_r: Optional[np.ndarray] = None
    snr_m: Optional[np.ndarray] = None
    wavelength: np.ndarray = field(default_factory=lambda: np.array(WAVELENGTH_L1))
    lli: Optional[np.ndarray] = None
    prns: Optional[np.ndarray] = None

    def __post_init__(self):
        self.validate()

    @property
    def n_sat(self) -> int:
        return self.pr_r.shape[0]

    @property
    def n_epoch(self) -> int:
        return self.time.shape[0]

    def validate(self):
        """Normalize arrays and check their sizes

        Raises
        ------
        ValueError
            If there are no epochs or any array size does not match
        """
        self.time = np.atleast_1d(np.asarray(self.time, dtype=float))
        if self.time.ndim != 1 or self.time.size == 0:
            raise ValueError("Observation set must contain at least one epoch")
        if np.any(np.diff(self.time) <= 0):
            raise ValueError("Epoch times must be strictly increasing")

        pr_r = np.asarray(self.pr_r, dtype=float)
        if pr_r.ndim != 2:
            raise ValueError("pr_r must be a (n_sat, n_epoch) array")
        shape = (pr_r.shape[0], self.time.size)
        self.pr_r = _as_matrix("pr_r", pr_r, shape)
        self.pr_m = _as_matrix("pr_m", self.pr_m, shape)
        self.ph_r = _as_matrix("ph_r", self.ph_r, shape)
        self.ph_m = _as_matrix("ph_m", self.ph_m, shape)
        self.snr_r = np.nan_to_num(_as_matrix("snr_r", self.snr_r, shape), nan=0.0)
        self.snr_m = np.nan_to_num(_as_matrix("snr_m", self.snr_m, shape), nan=0.0)
        self.lli = np.nan_to_num(_as_matrix("lli", self.lli, shape), nan=0.0).astype(int)

        self.pos_r = np.asarray(self.pos_r, dtype=float).reshape(-1)
        if self.pos_r.size != 3:
            raise ValueError("pos_r must hold 3 ECEF coordinates")
        pos_m = np.asarray(self.pos_m, dtype=float)
        if pos_m.shape == (3,):
            pos_m = np.repeat(pos_m[:, None], self.time.size, axis=1)
        if pos_m.shape != (3, self.time.size):
            raise ValueError(f"pos_m has shape {pos_m.shape}, expected (3,) or (3, {self.time.size})")
        self.pos_m = pos_m

        wavelength = np.asarray(self.wavelength, dtype=float)
        if wavelength.ndim == 0:
            wavelength = np.full(shape[0], float(wavelength))
        if wavelength.shape != (shape[0],):
            raise ValueError(f"wavelength must be a scalar or have {shape[0]} entries")
        if np.any(wavelength <= 0):
            raise ValueError("wavelengths must be positive")
        self.wavelength = wavelength

        if self.prns is None:
            self.prns = np.arange(1, shape[0] + 1)
        self.prns = np.asarray(self.prns)
        if self.prns.shape != (shape[0],):
            raise ValueError(f"prns must have {shape[0]} entries")


def valid_observation(values: np.ndarray) -> np.ndarray:
    """Mask of usable observations (non-zero and finite)"""
    return np.isfinite(values) & (values != 0)
