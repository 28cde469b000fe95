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

"""Satellite position providers consumed by the epoch builder"""

from typing import Optional, Protocol, Tuple

import numpy as np


class EphemerisProvider(Protocol):
    """Orbit / clock service"""

    def satellite_position(self, time: float, sat: int) -> Tuple[np.ndarray, float, bool]:
        """Return (ECEF position (3,), clock bias (s), validity flag)"""
        ...


class TabulatedEphemeris:
    """Satellite positions tabulated at fixed times, linearly interpolated

    Parameters
    ----------
    times : np.ndarray
        Tabulation times (k,), increasing
    positions : np.ndarray
        ECEF positions (k, n_sat, 3); NaN marks an unavailable satellite
    clocks : np.ndarray, optional
        Clock biases (k, n_sat) in seconds
    max_gap : float, optional
        Requests farther than this from the nearest tabulation time are
        invalid (no extrapolation either way)
    """

    def __init__(self, times: np.ndarray, positions: np.ndarray,
                 clocks: Optional[np.ndarray] = None,
                 max_gap: Optional[float] = None):
        self.times = np.asarray(times, dtype=float)
        self.positions = np.asarray(positions, dtype=float)
        if self.positions.ndim != 3 or self.positions.shape[0] != self.times.size \
                or self.positions.shape[2] != 3:
            raise ValueError("positions must have shape (n_times, n_sat, 3)")
        if clocks is None:
            clocks = np.zeros(self.positions.shape[:2])
        self.clocks = np.asarray(clocks, dtype=float)
        if self.clocks.shape != self.positions.shape[:2]:
            raise ValueError("clocks must have shape (n_times, n_sat)")
        self.max_gap = max_gap

    @property
    def n_sat(self) -> int:
        return self.positions.shape[1]

    def satellite_position(self, time: float, sat: int) -> Tuple[np.ndarray, float, bool]:
        invalid = (np.full(3, np.nan), 0.0, False)
        if not 0 <= sat < self.n_sat:
            return invalid
        if time < self.times[0] or time > self.times[-1]:
            return invalid
        if self.max_gap is not None and np.min(np.abs(self.times - time)) > self.max_gap:
            return invalid

        track = self.positions[:, sat, :]
        pos = np.array([np.interp(time, self.times, track[:, i]) for i in range(3)])
        if not np.all(np.isfinite(pos)):
            return invalid
        clk = float(np.interp(time, self.times, self.clocks[:, sat]))
        return pos, clk, True
