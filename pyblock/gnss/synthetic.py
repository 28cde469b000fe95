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
Synthetic Two-Receiver Scenarios
================================

Generates code and carrier phase observations of a short static baseline
from slowly moving satellites. Used to validate the batch estimator against
a known truth (position and integer ambiguities).
"""

from dataclasses import dataclass
from typing import Dict, Iterable, Optional, Sequence, Tuple

import numpy as np

from ..coordinate.transforms import ecef2aer, ecef2llh, enu2ecef
from ..core.constants import WAVELENGTH_L1
from ..core.data_structures import ObservationSet
from .ephemeris import TabulatedEphemeris
from .troposphere import troposphere_correction

SLANT_RANGE = 2.2e7   # m, typical GPS receiver-satellite distance


@dataclass
class Scenario:
    """A generated observation set with its truth"""
    obs: ObservationSet
    ephemeris: TabulatedEphemeris
    rover: np.ndarray
    master: np.ndarray
    ambiguities: np.ndarray        # rover - master integer ambiguity per satellite
    sat_positions: np.ndarray      # (n_epoch, n_sat, 3)
    elevations: np.ndarray         # (n_epoch, n_sat) at the master, degrees


def _sky_tracks(rng, n_sat: int, n_epoch: int, interval: float) -> Tuple[np.ndarray, np.ndarray]:
    t = np.arange(n_epoch) * interval
    az0 = np.linspace(0.0, 360.0, n_sat, endpoint=False) + rng.uniform(0.0, 20.0)
    el0 = rng.uniform(30.0, 70.0, n_sat)
    el_rate = rng.choice([-1.0, 1.0], n_sat) * rng.uniform(0.004, 0.008, n_sat)
    az_rate = rng.uniform(0.004, 0.008, n_sat)
    az = np.radians(az0[None, :] + az_rate[None, :] * t[:, None])
    el = np.radians(np.clip(el0[None, :] + el_rate[None, :] * t[:, None], 15.0, 85.0))
    return az, el


def make_scenario(n_epoch: int = 60,
                  n_sat: int = 7,
                  interval: float = 30.0,
                  t0: float = 345600.0,
                  origin_llh_deg: Sequence[float] = (45.0, 9.0, 100.0),
                  baseline_enu: Sequence[float] = (120.0, -80.0, 5.0),
                  approx_error: Sequence[float] = (0.4, -0.3, 0.2),
                  code_noise: float = 0.0,
                  phase_noise: float = 0.0,
                  wavelength: float = WAVELENGTH_L1,
                  troposphere: bool = False,
                  snr: float = 45.0,
                  gaps: Iterable[Tuple[int, int, int]] = (),
                  empty_epochs: Iterable[int] = (),
                  slips: Optional[Dict[Tuple[int, int], int]] = None,
                  code_outliers: Optional[Dict[Tuple[int, int], float]] = None,
                  seed: int = 0) -> Scenario:
    """
    Build a synthetic static baseline scenario

    Parameters
    ----------
    n_epoch, n_sat : int
        Number of epochs and satellites
    interval : float
        Sampling interval (s)
    t0 : float
        Time of the first epoch (s)
    origin_llh_deg : sequence
        Master latitude, longitude (degrees) and height (m)
    baseline_enu : sequence
        Rover position relative to the master (m, local ENU)
    approx_error : sequence
        Error of the approximate rover position handed to the estimator (m, ECEF)
    code_noise, phase_noise : float
        Gaussian noise standard deviations (m)
    wavelength : float
        Carrier wavelength (m)
    troposphere : bool
        Add Saastamoinen slant delays to both receivers
    snr : float
        Constant SNR reported for every observation (dB-Hz)
    gaps : iterable of (sat, start, stop)
        Rover observations of ``sat`` removed for epochs start..stop-1
    empty_epochs : iterable of int
        Epochs where the rover has no observation at all
    slips : dict, optional
        {(sat, epoch): cycles} added to the rover phase from ``epoch`` on
    code_outliers : dict, optional
        {(sat, epoch): meters} added to single rover pseudoranges
    seed : int
        Random seed

    Returns
    -------
    Scenario
    """
    rng = np.random.default_rng(seed)
    origin = np.array([np.radians(origin_llh_deg[0]), np.radians(origin_llh_deg[1]),
                       origin_llh_deg[2]])
    master = enu2ecef(np.zeros(3), origin)
    rover = enu2ecef(np.asarray(baseline_enu, dtype=float), origin)

    az, el = _sky_tracks(rng, n_sat, n_epoch, interval)
    los_enu = SLANT_RANGE * np.stack([np.cos(el) * np.sin(az),
                                      np.cos(el) * np.cos(az),
                                      np.sin(el)], axis=-1)
    sat_pos = enu2ecef(los_enu.reshape(-1, 3), origin).reshape(n_epoch, n_sat, 3)

    range_r = np.linalg.norm(sat_pos - rover, axis=2).T   # (n_sat, n_epoch)
    range_m = np.linalg.norm(sat_pos - master, axis=2).T
    if troposphere:
        for rcv, rng_arr in ((rover, range_r), (master, range_m)):
            elev = np.degrees(ecef2aer(sat_pos.reshape(-1, 3), rcv)[:, 1]).reshape(n_epoch, n_sat)
            rng_arr += troposphere_correction(elev, ecef2llh(rcv)).reshape(n_epoch, n_sat).T

    n_r = rng.integers(-500000, 500000, n_sat)
    n_m = rng.integers(-500000, 500000, n_sat)

    shape = (n_sat, n_epoch)
    pr_r = range_r + code_noise * rng.standard_normal(shape)
    pr_m = range_m + code_noise * rng.standard_normal(shape)
    ph_r = range_r / wavelength + n_r[:, None] + phase_noise / wavelength * rng.standard_normal(shape)
    ph_m = range_m / wavelength + n_m[:, None] + phase_noise / wavelength * rng.standard_normal(shape)

    for (sat, epoch), cycles in (slips or {}).items():
        ph_r[sat, epoch:] += cycles
    for (sat, epoch), meters in (code_outliers or {}).items():
        pr_r[sat, epoch] += meters
    for sat, start, stop in gaps:
        pr_r[sat, start:stop] = 0.0
        ph_r[sat, start:stop] = 0.0
    for epoch in empty_epochs:
        pr_r[:, epoch] = 0.0
        ph_r[:, epoch] = 0.0

    snr_arr = np.full(shape, snr)
    time = t0 + np.arange(n_epoch) * interval
    obs = ObservationSet(time=time,
                         pos_r=rover + np.asarray(approx_error, dtype=float),
                         pos_m=master,
                         pr_r=pr_r, pr_m=pr_m, ph_r=ph_r, ph_m=ph_m,
                         snr_r=snr_arr, snr_m=snr_arr.copy(),
                         wavelength=wavelength)
    ephemeris = TabulatedEphemeris(time, sat_pos)
    return Scenario(obs=obs, ephemeris=ephemeris, rover=rover, master=master,
                    ambiguities=n_r - n_m, sat_positions=sat_pos,
                    elevations=np.degrees(el))
