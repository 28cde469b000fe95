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

"""Receiver-satellite geometry used to build double-difference rows"""

from dataclasses import dataclass
from typing import Callable, Optional, Protocol

import numpy as np

from ..coordinate.transforms import ecef2aer, ecef2llh
from .troposphere import troposphere_correction


@dataclass
class SatelliteGeometry:
    """Per-satellite geometry seen from one receiver

    All arrays have one entry per satellite. Angles are in degrees,
    distances and delays in meters.
    """
    elevation: np.ndarray
    azimuth: np.ndarray
    distance: np.ndarray
    troposphere: np.ndarray
    ionosphere: np.ndarray

    def line_of_sight(self, rcv_pos: np.ndarray, sat_pos: np.ndarray) -> np.ndarray:
        """Unit vectors from the satellites to the receiver (n x 3)"""
        return (rcv_pos[None, :] - sat_pos) / self.distance[:, None]


class GeometryService(Protocol):
    """Single-epoch geometry provider"""

    def compute(self, rcv_pos: np.ndarray, sat_pos: np.ndarray) -> SatelliteGeometry:
        ...


class LocalGeometry:
    """Geometry from ECEF positions with optional atmospheric models

    Parameters
    ----------
    troposphere : bool
        Apply the Saastamoinen model
    ionosphere : callable, optional
        ``ionosphere(elevation_deg, azimuth_deg, rcv_llh) -> delay (m)``;
        no ionospheric delay when None
    """

    def __init__(self, troposphere: bool = True,
                 ionosphere: Optional[Callable] = None):
        self.troposphere = troposphere
        self.ionosphere = ionosphere

    def compute(self, rcv_pos: np.ndarray, sat_pos: np.ndarray) -> SatelliteGeometry:
        rcv_pos = np.asarray(rcv_pos, dtype=float)
        sat_pos = np.atleast_2d(np.asarray(sat_pos, dtype=float))
        aer = ecef2aer(sat_pos, rcv_pos)
        elevation = np.degrees(aer[:, 1])
        azimuth = np.degrees(aer[:, 0])
        distance = np.linalg.norm(sat_pos - rcv_pos[None, :], axis=1)

        llh = ecef2llh(rcv_pos)
        if self.troposphere:
            tropo = troposphere_correction(elevation, llh)
        else:
            tropo = np.zeros_like(distance)
        if self.ionosphere is not None:
            iono = np.asarray(self.ionosphere(elevation, azimuth, llh), dtype=float)
        else:
            iono = np.zeros_like(distance)

        return SatelliteGeometry(elevation=elevation, azimuth=azimuth, distance=distance,
                                 troposphere=tropo, ionosphere=iono)
