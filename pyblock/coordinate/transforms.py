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

"""Cartesian / geodetic / local ENU conversions used for reporting and geometry"""

import numpy as np

from ..core.constants import FE_WGS84, RE_WGS84

_E2 = FE_WGS84 * (2.0 - FE_WGS84)


def ecef2llh(xyz: np.ndarray) -> np.ndarray:
    """Convert ECEF coordinates to geodetic coordinates

    Parameters
    ----------
    xyz : np.ndarray
        ECEF coordinates [x, y, z] in meters

    Returns
    -------
    np.ndarray
        Geodetic coordinates [lat, lon, height] (radians, radians, meters)
    """
    x, y, z = xyz[0], xyz[1], xyz[2]

    lon = np.arctan2(y, x)

    p = np.sqrt(x**2 + y**2)
    lat = np.arctan2(z, p * (1.0 - FE_WGS84))
    h = 0.0
    for _ in range(5):  # Usually converges in 3-4 iterations
        N = RE_WGS84 / np.sqrt(1.0 - _E2 * np.sin(lat)**2)
        h = p / np.cos(lat) - N
        lat = np.arctan2(z, p * (1.0 - _E2 * N / (N + h)))

    return np.array([lat, lon, h])


def llh2ecef(llh: np.ndarray) -> np.ndarray:
    """Convert geodetic coordinates [lat, lon, height] (rad, rad, m) to ECEF"""
    lat, lon, h = llh[0], llh[1], llh[2]

    sin_lat = np.sin(lat)
    cos_lat = np.cos(lat)
    N = RE_WGS84 / np.sqrt(1.0 - _E2 * sin_lat**2)

    x = (N + h) * cos_lat * np.cos(lon)
    y = (N + h) * cos_lat * np.sin(lon)
    z = (N * (1.0 - _E2) + h) * sin_lat

    return np.array([x, y, z])


def rotation_ecef2enu(llh: np.ndarray) -> np.ndarray:
    """Rotation matrix R with v_enu = R @ v_ecef at the given geodetic location"""
    lat, lon = llh[0], llh[1]
    sin_lat = np.sin(lat)
    cos_lat = np.cos(lat)
    sin_lon = np.sin(lon)
    cos_lon = np.cos(lon)

    return np.array([
        [-sin_lon, cos_lon, 0],
        [-sin_lat * cos_lon, -sin_lat * sin_lon, cos_lat],
        [cos_lat * cos_lon, cos_lat * sin_lon, sin_lat]
    ])


def ecef2enu(xyz: np.ndarray, org_llh: np.ndarray) -> np.ndarray:
    """Convert ECEF to local ENU coordinates

    Parameters
    ----------
    xyz : np.ndarray
        ECEF coordinates, either one point (3,) or several points (n, 3)
    org_llh : np.ndarray
        Origin geodetic coordinates [lat, lon, height] (rad, rad, m)

    Returns
    -------
    np.ndarray
        ENU coordinates with the same shape as ``xyz``
    """
    dx = np.asarray(xyz, dtype=float) - llh2ecef(org_llh)
    R = rotation_ecef2enu(org_llh)
    return dx @ R.T


def enu2ecef(enu: np.ndarray, org_llh: np.ndarray) -> np.ndarray:
    """Convert local ENU coordinates, (3,) or (n, 3), back to ECEF"""
    R = rotation_ecef2enu(org_llh)
    return llh2ecef(org_llh) + np.asarray(enu, dtype=float) @ R


def covecef2enu(llh: np.ndarray, P_ecef: np.ndarray) -> np.ndarray:
    """Rotate a 3x3 ECEF covariance into the local ENU frame: R P R^T"""
    R = rotation_ecef2enu(llh)
    return R @ P_ecef @ R.T


def ecef2aer(ecef_t: np.ndarray, ecef_r: np.ndarray) -> np.ndarray:
    """Azimuth, elevation (radians) and range (m) of targets seen from a receiver

    Parameters
    ----------
    ecef_t : np.ndarray
        Target ECEF coordinates, (3,) or (n, 3)
    ecef_r : np.ndarray
        Receiver ECEF coordinates (3,)

    Returns
    -------
    np.ndarray
        [azimuth, elevation, range] with shape (3,) or (n, 3); azimuth is
        measured clockwise from north in [0, 2*pi)
    """
    enu = ecef2enu(ecef_t, ecef2llh(ecef_r))
    de, dn, du = enu[..., 0], enu[..., 1], enu[..., 2]

    r = np.hypot(de, dn)
    az = np.mod(np.arctan2(de, dn), 2 * np.pi)
    el = np.arctan2(du, r)
    rng = np.hypot(r, du)

    return np.stack([az, el, rng], axis=-1)
