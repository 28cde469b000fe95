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

"""Tropospheric delay models for GNSS.

This module implements tropospheric delay models to correct for the
signal delay caused by the neutral atmosphere (troposphere).
"""

import numpy as np

MIN_TROPO_ELEVATION = 5.0  # degrees, below this the delay is set to 0


def saastamoinen_model(elevation_deg, altitude_m=0.0, latitude_deg=45.0):
    """Saastamoinen tropospheric delay model.

    Parameters
    ----------
    elevation_deg : float or array_like
        Satellite elevation angle in degrees
    altitude_m : float, optional
        Receiver altitude in meters (default: 0)
    latitude_deg : float, optional
        Receiver latitude in degrees (default: 45)

    Returns
    -------
    np.ndarray
        Slant tropospheric delay in meters, 0 for elevations below 5 degrees

    References
    ----------
    Saastamoinen, J. (1972), "Atmospheric correction for the troposphere
    and stratosphere in radio ranging of satellites"
    """
    elevation_deg = np.atleast_1d(np.asarray(elevation_deg, dtype=float))
    lat_rad = np.radians(latitude_deg)
    # The standard atmosphere is not defined below sea level / in the stratosphere
    altitude_m = float(np.clip(altitude_m, 0.0, 10000.0))

    # Standard atmosphere parameters at sea level
    P0 = 1013.25  # Pressure in mbar
    T0 = 288.15   # Temperature in Kelvin
    e0 = 11.691   # Water vapor pressure in mbar (50% humidity)

    P = P0 * (1 - 0.0000226 * altitude_m) ** 5.225
    T = T0 - 0.0065 * altitude_m
    e = e0 * (1 - 0.0000226 * altitude_m) ** 5.225

    denom = 1 - 0.00266 * np.cos(2 * lat_rad) - 0.00028 * altitude_m / 1000
    zhd = 0.0022768 * P / denom
    zwd = 0.0022768 * (1255 / T + 0.05) * e / denom

    visible = elevation_deg >= MIN_TROPO_ELEVATION
    mapping = np.zeros_like(elevation_deg)
    mapping[visible] = 1.0 / np.sin(np.radians(elevation_deg[visible]))

    return (zhd + zwd) * mapping


def troposphere_correction(elevation_deg, pos_llh, model='saastamoinen'):
    """Compute tropospheric delay correction.

    Parameters
    ----------
    elevation_deg : float or array_like
        Satellite elevation angle in degrees
    pos_llh : array_like
        Position in lat/lon/height (radians, radians, meters)
    model : str, optional
        Troposphere model to use. Currently only 'saastamoinen' is supported.

    Returns
    -------
    np.ndarray
        Tropospheric delay in meters
    """
    if model == 'saastamoinen':
        return saastamoinen_model(elevation_deg, pos_llh[2], np.degrees(pos_llh[0]))
    raise ValueError(f"Unknown troposphere model: {model}")
