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

"""GNSS services consumed by the double-difference builder.

Key Components:
- Satellite position providers (``EphemerisProvider`` protocol and the
  interpolating ``TabulatedEphemeris``)
- Receiver-satellite geometry with tropospheric delays
- Synthetic two-receiver scenarios with known truth

Examples:
    >>> from pyblock.gnss import LocalGeometry, make_scenario
    >>> sc = make_scenario(n_epoch=30, n_sat=6)
    >>> geo = LocalGeometry(troposphere=False)
"""

from .ephemeris import EphemerisProvider, TabulatedEphemeris
from .geometry import GeometryService, LocalGeometry, SatelliteGeometry
from .synthetic import Scenario, make_scenario
from .troposphere import saastamoinen_model, troposphere_correction

__all__ = [
    'EphemerisProvider',
    'TabulatedEphemeris',
    'GeometryService',
    'LocalGeometry',
    'SatelliteGeometry',
    'Scenario',
    'make_scenario',
    'saastamoinen_model',
    'troposphere_correction',
]
