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

"""Core module: constants, observation containers, weighting and configuration.

- **Constants**: physical and GNSS constants (speed of light, carrier
  wavelengths, WGS84 ellipsoid)
- **Data Structures**: the two-receiver ``ObservationSet`` and the enums
  tagging rows, satellites and solutions
- **Statistics**: elevation/SNR weighting and the double-difference
  cofactor model
- **Configuration**: the immutable ``BlockConfig``

Example Usage:
    >>> from pyblock.core import BlockConfig
    >>> config = BlockConfig(min_arc=20, full_slip_split=5)
    >>> config.replace(outlier_rejection=False).outlier_rejection
    False
"""

from .constants import *
from .data_structures import *
from .stats import THRESAR_RATIO, ElevationWeighting, WeightingModel, cofactor_matrix
from .config import DEFAULT_BLOCK_CONFIG, BlockConfig
