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
pyblock - Batch Double-Difference GNSS Baseline Estimation

Estimates the static position of a rover receiver relative to a master
receiver from a batch of code and carrier phase observations: sparse
double-difference least squares, robust float refinement, integer ambiguity
fixing and optional high-rate positions.
"""

__version__ = "1.0.0"
__author__ = "PyBlock Development Team"
__title__ = "pyblock"
__description__ = "Batch double-difference GNSS baseline estimation"

from . import logger
from .core import *
from .coordinate import *
from .rtk import EstimationSession
