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

"""Batch double-difference processing: system assembly, float refinement,
integer ambiguity fixing and high-rate positions"""

from .ambiguity_fix import (Degraded, FixOutcome, Fixed, add_fix_pseudo_observations,
                            apply_fix, fix_ambiguities, sd_to_dd_matrix)
from .high_rate import HighRateSolution, mean_position, solve_high_rate, time_limits
from .least_squares import LSResult, solve_ls
from .mlambda import AmbiguitySearchError, IntegerAmbiguitySolver, IntegerCandidate, mlambda
from .refiner import FloatSolution, refine_float
from .session import EstimationSession
from .system import BuildResult, LSSystem, build_system

__all__ = [
    'EstimationSession',
    'LSSystem',
    'BuildResult',
    'build_system',
    'LSResult',
    'solve_ls',
    'FloatSolution',
    'refine_float',
    'IntegerAmbiguitySolver',
    'IntegerCandidate',
    'AmbiguitySearchError',
    'mlambda',
    'Fixed',
    'Degraded',
    'FixOutcome',
    'fix_ambiguities',
    'apply_fix',
    'sd_to_dd_matrix',
    'add_fix_pseudo_observations',
    'HighRateSolution',
    'solve_high_rate',
    'mean_position',
    'time_limits',
]
