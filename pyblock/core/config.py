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
Processing Parameters
=====================

Immutable configuration of the batch double-difference estimator. The
defaults follow the usual single-frequency static survey settings; the
dictionaries below mirror the preset style of :mod:`pyblock.core.stats`.
"""

from dataclasses import asdict, dataclass, fields, replace
from typing import Any, Dict, Optional

from .data_structures import ObservationMode
from .stats import THRESAR_RATIO, WeightingModel

DEFAULT_BLOCK_CONFIG = {
    # Observables and epoch selection
    'observation_mode': ObservationMode.PHASE.value,
    'elevation_cutoff': 10.0,       # degrees
    'snr_threshold': 0.0,           # dB-Hz, 0 disables the check
    'min_satellites': 4,
    'max_condition_number': 1e6,
    'max_prefit_residual': 30.0,    # m, DD code against epoch median

    # Noise model
    'code_sigma': 0.3,              # m
    'phase_sigma': 0.003,           # m
    'weighting': WeightingModel.SINE.value,

    # Arc bookkeeping
    'min_arc': 10,                  # epochs
    'full_slip_split': 1,           # empty epochs that split blocks, 0 disables

    # Robust refinement
    'max_code_residual': 10.0,      # m, outlier threshold floor for code
    'max_phase_residual': 0.2,      # m, outlier threshold floor for phase
    'outlier_percentile': 99.5,
    'outlier_inflation': 1.2,
    'clean_sigma_factor': 9.0,
    'outlier_rejection': True,
    'cleaning_loops': 4,
    'pre_cleaning': False,
    'force_stabilization': True,
    'unstable_amb_variance': 10.0,  # cycles^2, per block
    'instability_sigma_factor': 10.0,
    'global_unstable_amb_variance': 1.0,
    'max_median_phase_residual': 1.0,  # m
    'max_iterations': 50,

    # Ambiguity fixing
    'fix_ambiguities': True,
    'ratio_threshold': THRESAR_RATIO,
    'n_candidates': 2,
    'fix_reference_index': 0,
    'accept_unvalidated_fix': False,
    'pseudo_obs_variance': 1e-8,    # cycles^2
}


@dataclass(frozen=True)
class BlockConfig:
    """Configuration of a batch estimation session

    Instances are immutable; derive variants with :meth:`replace`.
    """
    observation_mode: str = DEFAULT_BLOCK_CONFIG['observation_mode']
    elevation_cutoff: float = DEFAULT_BLOCK_CONFIG['elevation_cutoff']
    snr_threshold: float = DEFAULT_BLOCK_CONFIG['snr_threshold']
    min_satellites: int = DEFAULT_BLOCK_CONFIG['min_satellites']
    max_condition_number: float = DEFAULT_BLOCK_CONFIG['max_condition_number']
    max_prefit_residual: float = DEFAULT_BLOCK_CONFIG['max_prefit_residual']
    code_sigma: float = DEFAULT_BLOCK_CONFIG['code_sigma']
    phase_sigma: float = DEFAULT_BLOCK_CONFIG['phase_sigma']
    weighting: str = DEFAULT_BLOCK_CONFIG['weighting']
    min_arc: int = DEFAULT_BLOCK_CONFIG['min_arc']
    full_slip_split: Optional[int] = DEFAULT_BLOCK_CONFIG['full_slip_split']
    max_code_residual: float = DEFAULT_BLOCK_CONFIG['max_code_residual']
    max_phase_residual: float = DEFAULT_BLOCK_CONFIG['max_phase_residual']
    outlier_percentile: float = DEFAULT_BLOCK_CONFIG['outlier_percentile']
    outlier_inflation: float = DEFAULT_BLOCK_CONFIG['outlier_inflation']
    clean_sigma_factor: float = DEFAULT_BLOCK_CONFIG['clean_sigma_factor']
    outlier_rejection: bool = DEFAULT_BLOCK_CONFIG['outlier_rejection']
    cleaning_loops: int = DEFAULT_BLOCK_CONFIG['cleaning_loops']
    pre_cleaning: bool = DEFAULT_BLOCK_CONFIG['pre_cleaning']
    force_stabilization: bool = DEFAULT_BLOCK_CONFIG['force_stabilization']
    unstable_amb_variance: float = DEFAULT_BLOCK_CONFIG['unstable_amb_variance']
    instability_sigma_factor: float = DEFAULT_BLOCK_CONFIG['instability_sigma_factor']
    global_unstable_amb_variance: float = DEFAULT_BLOCK_CONFIG['global_unstable_amb_variance']
    max_median_phase_residual: float = DEFAULT_BLOCK_CONFIG['max_median_phase_residual']
    max_iterations: int = DEFAULT_BLOCK_CONFIG['max_iterations']
    fix_ambiguities: bool = DEFAULT_BLOCK_CONFIG['fix_ambiguities']
    ratio_threshold: float = DEFAULT_BLOCK_CONFIG['ratio_threshold']
    n_candidates: int = DEFAULT_BLOCK_CONFIG['n_candidates']
    fix_reference_index: int = DEFAULT_BLOCK_CONFIG['fix_reference_index']
    accept_unvalidated_fix: bool = DEFAULT_BLOCK_CONFIG['accept_unvalidated_fix']
    pseudo_obs_variance: float = DEFAULT_BLOCK_CONFIG['pseudo_obs_variance']

    def __post_init__(self):
        self.validate()

    def validate(self):
        """Raise ValueError on inconsistent parameters"""
        ObservationMode(self.observation_mode)
        WeightingModel(self.weighting)
        if self.min_arc < 1:
            raise ValueError(f"min_arc must be >= 1, got {self.min_arc}")
        if self.min_satellites < 2:
            raise ValueError(f"min_satellites must be >= 2, got {self.min_satellites}")
        if self.full_slip_split is not None and self.full_slip_split < 0:
            raise ValueError("full_slip_split must be >= 0 or None")
        if self.code_sigma <= 0 or self.phase_sigma <= 0:
            raise ValueError("Observation sigmas must be positive")
        if not 0.0 < self.outlier_percentile <= 100.0:
            raise ValueError("outlier_percentile must be in (0, 100]")
        if self.outlier_inflation <= 1.0:
            raise ValueError("outlier_inflation must be greater than 1")
        if self.max_iterations < 1 or self.cleaning_loops < 0:
            raise ValueError("Iteration caps must be positive")
        if self.n_candidates < 2:
            raise ValueError("n_candidates must be >= 2 for the ratio test")
        if self.fix_reference_index < 0:
            raise ValueError("fix_reference_index must be >= 0")
        if self.pseudo_obs_variance <= 0:
            raise ValueError("pseudo_obs_variance must be positive")

    @property
    def mode(self) -> ObservationMode:
        return ObservationMode(self.observation_mode)

    @property
    def weighting_model(self) -> WeightingModel:
        return WeightingModel(self.weighting)

    @property
    def split_enabled(self) -> bool:
        return bool(self.full_slip_split)

    @property
    def solitary_run_length(self) -> int:
        """Contiguous runs shorter than this are treated as solitary"""
        return max(1, self.min_arc // 2)

    @classmethod
    def from_dict(cls, config: Dict[str, Any]) -> 'BlockConfig':
        """Create a configuration from a dictionary, unknown keys are rejected"""
        known = {f.name for f in fields(cls)}
        unknown = set(config) - known
        if unknown:
            raise ValueError(f"Unknown configuration keys: {sorted(unknown)}")
        return cls(**config)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def replace(self, **changes) -> 'BlockConfig':
        return replace(self, **changes)
