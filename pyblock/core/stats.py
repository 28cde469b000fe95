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
Observation Statistics and Weighting
====================================

Elevation and SNR dependent weighting of GNSS measurements and the
double-difference cofactor model used by the batch estimator.
"""

from enum import Enum
from typing import Optional

import numpy as np

# ============================================================================
# AMBIGUITY RESOLUTION THRESHOLDS
# ============================================================================
THRESAR_RATIO = 3.0      # Ratio test threshold (second best / best)

# ============================================================================
# WEIGHTING
# ============================================================================
MIN_WEIGHT_ELEVATION = 5.0   # Elevation floor for weighting (degrees)
SNR_REFERENCE = 35.0         # SNR of a nominal signal (dB-Hz)
SNR_FACTOR = 0.5             # SNR contribution in the combined model


class WeightingModel(Enum):
    """Weighting model types"""
    UNIFORM = "uniform"          # Same weight for every satellite
    SINE = "sine"                # Weight = sin(elevation)
    EXPONENTIAL = "exponential"  # Exponential elevation model
    SNR = "snr"                  # SNR-only
    COMBINED = "combined"        # Sine elevation + SNR


class ElevationWeighting:
    """
    Elevation and SNR-dependent weighting for GNSS measurements

    Weights are unitless; the variance of an undifferenced observation is
    ``sigma_0**2 / weight**2``.
    """

    def __init__(self,
                 model: WeightingModel = WeightingModel.SINE,
                 min_elevation: float = MIN_WEIGHT_ELEVATION,
                 snr_threshold: float = SNR_REFERENCE):
        """
        Parameters
        ----------
        model : WeightingModel
            Weighting model to use
        min_elevation : float
            Elevations below this value (degrees) are clamped to it
        snr_threshold : float
            SNR of a nominal signal (dB-Hz)
        """
        self.model = WeightingModel(model)
        self.min_elevation = min_elevation
        self.snr_threshold = snr_threshold

    def compute_weight(self, elevation, snr=None) -> np.ndarray:
        """
        Compute observation weights

        Parameters
        ----------
        elevation : float or np.ndarray
            Satellite elevation angles (degrees)
        snr : float or np.ndarray, optional
            Signal-to-noise ratios (dB-Hz); non-positive values mean unknown

        Returns
        -------
        np.ndarray
            Weights in (0, 1]
        """
        elevation = np.maximum(np.atleast_1d(np.asarray(elevation, dtype=float)),
                               self.min_elevation)

        if self.model == WeightingModel.UNIFORM:
            return np.ones_like(elevation)
        if self.model == WeightingModel.EXPONENTIAL:
            elev_weight = self._exponential_weight(elevation)
        else:
            elev_weight = self._sine_weight(elevation)

        if self.model not in (WeightingModel.SNR, WeightingModel.COMBINED) or snr is None:
            return elev_weight

        snr = np.broadcast_to(np.asarray(snr, dtype=float), elevation.shape)
        known = snr > 0
        snr_weight = np.where(known, self._snr_weight(np.where(known, snr, self.snr_threshold)), 1.0)
        if self.model == WeightingModel.SNR:
            # Unknown SNR falls back to the elevation model
            return np.where(known, snr_weight, elev_weight)
        return np.where(known, elev_weight * (1 - SNR_FACTOR) + snr_weight * SNR_FACTOR, elev_weight)

    @staticmethod
    def _sine_weight(elevation: np.ndarray) -> np.ndarray:
        return np.sin(np.radians(elevation))

    @staticmethod
    def _exponential_weight(elevation: np.ndarray) -> np.ndarray:
        """Weight = exp(-k / sin(elevation))"""
        sin_elev = np.maximum(np.sin(np.radians(elevation)), 0.1)
        k = 0.1
        return np.exp(-k / sin_elev)

    def _snr_weight(self, snr: np.ndarray) -> np.ndarray:
        """Sigmoid of the SNR normalized to the nominal signal, clipped to [0.1, 1]"""
        normalized_snr = snr / self.snr_threshold
        weight = 1.0 / (1.0 + np.exp(-2.0 * (normalized_snr - 1.0)))
        return np.clip(weight, 0.1, 1.0)

    def variance_factor(self, elevation, snr=None) -> np.ndarray:
        """Relative variance (1 / weight^2) of undifferenced observations"""
        return 1.0 / self.compute_weight(elevation, snr) ** 2


def cofactor_matrix(el_r: np.ndarray, el_m: np.ndarray,
                    snr_r: Optional[np.ndarray], snr_m: Optional[np.ndarray],
                    pivot_index: int,
                    weighting: Optional[ElevationWeighting] = None) -> np.ndarray:
    """
    Double-difference cofactor block of one epoch

    Single differences between the receivers have relative variance
    ``q_i = q_r,i + q_m,i``; differencing against the pivot gives
    ``Q = diag(q_i) + q_pivot * 1 1^T`` over the non-pivot satellites.

    Parameters
    ----------
    el_r, el_m : np.ndarray
        Elevations at rover and master (degrees), one per satellite
    snr_r, snr_m : np.ndarray or None
        SNR at rover and master (dB-Hz)
    pivot_index : int
        Position of the pivot satellite in the input arrays
    weighting : ElevationWeighting, optional
        Weighting model, sine elevation by default

    Returns
    -------
    np.ndarray
        (n-1) x (n-1) cofactor matrix, ordered as the input without the pivot
    """
    if weighting is None:
        weighting = ElevationWeighting()
    q = weighting.variance_factor(el_r, snr_r) + weighting.variance_factor(el_m, snr_m)
    others = np.arange(q.size) != pivot_index
    return np.diag(q[others]) + q[pivot_index]

