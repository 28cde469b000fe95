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
Epoch Double-Difference Builder
===============================

Builds the double-difference rows of a single epoch: satellite selection,
pivot choice, linearized geometry, known terms, observations and the
pivot-correlated cofactor block.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

import numpy as np

from ..core.config import BlockConfig
from ..core.data_structures import ObservationClass, ObservationSet, valid_observation
from ..core.stats import ElevationWeighting, cofactor_matrix
from ..gnss.ephemeris import EphemerisProvider
from ..gnss.geometry import GeometryService

logger = logging.getLogger(__name__)


@dataclass
class EpochDD:
    """Double-difference rows of one epoch

    An empty epoch has ``pivot is None`` and no rows.
    """
    epoch: int
    pivot: Optional[int] = None
    sats: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=int))
    row_sats: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=int))
    obs_class: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=int))
    A: np.ndarray = field(default_factory=lambda: np.zeros((0, 3)))
    b: np.ndarray = field(default_factory=lambda: np.zeros(0))
    y0: np.ndarray = field(default_factory=lambda: np.zeros(0))
    Q: np.ndarray = field(default_factory=lambda: np.zeros((0, 0)))
    elevation: np.ndarray = field(default_factory=lambda: np.zeros(0))
    reason: str = ""

    @property
    def is_empty(self) -> bool:
        return self.pivot is None

    @property
    def n_rows(self) -> int:
        return self.row_sats.size


def dd_geometry_rows(los: np.ndarray, pivot_index: int) -> np.ndarray:
    """Differenced line-of-sight rows ``e_i - e_pivot`` for every satellite

    The pivot's own row is identically zero and is dropped by the caller.
    """
    return los - los[pivot_index][None, :]


def dd_values(values_r: np.ndarray, values_m: np.ndarray, pivot_index: int) -> np.ndarray:
    """Between-receiver then between-satellite difference of per-satellite values"""
    sd = values_r - values_m
    return sd - sd[pivot_index]


def _empty(epoch: int, reason: str) -> EpochDD:
    logger.debug(f"Epoch {epoch} excluded: {reason}")
    return EpochDD(epoch=epoch, reason=reason)


def build_epoch(epoch: int,
                obs: ObservationSet,
                ephemeris: EphemerisProvider,
                geometry: GeometryService,
                config: BlockConfig,
                weighting: Optional[ElevationWeighting] = None,
                pcv: Optional[Callable] = None) -> EpochDD:
    """
    Build the double-difference system rows of one epoch

    Parameters
    ----------
    epoch : int
        Epoch index into the observation set
    obs : ObservationSet
        Two-receiver observations
    ephemeris : EphemerisProvider
        Satellite positions
    geometry : GeometryService
        Elevation, range and atmospheric terms
    config : BlockConfig
        Processing parameters
    weighting : ElevationWeighting, optional
        Weighting model, built from the configuration when None
    pcv : callable, optional
        Antenna phase-centre correction ``pcv(elevation_deg, azimuth_deg, sats) -> m``
        added to the modelled ranges of both receivers

    Returns
    -------
    EpochDD
        Rows of the epoch, or an empty result when the epoch is unusable
    """
    mode = config.mode
    if weighting is None:
        weighting = ElevationWeighting(config.weighting_model)
    t = obs.time[epoch]
    pos_r = obs.pos_r
    pos_m = obs.pos_m[:, epoch]

    code_ok = valid_observation(obs.pr_r[:, epoch]) & valid_observation(obs.pr_m[:, epoch])
    phase_ok = valid_observation(obs.ph_r[:, epoch]) & valid_observation(obs.ph_m[:, epoch])
    if mode.uses_code and mode.uses_phase:
        usable = code_ok & phase_ok
    elif mode.uses_code:
        usable = code_ok
    else:
        usable = phase_ok

    sats = np.flatnonzero(usable)
    if sats.size < config.min_satellites:
        return _empty(epoch, f"{sats.size} common satellites")

    # Ephemeris availability
    sat_pos = np.zeros((sats.size, 3))
    eph_ok = np.zeros(sats.size, dtype=bool)
    for i, sat in enumerate(sats):
        pos, _, valid = ephemeris.satellite_position(t, int(sat))
        eph_ok[i] = valid
        if valid:
            sat_pos[i] = pos
    sats, sat_pos = sats[eph_ok], sat_pos[eph_ok]
    if sats.size < config.min_satellites:
        return _empty(epoch, f"{sats.size} satellites with ephemeris")

    geo_r = geometry.compute(pos_r, sat_pos)
    geo_m = geometry.compute(pos_m, sat_pos)
    keep = (geo_r.elevation >= config.elevation_cutoff) & (geo_m.elevation >= config.elevation_cutoff)
    if config.snr_threshold > 0:
        for snr in (obs.snr_r[sats, epoch], obs.snr_m[sats, epoch]):
            keep &= ~(snr > 0) | (snr >= config.snr_threshold)

    range_r = geo_r.distance.copy()
    range_m = geo_m.distance.copy()
    if pcv is not None:
        range_r += np.asarray(pcv(geo_r.elevation, geo_r.azimuth, sats), dtype=float)
        range_m += np.asarray(pcv(geo_m.elevation, geo_m.azimuth, sats), dtype=float)

    # Code pre-fit check: between-receiver residuals against their median
    pr_r = obs.pr_r[sats, epoch]
    pr_m = obs.pr_m[sats, epoch]
    has_code = code_ok[sats]
    if np.count_nonzero(keep & has_code) >= config.min_satellites:
        sd_res = (pr_r - pr_m) - (range_r - range_m) - (geo_r.troposphere - geo_m.troposphere)
        check = keep & has_code
        dev = np.abs(sd_res - np.median(sd_res[check]))
        bad = check & (dev > config.max_prefit_residual)
        if np.any(bad):
            logger.debug(f"Epoch {epoch}: code pre-fit rejected sat {obs.prns[sats[bad]].tolist()}")
        keep &= ~bad

    if np.count_nonzero(keep) < config.min_satellites:
        return _empty(epoch, f"{np.count_nonzero(keep)} satellites after cutoffs")

    los = geo_r.line_of_sight(pos_r, sat_pos)[keep]
    sats = sats[keep]
    range_r, range_m = range_r[keep], range_m[keep]
    el_r, el_m = geo_r.elevation[keep], geo_m.elevation[keep]
    tropo_r, tropo_m = geo_r.troposphere[keep], geo_m.troposphere[keep]
    iono_r, iono_m = geo_r.ionosphere[keep], geo_m.ionosphere[keep]
    pr_r, pr_m = pr_r[keep], pr_m[keep]

    pivot_index = int(np.argmax(el_r))
    others = np.arange(sats.size) != pivot_index

    A_epo = dd_geometry_rows(los, pivot_index)[others]

    cond = np.linalg.cond(A_epo)
    if not np.isfinite(cond) or cond > config.max_condition_number:
        return _empty(epoch, f"condition number {cond:.3g}")

    dd_range = dd_values(range_r, range_m, pivot_index)[others]
    dd_tropo = dd_values(tropo_r, tropo_m, pivot_index)[others]
    dd_iono = dd_values(iono_r, iono_m, pivot_index)[others]

    snr_r = obs.snr_r[sats, epoch]
    snr_m = obs.snr_m[sats, epoch]
    Q1 = cofactor_matrix(el_r, el_m, snr_r, snr_m, pivot_index, weighting)

    row_blocks, A_blocks, b_blocks, y_blocks, cls_blocks, Q_blocks = [], [], [], [], [], []
    row_sats = sats[others]
    if mode.uses_code:
        row_blocks.append(row_sats)
        A_blocks.append(A_epo)
        b_blocks.append(dd_range + dd_tropo + dd_iono)
        y_blocks.append(dd_values(pr_r, pr_m, pivot_index)[others])
        cls_blocks.append(np.full(row_sats.size, ObservationClass.CODE.value))
        Q_blocks.append(config.code_sigma ** 2 * Q1)
    if mode.uses_phase:
        lam = obs.wavelength[sats]
        ph_r = obs.ph_r[sats, epoch]
        ph_m = obs.ph_m[sats, epoch]
        row_blocks.append(row_sats)
        A_blocks.append(A_epo)
        b_blocks.append(dd_range + dd_tropo - dd_iono)
        # Phase converted to meters per satellite before differencing
        y_blocks.append(dd_values(lam * ph_r, lam * ph_m, pivot_index)[others])
        cls_blocks.append(np.full(row_sats.size, ObservationClass.PHASE.value))
        Q_blocks.append(config.phase_sigma ** 2 * Q1)

    n = sum(blk.shape[0] for blk in Q_blocks)
    Q = np.zeros((n, n))
    offset = 0
    for blk in Q_blocks:
        k = blk.shape[0]
        Q[offset:offset + k, offset:offset + k] = blk
        offset += k

    return EpochDD(epoch=epoch,
                   pivot=int(sats[pivot_index]),
                   sats=sats,
                   row_sats=np.concatenate(row_blocks),
                   obs_class=np.concatenate(cls_blocks),
                   A=np.vstack(A_blocks),
                   b=np.concatenate(b_blocks),
                   y0=np.concatenate(y_blocks),
                   Q=Q,
                   elevation=el_r)
