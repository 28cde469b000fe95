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
Robust Float Refiner
====================

Iterative refinement of the float solution, first block by block then on
the reassembled system:

- outlier down-weighting through cofactor inflation
- short arc and solitary observation pruning
- reference arc selection by trial solves
- missed cycle slip correction on phase residuals
- removal of arcs (and blocks) that make the system unstable

Every loop is bounded by ``BlockConfig.max_iterations`` or
``BlockConfig.cleaning_loops``.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

import numpy as np
import scipy.sparse as sp

from ..core.config import BlockConfig
from ..core.data_structures import ObservationClass
from .arcs import remove_short_arcs, remove_solitary_observations
from .least_squares import LSResult, NormalEquations, normal_equations, solve_ls
from .partition import Block, assemble_blocks, global_col_ok, partition_blocks
from .residuals import (PhaseResiduals, compute_phase_residuals, correct_missed_slips,
                        pre_correct_integer_jumps, slip_window)
from .system import LSSystem

logger = logging.getLogger(__name__)

# Variance assigned to arcs with a negative estimated variance (cycles^2)
NEGATIVE_VARIANCE_PENALTY = 100.0
# Trial cost of a negative variance in the reference arc search
NEGATIVE_VARIANCE_COST = 1e30
MIN_GOOD_BLOCK_ARCS = 3


@dataclass
class OutlierResult:
    """Output of the outlier down-weighting loop

    Attributes
    ----------
    result : LSResult
        Solution with the inflated cofactor matrix
    Q : sp.csr_matrix
        Inflated cofactor matrix
    flagged : np.ndarray
        Boolean mask of the down-weighted rows
    history : List[int]
        Number of flagged rows after each iteration, starting at 0
    """
    result: LSResult
    Q: sp.csr_matrix
    flagged: np.ndarray
    history: List[int] = field(default_factory=list)

    @property
    def n_iterations(self) -> int:
        return len(self.history) - 1


@dataclass
class BlockRefinement:
    """Refined block system and its reference arc"""
    system: LSSystem
    ref_arc: int
    is_bad: bool = False
    corrected_arcs: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=int))
    removed_arcs: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=int))


@dataclass
class FloatSolution:
    """Float solution of the batch system

    ``system`` carries the final cofactor matrix, including the outlier
    inflation, and is the system later stages work on.
    """
    system: LSSystem
    pos0: np.ndarray
    x: np.ndarray
    Cxx: np.ndarray
    s02: float
    v_hat: np.ndarray
    col_ok: np.ndarray
    ref_arcs: np.ndarray
    phase_residuals: PhaseResiduals
    bad_blocks: List[int] = field(default_factory=list)
    corrected_arcs: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=int))
    removed_arcs: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=int))
    outlier_history: List[int] = field(default_factory=list)

    @property
    def n_pos(self) -> int:
        return self.system.n_pos

    @property
    def d_pos(self) -> np.ndarray:
        return self.x[:3 * self.n_pos].reshape(self.n_pos, 3)

    @property
    def pos(self) -> np.ndarray:
        """Estimated rover position(s), shape (n_pos, 3)"""
        return self.pos0[None, :] + self.d_pos

    @property
    def pos_cov(self) -> np.ndarray:
        n = 3 * self.n_pos
        return self.Cxx[:n, :n]

    @property
    def Q(self) -> sp.csr_matrix:
        return self.system.Q

    def amb_variances(self) -> np.ndarray:
        """Variance of every ambiguity column, 0 for the reference arcs"""
        return ambiguity_variances(self.system, self.col_ok, self.Cxx)


def _solve(system: LSSystem, col_ok, Q=None, normal: Optional[NormalEquations] = None) -> LSResult:
    return solve_ls(system.y0, system.b, system.A, system.Q if Q is None else Q,
                    col_ok=col_ok, normal=normal)


def ambiguity_variances(system: LSSystem, col_ok: np.ndarray, Cxx: np.ndarray) -> np.ndarray:
    """Estimated variance per ambiguity column, 0 where not estimated"""
    var = np.zeros(system.n_cols)
    var[col_ok] = np.diag(Cxx)
    return var[system.n_pos_cols:]


def estimated_ambiguities(system: LSSystem, col_ok: np.ndarray) -> np.ndarray:
    mask = np.zeros(system.n_cols, dtype=bool)
    mask[col_ok] = True
    return mask[system.n_pos_cols:]


def downweight_outliers(system: LSSystem,
                        col_ok: np.ndarray,
                        config: BlockConfig,
                        result: Optional[LSResult] = None) -> OutlierResult:
    """
    Iteratively inflate the variance of observations with large residuals

    For each observation class the rejection threshold is the configured
    floor or the ``outlier_percentile`` of the absolute residuals of the not
    yet flagged rows, whichever is larger. Newly flagged rows get
    ``Q_ii = max(k Q_ii, k v^2)`` with ``k = outlier_inflation``, then the
    system is solved again. The flagged set only grows, so the loop stops
    when no new row is found or after ``max_iterations`` solves.

    Parameters
    ----------
    system : LSSystem
        System to solve, ``system.Q`` is the starting cofactor matrix
    col_ok : np.ndarray
        Estimated columns
    config : BlockConfig
        Thresholds
    result : LSResult, optional
        Solution of ``system`` with ``system.Q``, computed when None

    Returns
    -------
    OutlierResult
    """
    Q = sp.csr_matrix(system.Q)
    if result is None:
        result = _solve(system, col_ok, Q)
    flagged = np.zeros(system.n_obs, dtype=bool)
    history = [0]
    classes = (
        (system.code_rows, config.max_code_residual),
        (system.phase_rows, config.max_phase_residual),
    )
    k = config.outlier_inflation

    for _ in range(config.max_iterations):
        v_abs = np.abs(result.v_hat)
        new = np.zeros(system.n_obs, dtype=bool)
        for rows, floor in classes:
            candidates = rows & ~flagged
            if not np.any(candidates):
                continue
            thr = max(floor, np.percentile(v_abs[candidates], config.outlier_percentile))
            new |= candidates & (v_abs > thr)
        if not np.any(new):
            break
        flagged |= new
        history.append(int(np.count_nonzero(flagged)))
        q_ii = Q.diagonal()
        target = q_ii.copy()
        target[new] = np.maximum(k * q_ii[new], k * result.v_hat[new] ** 2)
        Q = sp.csr_matrix(Q + sp.diags(target - q_ii))
        result = _solve(system, col_ok, Q)
    else:
        logger.warning(f"Outlier down-weighting stopped at the iteration cap "
                       f"({config.max_iterations}), {history[-1]} rows flagged")

    if history[-1]:
        logger.debug(f"Down-weighted {history[-1]} observations in {len(history) - 1} iterations")
    return OutlierResult(result=result, Q=Q, flagged=flagged, history=history)


def best_reference_arc(system: LSSystem) -> Tuple[int, np.ndarray]:
    """
    Reference arc minimizing the summed ambiguity variance

    Every ambiguity column is tried as reference; the normal equations are
    computed once and shared by the trial solves. Negative variances count
    as a huge cost.

    Returns
    -------
    ref_arc : int
        Arc id, -1 when the system has fewer than 2 ambiguity columns
    col_ok : np.ndarray
        Estimated columns with that reference
    """
    if system.n_amb < 2:
        return -1, np.arange(system.n_cols)
    normal = normal_equations(system.A, system.Q)
    n_pc = system.n_pos_cols
    test = np.zeros(system.n_amb)
    for j in range(system.n_amb):
        col_ok = np.delete(np.arange(system.n_cols), n_pc + j)
        res = _solve(system, col_ok, normal=normal)
        amb_var = np.diag(res.Cxx)[n_pc:]
        test[j] = np.sum(np.where(amb_var < 0, NEGATIVE_VARIANCE_COST, amb_var))
    best = int(np.argmin(test))
    logger.debug(f"Best reference arc {system.arc_id[best]} (sat {system.amb_sat[best]})")
    return int(system.arc_id[best]), np.delete(np.arange(system.n_cols), n_pc + best)


def best_block_reference_arcs(system: LSSystem,
                              blocks: Sequence[Block],
                              ref_arcs: Sequence[int],
                              bad_arcs: Sequence[int] = (),
                              bad_blocks: Optional[Sequence[int]] = None
                              ) -> Tuple[List[int], np.ndarray, List[int]]:
    """
    Choose new reference arcs for the blocks of the global system

    Parameters
    ----------
    system : LSSystem
        Global system
    blocks : sequence of Block
        Partition of ``system``, aligned with ``ref_arcs``
    ref_arcs : sequence of int
        Current reference arc id of each block (-1 for none)
    bad_arcs : sequence of int
        Arc ids that cannot be chosen
    bad_blocks : sequence of int, optional
        Blocks to repair; by default the blocks whose reference is a bad arc

    Returns
    -------
    ref_arcs : List[int]
        Updated reference arc ids
    col_ok : np.ndarray
        Estimated columns of the global system
    bad_blocks : List[int]
        Blocks that have been repaired
    """
    ref_arcs = [int(r) for r in ref_arcs]
    bad_arcs = np.asarray(bad_arcs, dtype=int)
    if bad_blocks is None:
        bad_blocks = [i for i, r in enumerate(ref_arcs) if r in bad_arcs]
    bad_blocks = list(bad_blocks)
    if not bad_blocks:
        return ref_arcs, global_col_ok(system, ref_arcs), bad_blocks

    normal = normal_equations(system.A, system.Q)
    n_pc = system.n_pos_cols
    for i in bad_blocks:
        ref_arcs[i] = -1
        block_arcs = system.arc_id[blocks[i].amb_idx]
        if block_arcs.size < 2:
            continue
        candidates = np.setdiff1d(block_arcs, bad_arcs)
        best, best_cost = -1, np.inf
        for arc in candidates:
            col_ok = global_col_ok(system, [r for r in ref_arcs if r >= 0] + [int(arc)])
            res = _solve(system, col_ok, normal=normal)
            var = np.diag(res.Cxx)[np.searchsorted(col_ok, n_pc):]
            cost = np.sum(np.where(var < 0, NEGATIVE_VARIANCE_COST, var))
            if cost < best_cost:
                best, best_cost = int(arc), cost
        ref_arcs[i] = best
        logger.info(f"Block {i}: reference arc changed to {best}")
    return ref_arcs, global_col_ok(system, ref_arcs), bad_blocks


def _unstable_columns(amb_var: np.ndarray, estimated: np.ndarray, config: BlockConfig) -> np.ndarray:
    amb_var = np.where(amb_var < 0, NEGATIVE_VARIANCE_PENALTY, amb_var)
    ok_var = amb_var[estimated]
    limit = np.inf
    if ok_var.size > 1:
        limit = ok_var.mean() + config.instability_sigma_factor * ok_var.std(ddof=1)
    return estimated & ((amb_var > config.unstable_amb_variance) | (amb_var > limit))


def remove_unstable_arcs(system: LSSystem,
                         outliers: OutlierResult,
                         ref_arc: int,
                         config: BlockConfig
                         ) -> Tuple[LSSystem, int, np.ndarray, OutlierResult, np.ndarray]:
    """
    Remove the arcs whose estimated variance makes the block unstable

    An arc is unstable when its variance exceeds ``unstable_amb_variance``
    or the block mean by ``instability_sigma_factor`` standard deviations.
    The worst one is removed with its rows, short arcs are pruned, the
    reference arc is searched again and the outliers down-weighted from the
    block cofactor matrix. Stops when stable or with fewer than 2 columns.

    Returns
    -------
    system, ref_arc, col_ok, outliers, removed
        Stabilized block, its reference and solution, removed arc ids
    """
    col_ok = global_col_ok(system, [ref_arc])
    removed = []
    for _ in range(config.max_iterations):
        amb_var = ambiguity_variances(system, col_ok, outliers.result.Cxx)
        bad = _unstable_columns(amb_var, estimated_ambiguities(system, col_ok), config)
        if not np.any(bad) or system.n_amb < 2:
            break
        worst = int(np.argmax(np.where(bad, np.where(amb_var < 0, NEGATIVE_VARIANCE_PENALTY, amb_var), -np.inf)))
        logger.info(f"System unstable, removing arc {system.arc_id[worst]} "
                    f"(sat {system.amb_sat[worst]}, variance {amb_var[worst]:.3g})")
        removed.append(int(system.arc_id[worst]))
        system = system.remove_arcs([worst])
        system, short = remove_short_arcs(system, config.min_arc)
        removed.extend(short.tolist())
        ref_arc, col_ok = best_reference_arc(system)
        if system.is_empty:
            break
        outliers = downweight_outliers(system, col_ok, config)
    return system, ref_arc, col_ok, outliers, np.asarray(removed, dtype=int)


def clean_float_solution(system: LSSystem, ref_arc: int, config: BlockConfig
                         ) -> Tuple[LSSystem, int, LSResult]:
    """
    Delete observations with residuals above the cleaning threshold

    The threshold of a row is the largest of the class floor,
    ``clean_sigma_factor`` times its formal sigma and the
    ``outlier_percentile`` of all absolute residuals. Repeated until no row
    is deleted; the reference is searched again whenever an arc disappears.
    """
    col_ok = global_col_ok(system, [ref_arc])
    result = _solve(system, col_ok)
    for _ in range(config.max_iterations):
        if system.is_empty:
            break
        v_abs = np.abs(result.v_hat)
        sigma = np.sqrt(np.abs(system.Q.diagonal()))
        floor = np.where(system.obs_track[:, 2] == ObservationClass.CODE.value,
                         config.max_code_residual, config.max_phase_residual)
        thr = np.maximum(np.maximum(floor, config.clean_sigma_factor * sigma),
                         np.percentile(v_abs, config.outlier_percentile))
        out = v_abs > thr
        if not np.any(out):
            break
        logger.debug(f"Rejecting {np.count_nonzero(out)} outliers")
        n_amb = system.n_amb
        system, _ = remove_short_arcs(system.remove_rows(out), config.min_arc)
        if system.n_amb < n_amb or ref_arc not in system.arc_id:
            ref_arc, col_ok = best_reference_arc(system)
        else:
            col_ok = global_col_ok(system, [ref_arc])
        result = _solve(system, col_ok)
    return system, ref_arc, result


def loop_corrector(system: LSSystem,
                   col_ok: np.ndarray,
                   outliers: OutlierResult,
                   residuals: PhaseResiduals,
                   config: BlockConfig,
                   n_epoch: Optional[int] = None
                   ) -> Tuple[LSSystem, OutlierResult, PhaseResiduals, np.ndarray]:
    """
    Repeatedly correct missed cycle slips and re-solve

    After each correction the outliers are down-weighted again starting
    from the cofactor matrix of ``system``. At most ``cleaning_loops``
    passes.

    Returns
    -------
    system, outliers, residuals, corrected
        Corrected system, its solution and residuals, corrected arc ids
    """
    window = slip_window(config.min_arc)
    corrected = []
    for c in range(config.cleaning_loops):
        logger.debug(f"Looking for undetected cycle slips {c + 1}/{config.cleaning_loops}")
        y0, arcs = correct_missed_slips(system.y0, residuals, system, window)
        if arcs.size == 0:
            logger.debug("No cycle slips found")
            break
        corrected.extend(arcs.tolist())
        system = system.with_observations(y0)
        outliers = downweight_outliers(system, col_ok, config)
        residuals = compute_phase_residuals(system, outliers.result.v_hat, n_epoch)
    return system, outliers, residuals, np.unique(np.asarray(corrected, dtype=int))


def refine_block(system: LSSystem,
                 config: BlockConfig,
                 index: int = 0,
                 pivot_changes: Sequence[int] = (),
                 n_epoch: Optional[int] = None) -> BlockRefinement:
    """
    Refine the float solution of one block

    Returns the cleaned block system; when fewer than 2 ambiguity columns
    survive, the block is returned as received and flagged bad.
    """
    logger.info(f"Processing block {index}: {system.n_obs} observations, {system.n_amb} arcs")
    original = system
    system, removed = remove_short_arcs(system, config.min_arc)
    removed = [removed]
    corrected = np.zeros(0, dtype=int)
    ref_arc, col_ok = best_reference_arc(system)

    if not system.is_empty:
        if config.pre_cleaning:
            logger.info(f"Block {index}: pre-correcting integer jumps of the raw phase")
            system = pre_correct_integer_jumps(system, pivot_changes)

        outliers = downweight_outliers(system, col_ok, config)
        residuals = compute_phase_residuals(system, outliers.result.v_hat, n_epoch)
        system, outliers, residuals, corrected = loop_corrector(
            system, col_ok, outliers, residuals, config, n_epoch)

        if config.force_stabilization:
            system, ref_arc, col_ok, outliers, gone = remove_unstable_arcs(
                system, outliers, ref_arc, config)
            removed.append(gone)

        if system.n_amb > 2:
            if config.outlier_rejection:
                system, ref_arc, _ = clean_float_solution(system, ref_arc, config)
                system, _ = remove_solitary_observations(system, config.solitary_run_length)
                system, gone = remove_short_arcs(system, config.min_arc)
                removed.append(gone)
                ref_arc, col_ok = best_reference_arc(system)
                if config.force_stabilization and not system.is_empty:
                    outliers = OutlierResult(result=_solve(system, col_ok),
                                             Q=system.Q, flagged=np.zeros(system.n_obs, dtype=bool))
                    system, ref_arc, col_ok, outliers, gone = remove_unstable_arcs(
                        system, outliers, ref_arc, config)
                    removed.append(gone)
            else:
                system = system.with_cofactor(outliers.Q)

    removed = np.concatenate(removed)
    if original.n_amb > 0 and system.n_amb < 2:
        logger.warning(f"Block {index}: system still unstable with {system.n_amb} usable arcs, "
                       f"keeping it as it is")
        ref_arc, _ = best_reference_arc(original)
        return BlockRefinement(system=original, ref_arc=ref_arc, is_bad=True,
                               corrected_arcs=corrected)
    return BlockRefinement(system=system, ref_arc=ref_arc, corrected_arcs=corrected,
                           removed_arcs=removed)


def _match_references(system: LSSystem, blocks: Sequence[Block],
                      ref_arcs: Sequence[int]) -> Tuple[List[int], List[int]]:
    """Reference arc of each block of a new partition, and blocks without one"""
    refs, missing = [], []
    for i, block in enumerate(blocks):
        found = np.intersect1d(system.arc_id[block.amb_idx], np.asarray(ref_arcs, dtype=int))
        if found.size:
            refs.append(int(found[0]))
        else:
            refs.append(-1)
            if block.amb_idx.size:
                missing.append(i)
    return refs, missing


def _repartition(system: LSSystem, ref_arcs: Sequence[int], empty_epochs: np.ndarray,
                 config: BlockConfig) -> Tuple[List[Block], List[int], np.ndarray]:
    blocks = partition_blocks(system, empty_epochs, config.full_slip_split)
    refs, missing = _match_references(system, blocks, ref_arcs)
    refs, col_ok, _ = best_block_reference_arcs(system, blocks, refs, bad_blocks=missing)
    return blocks, refs, col_ok


def _bad_median_arcs(residuals: PhaseResiduals, config: BlockConfig) -> np.ndarray:
    bad = np.zeros(residuals.n_amb, dtype=bool)
    for a in range(residuals.n_amb):
        y, _ = residuals.arc_series(a)
        if y.size and abs(np.median(y)) > config.max_median_phase_residual:
            bad[a] = True
    return np.flatnonzero(bad)


def _remove_bad_arcs(system: LSSystem, blocks: Sequence[Block], ref_arcs: Sequence[int],
                     bad_amb: np.ndarray, empty_epochs: np.ndarray, config: BlockConfig
                     ) -> Tuple[LSSystem, List[Block], List[int], np.ndarray, np.ndarray]:
    """Remove bad arcs, and every block left with too few good arcs"""
    bad = np.zeros(system.n_amb, dtype=bool)
    bad[bad_amb] = True
    for i, block in enumerate(blocks):
        n_good = np.count_nonzero(~bad[block.amb_idx])
        if block.amb_idx.size and n_good < MIN_GOOD_BLOCK_ARCS:
            logger.warning(f"Block {i} found unstable ({n_good} good arcs), removing it")
            bad[block.amb_idx] = True
    bad_amb = np.flatnonzero(bad)
    removed = system.arc_id[bad_amb]
    logger.warning(f"System unstable, removing arcs {removed.tolist()} "
                   f"(sat {system.amb_sat[bad_amb].tolist()})")
    system = system.remove_arcs(bad_amb)
    system, short = remove_short_arcs(system, config.min_arc)
    removed = np.concatenate([removed, short])
    ref_arcs = [r for r in ref_arcs if r not in removed]
    blocks, ref_arcs, col_ok = _repartition(system, ref_arcs, empty_epochs, config)
    return system, blocks, ref_arcs, col_ok, removed


def refine_float(system: LSSystem,
                 pos0: np.ndarray,
                 config: BlockConfig,
                 empty_epochs: Sequence[int] = (),
                 pivot_changes: Sequence[int] = (),
                 n_epoch: Optional[int] = None) -> FloatSolution:
    """
    Compute the refined float solution of the batch system

    Parameters
    ----------
    system : LSSystem
        Assembled system
    pos0 : np.ndarray
        Approximate rover position the system is linearized at
    config : BlockConfig
        Processing parameters
    empty_epochs : sequence of int
        Epochs excluded at build time, used for the block partition
    pivot_changes : sequence of int
        Epochs where the pivot satellite changes (pre-correction only)
    n_epoch : int, optional
        Number of epochs of the residual tables

    Returns
    -------
    FloatSolution

    Raises
    ------
    ValueError
        If the system has no observation
    """
    if system.is_empty:
        raise ValueError("Cannot solve an empty system")
    empty_epochs = np.asarray(empty_epochs, dtype=int)
    split = config.split_enabled
    removed = []

    system, gone = remove_short_arcs(system, config.min_arc)
    removed.append(gone)
    blocks = partition_blocks(system, empty_epochs, config.full_slip_split if split else None)
    logger.info(f"Independent blocks found: {len(blocks)}")

    refined = [refine_block(b.extract(system), config, b.index, pivot_changes, n_epoch)
               for b in blocks]
    bad_blocks = [r_i for r_i, r in enumerate(refined) if r.is_bad]
    corrected = [r.corrected_arcs for r in refined]
    removed.extend(r.removed_arcs for r in refined)

    system = assemble_blocks([r.system for r in refined])
    system, gone = remove_short_arcs(system, config.min_arc)
    removed.append(gone)
    ref_arcs = [r.ref_arc for r in refined if r.ref_arc in system.arc_id]

    blocks = partition_blocks(system, empty_epochs, config.full_slip_split if split else None)
    refs, missing = _match_references(system, blocks, ref_arcs)
    if split:
        # Bad blocks kept unrefined get their reference searched on the global system
        bad_ids = np.concatenate([refined[i].system.arc_id for i in bad_blocks]) \
            if bad_blocks else np.zeros(0, dtype=int)
        repair = sorted(set(missing) | {i for i, b in enumerate(blocks)
                                        if np.any(np.isin(system.arc_id[b.amb_idx], bad_ids))})
        refs, col_ok, _ = best_block_reference_arcs(system, blocks, refs, bad_blocks=repair)
    else:
        if missing:
            ref, _ = best_reference_arc(system)
            refs = [ref]
        col_ok = global_col_ok(system, refs)

    logger.info("Computing the final float solution")
    outliers = downweight_outliers(system, col_ok, config)
    residuals = compute_phase_residuals(system, outliers.result.v_hat, n_epoch)

    if split:
        system, outliers, residuals, fixed = loop_corrector(
            system, col_ok, outliers, residuals, config, n_epoch)
        corrected.append(fixed)

        bad_amb = _bad_median_arcs(residuals, config)
        if bad_amb.size:
            refs, col_ok, changed = best_block_reference_arcs(
                system, blocks, refs, bad_arcs=system.arc_id[bad_amb])
            if changed:
                outliers = downweight_outliers(system, col_ok, config)
                residuals = compute_phase_residuals(system, outliers.result.v_hat, n_epoch)
                bad_amb = _bad_median_arcs(residuals, config)
                system, outliers, residuals, fixed = loop_corrector(
                    system, col_ok, outliers, residuals, config, n_epoch)
                corrected.append(fixed)

        if config.force_stabilization:
            for _ in range(config.max_iterations):
                if bad_amb.size == 0 or system.n_amb == 0:
                    break
                system, blocks, refs, col_ok, gone = _remove_bad_arcs(
                    system, blocks, refs, bad_amb, empty_epochs, config)
                removed.append(gone)
                if system.is_empty:
                    break
                outliers = downweight_outliers(system, col_ok, config)
                residuals = compute_phase_residuals(system, outliers.result.v_hat, n_epoch)
                bad_amb = _bad_median_arcs(residuals, config)

            for _ in range(config.max_iterations):
                if system.is_empty or system.n_amb == 0:
                    break
                amb_var = ambiguity_variances(system, col_ok, outliers.result.Cxx)
                amb_var = np.where(amb_var < 0, NEGATIVE_VARIANCE_PENALTY, amb_var)
                bad_amb = np.flatnonzero(estimated_ambiguities(system, col_ok)
                                         & (amb_var > config.global_unstable_amb_variance))
                if bad_amb.size == 0:
                    break
                system, blocks, refs, col_ok, gone = _remove_bad_arcs(
                    system, blocks, refs, bad_amb, empty_epochs, config)
                removed.append(gone)
                if system.is_empty:
                    break
                outliers = downweight_outliers(system, col_ok, config)
                residuals = compute_phase_residuals(system, outliers.result.v_hat, n_epoch)
                system, outliers, residuals, fixed = loop_corrector(
                    system, col_ok, outliers, residuals, config, n_epoch)
                corrected.append(fixed)

    if system.is_empty:
        raise ValueError("No observation left after the float refinement")

    result = outliers.result
    solution = FloatSolution(
        system=system.with_cofactor(outliers.Q),
        pos0=np.asarray(pos0, dtype=float),
        x=result.x,
        Cxx=result.Cxx,
        s02=result.s02,
        v_hat=result.v_hat,
        col_ok=col_ok,
        ref_arcs=np.asarray([r for r in refs if r >= 0], dtype=int),
        phase_residuals=residuals,
        bad_blocks=bad_blocks,
        corrected_arcs=np.unique(np.concatenate(corrected)) if corrected else np.zeros(0, dtype=int),
        removed_arcs=np.unique(np.concatenate(removed)),
        outlier_history=outliers.history,
    )
    logger.info(f"Float solution: s02 = {solution.s02:.4g}, {system.n_obs} observations, "
                f"{system.n_amb} arcs, {len(solution.ref_arcs)} reference arcs")
    return solution
