import dataclasses
import unittest

import numpy as np

from pyblock.core.config import BlockConfig
from pyblock.gnss.geometry import LocalGeometry
from pyblock.gnss.synthetic import make_scenario
from pyblock.rtk.partition import global_col_ok, partition_blocks
from pyblock.rtk.refiner import (_bad_median_arcs, _remove_bad_arcs, best_reference_arc,
                                 downweight_outliers, refine_float, remove_unstable_arcs)
from pyblock.rtk.residuals import PhaseResiduals
from pyblock.rtk.system import LSSystem, build_system

GEOMETRY = LocalGeometry(troposphere=False)


def _scenario_system(config, **scenario):
    sc = make_scenario(**scenario)
    return sc, build_system(sc.obs, sc.ephemeris, GEOMETRY, config)


class TestOutlierDownweighting(unittest.TestCase):

    @classmethod
    def setUpClass(cls):
        cls.config = BlockConfig(observation_mode='code_phase')
        _, clean = _scenario_system(cls.config, n_epoch=30, n_sat=6, seed=2)
        sat = [s for s in range(6) if s not in clean.pivot_track][0]
        cls.sc, cls.build = _scenario_system(
            cls.config, n_epoch=30, n_sat=6, seed=2, code_noise=0.1,
            code_outliers={(sat, 8): 20.0, (sat, 21): -20.0})
        system = cls.build.system
        cls.bad_rows = np.flatnonzero(system.code_rows & (system.obs_track[:, 1] == sat)
                                      & np.isin(system.epochs, [8, 21]))
        cls.col_ok = global_col_ok(system, [0])

    def test_outliers_flagged(self):
        system = self.build.system
        out = downweight_outliers(system, self.col_ok, self.config)
        self.assertEqual(out.history[0], 0)
        self.assertTrue(np.all(np.diff(out.history) >= 0))
        self.assertTrue(np.all(out.flagged[self.bad_rows]))
        self.assertFalse(np.any(out.flagged[system.phase_rows]))
        q0 = system.Q.diagonal()
        q1 = out.Q.diagonal()
        self.assertTrue(np.all(q1[self.bad_rows] > q0[self.bad_rows]))
        np.testing.assert_array_equal(q1[~out.flagged], q0[~out.flagged])

    def test_iteration_cap(self):
        config = self.config.replace(max_iterations=1)
        with self.assertLogs('pyblock.rtk.refiner', level='WARNING'):
            out = downweight_outliers(self.build.system, self.col_ok, config)
        self.assertEqual(out.n_iterations, 1)


class TestReferenceArc(unittest.TestCase):

    def test_best_reference_arc(self):
        _, br = _scenario_system(BlockConfig(), n_epoch=20, n_sat=5, seed=4)
        system = br.system
        ref, col_ok = best_reference_arc(system)
        self.assertIn(ref, system.arc_id)
        self.assertEqual(col_ok.size, system.n_cols - 1)
        self.assertNotIn(system.n_pos_cols + int(np.flatnonzero(system.arc_id == ref)[0]), col_ok)

    def test_single_arc(self):
        ref, col_ok = best_reference_arc(LSSystem.empty())
        self.assertEqual(ref, -1)
        np.testing.assert_array_equal(col_ok, [0, 1, 2])


class TestRefineFloat(unittest.TestCase):

    def _refine(self, config, sc, br):
        return refine_float(br.system, sc.obs.pos_r, config, empty_epochs=br.empty_epochs,
                            n_epoch=sc.obs.n_epoch)

    def test_clean_scenario(self):
        config = BlockConfig()
        sc, br = _scenario_system(config, n_epoch=40, n_sat=7, seed=1)
        fs = self._refine(config, sc, br)
        self.assertLess(np.linalg.norm(fs.pos[0] - sc.rover), 0.05)
        self.assertEqual(fs.ref_arcs.size, 1)
        self.assertEqual(fs.col_ok.size, fs.system.n_cols - 1)
        self.assertEqual(fs.removed_arcs.size, 0)
        self.assertEqual(fs.phase_residuals.values.shape, (40, fs.system.n_amb))
        self.assertEqual(fs.pos_cov.shape, (3, 3))
        amb_var = fs.amb_variances()
        self.assertEqual(amb_var.size, fs.system.n_amb)
        self.assertEqual(amb_var[fs.system.arc_index(fs.ref_arcs)[0]], 0.0)

    def test_missed_slip(self):
        config = BlockConfig()
        sc, clean = _scenario_system(config, n_epoch=60, n_sat=7, seed=1)
        sat = [s for s in range(7) if s not in clean.pivot_track][0]
        sc, br = _scenario_system(config, n_epoch=60, n_sat=7, seed=1, slips={(sat, 30): 2})
        fs = self._refine(config, sc, br)
        arc = int(br.system.arc_id[br.system.amb_sat == sat][0])
        self.assertIn(arc, fs.corrected_arcs)
        self.assertLess(np.linalg.norm(fs.pos[0] - sc.rover), 0.05)

    def test_split_blocks(self):
        config = BlockConfig()
        sc, br = _scenario_system(config, n_epoch=50, n_sat=6, seed=3, empty_epochs=[25])
        fs = self._refine(config, sc, br)
        self.assertEqual(fs.ref_arcs.size, 2)
        self.assertLess(np.linalg.norm(fs.pos[0] - sc.rover), 0.05)

    def test_code_single_epoch(self):
        config = BlockConfig(observation_mode='code')
        sc, br = _scenario_system(config, n_epoch=1, n_sat=4, seed=6)
        self.assertEqual(br.system.n_obs, 3)
        fs = self._refine(config, sc, br)
        np.testing.assert_allclose(fs.pos[0], sc.rover, atol=1e-5)
        self.assertAlmostEqual(fs.s02, 0.0, places=8)
        self.assertEqual(fs.ref_arcs.size, 0)

    def test_empty_system(self):
        with self.assertRaises(ValueError):
            refine_float(LSSystem.empty(), np.zeros(3), BlockConfig())


class TestArcRemoval(unittest.TestCase):

    @classmethod
    def setUpClass(cls):
        cls.config = BlockConfig()
        cls.sc, cls.br = _scenario_system(cls.config, n_epoch=40, n_sat=7, seed=1)
        cls.sat = [int(s) for s in cls.br.system.amb_sat if s not in cls.br.pivot_track][0]

    def test_unstable_arc_removed(self):
        system = self.br.system
        k = int(np.flatnonzero(system.amb_sat == self.sat)[0])
        ref_arc = int(system.arc_id[0 if k else 1])
        col_ok = global_col_ok(system, [ref_arc])
        out = downweight_outliers(system, col_ok, self.config)
        # Blow up the variance of one arc
        pos = int(np.searchsorted(col_ok, system.n_pos_cols + k))
        Cxx = out.result.Cxx.copy()
        Cxx[pos, pos] = 1e3
        unstable = dataclasses.replace(out, result=dataclasses.replace(out.result, Cxx=Cxx))

        with self.assertLogs('pyblock.rtk.refiner', level='INFO'):
            stable, ref, col_ok, outliers, removed = remove_unstable_arcs(
                system, unstable, ref_arc, self.config)
        np.testing.assert_array_equal(removed, [system.arc_id[k]])
        self.assertEqual(stable.n_amb, system.n_amb - 1)
        self.assertNotIn(self.sat, stable.amb_sat)
        self.assertEqual(stable.n_obs, system.n_obs - system.arc_rows(k).size)
        self.assertIn(ref, stable.arc_id)
        np.testing.assert_array_equal(col_ok, global_col_ok(stable, [ref]))
        self.assertEqual(outliers.result.x.size, col_ok.size)

    def test_stable_block_untouched(self):
        system = self.br.system
        ref_arc, col_ok = best_reference_arc(system)
        out = downweight_outliers(system, col_ok, self.config)
        stable, ref, _, _, removed = remove_unstable_arcs(system, out, ref_arc, self.config)
        self.assertEqual(removed.size, 0)
        self.assertEqual(ref, ref_arc)
        self.assertEqual(stable.n_obs, system.n_obs)

    def test_bad_median_arcs(self):
        values = np.full((6, 3), np.nan)
        values[:, 0] = 0.01
        values[:4, 1] = [1.5, 1.2, -0.3, 1.4]
        values[2:, 2] = [-2.0, 0.1, -1.9, -3.0]
        rows = np.where(np.isnan(values), -1, 0)
        residuals = PhaseResiduals(values=values, sigma=np.ones_like(values), rows=rows,
                                   arc_id=np.array([0, 1, 2]), amb_sat=np.array([0, 1, 2]))
        np.testing.assert_array_equal(_bad_median_arcs(residuals, self.config), [1, 2])
        relaxed = self.config.replace(max_median_phase_residual=5.0)
        self.assertEqual(_bad_median_arcs(residuals, relaxed).size, 0)


class TestBlockRemoval(unittest.TestCase):

    @classmethod
    def setUpClass(cls):
        cls.config = BlockConfig()
        cls.sc, cls.br = _scenario_system(cls.config, n_epoch=50, n_sat=6, seed=3,
                                          empty_epochs=[25])
        system = cls.br.system
        cls.blocks = partition_blocks(system, cls.br.empty_epochs, cls.config.full_slip_split)
        cls.refs = [best_reference_arc(b.extract(system))[0] for b in cls.blocks]

    def test_two_blocks(self):
        self.assertEqual(len(self.blocks), 2)
        self.assertTrue(np.all(self.br.system.epochs[self.blocks[0].rows] < 25))
        self.assertTrue(np.all(self.br.system.epochs[self.blocks[1].rows] > 25))

    def test_bad_arc_and_block_removed(self):
        system = self.br.system
        first, second = self.blocks
        pivots = self.br.pivot_track[self.br.valid_epochs < 25]
        candidates = [a for a in first.amb_idx
                      if system.amb_sat[a] not in pivots and system.arc_id[a] != self.refs[0]]
        k = int(candidates[0])
        # Only 2 good arcs are left in the second block
        bad_amb = np.concatenate([[k], second.amb_idx[:second.amb_idx.size - 2]])

        with self.assertLogs('pyblock.rtk.refiner', level='WARNING') as logs:
            out, blocks, refs, col_ok, removed = _remove_bad_arcs(
                system, self.blocks, self.refs, bad_amb, self.br.empty_epochs, self.config)
        self.assertTrue(any("Block 1 found unstable" in msg for msg in logs.output))
        self.assertIn(system.arc_id[k], removed)
        self.assertTrue(np.all(np.isin(system.arc_id[second.amb_idx], removed)))

        self.assertEqual(len(blocks), 1)
        self.assertTrue(np.all(out.epochs < 25))
        self.assertEqual(out.n_amb, first.amb_idx.size - 1)
        expected_rows = first.rows.size - system.arc_rows(k, non_pivot=False).size
        self.assertEqual(out.n_obs, expected_rows)
        self.assertEqual(blocks[0].rows.size, out.n_obs)
        self.assertEqual(refs, [self.refs[0]])
        np.testing.assert_array_equal(col_ok, global_col_ok(out, refs))

    def test_unstable_variance_removes_every_block(self):
        config = self.config.replace(global_unstable_amb_variance=1e-12)
        with self.assertLogs('pyblock.rtk.refiner', level='WARNING') as logs:
            with self.assertRaises(ValueError):
                refine_float(self.br.system, self.sc.obs.pos_r, config,
                             empty_epochs=self.br.empty_epochs, n_epoch=self.sc.obs.n_epoch)
        self.assertTrue(any("found unstable" in msg for msg in logs.output))


if __name__ == '__main__':
    unittest.main()
