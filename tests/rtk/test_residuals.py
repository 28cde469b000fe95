import unittest

import numpy as np

from pyblock.core.config import BlockConfig
from pyblock.core.constants import WAVELENGTH_L1
from pyblock.gnss.geometry import LocalGeometry
from pyblock.gnss.synthetic import make_scenario
from pyblock.rtk.residuals import (compute_phase_residuals, correct_missed_slips, moving_median,
                                   pivot_change_epochs, pre_correct_integer_jumps, slip_window)
from pyblock.rtk.system import LSSystem, build_system

GEOMETRY = LocalGeometry(troposphere=False)


def _build(**scenario):
    sc = make_scenario(**scenario)
    return build_system(sc.obs, sc.ephemeris, GEOMETRY, BlockConfig())


class TestFilters(unittest.TestCase):

    def test_moving_median(self):
        np.testing.assert_allclose(moving_median(np.array([1.0, 100.0, 3.0, 4.0, 5.0]), 3),
                                   [50.5, 3.0, 4.0, 4.0, 4.5])
        self.assertEqual(moving_median(np.zeros(0), 3).size, 0)

    def test_moving_median_is_writable(self):
        values = np.array([0.0, 1.0, 2.0, np.nan, 4.0, 5.0])
        out = moving_median(values, 3)
        self.assertTrue(out.flags.writeable)
        out[:2] = 0.0
        np.testing.assert_array_equal(out[:2], [0.0, 0.0])
        self.assertEqual(values[0], 0.0)
        self.assertEqual(values[1], 1.0)

    def test_slip_window_is_odd(self):
        self.assertEqual(slip_window(10), 5)
        self.assertEqual(slip_window(8), 5)
        self.assertEqual(slip_window(1), 1)

    def test_pivot_change_epochs(self):
        np.testing.assert_array_equal(
            pivot_change_epochs(np.array([0, 1, 2, 4, 5]), np.array([3, 3, 1, 1, 2])), [2, 5])
        self.assertEqual(pivot_change_epochs(np.array([0]), np.array([1])).size, 0)


class TestPhaseResiduals(unittest.TestCase):

    @classmethod
    def setUpClass(cls):
        cls.build = _build(n_epoch=30, n_sat=6, seed=5)
        cls.system = cls.build.system
        cls.sat = [s for s in range(6) if s not in cls.build.pivot_track][0]
        cls.arc = int(np.flatnonzero(cls.system.amb_sat == cls.sat)[0])

    def test_table_placement(self):
        system = self.system
        v = np.arange(system.n_obs, dtype=float)
        res = compute_phase_residuals(system, v)
        self.assertEqual(res.values.shape, (30, system.n_amb))
        for r in range(system.n_obs):
            epoch, sat = system.obs_track[r, :2]
            a = int(np.flatnonzero(system.amb_sat == sat)[0])
            self.assertEqual(res.rows[epoch, a], r)
            self.assertEqual(res.values[epoch, a], v[r])
        # Pivot satellites have no residual at the epochs they are pivot
        for k, epoch in enumerate(self.build.valid_epochs):
            a = int(np.flatnonzero(system.amb_sat == self.build.pivot_track[k])[0])
            self.assertTrue(np.isnan(res.values[epoch, a]))
            self.assertEqual(res.rows[epoch, a], -1)

        values, rows = res.arc_series(self.arc)
        np.testing.assert_array_equal(values, rows)
        self.assertEqual(rows.size, 30)

    def test_missed_slip_corrected(self):
        system = self.system
        rows = system.arc_rows(self.arc)
        v = np.zeros(system.n_obs)
        late = rows[system.epochs[rows] >= 15]
        v[late] = WAVELENGTH_L1
        res = compute_phase_residuals(system, v)

        y0, corrected = correct_missed_slips(system.y0, res, system, slip_window(10))
        np.testing.assert_array_equal(corrected, [system.arc_id[self.arc]])
        expected = system.y0.copy()
        expected[late] -= WAVELENGTH_L1
        np.testing.assert_allclose(y0, expected)

    def test_no_slip_no_correction(self):
        res = compute_phase_residuals(self.system, np.zeros(self.system.n_obs))
        y0, corrected = correct_missed_slips(self.system.y0, res, self.system, 5)
        self.assertEqual(corrected.size, 0)
        np.testing.assert_array_equal(y0, self.system.y0)


class TestPreCorrection(unittest.TestCase):

    def test_empty_system(self):
        out = pre_correct_integer_jumps(LSSystem.empty())
        self.assertTrue(out.is_empty)

    def test_injected_jump_removed(self):
        clean = _build(n_epoch=30, n_sat=6, seed=5)
        changes = pivot_change_epochs(clean.valid_epochs, clean.pivot_track)
        sat = [s for s in range(6) if s not in clean.pivot_track][0]
        epoch = [e for e in range(12, 20) if np.all(np.abs(changes - e) > 1)][0]

        slipped = _build(n_epoch=30, n_sat=6, seed=5, slips={(sat, epoch): 2})
        self.assertEqual(slipped.system.n_obs, clean.system.n_obs)
        jumps = slipped.system.y0 - clean.system.y0
        self.assertAlmostEqual(np.max(np.abs(jumps)), 2 * WAVELENGTH_L1, places=6)

        out = pre_correct_integer_jumps(slipped.system, changes)
        np.testing.assert_allclose(out.y0, clean.system.y0, rtol=0, atol=1e-6)
        self.assertEqual(out.Q.shape, slipped.system.Q.shape)


if __name__ == '__main__':
    unittest.main()
