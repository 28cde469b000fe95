import unittest

import numpy as np

from pyblock.core.config import BlockConfig
from pyblock.gnss.geometry import LocalGeometry
from pyblock.gnss.synthetic import make_scenario
from pyblock.rtk.high_rate import (high_rate_design, interval_index, mean_position,
                                   solve_high_rate, time_limits)
from pyblock.rtk.refiner import refine_float
from pyblock.rtk.system import build_system


class TestIntervals(unittest.TestCase):

    def test_time_limits(self):
        np.testing.assert_allclose(time_limits(0.0, 100.0, 30.0), [0, 30, 60, 90, 100])
        np.testing.assert_allclose(time_limits(0.0, 90.0, 30.0), [0, 30, 60, 90])
        np.testing.assert_allclose(time_limits(5.0, 5.0, 1.0), [5, 5])
        with self.assertRaises(ValueError):
            time_limits(0.0, 10.0, 0.0)

    def test_interval_index(self):
        limits = np.array([0.0, 30.0, 60.0, 90.0, 100.0])
        np.testing.assert_array_equal(
            interval_index(np.array([0.0, 29.9, 30.0, 90.0, 100.0]), limits), [0, 0, 1, 3, 3])

    def test_design(self):
        A = np.array([[1.0, 2.0, 3.0, 4.0],
                      [5.0, 6.0, 7.0, 8.0]])
        A_hr = high_rate_design(A, np.array([1, 0]), 2).toarray()
        np.testing.assert_array_equal(A_hr, [[0, 0, 0, 1, 2, 3, 4],
                                             [5, 6, 7, 0, 0, 0, 8]])


class TestFloatHighRate(unittest.TestCase):

    @classmethod
    def setUpClass(cls):
        config = BlockConfig()
        cls.sc = make_scenario(n_epoch=20, n_sat=7, seed=0)
        br = build_system(cls.sc.obs, cls.sc.ephemeris, LocalGeometry(troposphere=False), config)
        cls.fs = refine_float(br.system, cls.sc.obs.pos_r, config,
                              empty_epochs=br.empty_epochs, n_epoch=cls.sc.obs.n_epoch)

    def test_empty_intervals(self):
        with self.assertLogs('pyblock.rtk.high_rate', level='WARNING'):
            hr = solve_high_rate(self.fs, self.sc.obs.time, None, 20.0, use_float=True)
        self.assertEqual(hr.n_intervals, 29)
        self.assertEqual(np.count_nonzero(hr.valid), 20)
        self.assertTrue(np.all(np.isnan(hr.pos[~hr.valid])))
        self.assertTrue(np.all(np.isfinite(hr.pos[hr.valid])))
        self.assertTrue(np.all(np.isnan(hr.pos_cov[~hr.valid])))
        self.assertEqual(hr.is_fixed, 0)
        self.assertEqual(hr.cov_valid.shape, (60, 60))

    def test_one_interval_per_epoch(self):
        hr = solve_high_rate(self.fs, self.sc.obs.time, None, 30.0)
        self.assertEqual(hr.n_intervals, 19)
        self.assertTrue(np.all(hr.valid))
        np.testing.assert_allclose(hr.time_centres[0], self.sc.obs.time[0] + 15.0)

    def test_single_interval_matches_float(self):
        hr = solve_high_rate(self.fs, self.sc.obs.time, None, 1e6)
        self.assertEqual(hr.n_intervals, 1)
        np.testing.assert_allclose(hr.pos[0], self.fs.pos[0], atol=1e-6)
        pos, cov = mean_position(hr)
        np.testing.assert_allclose(pos, self.fs.pos[0], atol=1e-4)
        self.assertEqual(cov.shape, (3, 3))


if __name__ == '__main__':
    unittest.main()
