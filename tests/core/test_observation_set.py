import unittest

import numpy as np

from pyblock.core.constants import WAVELENGTH_L1
from pyblock.core.data_structures import (ObservationClass, ObservationSet, SolutionStatus,
                                          valid_observation)
from pyblock.core.stats import ElevationWeighting, WeightingModel, cofactor_matrix


def _obs(n_sat=4, n_epoch=3, **kwargs):
    values = np.full((n_sat, n_epoch), 2.0e7)
    args = dict(time=np.arange(n_epoch) * 30.0,
                pos_r=np.array([4.0e6, 7.0e5, 4.9e6]),
                pos_m=np.array([4.0e6, 7.0e5, 4.9e6]),
                pr_r=values, pr_m=values, ph_r=values, ph_m=values)
    args.update(kwargs)
    return ObservationSet(**args)


class TestObservationSet(unittest.TestCase):

    def test_normalization(self):
        obs = _obs()
        self.assertEqual(obs.n_sat, 4)
        self.assertEqual(obs.n_epoch, 3)
        self.assertEqual(obs.pos_m.shape, (3, 3))
        np.testing.assert_allclose(obs.wavelength, np.full(4, WAVELENGTH_L1))
        np.testing.assert_array_equal(obs.prns, [1, 2, 3, 4])
        np.testing.assert_array_equal(obs.snr_r, np.zeros((4, 3)))
        self.assertEqual(obs.lli.dtype.kind, 'i')

    def test_time_must_increase(self):
        with self.assertRaises(ValueError):
            _obs(time=np.array([0.0, 30.0, 30.0]))

    def test_no_epoch(self):
        with self.assertRaises(ValueError):
            _obs(n_epoch=0, time=np.zeros(0))

    def test_shape_mismatch(self):
        with self.assertRaises(ValueError):
            _obs(ph_m=np.zeros((3, 3)))
        with self.assertRaises(ValueError):
            _obs(pos_m=np.zeros((3, 5)))
        with self.assertRaises(ValueError):
            _obs(wavelength=np.ones(2))
        with self.assertRaises(ValueError):
            _obs(wavelength=-1.0)

    def test_valid_observation(self):
        mask = valid_observation(np.array([0.0, np.nan, 1.0, -2.0, np.inf]))
        np.testing.assert_array_equal(mask, [False, False, True, True, False])

    def test_missing_snr_and_lli(self):
        snr = np.full((4, 3), 40.0)
        snr[1, 2] = np.nan
        lli = np.zeros((4, 3))
        lli[0, 1] = np.nan
        lli[2, 1] = 1
        obs = _obs(snr_r=snr, lli=lli)
        self.assertEqual(obs.snr_r[1, 2], 0.0)
        self.assertEqual(obs.snr_r[0, 0], 40.0)
        self.assertEqual(obs.lli[0, 1], 0)
        self.assertEqual(obs.lli[2, 1], 1)

    def test_enum_values(self):
        self.assertEqual(ObservationClass.CODE, -1)
        self.assertEqual(ObservationClass.PHASE, 1)
        self.assertEqual(int(SolutionStatus.FIXED_HIGH_RATE), 2)


class TestWeighting(unittest.TestCase):

    def test_sine_weight(self):
        w = ElevationWeighting(WeightingModel.SINE)
        np.testing.assert_allclose(w.compute_weight([30.0, 90.0]), [0.5, 1.0])
        # Clamped at the elevation floor
        np.testing.assert_allclose(w.compute_weight(1.0), np.sin(np.radians(5.0)))

    def test_exponential_weight(self):
        w = ElevationWeighting(WeightingModel.EXPONENTIAL)
        np.testing.assert_allclose(w.compute_weight([30.0, 90.0]), np.exp([-0.2, -0.1]))
        weights = w.compute_weight([10.0, 30.0, 60.0])
        self.assertTrue(np.all(np.diff(weights) > 0))
        # SNR is ignored by the elevation-only models
        np.testing.assert_allclose(w.compute_weight([30.0], snr=[20.0]), np.exp([-0.2]))

    def test_uniform_weight(self):
        w = ElevationWeighting(WeightingModel.UNIFORM)
        np.testing.assert_allclose(w.variance_factor([10.0, 45.0]), [1.0, 1.0])

    def test_snr_unknown_falls_back_to_elevation(self):
        w = ElevationWeighting(WeightingModel.COMBINED)
        np.testing.assert_allclose(w.compute_weight([30.0], snr=[0.0]), [0.5])
        self.assertLess(w.compute_weight([30.0], snr=[20.0])[0],
                        w.compute_weight([30.0], snr=[50.0])[0])

    def test_cofactor_matrix(self):
        el = np.array([30.0, 90.0, 45.0])
        Q = cofactor_matrix(el, el, None, None, pivot_index=1,
                            weighting=ElevationWeighting(WeightingModel.SINE))
        q = 2.0 / np.sin(np.radians(el)) ** 2
        expected = np.diag(q[[0, 2]]) + q[1]
        np.testing.assert_allclose(Q, expected)
        np.testing.assert_allclose(Q, Q.T)
        self.assertTrue(np.all(np.linalg.eigvalsh(Q) > 0))


if __name__ == '__main__':
    unittest.main()
