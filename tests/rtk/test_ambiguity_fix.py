import dataclasses
import unittest

import numpy as np

from pyblock.core.config import BlockConfig
from pyblock.core.data_structures import ObservationClass, SolutionStatus
from pyblock.gnss.geometry import LocalGeometry
from pyblock.gnss.synthetic import make_scenario
from pyblock.rtk.ambiguity_fix import (Degraded, Fixed, add_fix_pseudo_observations, apply_fix,
                                       fix_ambiguities, sd_to_dd_matrix)
from pyblock.rtk.least_squares import solve_ls
from pyblock.rtk.mlambda import AmbiguitySearchError, IntegerCandidate
from pyblock.rtk.refiner import refine_float
from pyblock.rtk.system import build_system


class FailingSolver:
    def fix(self, a, Q):
        raise AmbiguitySearchError("no candidate")


class FixedCandidatesSolver:
    def __init__(self, candidates):
        self.candidates = candidates

    def fix(self, a, Q):
        zero = np.zeros((a.size, a.size))
        return [IntegerCandidate(values=np.asarray(c), squared_norm=0.0, covariance=zero)
                for c in self.candidates]


class TestSingleToDoubleDifference(unittest.TestCase):

    def test_matrix(self):
        np.testing.assert_array_equal(sd_to_dd_matrix(3, 1), [[-1, 1, 0], [0, 1, -1]])
        np.testing.assert_array_equal(sd_to_dd_matrix(2), [[1, -1]])

    def test_invalid(self):
        with self.assertRaises(ValueError):
            sd_to_dd_matrix(1)
        with self.assertRaises(ValueError):
            sd_to_dd_matrix(3, 3)


class TestApplyFix(unittest.TestCase):

    def test_conditional_adjustment(self):
        rng = np.random.default_rng(7)
        M = rng.standard_normal((6, 6))
        Cxx = M @ M.T + 6 * np.eye(6)
        x = rng.standard_normal(6)
        a_fix = np.array([1.0, -2.0, 0.0])

        d_pos, pos_cov = apply_fix(x, Cxx, a_fix)
        K = Cxx[:3, 3:] @ np.linalg.inv(Cxx[3:, 3:])
        np.testing.assert_allclose(d_pos[0], x[:3] - K @ (x[3:] - a_fix), atol=1e-10)
        np.testing.assert_allclose(pos_cov, Cxx[:3, :3] - K @ Cxx[3:, :3], atol=1e-10)

    def test_with_transformation(self):
        rng = np.random.default_rng(8)
        M = rng.standard_normal((6, 6))
        Cxx = M @ M.T + 6 * np.eye(6)
        x = rng.standard_normal(6)
        D = sd_to_dd_matrix(3)
        z = np.array([3.0, -1.0])

        G = np.zeros((5, 6))
        G[:3, :3] = np.eye(3)
        G[3:, 3:] = D
        expected = apply_fix(G @ x, G @ Cxx @ G.T, z)
        result = apply_fix(x, Cxx, z, D)
        np.testing.assert_allclose(result[0], expected[0], atol=1e-10)
        np.testing.assert_allclose(result[1], expected[1], atol=1e-10)


class TestFixAmbiguities(unittest.TestCase):

    @classmethod
    def setUpClass(cls):
        cls.config = BlockConfig()
        cls.sc = make_scenario(n_epoch=120, n_sat=7, phase_noise=0.001, seed=0)
        br = build_system(cls.sc.obs, cls.sc.ephemeris, LocalGeometry(troposphere=False),
                          cls.config)
        cls.fs = refine_float(br.system, cls.sc.obs.pos_r, cls.config,
                              empty_epochs=br.empty_epochs, n_epoch=cls.sc.obs.n_epoch)
        cls.fixed = fix_ambiguities(cls.fs, config=cls.config)

        est = cls.fs.col_ok[cls.fs.col_ok >= 3] - 3
        N = cls.sc.ambiguities[cls.fs.system.amb_sat[est]]
        cls.true_dd = N[1:] - N[0]

    def test_fixed(self):
        fixed = self.fixed
        self.assertIsInstance(fixed, Fixed)
        self.assertEqual(fixed.status, SolutionStatus.FIXED)
        self.assertEqual(fixed.ref_index, 0)
        np.testing.assert_array_equal(fixed.amb_fix, self.true_dd)
        self.assertLess(np.linalg.norm(fixed.pos - self.sc.rover), 0.01)
        self.assertEqual(fixed.pos_cov.shape, (3, 3))
        self.assertTrue(np.all(np.diag(fixed.pos_cov) <= np.diag(self.fs.pos_cov) + 1e-12))
        np.testing.assert_allclose(fixed.D @ fixed.amb_fix_full, fixed.amb_fix, atol=1e-9)

    def test_candidate_selection(self):
        wrong = self.true_dd.copy()
        wrong[0] += 1
        solver = FixedCandidatesSolver([wrong, self.true_dd])
        fixed = fix_ambiguities(self.fs, solver, self.config)
        self.assertIsInstance(fixed, Fixed)
        np.testing.assert_array_equal(fixed.amb_fix, self.true_dd)

    def test_solver_failure(self):
        outcome = fix_ambiguities(self.fs, FailingSolver(), self.config)
        self.assertIsInstance(outcome, Degraded)
        self.assertEqual(int(outcome.status), 0)
        self.assertEqual(outcome.ref_index, -1)
        self.assertIn("no candidate", outcome.reason)
        np.testing.assert_allclose(outcome.pos, self.fs.pos[0])

    def test_covariance_not_positive_definite(self):
        fs = dataclasses.replace(self.fs, Cxx=-self.fs.Cxx)
        outcome = fix_ambiguities(fs, config=self.config)
        self.assertIsInstance(outcome, Degraded)
        self.assertFalse(outcome.is_fixed)

    def test_pseudo_observations(self):
        fs = self.fs
        augmented = add_fix_pseudo_observations(fs.system, fs.col_ok, self.fixed,
                                                self.config.pseudo_obs_variance)
        n_fix = self.fixed.amb_fix.size
        self.assertEqual(augmented.n_obs, fs.system.n_obs + n_fix)
        np.testing.assert_array_equal(augmented.obs_track[-n_fix:, 0], -1)
        np.testing.assert_array_equal(augmented.obs_track[-n_fix:, 2],
                                      ObservationClass.AMBIGUITY.value)
        np.testing.assert_array_equal(augmented.y0[-n_fix:], 0.0)
        # Fixed values of order 1e6 cycles are carried by the known terms
        self.assertGreater(np.max(np.abs(self.fixed.amb_fix_full)), 1e3)
        res = solve_ls(augmented.y0, augmented.b, augmented.A, augmented.Q, col_ok=fs.col_ok)
        np.testing.assert_allclose(res.x[:3], self.fixed.d_pos, atol=1e-4)
        # Ambiguity corrections keep the fixed double differences
        da = res.x[3:]
        np.testing.assert_allclose(self.fixed.D @ da, np.zeros(n_fix), atol=1e-3)

    def test_pseudo_observations_column_mismatch(self):
        fs = self.fs
        with self.assertRaises(ValueError):
            add_fix_pseudo_observations(fs.system, fs.col_ok[:-1], self.fixed, 1e-8)


if __name__ == '__main__':
    unittest.main()
