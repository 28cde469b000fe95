import unittest

import numpy as np

from pyblock.rtk.mlambda import (AmbiguitySearchError, IntegerAmbiguitySolver, LD, mlambda,
                                 ratio_test)


class TestMLambda(unittest.TestCase):

    def setUp(self):
        self.Q = np.array([[0.020, 0.008, 0.004],
                           [0.008, 0.030, 0.006],
                           [0.004, 0.006, 0.015]])
        self.a = np.array([1.08, -2.05, 3.03])

    def test_ld_factorization(self):
        L, d = LD(self.Q)
        np.testing.assert_allclose(L.T @ np.diag(d) @ L, self.Q, atol=1e-12)
        np.testing.assert_allclose(np.diag(L), np.ones(3))
        np.testing.assert_allclose(np.triu(L, 1), np.zeros((3, 3)))

    def test_ld_not_positive_definite(self):
        with self.assertRaises(AmbiguitySearchError):
            LD(np.array([[1.0, 2.0], [2.0, 1.0]]))

    def test_mlambda_candidates(self):
        afix, s = mlambda(self.a, self.Q, m=2)
        self.assertEqual(afix.shape, (3, 2))
        self.assertTrue(np.issubdtype(afix.dtype, np.integer))
        np.testing.assert_array_equal(afix[:, 0], [1, -2, 3])
        self.assertLessEqual(s[0], s[1])

    def test_ratio_test(self):
        self.assertEqual(ratio_test(np.array([1.0, 4.0]), 3.0), (True, 4.0))
        self.assertEqual(ratio_test(np.array([1.0, 2.0]), 3.0), (False, 2.0))
        passed, ratio = ratio_test(np.array([0.0, 1.0]), 3.0)
        self.assertTrue(passed)
        self.assertTrue(np.isinf(ratio))
        self.assertEqual(ratio_test(np.array([1.0]), 3.0), (False, 0.0))


class TestIntegerAmbiguitySolver(unittest.TestCase):

    def test_validated_fix(self):
        solver = IntegerAmbiguitySolver(ratio_threshold=3.0)
        candidates = solver.fix(np.array([2.02, -0.97, 5.01]), np.eye(3) * 0.01)
        self.assertEqual(len(candidates), 1)
        np.testing.assert_array_equal(candidates[0].values, [2, -1, 5])
        np.testing.assert_array_equal(candidates[0].covariance, np.zeros((3, 3)))
        self.assertGreaterEqual(solver.last_ratio, 3.0)

    def test_ratio_failure_raises(self):
        solver = IntegerAmbiguitySolver(ratio_threshold=3.0)
        with self.assertRaises(AmbiguitySearchError):
            solver.fix(np.array([0.5, 0.5]), np.eye(2) * 0.1)

    def test_unvalidated_candidates(self):
        solver = IntegerAmbiguitySolver(ratio_threshold=3.0, accept_unvalidated=True)
        with self.assertLogs('pyblock.rtk.mlambda', level='WARNING'):
            candidates = solver.fix(np.array([0.5, 0.5]), np.eye(2) * 0.1)
        self.assertEqual(len(candidates), 2)
        self.assertLessEqual(candidates[0].squared_norm, candidates[1].squared_norm)

    def test_not_positive_definite(self):
        solver = IntegerAmbiguitySolver()
        with self.assertRaises(AmbiguitySearchError):
            solver.fix(np.array([0.1, 0.2]), np.array([[1.0, 2.0], [2.0, 1.0]]))
        with self.assertRaises(AmbiguitySearchError):
            solver.fix(np.zeros(0), np.zeros((0, 0)))

    def test_candidate_count(self):
        with self.assertRaises(ValueError):
            IntegerAmbiguitySolver(n_candidates=1)


if __name__ == '__main__':
    unittest.main()
