import unittest

import numpy as np

from pyblock.core.config import BlockConfig
from pyblock.gnss.geometry import LocalGeometry
from pyblock.gnss.synthetic import make_scenario
from pyblock.rtk.arcs import epoch_runs, remove_short_arcs, remove_solitary_observations
from pyblock.rtk.partition import (assemble_blocks, block_boundaries, default_reference_arc,
                                   global_col_ok, partition_blocks)
from pyblock.rtk.system import LSSystem, build_system

GEOMETRY = LocalGeometry(troposphere=False)


def _build(config=None, **scenario):
    sc = make_scenario(**scenario)
    return build_system(sc.obs, sc.ephemeris, GEOMETRY, config or BlockConfig())


class TestArcs(unittest.TestCase):

    def test_epoch_runs(self):
        self.assertEqual(epoch_runs(np.array([0, 1, 2, 5, 6, 9])), [(0, 3), (3, 5), (5, 6)])
        self.assertEqual(epoch_runs(np.array([4])), [(0, 1)])
        self.assertEqual(epoch_runs(np.zeros(0, dtype=int)), [])

    def test_short_arc_removed_with_its_rows(self):
        br = _build(n_epoch=30, n_sat=5, gaps=[(2, 0, 24)])
        system = br.system
        arc = int(system.arc_id[system.amb_sat == 2][0])
        pruned, removed = remove_short_arcs(system, 10)
        np.testing.assert_array_equal(removed, [arc])
        self.assertNotIn(arc, pruned.arc_id)
        self.assertEqual(pruned.n_amb, system.n_amb - 1)
        self.assertFalse(np.any(pruned.obs_track[:, 1] == 2))
        self.assertTrue(np.all(pruned.arc_lengths() >= 10))

    def test_no_short_arc(self):
        system = _build(n_epoch=12, n_sat=5).system
        pruned, removed = remove_short_arcs(system, 10)
        self.assertEqual(removed.size, 0)
        self.assertEqual(pruned.n_obs, system.n_obs)

    def test_solitary_observation(self):
        br = _build(n_epoch=30, n_sat=6, seed=5)
        system = br.system
        sat = [s for s in range(6) if s not in br.pivot_track][0]
        own = (system.obs_track[:, 1] == sat)
        cut = own & np.isin(system.epochs, [10, 12])
        system = system.remove_rows(cut)
        lonely = np.flatnonzero(own[~cut] & (system.epochs == 11))
        self.assertEqual(lonely.size, 1)

        cleaned, n_removed = remove_solitary_observations(system, 2)
        self.assertGreaterEqual(n_removed, 1)
        rows = cleaned.obs_track[cleaned.obs_track[:, 1] == sat]
        self.assertNotIn(11, rows[:, 0])
        self.assertEqual(rows.shape[0], 30 - 3)

    def test_solitary_disabled(self):
        system = _build(n_epoch=12, n_sat=5).system
        cleaned, n_removed = remove_solitary_observations(system, 1)
        self.assertEqual(n_removed, 0)
        self.assertIs(cleaned, system)


class TestPartition(unittest.TestCase):

    def test_block_boundaries(self):
        epochs = np.array([0, 0, 1, 1, 3, 3, 4])
        np.testing.assert_array_equal(block_boundaries(epochs, np.array([2]), 1),
                                      [0, 0, 0, 0, 1, 1, 1])
        np.testing.assert_array_equal(block_boundaries(epochs, np.array([2]), 2), np.zeros(7))
        np.testing.assert_array_equal(block_boundaries(epochs, np.array([2]), None), np.zeros(7))

    def test_partition_and_reassembly(self):
        br = _build(n_epoch=30, n_sat=5, empty_epochs=[15])
        system = br.system
        blocks = partition_blocks(system, br.empty_epochs, 1)
        self.assertEqual(len(blocks), 2)
        self.assertEqual(sum(b.n_rows for b in blocks), system.n_obs)
        self.assertEqual(np.intersect1d(blocks[0].amb_idx, blocks[1].amb_idx).size, 0)
        for block in blocks:
            self.assertIn(block.ref_arc, system.arc_id[block.amb_idx])

        assembled = assemble_blocks([b.extract(system) for b in blocks])
        self.assertEqual(assembled.n_obs, system.n_obs)
        self.assertEqual(assembled.n_amb, system.n_amb)
        np.testing.assert_array_equal(assembled.arc_id, system.arc_id)
        np.testing.assert_allclose(assembled.y0, system.y0)
        np.testing.assert_allclose(assembled.A.toarray(), system.A.toarray())
        np.testing.assert_allclose(assembled.Q.toarray(), system.Q.toarray())

    def test_single_block_without_split(self):
        br = _build(n_epoch=30, n_sat=5, empty_epochs=[15])
        blocks = partition_blocks(br.system, br.empty_epochs, None)
        self.assertEqual(len(blocks), 1)
        self.assertEqual(blocks[0].n_rows, br.system.n_obs)
        self.assertEqual(partition_blocks(LSSystem.empty(), br.empty_epochs, 1), [])

    def test_default_reference_arc(self):
        system = _build(n_epoch=20, n_sat=5).system
        last_sat = system.obs_track[-1, 1]
        expected = int(system.arc_id[system.amb_sat == last_sat][0])
        self.assertEqual(default_reference_arc(system), expected)
        code = _build(BlockConfig(observation_mode='code'), n_epoch=5, n_sat=5).system
        self.assertEqual(default_reference_arc(code), -1)

    def test_global_col_ok(self):
        system = _build(n_epoch=20, n_sat=5).system
        col_ok = global_col_ok(system, [2, 99])
        np.testing.assert_array_equal(col_ok, [0, 1, 2, 3, 4, 6, 7])
        np.testing.assert_array_equal(global_col_ok(system, [-1]), np.arange(8))


if __name__ == '__main__':
    unittest.main()
