import dataclasses
import unittest

from pyblock.core.config import DEFAULT_BLOCK_CONFIG, BlockConfig
from pyblock.core.data_structures import ObservationMode
from pyblock.core.stats import THRESAR_RATIO, WeightingModel


class TestBlockConfig(unittest.TestCase):

    def test_defaults(self):
        config = BlockConfig()
        self.assertEqual(config.mode, ObservationMode.PHASE)
        self.assertEqual(config.weighting_model, WeightingModel.SINE)
        self.assertEqual(config.ratio_threshold, THRESAR_RATIO)
        self.assertEqual(config.to_dict(), DEFAULT_BLOCK_CONFIG)

    def test_immutable(self):
        config = BlockConfig()
        with self.assertRaises(dataclasses.FrozenInstanceError):
            config.min_arc = 3

    def test_replace(self):
        config = BlockConfig()
        changed = config.replace(min_arc=20, outlier_rejection=False)
        self.assertEqual(changed.min_arc, 20)
        self.assertFalse(changed.outlier_rejection)
        self.assertEqual(config.min_arc, DEFAULT_BLOCK_CONFIG['min_arc'])

    def test_from_dict(self):
        config = BlockConfig.from_dict(dict(DEFAULT_BLOCK_CONFIG, min_arc=5, cleaning_loops=2))
        self.assertEqual(config.min_arc, 5)
        self.assertEqual(config.cleaning_loops, 2)

    def test_from_dict_unknown_key(self):
        with self.assertRaises(ValueError):
            BlockConfig.from_dict({'min_arcs': 10})

    def test_invalid_values(self):
        invalid = [
            {'observation_mode': 'doppler'},
            {'weighting': 'cosine'},
            {'min_arc': 0},
            {'min_satellites': 1},
            {'full_slip_split': -1},
            {'phase_sigma': 0.0},
            {'outlier_percentile': 0.0},
            {'outlier_inflation': 1.0},
            {'max_iterations': 0},
            {'n_candidates': 1},
            {'fix_reference_index': -1},
            {'pseudo_obs_variance': 0.0},
        ]
        for changes in invalid:
            with self.subTest(changes=changes):
                with self.assertRaises(ValueError):
                    BlockConfig(**changes)

    def test_split_switch(self):
        self.assertTrue(BlockConfig(full_slip_split=1).split_enabled)
        self.assertFalse(BlockConfig(full_slip_split=0).split_enabled)
        self.assertFalse(BlockConfig(full_slip_split=None).split_enabled)

    def test_solitary_run_length(self):
        self.assertEqual(BlockConfig(min_arc=10).solitary_run_length, 5)
        self.assertEqual(BlockConfig(min_arc=1).solitary_run_length, 1)

    def test_observation_modes(self):
        self.assertTrue(ObservationMode.CODE_PHASE.uses_code)
        self.assertTrue(ObservationMode.CODE_PHASE.uses_phase)
        self.assertFalse(ObservationMode.CODE.uses_phase)
        self.assertFalse(ObservationMode.PHASE.uses_code)


if __name__ == '__main__':
    unittest.main()
