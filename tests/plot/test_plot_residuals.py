import unittest

import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt
import numpy as np

from pyblock.plot.residuals import plot_phase_residuals
from pyblock.rtk.residuals import PhaseResiduals


class TestPlotPhaseResiduals(unittest.TestCase):

    def tearDown(self):
        plt.close('all')

    def test_array_input(self):
        values = np.full((10, 3), np.nan)
        values[:, 0] = np.linspace(-0.01, 0.01, 10)
        values[2:8, 2] = 0.005
        ax = plot_phase_residuals(values, labels=['G01', 'G02', 'G03'])
        # Two series plus the zero line, the all-NaN column is skipped
        self.assertEqual(len(ax.get_lines()), 3)
        self.assertEqual(ax.get_xlabel(), 'Epoch')
        legend = [t.get_text() for t in ax.get_legend().get_texts()]
        self.assertEqual(legend, ['G01', 'G03'])

    def test_phase_residuals_input(self):
        values = np.zeros((5, 2))
        res = PhaseResiduals(values=values, sigma=np.ones((5, 2)),
                             rows=np.arange(10).reshape(5, 2),
                             arc_id=np.array([0, 4]), amb_sat=np.array([2, 2]))
        fig, ax = plt.subplots()
        out = plot_phase_residuals(res, times=np.arange(5) * 30.0, ax=ax)
        self.assertIs(out, ax)
        self.assertEqual(ax.get_xlabel(), 'Time [s]')
        legend = [t.get_text() for t in ax.get_legend().get_texts()]
        self.assertEqual(legend, ['sat 2 / arc 0', 'sat 2 / arc 4'])

    def test_label_mismatch(self):
        with self.assertRaises(ValueError):
            plot_phase_residuals(np.zeros((4, 2)), labels=['only one'])


if __name__ == '__main__':
    unittest.main()
