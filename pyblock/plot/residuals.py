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

"""Phase residual plots"""

from typing import Optional, Sequence

import matplotlib.pyplot as plt
import numpy as np

from ..rtk.residuals import PhaseResiduals

COLORS = [
    '#1f77b4',
    '#ff7f0e',
    '#2ca02c',
    '#d62728',
    '#9467bd',
    '#8c564b',
    '#e377c2',
    '#7f7f7f',
    '#bcbd22',
    '#17becf',
]


def plot_phase_residuals(residuals,
                         times: Optional[np.ndarray] = None,
                         labels: Optional[Sequence[str]] = None,
                         ax=None):
    """
    Plot one residual line per arc (or per satellite)

    Parameters:
    -----------
    residuals : PhaseResiduals or np.ndarray
        Residual table, (n_epoch, n_col) when an array
    times : np.ndarray, optional
        Epoch times, epoch indices when None
    labels : sequence of str, optional
        Legend label of each column; arcs are labelled by satellite and arc id
    ax : matplotlib.axes.Axes, optional
        Target axes, a new figure is created when None

    Returns:
    --------
    matplotlib.axes.Axes
    """
    if isinstance(residuals, PhaseResiduals):
        values = residuals.values
        if labels is None:
            labels = [f"sat {s} / arc {a}" for s, a in zip(residuals.amb_sat, residuals.arc_id)]
    else:
        values = np.atleast_2d(np.asarray(residuals, dtype=float))
    n_epoch, n_col = values.shape
    xlabel = 'Time [s]'
    if times is None:
        times = np.arange(n_epoch)
        xlabel = 'Epoch'
    times = np.asarray(times)
    if labels is None:
        labels = [f"{c}" for c in range(n_col)]
    if len(labels) != n_col:
        raise ValueError(f"{len(labels)} labels given for {n_col} residual series")

    if ax is None:
        _, ax = plt.subplots(figsize=(10, 5))

    for c in range(n_col):
        ok = ~np.isnan(values[:, c])
        if not np.any(ok):
            continue
        ax.plot(times[ok], values[ok, c], '.-', markersize=3, linewidth=0.8,
                color=COLORS[c % len(COLORS)], label=labels[c])

    ax.axhline(0.0, color='k', linewidth=0.5)
    ax.set_xlabel(xlabel)
    ax.set_ylabel('Phase residual [m]')
    ax.set_title('Double-difference phase residuals')
    ax.grid(True, alpha=0.3)
    if 0 < n_col <= 20:
        ax.legend(loc='upper right', fontsize='small', ncol=2)
    return ax
