"""
Matplotlib view of the membrane field.

The viewer is refreshed once per audio batch. Its event handlers only post
into the excitation inbox or set the stop event, so user input is applied by
the tick loop at a tick boundary.
"""

from typing import List

import numpy as np
import matplotlib.pyplot as plt
from mpl_toolkits.axes_grid1 import make_axes_locatable


class FieldViewer:
    """Live pressure plot with click-to-excite and Escape-to-stop."""

    def __init__(self, grid, inbox, stop_event, listener=None, vmax: float = 0.1):
        """Initialize viewer.

        Args:
            grid: GridState to display
            inbox: ExcitationInbox receiving normalized click positions
            stop_event: threading.Event set on Escape or window close
            listener: Optional (x, y) listener cell to mark
            vmax: Initial colour scale limit
        """
        self.grid = grid
        self.inbox = inbox
        self.stop_event = stop_event

        plt.ion()
        self.fig, self.ax = plt.subplots(figsize=(6, 6))
        divider = make_axes_locatable(self.ax)
        cax = divider.append_axes('right', size='5%', pad=0.05)

        # field is stored [x, y]; imshow wants [row=y, col=x]
        self.im = self.ax.imshow(grid.layer(grid.current).T, origin='lower',
                                 extent=[0, 1, 0, 1], cmap='RdBu_r',
                                 vmin=-vmax, vmax=vmax)
        self.fig.colorbar(self.im, cax=cax, label='Pressure')
        self.ax.set_xlabel('x')
        self.ax.set_ylabel('y')
        self.ax.set_title('batch 0 (t = 0)')

        if listener is not None:
            lx = (listener[0] + 0.5) / grid.width
            ly = (listener[1] + 0.5) / grid.height
            self.ax.plot(lx, ly, 'ko', markersize=6)
            self.ax.annotate('listener', (lx, ly), textcoords="offset points",
                             xytext=(5, 5), fontsize=8)

        self.fig.canvas.mpl_connect('button_press_event', self._on_click)
        self.fig.canvas.mpl_connect('key_press_event', self._on_key)
        self.fig.canvas.mpl_connect('close_event', self._on_close)

        plt.tight_layout()
        plt.show(block=False)

    def _on_click(self, event):
        if event.inaxes is not self.ax or event.button != 1:
            return
        if event.xdata is None or event.ydata is None:
            return
        # extent [0, 1] makes data coordinates already normalized
        self.inbox.post((event.xdata, event.ydata))

    def _on_key(self, event):
        if event.key == 'escape':
            self.stop_event.set()

    def _on_close(self, event):
        self.stop_event.set()

    def update(self, batch_index: int, t: float):
        field = self.grid.layer(self.grid.current)
        self.im.set_data(field.T)

        vmax = max(0.01, float(np.max(np.abs(field))))
        self.im.set_clim(-vmax, vmax)
        self.ax.set_title(f'batch {batch_index} (t = {t:.3f} s)')

        self.fig.canvas.draw_idle()
        # lets the GUI deliver pending clicks and key presses
        plt.pause(0.001)

    def save(self, filename: str):
        self.fig.savefig(filename)
        print(f"Field snapshot saved to {filename}")

    def close(self):
        plt.close(self.fig)


def save_stats_plot(times: List[float], energies: List[float],
                    max_pressures: List[float], filename: str):
    """Plot energy and max |p| per batch and save the figure."""
    fig, axes = plt.subplots(2, 1, figsize=(10, 6), sharex=True)

    axes[0].plot(times, energies, 'b-')
    axes[0].set_ylabel('Leapfrog Energy')
    axes[0].set_title('Membrane Statistics Over Time')
    axes[0].grid(True)

    axes[1].plot(times, max_pressures, 'g-')
    axes[1].set_ylabel('Max |Pressure|')
    axes[1].set_xlabel('Time (s)')
    axes[1].grid(True)

    fig.tight_layout()
    fig.savefig(filename)
    plt.close(fig)
    print(f"Stats plot saved to {filename}")
