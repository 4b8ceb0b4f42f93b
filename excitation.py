"""
Excitation sources for the membrane.

The controller decides *when* energy is injected (a fixed period, either
continuously or once per rearm); the excitors decide the *shape* of what is
injected once a firing starts.
"""

from collections import deque
from typing import Optional, Tuple

import numpy as np


class Excitor:
    """Base class for excitation waveforms played out one tick at a time."""

    def __init__(self, table: np.ndarray):
        self.table = np.asarray(table, dtype=float)
        self.index = len(self.table)

    def reset(self):
        """Restart the waveform from its first sample."""
        self.index = 0

    @property
    def is_active(self) -> bool:
        return self.index < len(self.table)

    def next_sample(self) -> float:
        """Next waveform sample, 0 once the waveform has played out."""
        if not self.is_active:
            return 0.0
        value = float(self.table[self.index])
        self.index += 1
        return value


class ImpulseExcitor(Excitor):
    """Single unit spike."""

    def __init__(self):
        super().__init__(np.ones(1))


class SineWaveExcitor(Excitor):
    """One full sine cycle spread over `length` ticks."""

    def __init__(self, length: int = 16):
        if length < 2:
            raise ValueError("Sine excitation needs at least 2 samples")
        super().__init__(np.sin(2.0 * np.pi * np.arange(length) / length))


class SquareWaveExcitor(Excitor):
    """One square cycle: +1 for the first half, -1 for the second."""

    def __init__(self, length: int = 16):
        if length < 2:
            raise ValueError("Square excitation needs at least 2 samples")
        table = np.ones(length)
        table[length // 2:] = -1.0
        super().__init__(table)


def make_excitor(waveform: str, period: int) -> Excitor:
    """Build an excitor by name; shaped waveforms last min(period, 16) ticks, at least 2."""
    length = max(2, min(16, period))
    if waveform == 'impulse':
        return ImpulseExcitor()
    if waveform == 'sine':
        return SineWaveExcitor(length)
    if waveform == 'square':
        return SquareWaveExcitor(length)
    raise ValueError(f"Unknown excitation waveform {waveform!r}")


class ExcitationInbox:
    """Bounded single-slot inbox for excitation events from other threads.

    deque append/pop are atomic, and maxlen=1 drops older events, so the
    last post before a drain wins without a lock.
    """

    def __init__(self):
        self._slot: deque = deque(maxlen=1)

    def post(self, position: Tuple[float, float]):
        self._slot.append((float(position[0]), float(position[1])))

    def drain(self) -> Optional[Tuple[float, float]]:
        try:
            return self._slot.pop()
        except IndexError:
            return None


class ExcitationController:
    """Owns the excitation position, magnitude and firing policy."""

    def __init__(self, position: Tuple[float, float], period: int,
                 mode: str = 'continuous', amplitude: float = 1.0,
                 excitor: Optional[Excitor] = None,
                 inbox: Optional[ExcitationInbox] = None):
        """Initialize excitation controller.

        Args:
            position: (x, y) in normalized domain coordinates
            period: Ticks between firings
            mode: 'continuous' or 'single-shot'
            amplitude: Initial magnitude, and the magnitude a rearm restores
            excitor: Waveform played on each firing (impulse if None)
            inbox: Where externally posted set_excitation events arrive
        """
        if period < 1:
            raise ValueError(f"Excitation period must be at least 1 tick, got {period}")
        if mode not in ('continuous', 'single-shot'):
            raise ValueError(f"Unknown excitation mode {mode!r}")

        self.position = (float(position[0]), float(position[1]))
        self.period = period
        self.mode = mode
        self.amplitude = amplitude
        self.max_excitation = amplitude
        self.excitor = excitor if excitor is not None else ImpulseExcitor()
        self.inbox = inbox if inbox is not None else ExcitationInbox()

        self.magnitude = 0.0
        self.counter = 0
        self.fire_count = 0
        self._firing_magnitude = 0.0

    @classmethod
    def from_params(cls, params, inbox: Optional[ExcitationInbox] = None) -> 'ExcitationController':
        period = params.excitation_period
        return cls(
            position=params.excitation_position,
            period=period,
            mode=params.excitation_mode,
            amplitude=params.amplitude,
            excitor=make_excitor(params.waveform, period),
            inbox=inbox,
        )

    def set_excitation(self, position: Tuple[float, float]):
        """Move the excitation point and rearm firing at full magnitude."""
        self.position = (float(position[0]), float(position[1]))
        self.max_excitation = self.amplitude

    def tick(self) -> float:
        """Advance one tick.

        Returns:
            Magnitude to inject this tick
        """
        posted = self.inbox.drain()
        if posted is not None:
            self.set_excitation(posted)

        self.counter += 1
        if self.counter == self.period:
            self.counter = 0
            self._firing_magnitude = self.max_excitation
            self.excitor.reset()
            if self._firing_magnitude != 0.0:
                self.fire_count += 1
            if self.mode == 'single-shot':
                self.max_excitation = 0.0

        self.magnitude = self._firing_magnitude * self.excitor.next_sample()
        return self.magnitude
