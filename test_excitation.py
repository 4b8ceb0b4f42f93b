"""
Unit tests for excitation waveforms, the firing policy and the inbox.
"""

import threading

import numpy as np
import pytest
from excitation import (
    ExcitationController, ExcitationInbox, ImpulseExcitor,
    SineWaveExcitor, SquareWaveExcitor, make_excitor,
)
from membrane import SimulationParams


def firing_ticks(controller, ticks):
    """Indices of ticks that injected a non-zero magnitude."""
    return [i for i in range(ticks) if controller.tick() != 0.0]


class TestExcitors:
    """Tests for the waveform tables."""

    def test_impulse_is_single_spike(self):
        excitor = ImpulseExcitor()
        assert not excitor.is_active
        excitor.reset()
        assert excitor.next_sample() == 1.0
        assert not excitor.is_active
        assert excitor.next_sample() == 0.0

    def test_sine_cycle(self):
        excitor = SineWaveExcitor(8)
        excitor.reset()
        samples = [excitor.next_sample() for _ in range(8)]
        np.testing.assert_allclose(samples, np.sin(2 * np.pi * np.arange(8) / 8), atol=1e-12)
        assert excitor.next_sample() == 0.0

    def test_square_cycle(self):
        excitor = SquareWaveExcitor(6)
        excitor.reset()
        samples = [excitor.next_sample() for _ in range(6)]
        assert samples == [1.0, 1.0, 1.0, -1.0, -1.0, -1.0]

    def test_reset_restarts(self):
        excitor = SquareWaveExcitor(4)
        excitor.reset()
        excitor.next_sample()
        excitor.next_sample()
        excitor.reset()
        assert excitor.next_sample() == 1.0

    def test_make_excitor(self):
        assert isinstance(make_excitor('impulse', 44), ImpulseExcitor)
        assert len(make_excitor('sine', 44).table) == 16
        assert len(make_excitor('square', 4).table) == 4
        with pytest.raises(ValueError):
            make_excitor('sawtooth', 44)


class TestFiringCadence:
    """sample_rate 100, excitation_frequency 25: period 4."""

    def test_period_from_params(self):
        params = SimulationParams(sample_rate=100, excitation_frequency=25)
        controller = ExcitationController.from_params(params)
        assert controller.period == 4

    def test_continuous_fires_every_period(self):
        controller = ExcitationController((0.5, 0.5), period=4, mode='continuous')
        fired = firing_ticks(controller, 400)
        assert fired == list(range(3, 400, 4))
        assert controller.fire_count == 100

    def test_continuous_magnitude_is_max_excitation(self):
        controller = ExcitationController((0.5, 0.5), period=4, amplitude=0.5)
        magnitudes = [controller.tick() for _ in range(8)]
        assert magnitudes == [0.0, 0.0, 0.0, 0.5, 0.0, 0.0, 0.0, 0.5]

    def test_single_shot_fires_once(self):
        controller = ExcitationController((0.5, 0.5), period=4, mode='single-shot')
        fired = firing_ticks(controller, 400)
        assert fired == [3]
        assert controller.max_excitation == 0.0

    def test_set_excitation_rearms_single_shot(self):
        controller = ExcitationController((0.5, 0.5), period=4, mode='single-shot')
        firing_ticks(controller, 100)

        controller.set_excitation((0.2, 0.8))
        assert controller.position == (0.2, 0.8)
        assert controller.max_excitation == 1.0

        # exactly one more firing on the existing cadence, then silence
        assert len(firing_ticks(controller, 4)) == 1
        assert firing_ticks(controller, 100) == []
        assert controller.fire_count == 2

    def test_shaped_waveform_plays_out_after_firing(self):
        controller = ExcitationController((0.5, 0.5), period=8, excitor=SquareWaveExcitor(8))
        magnitudes = [controller.tick() for _ in range(16)]
        assert magnitudes[:7] == [0.0] * 7
        assert magnitudes[7:15] == [1.0, 1.0, 1.0, 1.0, -1.0, -1.0, -1.0, -1.0]

    def test_single_shot_waveform_keeps_firing_magnitude(self):
        controller = ExcitationController((0.5, 0.5), period=4, mode='single-shot',
                                          excitor=SquareWaveExcitor(4))
        magnitudes = [controller.tick() for _ in range(12)]
        assert magnitudes[3:7] == [1.0, 1.0, -1.0, -1.0]
        assert magnitudes[7:] == [0.0] * 5

    def test_invalid_period(self):
        with pytest.raises(ValueError):
            ExcitationController((0.5, 0.5), period=0)

    def test_invalid_mode(self):
        with pytest.raises(ValueError):
            ExcitationController((0.5, 0.5), period=4, mode='burst')


class TestExcitationInbox:
    """Tests for the single-slot inbox."""

    def test_empty_drain(self):
        assert ExcitationInbox().drain() is None

    def test_last_post_wins(self):
        inbox = ExcitationInbox()
        inbox.post((0.1, 0.1))
        inbox.post((0.9, 0.4))
        assert inbox.drain() == (0.9, 0.4)
        assert inbox.drain() is None

    def test_controller_drains_once_per_tick(self):
        inbox = ExcitationInbox()
        controller = ExcitationController((0.5, 0.5), period=4, mode='single-shot', inbox=inbox)
        firing_ticks(controller, 8)
        assert controller.max_excitation == 0.0

        inbox.post((0.3, 0.6))
        inbox.post((0.25, 0.75))
        # not applied until the next tick
        assert controller.position == (0.5, 0.5)

        controller.tick()
        assert controller.position == (0.25, 0.75)
        assert controller.max_excitation == 1.0

    def test_posts_from_another_thread(self):
        inbox = ExcitationInbox()
        controller = ExcitationController((0.5, 0.5), period=2, inbox=inbox)

        def click():
            for i in range(100):
                inbox.post((i / 100, 0.5))

        worker = threading.Thread(target=click)
        worker.start()
        worker.join()

        controller.tick()
        assert controller.position == (0.99, 0.5)
