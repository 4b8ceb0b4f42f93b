"""
Tests for configuration, the batch run loop and the command line entry point.
"""

import json
import threading

import numpy as np
import pytest
import scipy.io.wavfile as wavfile
from app import (
    build_params, create_simulation, load_config, main, make_parser,
    prompt_membrane_settings, run_batch, run_simulation,
)
from audio import NullSink
from membrane import KernelError, SimulationParams


class RecordingSink:
    def __init__(self):
        self.buffers = []

    def play(self, samples, sample_rate):
        self.buffers.append(np.array(samples))


class StopAfter:
    """Viewer stand-in that requests a stop after a given batch."""

    def __init__(self, stop_event, batch):
        self.stop_event = stop_event
        self.batch = batch
        self.updates = []

    def update(self, batch_index, t):
        self.updates.append(batch_index)
        if batch_index == self.batch:
            self.stop_event.set()


def small_params(**overrides):
    settings = dict(domain_size=(12, 12), sample_rate=500, duration=2,
                    excitation_frequency=50, batch_size=96)
    settings.update(overrides)
    return SimulationParams(**settings)


def fake_input(answers):
    answers = iter(answers)
    return lambda question: next(answers)


class TestConfiguration:
    """Tests for merging config file, prompts and flags."""

    def test_defaults(self):
        params = build_params(make_parser().parse_args([]))
        assert params.domain_size == (80, 80)
        assert params.sample_rate == 44100
        assert params.excitation_mode == 'continuous'

    def test_config_file(self, tmp_path):
        path = tmp_path / 'membrane.json'
        path.write_text(json.dumps({'damping_factor': 0.01, 'domain_size': [20, 30]}))
        params = build_params(make_parser().parse_args(['--config', str(path)]))
        assert params.damping_factor == 0.01
        assert params.domain_size == (20, 30)

    def test_unknown_config_key(self, tmp_path):
        path = tmp_path / 'membrane.json'
        path.write_text(json.dumps({'dampng_factor': 0.01}))
        with pytest.raises(ValueError):
            load_config(str(path))

    def test_prompt_retries_bad_answers(self):
        settings = prompt_membrane_settings(fake_input(['abc', '0.3', '0.001', '0', '1']))
        assert settings == {
            'propagation_factor': 0.3,
            'damping_factor': 0.001,
            'boundary_gain': 0.0,
            'excitation_mode': 'single-shot',
        }

    def test_flags_override_prompt(self):
        args = make_parser().parse_args(['--prompt', '--propagation', '0.2', '--domain', '16', '16'])
        params = build_params(args, fake_input(['0.3', '0.001', '1', '0']))
        assert params.propagation_factor == 0.2
        assert params.damping_factor == 0.001
        assert params.excitation_mode == 'continuous'
        assert params.domain_size == (16, 16)

    def test_invalid_merged_settings(self):
        with pytest.raises(ValueError):
            build_params(make_parser().parse_args(['--propagation', '0.6']))


class TestRunSimulation:
    """Tests for the batch loop."""

    def test_batch_accounting(self):
        rolling, playback = RecordingSink(), RecordingSink()
        synth = create_simulation(small_params(), rolling, playback)

        result = run_simulation(synth, verbose=False)

        # 2 s at 500 Hz is 1000 ticks; only whole batches of 96 run
        assert result.batches_run == 10
        assert not result.cancelled
        assert len(result.samples) == 960
        assert synth.stepper.step_count == 960
        # one flush of sample_rate + 1 samples, the rest still rolling
        assert [len(b) for b in rolling.buffers] == [501]
        assert len(synth.assembler.rolling) == 459
        assert [len(b) for b in playback.buffers] == [960]
        np.testing.assert_array_equal(playback.buffers[0], result.samples)
        assert len(result.energies) == 10

    def test_run_batch_returns_batch_size_samples(self):
        synth = create_simulation(small_params(), NullSink())
        batch = run_batch(synth)
        assert batch.dtype == np.int16
        assert len(batch) == 96
        assert synth.capture.cursor == 0

    def test_stop_completes_current_batch(self):
        stop = threading.Event()
        viewer = StopAfter(stop, batch=3)
        synth = create_simulation(small_params(), NullSink())

        result = run_simulation(synth, stop_event=stop, viewer=viewer, verbose=False)

        assert result.cancelled
        assert result.batches_run == 3
        assert viewer.updates == [1, 2, 3]
        assert len(result.samples) == 3 * 96

    def test_stop_before_first_batch(self):
        stop = threading.Event()
        stop.set()
        playback = RecordingSink()
        synth = create_simulation(small_params(), NullSink(), playback)

        result = run_simulation(synth, stop_event=stop, verbose=False)

        assert result.batches_run == 0
        assert result.cancelled
        assert len(playback.buffers) == 1
        assert len(playback.buffers[0]) == 0

    def test_posted_excitation_moves_cell(self):
        synth = create_simulation(small_params(), NullSink())
        assert synth.grid.excitation_cell == (8, 6)

        synth.inbox.post((0.2, 0.2))
        run_batch(synth)

        assert synth.excitation.position == (0.2, 0.2)
        assert synth.grid.excitation_cell == (2, 2)
        assert synth.grid.excitation_mask.sum() == 1.0

    def test_bad_kernel_is_fatal(self):
        with pytest.raises(KernelError):
            create_simulation(small_params(kernel='no_such_kernel'), NullSink())


class TestMain:
    """End-to-end runs through the command line."""

    def test_writes_output_and_stats(self, tmp_path):
        output = tmp_path / 'membrane.wav'
        stats = tmp_path / 'stats.png'
        code = main(['--no-audio', '--output', str(output), '--stats', str(stats),
                     '--duration', '0.05', '--sample-rate', '2000', '--batch-size', '32',
                     '--domain', '10', '10', '--threaded'])

        assert code == 0
        rate, data = wavfile.read(str(output))
        assert rate == 2000
        assert len(data) == 96
        assert stats.exists()

    def test_invalid_parameter(self, capsys):
        assert main(['--no-audio', '--propagation', '0.9']) == 1
        assert 'propagation_factor' in capsys.readouterr().out

    def test_snapshot_without_viewer_is_rejected(self, tmp_path, capsys):
        snapshot = tmp_path / 'field.png'
        code = main(['--no-audio', '--snapshot', str(snapshot), '--duration', '0.01'])
        assert code == 1
        assert '--visualize' in capsys.readouterr().out
        assert not snapshot.exists()

    def test_unknown_kernel(self):
        assert main(['--no-audio', '--kernel', 'no_such_kernel', '--duration', '0.01']) == 1
