#!/usr/bin/env python3
"""
Membrane Synth

Simulates a vibrating membrane with a 2D FDTD leapfrog scheme and turns the
pressure at a listener cell into audio, one sample per simulation tick.
Samples are played back roughly once per simulated second while the
simulation runs, and the whole run is played (or saved) at the end.

Usage:
  python app.py --propagation 0.25 --damping 0.0005 --boundary-gain 1
  python app.py --prompt --visualize
  python app.py --config membrane.json --output output/membrane.wav --no-audio

Example config.json:
{
    "propagation_factor": 0.25,    // [0, 0.5]
    "damping_factor": 0.0005,      // [0, 1], keep it tiny
    "boundary_gain": 1,            // 1 = clamped, 0 = free
    "excitation_mode": "continuous",
    "domain_size": [80, 80],
    "listener_position": [5, 5],
    "excitation_position": [0.7, 0.5],
    "sample_rate": 44100,
    "duration": 10,
    "excitation_frequency": 1000,
    "waveform": "impulse",
    "batch_size": 128
}

In the viewer, left-click moves the excitation point (and rearms a
single-shot excitation); Escape stops the run after the current batch.
"""

import argparse
import inspect
import json
import signal
import sys
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

import numpy as np

from membrane import (
    ComputeSurface,
    GridState,
    KernelError,
    SimulationParams,
    SimulationStepper,
    leapfrog_energy,
    load_kernel,
    probe_kernel,
)
from excitation import ExcitationController, ExcitationInbox
from audio import (
    AudioBufferAssembler,
    AudioSampler,
    CaptureBuffer,
    NullSink,
    SoundDeviceSink,
    WavFileSink,
)


# =============================================================================
# Configuration
# =============================================================================

PARAM_KEYS = [name for name in inspect.signature(SimulationParams.__init__).parameters if name != 'self']

# (key, question, parser) in the order they are asked
PROMPTS = [
    ('propagation_factor',
     "Input a propagation factor for membrane material - Valid range [0.0-0.5]: ", float),
    ('damping_factor',
     "Input a damping factor for membrane material - Valid range [0.0-1.0] but expected very low value: ", float),
    ('boundary_gain',
     "Input boundary gain - 1 for fully clamped, 0 for free: ", float),
    ('excitation_mode',
     "Single or continuous excitation - 0 for continuous, 1 for single: ",
     lambda text: 'single-shot' if int(text) else 'continuous'),
]


def load_config(path: str) -> Dict:
    """Load simulation settings from a JSON file.

    Raises:
        ValueError: If the file contains keys SimulationParams does not know
    """
    with open(path) as f:
        config = json.load(f)

    unknown = sorted(set(config) - set(PARAM_KEYS))
    if unknown:
        raise ValueError(f"Unknown config keys in {path}: {unknown}")
    return config


def prompt_membrane_settings(input_fn: Callable[[str], str] = input) -> Dict:
    """Ask for the four membrane settings on the terminal."""
    settings = {}
    for key, question, parse in PROMPTS:
        while True:
            answer = input_fn(question).strip()
            try:
                settings[key] = parse(answer)
                break
            except ValueError:
                print(f"  Could not parse {answer!r}, try again.")
    return settings


def build_params(args: argparse.Namespace, input_fn: Callable[[str], str] = input) -> SimulationParams:
    """Merge defaults, config file, prompts and CLI flags (in that order).

    Raises:
        ValueError: If the merged settings are invalid
    """
    settings: Dict = {}
    if args.config:
        settings.update(load_config(args.config))

    if args.prompt:
        settings.update(prompt_membrane_settings(input_fn))

    cli = {
        'propagation_factor': args.propagation,
        'damping_factor': args.damping,
        'boundary_gain': args.boundary_gain,
        'excitation_mode': 'single-shot' if args.single else None,
        'domain_size': args.domain,
        'listener_position': args.listener,
        'excitation_position': args.excitation,
        'sample_rate': args.sample_rate,
        'duration': args.duration,
        'excitation_frequency': args.excitation_frequency,
        'waveform': args.waveform,
        'batch_size': args.batch_size,
        'kernel': args.kernel,
    }
    settings.update({key: value for key, value in cli.items() if value is not None})

    return SimulationParams(**settings)


# =============================================================================
# Simulation Setup
# =============================================================================

@dataclass
class MembraneSynth:
    """Everything one run needs, wired together."""
    params: SimulationParams
    grid: GridState
    excitation: ExcitationController
    stepper: SimulationStepper
    sampler: AudioSampler
    capture: CaptureBuffer
    assembler: AudioBufferAssembler
    inbox: ExcitationInbox


def create_simulation(params: SimulationParams, sink, playback_sink=None,
                      surface=None, kernel=None) -> MembraneSynth:
    """Create the grid, excitation, stepper and audio pipeline.

    Args:
        params: Validated simulation parameters
        sink: Audio sink for rolling flushes
        playback_sink: Audio sink for the final playback (defaults to sink)
        surface: Compute surface for grid updates (inline if None)
        kernel: Kernel override; params.kernel is loaded if None

    Raises:
        KernelError: If the kernel cannot be loaded or fails its probe
    """
    kernel = load_kernel(kernel if kernel is not None else params.kernel)
    probe_kernel(kernel, params)

    width, height = params.domain_size
    grid = GridState(width, height, boundary_gain=params.boundary_gain)

    inbox = ExcitationInbox()
    excitation = ExcitationController.from_params(params, inbox=inbox)
    stepper = SimulationStepper(grid, params, excitation, kernel=kernel, surface=surface)

    capture = CaptureBuffer(params.batch_size)
    sampler = AudioSampler(grid, params.listener_position, capture)
    assembler = AudioBufferAssembler(params.sample_rate, sink, playback_sink)

    print(f"\nSimulation setup:")
    print(f"  Domain: {width}x{height} cells ({(width - 2) * (height - 2)} interior)")
    print(f"  Propagation: {params.propagation_factor}, damping: {params.damping_factor}, "
          f"boundary gain: {params.boundary_gain}")
    print(f"  Excitation: {params.excitation_mode} {params.waveform} at {params.excitation_position} "
          f"-> cell {grid.excitation_cell}, every {params.excitation_period} ticks")
    print(f"  Listener cell: {params.listener_position}")
    print(f"  Sample rate: {params.sample_rate} Hz, batch size: {params.batch_size}")

    return MembraneSynth(
        params=params,
        grid=grid,
        excitation=excitation,
        stepper=stepper,
        sampler=sampler,
        capture=capture,
        assembler=assembler,
        inbox=inbox,
    )


# =============================================================================
# Run Loop
# =============================================================================

@dataclass
class RunResult:
    """What a run produced."""
    batches_run: int
    samples: np.ndarray
    cancelled: bool
    times: List[float] = field(default_factory=list)
    energies: List[float] = field(default_factory=list)
    max_pressures: List[float] = field(default_factory=list)


def run_batch(synth: MembraneSynth) -> np.ndarray:
    """Advance one audio batch and retrieve its samples.

    Returns:
        int16 samples, one per tick
    """
    for _ in range(synth.params.batch_size):
        synth.stepper.tick()
        synth.sampler.sample_once()
    # blocking copy of the whole batch; the next batch cannot start before it
    return synth.capture.retrieve()


def run_simulation(
    synth: MembraneSynth,
    stop_event: Optional[threading.Event] = None,
    realtime: bool = False,
    viewer=None,
    verbose: bool = True,
) -> RunResult:
    """Run batches until the duration is covered or a stop is requested.

    Args:
        synth: Wired simulation
        stop_event: Polled once per batch; the current batch always completes
        realtime: Sleep after each batch so batches take at least their
            audio duration in wall-clock time (best effort)
        viewer: Optional FieldViewer refreshed once per batch
        verbose: Print progress about once per simulated second

    Returns:
        RunResult with the final playback samples and per-batch statistics
    """
    params = synth.params
    grid = synth.grid
    batch_count = params.batch_count
    batch_seconds = params.batch_size / params.sample_rate
    report_every = max(1, params.sample_rate // params.batch_size)

    if verbose:
        print(f"\nRunning simulation:")
        print(f"  Duration: {params.duration} s")
        print(f"  Total samples: {params.total_samples}")
        print(f"  Batches: {batch_count} x {params.batch_size}")

    times: List[float] = []
    energies: List[float] = []
    max_pressures: List[float] = []
    cancelled = False
    batches_run = 0

    for batch_index in range(batch_count):
        if stop_event is not None and stop_event.is_set():
            cancelled = True
            break

        started = time.perf_counter()

        batch = run_batch(synth)
        synth.assembler.extend(batch)
        batches_run += 1

        t = synth.stepper.step_count / params.sample_rate
        energy = leapfrog_energy(grid, params.propagation_factor, params.damping_factor)
        max_p = float(np.max(np.abs(grid.layer(grid.current))))
        times.append(t)
        energies.append(energy)
        max_pressures.append(max_p)

        if viewer is not None:
            viewer.update(batch_index + 1, t)

        if verbose and batches_run % report_every == 0:
            print(f"  Batch {batches_run}/{batch_count} (t = {t:.3f} s), "
                  f"max |p| = {max_p:.4f}, energy = {energy:.4g}")

        if realtime:
            elapsed = time.perf_counter() - started
            if elapsed < batch_seconds:
                time.sleep(batch_seconds - elapsed)

    if verbose:
        if cancelled:
            print(f"  Stopped after {batches_run} of {batch_count} batches")
        else:
            print(f"  Simulation complete!")

    samples = synth.assembler.finalize()

    return RunResult(
        batches_run=batches_run,
        samples=samples,
        cancelled=cancelled,
        times=times,
        energies=energies,
        max_pressures=max_pressures,
    )


# =============================================================================
# CLI
# =============================================================================

def make_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Real-time FDTD membrane synthesizer.',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )

    parser.add_argument('-c', '--config', help='JSON config file path')
    parser.add_argument('--prompt', action='store_true',
                       help='Ask for the membrane settings on the terminal')
    parser.add_argument('--propagation', type=float,
                       help='Propagation factor [0, 0.5] (default: 0.25)')
    parser.add_argument('--damping', type=float,
                       help='Damping factor [0, 1] (default: 0.0005)')
    parser.add_argument('--boundary-gain', type=float,
                       help='1 for clamped, 0 for free (default: 1)')
    parser.add_argument('--single', action='store_true',
                       help='Single-shot excitation instead of continuous')
    parser.add_argument('--domain', type=int, nargs=2, metavar=('W', 'H'),
                       help='Domain size in cells (default: 80 80)')
    parser.add_argument('--listener', type=int, nargs=2, metavar=('X', 'Y'),
                       help='Listener cell (default: 5 5)')
    parser.add_argument('--excitation', type=float, nargs=2, metavar=('X', 'Y'),
                       help='Excitation point in [0, 1] coordinates (default: 0.7 0.5)')
    parser.add_argument('--sample-rate', type=int,
                       help='Sample rate in Hz (default: 44100)')
    parser.add_argument('--duration', type=float,
                       help='Simulated duration in seconds (default: 10)')
    parser.add_argument('--excitation-frequency', type=int,
                       help='Excitation firings per second (default: 1000)')
    parser.add_argument('--waveform', choices=['impulse', 'sine', 'square'],
                       help='Excitation shape (default: impulse)')
    parser.add_argument('--batch-size', type=int,
                       help='Ticks per audio batch (default: 128)')
    parser.add_argument('--kernel',
                       help="Update kernel name or 'module:function' (default: leapfrog)")
    parser.add_argument('-o', '--output',
                       help='Write the full-run audio to this WAV file instead of playing it')
    parser.add_argument('--chunks',
                       help="Write each rolling flush to a WAV file, e.g. 'out/chunk_{index}.wav'")
    parser.add_argument('--no-audio', action='store_true',
                       help='Do not open an audio device')
    parser.add_argument('--realtime', action='store_true',
                       help='Pace batches to wall-clock time (best effort)')
    parser.add_argument('--threaded', action='store_true',
                       help='Run grid updates on a worker thread')
    parser.add_argument('--visualize', action='store_true',
                       help='Show the field; click to move the excitation')
    parser.add_argument('--snapshot',
                       help='Save the final field view to this image file (needs --visualize)')
    parser.add_argument('--stats',
                       help='Save an energy / max |p| plot to this image file')
    return parser


def main(argv=None) -> int:
    args = make_parser().parse_args(argv)

    if args.snapshot and not args.visualize:
        print("\nError: --snapshot needs --visualize (there is no field view to save).")
        return 1

    try:
        params = build_params(args)
    except (ValueError, OSError) as e:
        print(f"\nError: {e}")
        return 1

    live_sink = None
    if not args.no_audio:
        try:
            live_sink = SoundDeviceSink()
        except (ImportError, OSError) as e:
            print(f"\nError: audio device unavailable ({e}). Use --no-audio or --output.")
            return 1

    if args.chunks:
        sink = WavFileSink(args.chunks)
    elif live_sink is not None:
        sink = live_sink
    else:
        sink = NullSink()

    if args.output:
        playback_sink = WavFileSink(args.output)
    elif live_sink is not None:
        playback_sink = live_sink
    else:
        playback_sink = NullSink()

    if not args.visualize:
        import matplotlib
        matplotlib.use('Agg')

    stop_event = threading.Event()
    previous_handler = signal.signal(signal.SIGINT, lambda signum, frame: stop_event.set())

    surface = ComputeSurface() if args.threaded else None
    viewer = None
    try:
        synth = create_simulation(params, sink, playback_sink, surface=surface)

        if args.visualize:
            from viewer import FieldViewer
            viewer = FieldViewer(synth.grid, synth.inbox, stop_event,
                                 listener=params.listener_position)

        result = run_simulation(synth, stop_event=stop_event,
                                realtime=args.realtime, viewer=viewer)
    except (KernelError, ValueError) as e:
        print(f"\nError: {e}")
        return 1
    finally:
        signal.signal(signal.SIGINT, previous_handler)
        if surface is not None:
            surface.close()

    if viewer is not None and args.snapshot:
        viewer.save(args.snapshot)

    if args.stats and result.times:
        from viewer import save_stats_plot
        save_stats_plot(result.times, result.energies, result.max_pressures, args.stats)

    if live_sink is not None:
        print("\nPlaying back the whole run...")
        live_sink.wait()

    if viewer is not None:
        viewer.close()

    print(f"\nDone! {len(result.samples)} samples ({len(result.samples) / params.sample_rate:.2f} s).")
    return 0


if __name__ == '__main__':
    sys.exit(main())
