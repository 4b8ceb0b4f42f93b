"""
Audio side of the membrane synth: listener sampling, batch capture and the
rolling / playback buffers that feed an audio sink.

A sink is anything with ``play(samples, sample_rate)`` taking a 1-D int16
array; playback is expected to be asynchronous.
"""

import os
from typing import List, Tuple

import numpy as np
import scipy.io.wavfile as wavfile


INT16_SCALE = 32767


def to_int16(value: float) -> np.int16:
    """Scale a normalized pressure to a 16-bit sample.

    Multiplies by 32767 and truncates toward zero. There is no clamping:
    values outside [-1, 1] wrap like a fixed-width integer conversion.
    """
    scaled = int(value * INT16_SCALE)
    return np.int16((scaled + 32768) % 65536 - 32768)


class CaptureBuffer:
    """Fixed-size batch of samples written through a cursor.

    Mirrors an audio row on a compute surface: samples are deposited one per
    tick and the whole batch is retrieved in one blocking copy.
    """

    def __init__(self, batch_size: int):
        self.batch_size = batch_size
        self.samples = np.zeros(batch_size, dtype=np.int16)
        self.cursor = 0

    @property
    def is_full(self) -> bool:
        return self.cursor == self.batch_size

    def deposit(self, sample: np.int16):
        if self.is_full:
            raise RuntimeError(f"Capture batch full ({self.batch_size} samples); retrieve it first")
        self.samples[self.cursor] = sample
        self.cursor += 1

    def retrieve(self) -> np.ndarray:
        """Copy out the captured samples and reset the cursor to 0."""
        batch = self.samples[:self.cursor].copy()
        self.cursor = 0
        return batch


class AudioSampler:
    """Reads the settled layer at the listener cell once per tick."""

    def __init__(self, grid, listener: Tuple[int, int], capture: CaptureBuffer):
        """Initialize sampler.

        Args:
            grid: GridState to sample
            listener: (x, y) listener cell
            capture: Batch the samples are deposited into
        """
        x, y = listener
        if not (0 <= x < grid.width and 0 <= y < grid.height):
            raise ValueError(f"Listener {listener} outside {grid.width}x{grid.height} domain")
        self.grid = grid
        self.listener = (x, y)
        self.capture = capture

    def sample_once(self) -> np.int16:
        x, y = self.listener
        value = self.grid.read(self.grid.settled, x, y)
        sample = to_int16(value)
        self.capture.deposit(sample)
        return sample


class AudioBufferAssembler:
    """Collects samples into a rolling buffer and a full-run playback buffer.

    Both buffers are kept as lists of int16 batches and only concatenated
    when they are handed to a sink.
    """

    def __init__(self, sample_rate: int, sink, playback_sink=None):
        """Initialize assembler.

        Args:
            sample_rate: Samples per second; the rolling buffer is flushed
                once it holds more than this many samples
            sink: Receives rolling flushes
            playback_sink: Receives the final playback (defaults to sink)
        """
        self.sample_rate = sample_rate
        self.sink = sink
        self.playback_sink = playback_sink if playback_sink is not None else sink
        self._rolling: List[np.ndarray] = []
        self._rolling_length = 0
        self._playback: List[np.ndarray] = []
        self.flush_count = 0
        self.finalized = False

    @property
    def rolling(self) -> np.ndarray:
        return _join(self._rolling)

    @property
    def playback(self) -> np.ndarray:
        return _join(self._playback)

    def append(self, sample: np.int16):
        self.extend(np.array([sample], dtype=np.int16))

    def extend(self, batch: np.ndarray):
        """Append a batch, flushing every time the rolling buffer passes sample_rate."""
        batch = np.array(batch, dtype=np.int16)
        self._playback.append(batch)

        while len(batch):
            # samples that bring the rolling buffer to sample_rate + 1
            room = self.sample_rate + 1 - self._rolling_length
            head, batch = batch[:room], batch[room:]
            self._rolling.append(head)
            self._rolling_length += len(head)
            if self._rolling_length > self.sample_rate:
                self.flush()

    def flush(self):
        """Hand the rolling buffer to the sink and start a new one."""
        if self._rolling_length:
            self.sink.play(_join(self._rolling), self.sample_rate)
            self.flush_count += 1
        self._rolling = []
        self._rolling_length = 0

    def finalize(self) -> np.ndarray:
        """Hand the whole playback buffer to the playback sink, once."""
        if self.finalized:
            raise RuntimeError("Playback buffer already finalized")
        self.finalized = True
        samples = _join(self._playback)
        self.playback_sink.play(samples, self.sample_rate)
        return samples


def _join(batches: List[np.ndarray]) -> np.ndarray:
    if not batches:
        return np.zeros(0, dtype=np.int16)
    return np.concatenate(batches)


# =============================================================================
# Sinks
# =============================================================================

class NullSink:
    """Discards everything."""

    def play(self, samples: np.ndarray, sample_rate: int):
        pass

    def wait(self):
        pass


class SoundDeviceSink:
    """Plays buffers on the default output device.

    Each play() replaces whatever is still sounding, like reloading a single
    sound buffer.
    """

    def __init__(self):
        import sounddevice as sd
        self._sd = sd

    def play(self, samples: np.ndarray, sample_rate: int):
        if len(samples) == 0:
            return
        self._sd.play(samples, samplerate=sample_rate)

    def wait(self):
        """Block until the last buffer has finished playing."""
        self._sd.wait()


class WavFileSink:
    """Writes every handed buffer as a 16-bit WAV file.

    If the path contains '{index}' each buffer gets its own numbered file,
    otherwise later buffers overwrite earlier ones.
    """

    def __init__(self, path: str):
        self.path = path
        self.files_written: List[str] = []

    def play(self, samples: np.ndarray, sample_rate: int):
        filename = self.path.format(index=len(self.files_written))

        output_dir = os.path.dirname(filename)
        if output_dir:
            os.makedirs(output_dir, exist_ok=True)

        wavfile.write(filename, sample_rate, samples.astype(np.int16))
        self.files_written.append(filename)

        duration = len(samples) / sample_rate
        print(f"Saved {duration:.3f}s of audio to {filename} ({sample_rate}Hz, 16-bit)")

    def wait(self):
        pass
