import importlib
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

import numpy as np
import scipy.signal


EXCITATION_MODES = ('continuous', 'single-shot')
WAVEFORMS = ('impulse', 'sine', 'square')

# 4-neighbour stencil, centre excluded (the kernel subtracts 4*cur itself)
NEIGHBOR_STENCIL = np.array([[0.0, 1.0, 0.0],
                             [1.0, 0.0, 1.0],
                             [0.0, 1.0, 0.0]])


class KernelError(RuntimeError):
    """The numeric kernel could not be loaded or failed its probe."""


class SimulationParams:
    """Stores all membrane, excitation and audio parameters for a run."""

    def __init__(
        self,
        propagation_factor: float = 0.25,
        damping_factor: float = 0.0005,
        boundary_gain: float = 1.0,
        excitation_mode: str = 'continuous',
        domain_size: Tuple[int, int] = (80, 80),
        listener_position: Tuple[int, int] = (5, 5),
        excitation_position: Tuple[float, float] = (0.7, 0.5),
        sample_rate: int = 44100,
        duration: float = 10,
        excitation_frequency: int = 1000,
        amplitude: float = 1.0,
        waveform: str = 'impulse',
        batch_size: int = 128,
        kernel: str = 'leapfrog',
    ):
        """Initialize and validate simulation parameters.

        Args:
            propagation_factor: Neighbour coupling, (c*dt/h)^2. Valid range [0, 0.5]
            damping_factor: Per-tick attenuation. Valid range [0, 1], expected tiny
            boundary_gain: 1 for a fully clamped rim, 0 for a free rim
            excitation_mode: 'continuous' or 'single-shot'
            domain_size: (width, height) in cells, including the outer ring
            listener_position: (x, y) cell sampled for audio
            excitation_position: (x, y) in normalized [0, 1] domain coordinates
            sample_rate: Ticks per simulated second (Hz)
            duration: Simulated duration (s)
            excitation_frequency: Firings per second
            amplitude: Magnitude a rearm restores
            waveform: Excitation shape ('impulse', 'sine', 'square')
            batch_size: Ticks per audio batch
            kernel: Kernel name or 'module:function' import path

        Raises:
            ValueError: If any setting is out of range
        """
        self.propagation_factor = float(propagation_factor)
        self.damping_factor = float(damping_factor)
        self.boundary_gain = float(boundary_gain)
        self.excitation_mode = excitation_mode
        self.domain_size = (int(domain_size[0]), int(domain_size[1]))
        self.listener_position = (int(listener_position[0]), int(listener_position[1]))
        self.excitation_position = (float(excitation_position[0]), float(excitation_position[1]))
        self.sample_rate = int(sample_rate)
        self.duration = duration
        self.excitation_frequency = int(excitation_frequency)
        self.amplitude = float(amplitude)
        self.waveform = waveform
        self.batch_size = int(batch_size)
        self.kernel = kernel

        if not 0.0 <= self.propagation_factor <= 0.5:
            raise ValueError(f"propagation_factor {self.propagation_factor} outside [0, 0.5] (unstable)")
        if not 0.0 <= self.damping_factor <= 1.0:
            raise ValueError(f"damping_factor {self.damping_factor} outside [0, 1]")
        if not 0.0 <= self.boundary_gain <= 1.0:
            raise ValueError(f"boundary_gain {self.boundary_gain} outside [0, 1]")
        if excitation_mode not in EXCITATION_MODES:
            raise ValueError(f"excitation_mode must be one of {EXCITATION_MODES}, got {excitation_mode!r}")
        if waveform not in WAVEFORMS:
            raise ValueError(f"waveform must be one of {WAVEFORMS}, got {waveform!r}")

        width, height = self.domain_size
        if width <= 2 or height <= 2:
            raise ValueError(f"Domain {width}x{height} has no interior cells")

        lx, ly = self.listener_position
        if not (0 <= lx < width and 0 <= ly < height):
            raise ValueError(f"Listener {self.listener_position} outside {width}x{height} domain")

        if self.sample_rate <= 0:
            raise ValueError("sample_rate must be positive")
        if self.batch_size <= 0:
            raise ValueError("batch_size must be positive")
        if not 0 < self.excitation_frequency <= self.sample_rate:
            raise ValueError(f"excitation_frequency must be in (0, sample_rate], got {self.excitation_frequency}")
        if self.duration < 0:
            raise ValueError("duration must be non-negative")

    @property
    def excitation_period(self) -> int:
        """Ticks between excitation firings."""
        return self.sample_rate // self.excitation_frequency

    @property
    def total_samples(self) -> int:
        # round, not truncate: 100 * 0.29 is 28.999999999999996
        return int(round(self.sample_rate * self.duration))

    @property
    def batch_count(self) -> int:
        return self.total_samples // self.batch_size


class GridState:
    """Two-layer pressure field plus static cell masks."""

    def __init__(self, width: int, height: int, boundary_gain: float = 1.0):
        """Initialize grid state.

        Args:
            width: Cells along x, including the outer ring
            height: Cells along y, including the outer ring
            boundary_gain: 1 holds the rim at zero (clamped), 0 lets it echo
                the adjacent interior value (free)
        """
        if width <= 2 or height <= 2:
            raise ValueError(f"Domain {width}x{height} has no interior cells")

        self.width = width
        self.height = height
        self.boundary_gain = boundary_gain

        # pressure[layer, x, y] for leapfrog integration
        self.pressure = np.zeros((2, width, height))

        # which layer was written last; the other one is settled
        self.parity = 0

        self.interior = np.zeros((width, height), dtype=bool)
        self.interior[1:-1, 1:-1] = True
        self.interior.setflags(write=False)

        self.excitation_mask = np.zeros((width, height))
        self.excitation_cell: Optional[Tuple[int, int]] = None

    @property
    def current(self) -> int:
        return self.parity

    @property
    def settled(self) -> int:
        return 1 - self.parity

    def flip(self):
        self.parity = 1 - self.parity

    def set_excitation(self, cell: Tuple[int, int]):
        """Mark exactly one cell as the excitation site."""
        x, y = cell
        if not (0 <= x < self.width and 0 <= y < self.height):
            raise ValueError(f"Excitation cell {cell} outside {self.width}x{self.height} domain")
        self.excitation_mask = np.zeros((self.width, self.height))
        self.excitation_mask[x, y] = 1.0
        self.excitation_cell = (x, y)

    def cell_for_position(self, position: Tuple[float, float]) -> Tuple[int, int]:
        """Map normalized (x, y) coordinates to the nearest interior cell."""
        x = int(position[0] * self.width)
        y = int(position[1] * self.height)
        x = max(1, min(x, self.width - 2))
        y = max(1, min(y, self.height - 2))
        return x, y

    def read(self, layer: int, x: int, y: int) -> float:
        return float(self.pressure[layer, x, y])

    def write(self, layer: int, x: int, y: int, value: float):
        self.pressure[layer, x, y] = value

    def layer(self, index: int) -> np.ndarray:
        """View of one whole layer, indexed [x, y]."""
        return self.pressure[index]

    def enforce_boundary(self, index: int):
        """Rewrite the outer ring of a layer from its adjacent interior cells.

        Each rim cell becomes (1 - boundary_gain) times its interior
        neighbour. Gain 1 pins the rim at 0 (clamped edge). Gain 0 copies the
        interior value outward, which makes a zero-flux (free) edge rather
        than a rim held at 0.
        """
        p = self.pressure[index]
        echo = 1.0 - self.boundary_gain
        p[0, 1:-1] = echo * p[1, 1:-1]
        p[-1, 1:-1] = echo * p[-2, 1:-1]
        p[1:-1, 0] = echo * p[1:-1, 1]
        p[1:-1, -1] = echo * p[1:-1, -2]
        # corners never touch an interior cell
        p[0, 0] = p[0, -1] = p[-1, 0] = p[-1, -1] = 0.0

    def total_squared_pressure(self, index: Optional[int] = None) -> float:
        """Sum of p^2 over interior cells of a layer (default: current)."""
        if index is None:
            index = self.current
        interior = self.pressure[index][self.interior]
        return float(np.sum(interior * interior))

    def reset(self):
        self.pressure[:] = 0.0
        self.parity = 0


def neighbor_sum(p: np.ndarray) -> np.ndarray:
    """Sum of the four neighbours of every interior cell.

    Returns:
        Array of shape (width - 2, height - 2)
    """
    # method='direct' keeps zero fields exactly zero (no FFT round-off)
    return scipy.signal.correlate(p, NEIGHBOR_STENCIL, mode='valid', method='direct')


@dataclass(frozen=True)
class KernelUniforms:
    """Scalars the kernel receives every tick."""
    propagation_factor: float
    damping_factor: float
    boundary_gain: float
    excitation_magnitude: float


Kernel = Callable[[np.ndarray, np.ndarray, np.ndarray, np.ndarray, KernelUniforms], np.ndarray]


def leapfrog_kernel(cur, prev, neighbors, excitation_mask, uniforms: KernelUniforms):
    """Explicit 2D wave-equation leapfrog update for interior cells.

    Works element-wise, so scalars and equally shaped arrays are both fine.

    Args:
        cur: Pressure at step n
        prev: Pressure at step n-1
        neighbors: Sum of the four neighbours of cur
        excitation_mask: 1 where energy is injected, 0 elsewhere
        uniforms: Propagation, damping, boundary gain and excitation magnitude

    Returns:
        Pressure at step n+1
    """
    laplacian = neighbors - 4.0 * cur
    wave = 2.0 * cur - prev + uniforms.propagation_factor * laplacian
    return (1.0 - uniforms.damping_factor) * wave + uniforms.excitation_magnitude * excitation_mask


KERNELS = {
    'leapfrog': leapfrog_kernel,
}


def load_kernel(name) -> Kernel:
    """Resolve a kernel from a callable, a registered name or 'module:function'.

    Raises:
        KernelError: If the kernel cannot be found or imported
    """
    if callable(name):
        return name
    if name in KERNELS:
        return KERNELS[name]
    if isinstance(name, str) and ':' in name:
        module_name, _, attr = name.partition(':')
        try:
            module = importlib.import_module(module_name)
            kernel = getattr(module, attr)
        except (ImportError, AttributeError) as e:
            raise KernelError(f"Could not load kernel {name!r}: {e}") from e
        if not callable(kernel):
            raise KernelError(f"Kernel {name!r} is not callable")
        return kernel
    raise KernelError(f"Unknown kernel {name!r}; known kernels: {sorted(KERNELS)}")


def probe_kernel(kernel: Kernel, params: SimulationParams):
    """Run a kernel once on a small field and check what comes back.

    Stands in for the build/link check of a compiled compute kernel: a
    kernel that cannot produce a finite field of the right shape is fatal.
    """
    shape = (3, 3)
    cur = np.zeros(shape)
    cur[1, 1] = 1.0
    uniforms = KernelUniforms(params.propagation_factor, params.damping_factor,
                              params.boundary_gain, 0.0)
    try:
        out = np.asarray(kernel(cur, np.zeros(shape), np.zeros(shape), np.zeros(shape), uniforms))
    except Exception as e:
        raise KernelError(f"Kernel probe failed: {e}") from e
    if out.shape != shape:
        raise KernelError(f"Kernel returned shape {out.shape}, expected {shape}")
    if not np.all(np.isfinite(out)):
        raise KernelError("Kernel returned non-finite values on probe")


class InlineSurface:
    """Compute surface that runs work immediately on the calling thread."""

    def submit(self, fn, *args) -> Future:
        future: Future = Future()
        try:
            future.set_result(fn(*args))
        except Exception as e:
            future.set_exception(e)
        return future

    def close(self):
        pass


class ComputeSurface:
    """Runs grid updates on a worker thread.

    Completion is never implicit: callers must wait on the returned future
    before reading anything the update wrote.
    """

    def __init__(self):
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix='membrane-compute')

    def submit(self, fn, *args) -> Future:
        return self._executor.submit(fn, *args)

    def close(self):
        self._executor.shutdown(wait=True)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


class SimulationStepper:
    """Advances a GridState one sample tick at a time."""

    def __init__(self, grid: GridState, params: SimulationParams, excitation,
                 kernel: Optional[Kernel] = None, surface=None):
        """Initialize stepper.

        Args:
            grid: Grid to advance
            params: Simulation parameters (coefficients)
            excitation: ExcitationController supplying the per-tick magnitude
            kernel: Update kernel; resolved from params.kernel if None
            surface: Compute surface; InlineSurface if None
        """
        self.grid = grid
        self.params = params
        self.excitation = excitation
        self.kernel = kernel if kernel is not None else load_kernel(params.kernel)
        self.surface = surface if surface is not None else InlineSurface()
        self.step_count = 0
        self.last_magnitude = 0.0

        self._sync_excitation_cell()

    def _sync_excitation_cell(self):
        cell = self.grid.cell_for_position(self.excitation.position)
        if cell != self.grid.excitation_cell:
            self.grid.set_excitation(cell)

    def _update(self, cur_index: int, write_index: int, uniforms: KernelUniforms):
        grid = self.grid
        cur = grid.layer(cur_index)
        target = grid.layer(write_index)

        neighbors = neighbor_sum(cur)
        interior_next = self.kernel(
            cur[1:-1, 1:-1],
            target[1:-1, 1:-1],
            neighbors,
            grid.excitation_mask[1:-1, 1:-1],
            uniforms,
        )
        # prev is consumed above, so overwriting it in place is safe
        target[1:-1, 1:-1] = interior_next
        grid.enforce_boundary(write_index)

    def tick(self) -> float:
        """Perform one FDTD tick.

        Returns:
            The excitation magnitude injected this tick
        """
        grid = self.grid
        params = self.params

        magnitude = self.excitation.tick()
        self._sync_excitation_cell()

        uniforms = KernelUniforms(
            propagation_factor=params.propagation_factor,
            damping_factor=params.damping_factor,
            boundary_gain=grid.boundary_gain,
            excitation_magnitude=magnitude,
        )

        # update phase: overwrite the settled layer (n-1) with n+1
        cur_index = grid.current
        write_index = grid.settled
        pending = self.surface.submit(self._update, cur_index, write_index, uniforms)

        # fence: nothing may read the grid until the update has completed
        pending.result()

        # settle phase: the written layer becomes current, cur_index is settled
        grid.flip()

        self.last_magnitude = magnitude
        self.step_count += 1
        return magnitude

    def run(self, ticks: int):
        for _ in range(ticks):
            self.tick()


def leapfrog_energy(grid: GridState, propagation_factor: float, damping_factor: float = 0.0) -> float:
    """Discrete energy of the two stored layers.

    Q = |y|^2 - a <y, (2 + propagation*L) x> + a |x|^2 with y the current
    layer, x the settled one and a = 1 - damping. The leapfrog update maps
    Q to a*Q exactly, so Q is constant without damping and decays
    geometrically with it. Q >= 0 whenever propagation <= 0.5.
    """
    a = 1.0 - damping_factor
    y = grid.layer(grid.current)
    x = grid.layer(grid.settled)

    y_in = y[1:-1, 1:-1]
    x_in = x[1:-1, 1:-1]
    laplacian_x = neighbor_sum(x) - 4.0 * x_in

    cross = np.sum(y_in * (2.0 * x_in + propagation_factor * laplacian_x))
    return float(np.sum(y_in * y_in) - a * cross + a * np.sum(x_in * x_in))
