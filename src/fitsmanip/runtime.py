"""
Worker pool and runtime configuration for fitsmanip.

The pixel pipeline kernels are data-parallel over pixel index. They run
through a Runtime, an explicit handle owning a thread pool, a cooperative
cancellation flag and the memory budget used before large allocations.
Entry points accept ``runtime=None`` and fall back to a process-wide
default instance configured from the environment.
"""

import os
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Optional

import psutil

from .errors import BufferAllocationError, OperationCancelledError
from .logging import logger, set_log_level

# Set inside worker threads so nested loops run inline
_local = threading.local()


class RuntimeConfig:
    """Runtime configuration: pool size, chunking and memory budget."""

    def __init__(self, num_threads: Optional[int] = None, min_chunk: int = 65536,
                 memory_fraction: float = 0.9):
        if num_threads is None:
            num_threads = psutil.cpu_count(logical=True) or os.cpu_count() or 1
        if num_threads < 1:
            raise ValueError(f"num_threads must be positive, got {num_threads}")
        if min_chunk < 1:
            raise ValueError(f"min_chunk must be positive, got {min_chunk}")
        self.num_threads = num_threads
        self.min_chunk = min_chunk
        self.memory_fraction = memory_fraction

    @classmethod
    def for_environment(cls) -> 'RuntimeConfig':
        """Build a configuration from FITSMANIP_* environment variables."""
        level = os.environ.get("FITSMANIP_LOG_LEVEL")
        if level:
            set_log_level(level)

        num_threads = _env_int("FITSMANIP_NUM_THREADS")
        min_chunk = _env_int("FITSMANIP_MIN_CHUNK")
        return cls(
            num_threads=num_threads,
            min_chunk=min_chunk if min_chunk is not None else 65536,
        )

    def __repr__(self):
        return (f"RuntimeConfig(num_threads={self.num_threads}, "
                f"min_chunk={self.min_chunk}, memory_fraction={self.memory_fraction})")


def _env_int(name: str) -> Optional[int]:
    value = os.environ.get(name)
    if value is None or not value.strip():
        return None
    try:
        return int(value)
    except ValueError:
        logger.warning(f"Ignoring non-integer {name}={value!r}")
        return None


class Runtime:
    """
    Explicit runtime handle for the pixel pipeline.

    The thread pool is created lazily by start(), which is idempotent.
    Cancellation is cooperative: cancel() sets a flag that parallel_for
    checks before each chunk.
    """

    def __init__(self, config: Optional[RuntimeConfig] = None):
        self.config = config or RuntimeConfig()
        self._pool = None
        self._lock = threading.RLock()
        self._cancel = threading.Event()

    @property
    def num_threads(self) -> int:
        return self.config.num_threads

    @property
    def started(self) -> bool:
        return self._pool is not None

    def start(self) -> 'Runtime':
        """Create the worker pool if it does not exist yet."""
        with self._lock:
            if self._pool is None:
                self._pool = ThreadPoolExecutor(
                    max_workers=self.config.num_threads,
                    thread_name_prefix="fitsmanip",
                )
                logger.debug(f"Started worker pool with {self.config.num_threads} threads")
        return self

    def shutdown(self):
        """Stop the worker pool; a later parallel loop starts a new one."""
        with self._lock:
            if self._pool is not None:
                self._pool.shutdown(wait=True)
                self._pool = None

    def cancel(self):
        """Ask running and future parallel loops to stop."""
        self._cancel.set()

    def reset(self):
        """Clear the cancellation flag."""
        self._cancel.clear()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def check_cancelled(self):
        if self._cancel.is_set():
            raise OperationCancelledError("operation cancelled")

    def check_allocation(self, nbytes: int, what: str = "buffer"):
        """Raise BufferAllocationError when nbytes exceeds the memory budget."""
        available = psutil.virtual_memory().available
        budget = int(available * self.config.memory_fraction)
        if nbytes > budget:
            raise BufferAllocationError(
                f"cannot allocate {nbytes} bytes for {what} "
                f"({budget} bytes available)"
            )

    def parallel_for(self, total: int, kernel: Callable[[int, int], None],
                     min_chunk: Optional[int] = None):
        """
        Run ``kernel(start, stop)`` over contiguous chunks of range(total).

        Chunks run on the worker pool and the call returns when every chunk
        has completed. The first exception raised by a chunk is re-raised.
        Calls made from inside a worker run inline on the calling thread.
        """
        if total <= 0:
            return
        min_chunk = min_chunk or self.config.min_chunk
        nchunks = min(self.config.num_threads, -(-total // min_chunk))

        if nchunks <= 1 or getattr(_local, "in_worker", False):
            self.check_cancelled()
            kernel(0, total)
            return

        self.start()
        step = -(-total // nchunks)
        bounds = [(start, min(start + step, total)) for start in range(0, total, step)]
        futures = [self._pool.submit(self._run_chunk, kernel, start, stop)
                   for start, stop in bounds]
        error = None
        for future in futures:
            try:
                future.result()
            except BaseException as e:
                if error is None:
                    error = e
        if error is not None:
            raise error

    def _run_chunk(self, kernel, start, stop):
        self.check_cancelled()
        _local.in_worker = True
        try:
            kernel(start, stop)
        finally:
            _local.in_worker = False

    def __enter__(self):
        return self.start()

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.shutdown()

    def __repr__(self):
        return f"Runtime({self.config!r}, started={self.started}, cancelled={self.cancelled})"


# Global runtime instance
_runtime = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get the default runtime instance."""
    global _runtime
    with _runtime_lock:
        if _runtime is None:
            _runtime = Runtime(RuntimeConfig.for_environment())
        return _runtime


def set_runtime(runtime: Runtime) -> Runtime:
    """Replace the default runtime; returns the previous one."""
    global _runtime
    with _runtime_lock:
        previous, _runtime = _runtime, runtime
    return previous


def configure_for_environment() -> Runtime:
    """Rebuild the default runtime from the environment."""
    previous = set_runtime(Runtime(RuntimeConfig.for_environment()))
    if previous is not None:
        previous.shutdown()
    return get_runtime()


def resolve(runtime: Optional[Runtime]) -> Runtime:
    return runtime if runtime is not None else get_runtime()
