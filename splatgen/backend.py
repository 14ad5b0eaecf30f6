"""
Execution Backend Fallback

Some accelerators reject a model only when it runs (unsupported ops), so a
prediction is retried across an ordered list of backends. Each attempt loads
(or reuses) a session configured for that backend; a failed attempt drops
the session before the next backend is tried.
"""

from enum import Enum
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from rich.console import Console

from .errors import PredictionFailed

console = Console()


class ExecutionBackend(str, Enum):
    NEURAL_ENGINE_AND_CPU = "neural-engine-and-cpu"
    ALL_AVAILABLE = "all-available"
    CPU_ONLY = "cpu-only"


class ComputePreference(str, Enum):
    AUTO = "auto"
    NEURAL_ENGINE_AND_CPU = "neural-engine-and-cpu"
    ALL_AVAILABLE = "all-available"
    CPU_ONLY = "cpu-only"


class DeviceClass(str, Enum):
    DESKTOP = "desktop"
    MOBILE = "mobile"
    SIMULATOR = "simulator"


# Preferred order per device class when the caller has no preference
DEVICE_BACKENDS: Dict[DeviceClass, Tuple[ExecutionBackend, ...]] = {
    DeviceClass.MOBILE: (
        ExecutionBackend.NEURAL_ENGINE_AND_CPU,
        ExecutionBackend.ALL_AVAILABLE,
        ExecutionBackend.CPU_ONLY,
    ),
    DeviceClass.DESKTOP: (
        ExecutionBackend.ALL_AVAILABLE,
        ExecutionBackend.CPU_ONLY,
    ),
    DeviceClass.SIMULATOR: (
        ExecutionBackend.CPU_ONLY,
    ),
}


def backend_candidates(
    device_class: DeviceClass,
    preference: ComputePreference = ComputePreference.AUTO,
) -> List[ExecutionBackend]:
    """Ordered backends to try for a device class and compute preference."""
    if preference == ComputePreference.AUTO:
        return list(DEVICE_BACKENDS[device_class])
    chosen = ExecutionBackend(preference.value)
    if chosen == ExecutionBackend.CPU_ONLY:
        return [chosen]
    return [chosen, ExecutionBackend.CPU_ONLY]


class ControllerState(str, Enum):
    IDLE = "idle"
    ATTEMPTING = "attempting"
    SUCCEEDED = "succeeded"
    EXHAUSTED_FAILED = "exhausted-failed"


class BackendFallbackController:
    """
    Owns at most one loaded session and retries prediction across backends.

    Args:
        load_session: Callable creating a session for a backend
        candidates: Backends in the order they should be tried
    """

    def __init__(
        self,
        load_session: Callable[[ExecutionBackend], object],
        candidates: Sequence[ExecutionBackend],
    ):
        self.load_session = load_session
        self.candidates = list(candidates)
        self.state = ControllerState.IDLE
        self.current_backend: Optional[ExecutionBackend] = None
        self.attempts: List[Tuple[ExecutionBackend, BaseException]] = []
        self._session = None
        self._session_backend: Optional[ExecutionBackend] = None
        self._start_index = 0
        self._acquired = False

    @property
    def session(self):
        return self._session

    @property
    def session_backend(self) -> Optional[ExecutionBackend]:
        return self._session_backend

    def set_candidates(self, candidates: Sequence[ExecutionBackend]) -> None:
        self.candidates = list(candidates)
        self._start_index = 0
        self.state = ControllerState.IDLE

    def release(self) -> None:
        """Drop the loaded session, if any."""
        if self._session is not None:
            console.print(f"[dim]Released session ({self._session_backend.value})[/dim]")
        self._session = None
        self._session_backend = None

    def ensure_session(self, backend: ExecutionBackend):
        """Reuse the loaded session only if it was built for exactly this backend."""
        if self._session is not None and self._session_backend == backend:
            return self._session
        self.release()
        console.print(f"[blue]Loading model session ({backend.value})...[/blue]")
        session = self.load_session(backend)
        self._session = session
        self._session_backend = backend
        return session

    def acquire_session(self):
        """
        Load a session on the first candidate that loads.

        Load failures fall through to the next candidate; prediction later
        starts from the backend that loaded.
        """
        self.attempts = []
        self._start_index = 0
        last_error: Optional[BaseException] = None

        for i, backend in enumerate(self.candidates):
            self.state = ControllerState.ATTEMPTING
            self.current_backend = backend
            try:
                session = self.ensure_session(backend)
            except Exception as e:
                console.print(f"[yellow]Session load failed on {backend.value}: {e}[/yellow]")
                self.attempts.append((backend, e))
                last_error = e
                self.release()
                continue
            self._start_index = i
            self._acquired = True
            return session

        self.state = ControllerState.EXHAUSTED_FAILED
        raise PredictionFailed(last_error, self.attempts) from last_error

    def predict(self, inputs: Mapping[str, object]) -> Dict[str, object]:
        """
        Run the prediction, falling back through the remaining candidates.

        Raises:
            PredictionFailed: every candidate failed; carries the last error
        """
        if not self.candidates:
            raise ValueError("No execution backends to try")
        if not self._acquired:
            self.attempts = []
            self._start_index = 0
        self._acquired = False

        last_error: Optional[BaseException] = None
        for backend in self.candidates[self._start_index:]:
            self.state = ControllerState.ATTEMPTING
            self.current_backend = backend
            try:
                session = self.ensure_session(backend)
                outputs = session.predict(inputs)
            except Exception as e:
                console.print(f"[yellow]Prediction failed on {backend.value}: {e}[/yellow]")
                self.attempts.append((backend, e))
                last_error = e
                self.release()
                continue

            self.state = ControllerState.SUCCEEDED
            console.print(f"[green]Prediction succeeded on {backend.value}[/green]")
            return outputs

        self._start_index = 0
        self.state = ControllerState.EXHAUSTED_FAILED
        raise PredictionFailed(last_error, self.attempts) from last_error
