"""
Prediction Sessions

A prediction session exposes declared input/output descriptors and a single
blocking predict(inputs) -> outputs call. OnnxPredictionSession wraps an
onnxruntime InferenceSession configured for one execution backend.
"""

import time
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Protocol, Sequence

import numpy as np
import onnxruntime as ort
from rich.console import Console

from .backend import ExecutionBackend
from .descriptors import FeatureDescriptor, FeatureKind

console = Console()

ONNX_TYPE_DTYPES = {
    "tensor(float)": "float32",
    "tensor(float16)": "float16",
    "tensor(double)": "float64",
    "tensor(int64)": "int64",
    "tensor(int32)": "int32",
    "tensor(uint8)": "uint8",
}

# Provider preference per backend; None means every installed provider
BACKEND_PROVIDERS: Dict[ExecutionBackend, Optional[List[str]]] = {
    ExecutionBackend.NEURAL_ENGINE_AND_CPU: ["CoreMLExecutionProvider", "CPUExecutionProvider"],
    ExecutionBackend.ALL_AVAILABLE: None,
    ExecutionBackend.CPU_ONLY: ["CPUExecutionProvider"],
}


class PredictionSession(Protocol):
    backend: ExecutionBackend

    @property
    def input_descriptors(self) -> Sequence[FeatureDescriptor]: ...

    @property
    def output_descriptors(self) -> Sequence[FeatureDescriptor]: ...

    def predict(self, inputs: Mapping[str, object]) -> Dict[str, object]: ...


def available_providers() -> List[str]:
    try:
        return list(ort.get_available_providers())
    except Exception:
        return ["CPUExecutionProvider"]


def pick_providers(backend: ExecutionBackend, available: Sequence[str]) -> List[str]:
    """Providers for a backend, restricted to those installed, CPU always last."""
    requested = BACKEND_PROVIDERS[backend]
    if requested is None:
        requested = list(available)
    providers = [p for p in requested if p in available and p != "CPUExecutionProvider"]
    providers.append("CPUExecutionProvider")
    return providers


def describe_onnx_arg(arg) -> FeatureDescriptor:
    """Convert an onnxruntime NodeArg into a FeatureDescriptor."""
    dtype = ONNX_TYPE_DTYPES.get(arg.type)
    shape = list(arg.shape) if arg.shape is not None else None
    # Symbolic or unknown dimensions leave the shape unconstrained
    if shape is not None and not all(isinstance(d, int) for d in shape):
        shape = None

    if arg.type.startswith("tensor("):
        kind = FeatureKind.MULTI_ARRAY
        if shape == [] and dtype == "float64":
            kind = FeatureKind.DOUBLE
        elif shape == [] and dtype == "int64":
            kind = FeatureKind.INT64
    else:
        kind = FeatureKind.STRING

    return FeatureDescriptor(name=arg.name, kind=kind, shape=shape, dtype=dtype)


class OnnxPredictionSession:
    """onnxruntime-backed prediction session for one execution backend."""

    def __init__(self, model_path: Path, backend: ExecutionBackend):
        self.model_path = Path(model_path)
        self.backend = backend
        providers = pick_providers(backend, available_providers())

        t0 = time.time()
        self._session = ort.InferenceSession(str(self.model_path), providers=providers)
        console.print(f"[dim]Session ready in {time.time() - t0:.1f}s "
                      f"| providers in use: {self._session.get_providers()}[/dim]")

        self._inputs = [describe_onnx_arg(a) for a in self._session.get_inputs()]
        self._outputs = [describe_onnx_arg(a) for a in self._session.get_outputs()]

    @property
    def input_descriptors(self) -> List[FeatureDescriptor]:
        return self._inputs

    @property
    def output_descriptors(self) -> List[FeatureDescriptor]:
        return self._outputs

    def predict(self, inputs: Mapping[str, object]) -> Dict[str, np.ndarray]:
        feed = {}
        for desc in self._inputs:
            if desc.name not in inputs:
                continue
            dtype = np.dtype(desc.dtype) if desc.dtype else None
            feed[desc.name] = np.asarray(inputs[desc.name], dtype=dtype)

        names = [d.name for d in self._outputs]
        values = self._session.run(names, feed)
        return dict(zip(names, values))


def onnx_session_loader(model_path: Path):
    """Session factory for BackendFallbackController."""
    def load(backend: ExecutionBackend) -> OnnxPredictionSession:
        return OnnxPredictionSession(model_path, backend)
    return load
