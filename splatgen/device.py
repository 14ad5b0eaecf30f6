"""Device capability gates and output point budgets."""

import platform
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import numpy as np
import psutil

from .backend import DeviceClass
from .errors import GIB, InsufficientDeviceMemory

MEMORY_THRESHOLD_BYTES = 8 * GIB


class OutputQuality(str, Enum):
    FULL = "full"
    BALANCED = "balanced"
    LOW = "low"


@dataclass
class DeviceProfile:
    """What the host can offer to a generation run."""
    device_class: DeviceClass = DeviceClass.DESKTOP
    physical_memory: Optional[int] = None

    @classmethod
    def detect(cls, device_class: Optional[DeviceClass] = None) -> "DeviceProfile":
        try:
            physical = int(psutil.virtual_memory().total)
        except Exception:
            physical = None
        if device_class is None:
            # Phones and headsets never run this interpreter; treat hosts as desktops
            device_class = DeviceClass.DESKTOP
        return cls(device_class=device_class, physical_memory=physical)

    @property
    def memory_constrained(self) -> bool:
        return self.device_class == DeviceClass.MOBILE

    def describe(self) -> str:
        memory = f"{self.physical_memory / GIB:.1f} GB" if self.physical_memory else "unknown"
        return f"{self.device_class.value} ({platform.machine() or 'unknown'}, {memory} RAM)"


def check_device_memory(
    profile: DeviceProfile,
    allow_override: bool = False,
    threshold: int = MEMORY_THRESHOLD_BYTES,
) -> None:
    """
    Fail fast on memory-constrained devices below the threshold.

    Raises:
        InsufficientDeviceMemory: unless allow_override is set
    """
    if not profile.memory_constrained or allow_override:
        return
    if profile.physical_memory is not None and profile.physical_memory < threshold:
        raise InsufficientDeviceMemory(threshold, profile.physical_memory)


def recommended_max_output_points(profile: DeviceProfile) -> Optional[int]:
    """Point cap suggested by physical memory; None means no cap."""
    if not profile.memory_constrained or not profile.physical_memory:
        return None
    if profile.physical_memory < 4 * GIB:
        return 150_000
    if profile.physical_memory < 6 * GIB:
        return 300_000
    if profile.physical_memory < 8 * GIB:
        return 600_000
    return None


def max_output_points(quality: OutputQuality, profile: DeviceProfile) -> Optional[int]:
    recommended = recommended_max_output_points(profile)
    if quality == OutputQuality.FULL:
        return None
    if quality == OutputQuality.BALANCED:
        return recommended
    if recommended is not None:
        return max(50_000, recommended // 2)
    return 300_000


def default_quality(profile: DeviceProfile) -> OutputQuality:
    return OutputQuality.FULL if recommended_max_output_points(profile) is None else OutputQuality.BALANCED


def select_point_indices(point_count: int, cap: Optional[int] = None) -> np.ndarray:
    """
    Indices of the points to keep.

    With a cap below point_count the kept indices are evenly spaced and
    strictly increasing, so output order follows model order.
    """
    if cap is None or cap <= 0 or point_count <= cap:
        return np.arange(point_count, dtype=np.int64)
    return (np.arange(cap, dtype=np.int64) * point_count) // cap
