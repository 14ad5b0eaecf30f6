"""Errors raised while turning model outputs into a splat scene file."""

from typing import List, Optional, Sequence, Tuple

GIB = 1024 * 1024 * 1024


class SplatGenError(Exception):
    """Base class for every generation error."""
    pass


class UnsupportedDType(SplatGenError):
    """Tensor buffer uses a numeric encoding the readers cannot decode."""

    def __init__(self, dtype: str):
        self.dtype = str(dtype)
        super().__init__(f"Unsupported tensor data type: {self.dtype}")


class IndexOutOfBounds(SplatGenError, IndexError):
    """A read would land outside the tensor buffer."""

    def __init__(self, index, limit: int):
        self.index = index
        self.limit = limit
        super().__init__(f"Index {index} out of bounds (limit {limit})")


class UnresolvedInputs(SplatGenError):
    """Model inputs could not be bound to the image/disparity roles."""

    def __init__(self, names: Sequence[str], reason: Optional[str] = None):
        self.names = sorted(names)
        self.reason = reason
        message = f"Unsupported model inputs: {', '.join(self.names)}"
        if reason:
            message += f" ({reason})"
        super().__init__(message)


class UnresolvedOutputs(SplatGenError):
    """Model outputs could not all be bound to the five splat roles."""

    def __init__(
        self,
        names: Sequence[str],
        missing_roles: Sequence[str] = (),
        reason: Optional[str] = None,
    ):
        self.names = sorted(names)
        self.missing_roles = list(missing_roles)
        self.reason = reason
        message = f"Unsupported model outputs: {', '.join(self.names)}"
        if self.missing_roles:
            message += f" (unbound: {', '.join(self.missing_roles)})"
        if reason:
            message += f" ({reason})"
        super().__init__(message)


class UnsupportedImage(SplatGenError):
    """Source image could not be decoded or resized."""

    def __init__(self, reason: str = "Unsupported image."):
        super().__init__(reason)


class InsufficientDeviceMemory(SplatGenError):
    """Physical memory is below the threshold for local inference."""

    def __init__(self, required_bytes: int, available_bytes: int):
        self.required_bytes = required_bytes
        self.available_bytes = available_bytes
        super().__init__(
            f"Not enough device memory for local inference "
            f"(need ~{required_bytes / GIB:.1f} GB, device has ~{available_bytes / GIB:.1f} GB). "
            f"Pass the low-memory override to try anyway."
        )


class InsufficientDiskSpace(SplatGenError):
    """Free storage is below the threshold for staging the model."""

    def __init__(self, required_bytes: int, available_bytes: int):
        self.required_bytes = required_bytes
        self.available_bytes = available_bytes
        super().__init__(
            f"Not enough free storage for the model "
            f"(need ~{required_bytes / GIB:.1f} GB free, only ~{available_bytes / GIB:.1f} GB available). "
            f"Free up storage and try again."
        )


class MissingResource(SplatGenError):
    """Model resource could not be found at its source."""

    def __init__(self, model_name: str, location: Optional[str] = None):
        self.model_name = model_name
        self.location = location
        message = f'Could not find model resource "{model_name}"'
        if location:
            message += f" in {location}"
        super().__init__(message)


class PredictionFailed(SplatGenError):
    """Every execution backend failed to run the prediction."""

    def __init__(self, cause: Optional[BaseException], attempts: Sequence[Tuple[object, BaseException]] = ()):
        self.cause = cause
        self.attempts: List[Tuple[object, BaseException]] = list(attempts)
        tried = ", ".join(str(getattr(b, "value", b)) for b, _ in self.attempts) or "none"
        super().__init__(f"Prediction failed on every backend (tried: {tried}): {cause}")


class IOFailure(SplatGenError):
    """Reading or writing a file failed."""
    pass


class CountMismatch(IOFailure):
    """Points written differ from the count declared in the file header."""

    def __init__(self, expected: int, actual: int):
        self.expected = expected
        self.actual = actual
        super().__init__(f"Declared {expected} points but wrote {actual}")


class GenerationCancelled(SplatGenError):
    """The caller abandoned the generation request."""

    def __init__(self):
        super().__init__("Generation cancelled")
