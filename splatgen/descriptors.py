"""Declared model input/output descriptors and tensor layout descriptors."""

from enum import Enum
from typing import List, Optional, Sequence

import numpy as np
from pydantic import BaseModel, Field, field_validator

SUPPORTED_DTYPES = {"float32", "float16", "float64"}


class FeatureKind(str, Enum):
    """Type tag of a declared model feature."""
    IMAGE = "image"
    MULTI_ARRAY = "multi-array"
    DOUBLE = "double"
    INT64 = "int64"
    STRING = "string"


class FeatureDescriptor(BaseModel):
    """One declared input or output of a prediction session."""

    name: str
    kind: FeatureKind
    shape: Optional[List[int]] = None
    dtype: Optional[str] = None
    image_width: Optional[int] = Field(default=None, gt=0)
    image_height: Optional[int] = Field(default=None, gt=0)

    model_config = {"frozen": True}

    @field_validator("shape")
    @classmethod
    def validate_shape(cls, v):
        if v is not None and any(d < 0 for d in v):
            raise ValueError(f"Shape dimensions must be non-negative: {v}")
        return v

    @property
    def rank(self) -> Optional[int]:
        return len(self.shape) if self.shape is not None else None

    @property
    def last_dim(self) -> Optional[int]:
        return self.shape[-1] if self.shape else None

    def describe(self) -> str:
        shape = "x".join(str(d) for d in self.shape) if self.shape is not None else "?"
        return f"{self.name} <{self.kind.value} {shape}{' ' + self.dtype if self.dtype else ''}>"


class TensorDescriptor(BaseModel):
    """Concrete layout of a tensor buffer: element strides, not byte strides."""

    name: str
    shape: List[int] = Field(..., min_length=1, max_length=4)
    dtype: str
    strides: List[int]

    @field_validator("shape")
    @classmethod
    def validate_shape(cls, v):
        if any(d < 0 for d in v):
            raise ValueError(f"Shape dimensions must be non-negative: {v}")
        return v

    @field_validator("dtype")
    @classmethod
    def validate_dtype(cls, v):
        if v not in SUPPORTED_DTYPES:
            raise ValueError(f"Invalid dtype: {v}. Must be one of {sorted(SUPPORTED_DTYPES)}")
        return v

    @field_validator("strides")
    @classmethod
    def validate_strides(cls, v, info):
        shape = info.data.get("shape")
        if shape is not None and len(v) != len(shape):
            raise ValueError(f"Expected {len(shape)} strides, got {len(v)}")
        return v

    @classmethod
    def from_array(cls, name: str, array: np.ndarray) -> "TensorDescriptor":
        """Describe a numpy array, converting byte strides to element strides."""
        array = np.asarray(array)
        if array.ndim == 0:
            array = array.reshape(1)
        return cls(
            name=name,
            shape=list(array.shape),
            dtype=array.dtype.name,
            strides=[s // array.itemsize for s in array.strides],
        )


def contiguous_strides(shape: Sequence[int]) -> List[int]:
    """Row-major element strides for a shape."""
    strides = []
    step = 1
    for dim in reversed(list(shape)):
        strides.append(step)
        step *= max(dim, 1)
    return list(reversed(strides))
