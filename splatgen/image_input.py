"""
Input Preparation

Decodes the source image, resizes it to the size the model declares, and
builds the input feature map (image plus optional disparity scalar).
"""

import io
from typing import Dict, Optional, Tuple

import numpy as np
from PIL import Image, UnidentifiedImageError

from .descriptors import FeatureDescriptor, FeatureKind
from .errors import UnresolvedInputs, UnsupportedImage
from .schema import SemanticSchema

DEFAULT_INPUT_SIZE = (1536, 1536)


def infer_input_size(desc: FeatureDescriptor) -> Optional[Tuple[int, int]]:
    """(width, height) the image input expects, if it is declared."""
    if desc.kind == FeatureKind.IMAGE and desc.image_width and desc.image_height:
        return desc.image_width, desc.image_height
    if desc.kind == FeatureKind.MULTI_ARRAY and desc.shape is not None and len(desc.shape) >= 4:
        width, height = desc.shape[-1], desc.shape[-2]
        if width > 0 and height > 0:
            return width, height
    return None


def decode_image(image_bytes: bytes) -> Image.Image:
    try:
        image = Image.open(io.BytesIO(image_bytes))
        image.load()
    except (UnidentifiedImageError, OSError, ValueError) as e:
        raise UnsupportedImage(f"Unsupported image: {e}") from e
    return image.convert("RGB")


def resize_image(image: Image.Image, size: Tuple[int, int]) -> Image.Image:
    width, height = size
    if width <= 0 or height <= 0:
        raise UnsupportedImage(f"Unsupported image size: {width}x{height}")
    if image.size == (width, height):
        return image
    try:
        return image.resize((width, height), Image.Resampling.LANCZOS)
    except (OSError, ValueError) as e:
        raise UnsupportedImage(f"Could not resize image: {e}") from e


def prepare_image(image_bytes: bytes, size: Tuple[int, int]) -> Image.Image:
    """Decode and resize in one step."""
    return resize_image(decode_image(image_bytes), size)


def image_to_chw(image: Image.Image, shape) -> np.ndarray:
    """
    Fill a float32 [1, 3, H, W] array with RGB values in [0, 1].

    Raises:
        UnresolvedInputs: shape is not [1, 3, H, W] matching the image
    """
    if len(shape) < 4:
        raise UnresolvedInputs(["image"], reason=f"expected [1, 3, H, W], got {list(shape)}")
    n, c, h, w = shape[-4:]
    if n != 1 or c != 3 or (w, h) != image.size:
        raise UnresolvedInputs(
            ["image"], reason=f"shape {list(shape)} does not fit a {image.size[0]}x{image.size[1]} RGB image")

    rgb = np.asarray(image.convert("RGB"), dtype=np.float32) / 255.0
    chw = np.ascontiguousarray(rgb.transpose(2, 0, 1))[None, ...]
    return chw.reshape(shape).astype(np.float32)


def image_feature_value(image: Image.Image, desc: FeatureDescriptor):
    """Value for the image input: a PIL image or a CHW float array."""
    if desc.kind == FeatureKind.IMAGE:
        if desc.image_width and desc.image_height:
            return resize_image(image, (desc.image_width, desc.image_height))
        return image
    if desc.kind == FeatureKind.MULTI_ARRAY:
        width, height = image.size
        shape = desc.shape if desc.shape is not None else [1, 3, height, width]
        return image_to_chw(image, shape)
    raise UnresolvedInputs([desc.name], reason=f"unsupported image input kind {desc.kind.value}")


def disparity_feature_value(value: float, desc: FeatureDescriptor):
    if desc.kind == FeatureKind.INT64:
        return int(value)
    if desc.kind == FeatureKind.MULTI_ARRAY:
        return np.array([value], dtype=np.float32)
    return float(value)


def build_input_features(
    schema: SemanticSchema,
    image: Image.Image,
    disparity_factor: float = 1.0,
) -> Dict[str, object]:
    inputs: Dict[str, object] = {
        schema.image_input.name: image_feature_value(image, schema.image_input),
    }
    if schema.disparity_input is not None:
        inputs[schema.disparity_input.name] = disparity_feature_value(disparity_factor, schema.disparity_input)
    return inputs
