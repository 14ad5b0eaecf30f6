"""Numeric helpers shared by the splat generation stages."""

from .half_float import (
    half_bits_to_float_bits,
    decode_half,
    decode_half_array,
)
from .color import (
    SH_C0,
    linear_to_srgb,
    rgb_to_sh_dc,
    sh_dc_to_rgb,
    normalize_quaternions,
    logit,
    sigmoid,
)

__all__ = [
    "half_bits_to_float_bits",
    "decode_half",
    "decode_half_array",
    "SH_C0",
    "linear_to_srgb",
    "rgb_to_sh_dc",
    "sh_dc_to_rgb",
    "normalize_quaternions",
    "logit",
    "sigmoid",
]
