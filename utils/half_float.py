"""IEEE-754 binary16 to binary32 conversion done with integer bit operations."""

import struct

import numpy as np

# binary32 exponent bias minus binary16 exponent bias
EXPONENT_REBIAS = 127 - 15


def half_bits_to_float_bits(bits: int) -> int:
    """
    Convert a binary16 bit pattern to the binary32 bit pattern of the same value.

    Handles the four encodings separately:
    - zero: only the sign survives
    - subnormal: the mantissa is shifted left until its implicit bit appears,
      lowering the exponent once per shift
    - infinity/NaN: exponent all ones, mantissa (NaN payload) carried over
    - normal: exponent rebiased from 15 to 127, mantissa widened by 13 bits
    """
    bits &= 0xFFFF
    sign = (bits & 0x8000) << 16
    exponent = (bits & 0x7C00) >> 10
    mantissa = bits & 0x03FF

    if exponent == 0:
        if mantissa == 0:
            return sign
        e = EXPONENT_REBIAS + 1
        while (mantissa & 0x0400) == 0:
            mantissa <<= 1
            e -= 1
        mantissa &= 0x03FF
        return sign | (e << 23) | (mantissa << 13)

    if exponent == 0x1F:
        return sign | 0x7F800000 | (mantissa << 13)

    return sign | ((exponent + EXPONENT_REBIAS) << 23) | (mantissa << 13)


def decode_half(bits: int) -> float:
    """Decode a single binary16 bit pattern to a float."""
    return struct.unpack("<f", struct.pack("<I", half_bits_to_float_bits(bits)))[0]


def decode_half_array(bits: np.ndarray) -> np.ndarray:
    """
    Vectorized binary16 decode.

    Args:
        bits: Array of uint16 bit patterns (any shape)

    Returns:
        float32 array of the same shape, bit-identical to half_bits_to_float_bits
    """
    bits = np.asarray(bits, dtype=np.uint16).astype(np.uint32)
    sign = (bits & 0x8000) << 16
    exponent = (bits & 0x7C00) >> 10
    mantissa = bits & 0x03FF

    out = sign | ((exponent + EXPONENT_REBIAS) << 23) | (mantissa << 13)

    special = exponent == 0x1F
    out[special] = sign[special] | 0x7F800000 | (mantissa[special] << 13)

    zero = (exponent == 0) & (mantissa == 0)
    out[zero] = sign[zero]

    subnormal = (exponent == 0) & (mantissa != 0)
    if np.any(subnormal):
        m = mantissa[subnormal]
        e = np.full(m.shape, EXPONENT_REBIAS + 1, dtype=np.uint32)
        # At most 10 shifts bring the top mantissa bit into the implicit position
        for _ in range(10):
            pending = (m & 0x0400) == 0
            if not np.any(pending):
                break
            m[pending] <<= 1
            e[pending] -= 1
        m &= 0x03FF
        out[subnormal] = sign[subnormal] | (e << 23) | (m << 13)

    return out.view(np.float32)
