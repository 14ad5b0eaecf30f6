"""Color and rotation helpers for splat serialization."""

import numpy as np

# Zeroth real spherical harmonic: 1 / (2 * sqrt(pi))
SH_C0 = 0.28209479177387814

SRGB_THRESHOLD = 0.0031308


def linear_to_srgb(linear):
    """
    Convert linear RGB to display (sRGB) values with the piecewise transfer function.

    Inputs are expected in [0, 1]; values below the threshold use the linear
    segment, the rest the 1/2.4 power curve.
    """
    linear = np.asarray(linear, dtype=np.float64)
    # Keep the power branch away from negative bases
    curve = 1.055 * np.power(np.maximum(linear, SRGB_THRESHOLD), 1.0 / 2.4) - 0.055
    result = np.where(linear <= SRGB_THRESHOLD, linear * 12.92, curve)
    if result.ndim == 0:
        return float(result)
    return result


def rgb_to_sh_dc(rgb):
    """Encode display RGB as the degree-0 spherical harmonic coefficient."""
    return (np.asarray(rgb, dtype=np.float64) - 0.5) / SH_C0


def sh_dc_to_rgb(sh_dc):
    """Inverse of rgb_to_sh_dc."""
    return np.asarray(sh_dc, dtype=np.float64) * SH_C0 + 0.5


def normalize_quaternions(q: np.ndarray) -> np.ndarray:
    """
    Normalize [w, x, y, z] quaternions row-wise.

    Rows with zero or non-finite length become the identity rotation.
    """
    q = np.asarray(q, dtype=np.float64)
    single = q.ndim == 1
    q = np.atleast_2d(q)

    norms = np.linalg.norm(q, axis=1)
    valid = np.isfinite(norms) & (norms > 0)

    out = np.zeros_like(q)
    out[:, 0] = 1.0
    out[valid] = q[valid] / norms[valid, None]

    return out[0] if single else out


def logit(p):
    """Inverse sigmoid, used for storing opacity."""
    p = np.asarray(p, dtype=np.float64)
    return np.log(p / (1.0 - p))


def sigmoid(x):
    """Map stored opacity logits back to [0, 1]."""
    return 1.0 / (1.0 + np.exp(-np.asarray(x, dtype=np.float64)))
