"""Compose the anisotropic scaling with a template's voxel-to-world affine."""

import numpy as np


def build_scaling_matrix(factors):
    """Homogeneous diag(fx, fy, fz, 1)."""
    return np.diag([factors.fx, factors.fy, factors.fz, 1.0])


def apply_scaling(template_affine, factors):
    """Return a new affine with the template scaled by ``factors``.

    Right-multiplying by the scaling matrix scales the rotation/zoom block
    but leaves the translation column untouched, so the offset of voxel
    (0, 0, 0) from the anatomical origin is rescaled separately.  The input
    array is never modified.

    Parameters
    ----------
    template_affine : array-like (4, 4)
    factors : ScalingFactors

    Returns
    -------
    ndarray (4, 4), float64
    """
    affine = np.asarray(template_affine, dtype=np.float64)
    if affine.shape != (4, 4):
        raise ValueError(f"Expected a 4x4 affine, got shape {affine.shape}")

    scaled = affine @ build_scaling_matrix(factors)

    # Translation: scale distances from the origin directly
    scaled[:3, 3] = scaled[:3, 3] * factors.as_array()
    return scaled
