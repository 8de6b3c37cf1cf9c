"""Scale factors from head measurements.

The ear-to-vertex ``height`` is the hypotenuse of a right triangle whose
horizontal leg is half the ear-to-ear ``width``; the vertical leg is the
head's true superior extent above the ear line.
"""

import math
from dataclasses import dataclass

import numpy as np

from mni_rescale.errors import GeometryError


@dataclass(frozen=True)
class ReferenceGeometry:
    """Intrinsic head dimensions of the reference template (cm)."""
    width: float = 16.0    # left-right preauricular distance
    depth: float = 21.0    # anterior-posterior
    height: float = 15.0   # inferior-superior, above the ear line


MNI_REFERENCE = ReferenceGeometry()


@dataclass(frozen=True)
class ScalingFactors:
    fx: float
    fy: float
    fz: float

    def as_array(self):
        return np.array([self.fx, self.fy, self.fz], dtype=np.float64)

    def as_list(self):
        return [self.fx, self.fy, self.fz]

    def __str__(self):
        return f"[{self.fx:.3f}, {self.fy:.3f}, {self.fz:.3f}]"


def calculated_height(width, height):
    """Vertical leg of the ear/vertex triangle: sqrt(height^2 - (width/2)^2)."""
    half = width / 2.0
    # (h - w/2)(h + w/2) factored so large finite inputs cannot overflow
    if not height > half:
        radicand = (height - half) * (height + half)
        raise GeometryError(
            f"height {height} is inconsistent with width {width}: "
            f"height^2 - (width/2)^2 = {radicand:.4g} is not positive"
        )
    return math.sqrt(height - half) * math.sqrt(height + half)


def compute_scaling_factors(measurements, reference=MNI_REFERENCE):
    """Map validated measurements to anisotropic scale factors.

    Pure and deterministic: identical inputs give bit-identical factors.
    """
    vertical = calculated_height(measurements.width, measurements.height)
    factors = ScalingFactors(
        fx=measurements.width / reference.width,
        fy=measurements.depth / reference.depth,
        fz=vertical / reference.height,
    )
    if not all(math.isfinite(f) and f > 0 for f in factors.as_list()):
        raise GeometryError(f"Scale factors out of range: {factors.as_list()}")
    return factors
