"""Head measurements and their validation.

The three measurements are in centimetres:

  width   ear-to-ear (left/right preauricular) distance
  depth   anterior-posterior head depth
  height  straight-line distance from the ear to the vertex
"""

import math
from dataclasses import dataclass

from mni_rescale.errors import (
    GeometryError,
    InputError,
    InvalidValueError,
    MissingFieldError,
)

REQUIRED_FIELDS = ("width", "depth", "height")


@dataclass(frozen=True)
class HeadMeasurements:
    width: float
    depth: float
    height: float

    @classmethod
    def from_mapping(cls, mapping):
        """Build from a dict-like record, checking the required fields once.

        ``None`` and empty strings count as absent (blank CSV cells).
        """
        if mapping is None:
            raise InputError("Head measurements are required")
        if isinstance(mapping, cls):
            return mapping

        for name in REQUIRED_FIELDS:
            value = mapping.get(name)
            if value is None or (isinstance(value, str) and not value.strip()):
                raise MissingFieldError(name)

        values = {}
        for name in REQUIRED_FIELDS:
            raw = mapping[name]
            if isinstance(raw, bool):
                raise InvalidValueError(name, raw, "not a number")
            try:
                values[name] = float(raw)
            except (TypeError, ValueError):
                raise InvalidValueError(name, raw, "not a number") from None
        return cls(**values)

    def as_dict(self):
        return {"width": self.width, "depth": self.depth, "height": self.height}


def validate(measurements):
    """Check presence, positivity and geometric consistency.

    Parameters
    ----------
    measurements : HeadMeasurements or mapping
        Anything :meth:`HeadMeasurements.from_mapping` accepts.

    Returns
    -------
    HeadMeasurements
        The validated, immutable measurements.

    Raises
    ------
    MissingFieldError, InvalidValueError, GeometryError
    """
    m = HeadMeasurements.from_mapping(measurements)

    for name in REQUIRED_FIELDS:
        value = getattr(m, name)
        if not math.isfinite(value):
            raise InvalidValueError(name, value, "not finite")
        if value <= 0:
            raise InvalidValueError(name, value)

    if m.height <= m.width / 2.0:
        raise GeometryError(
            f"height ({m.height}) must exceed half the width ({m.width / 2.0}): "
            f"ear-to-vertex distance cannot be shorter than half the "
            f"ear-to-ear distance"
        )
    return m
