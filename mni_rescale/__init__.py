"""Subject-specific rescaling of the MNI reference template.

Scale factors come from three head measurements (ear-to-ear width,
anterior-posterior depth, ear-to-vertex height); the template's affine is
scaled and the volume resliced through a pluggable resampling engine.
"""

from mni_rescale.errors import (
    ConfigurationError,
    ExternalEngineError,
    GeometryError,
    InputError,
    InvalidValueError,
    MissingFieldError,
    MissingOutputError,
    RescaleError,
)
from mni_rescale.measurements import HeadMeasurements, validate
from mni_rescale.pipeline import RescaleOptions, rescale_template
from mni_rescale.scaling import (
    MNI_REFERENCE,
    ReferenceGeometry,
    ScalingFactors,
    compute_scaling_factors,
)

__version__ = "0.1.0"
