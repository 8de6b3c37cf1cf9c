"""Error taxonomy for template rescaling.

Every failure fails the current job immediately.  Input errors are raised
before any file access, so a rejected subject never leaves a partial
output directory behind.
"""


class RescaleError(Exception):
    """Base class for all rescaling failures."""


class InputError(RescaleError, ValueError):
    """Missing subject identifier, measurement set or unusable option."""


class MissingFieldError(InputError):
    def __init__(self, field):
        self.field = field
        super().__init__(f"Missing required field: {field}")


class InvalidValueError(InputError):
    def __init__(self, field, value, reason="must be a positive number"):
        self.field = field
        self.value = value
        super().__init__(f"Invalid value for {field}: {value!r} ({reason})")


class GeometryError(InputError):
    """Height cannot be the hypotenuse of a triangle with leg width/2."""


class ConfigurationError(RescaleError):
    """Template or resampling engine could not be located or used."""


class ExternalEngineError(RescaleError):
    """The resampling engine failed or did not finish in time."""


class MissingOutputError(RescaleError):
    """The engine returned but the expected artifact is not where it should be.

    Recoverable: callers report it and carry on with other subjects.
    """

    def __init__(self, path):
        self.path = path
        super().__init__(f"Expected output file not found: {path}")
