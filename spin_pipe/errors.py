"""
Error and warning types raised by spin_pipe.

Configuration problems abort the call with a ``ConfigurationError`` naming the
offending parameter. Advisory conditions are emitted as ``UserWarning``
subclasses and the pipeline continues with a best-effort result.
"""


class ConfigurationError(ValueError):
    """Invalid or inconsistent inputs that the caller must fix."""

    def __init__(self, parameter: str, message: str):
        self.parameter = parameter
        super().__init__(f"{parameter}: {message}")


class SpinMeasurementError(ArithmeticError):
    """lambda_R cannot be formed because no pixel carries flux in the ellipse."""


class MeasurementWarning(UserWarning):
    """Measurement ellipse extends beyond the observed aperture."""


class MissingParticleTypeWarning(UserWarning):
    """A requested particle type is absent from the catalog."""
