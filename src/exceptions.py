"""Custom exceptions for the putting speed tracker."""


class MeasurementError(Exception):
    """Base measurement pipeline error."""
    pass


class InvalidInput(MeasurementError, ValueError):
    """Caller passed data of the wrong shape or count."""
    pass


class DecodeFormatError(InvalidInput):
    """Raw detector output has a layout the decoder does not recognise."""
    pass


class ExtractionFailure(MeasurementError):
    """Region could not be cut out of the frame (empty or out of bounds)."""
    pass


class InvalidCalibration(MeasurementError, ValueError):
    """Reference object measurement cannot produce a positive ratio."""
    pass


class ConfigError(MeasurementError):
    """Configuration-related errors."""
    pass
