"""
Error taxonomy for the pyramid engine.

ValidationError and ExposureExceeded are signal-level rejections: they are
logged, the signal is dropped and state is untouched.

ExchangeError aborts processing of the current signal. State is only ever
committed after a confirmed order, so an ExchangeError never leaves a
partial mutation behind.
"""


class PyramidError(Exception):
    """Base class for all engine errors."""


class ValidationError(PyramidError):
    """Input rejected: size below minimum, invalid price, bad signal."""


class ExposureExceeded(PyramidError):
    """Buy would breach the configured account exposure limit."""

    def __init__(self, message: str, required_margin: float = 0.0, allowed_margin: float = 0.0):
        super().__init__(message)
        self.required_margin = required_margin
        self.allowed_margin = allowed_margin


class ExchangeError(PyramidError):
    """Order rejected, network failure or timeout."""

    def __init__(self, message: str, operation: str = None):
        super().__init__(message)
        self.operation = operation


class ExchangeTimeout(ExchangeError):
    """Exchange call did not answer within the configured timeout."""


class StateInconsistency(PyramidError):
    """Local state disagrees with the exchange outside a scheduled reconcile."""

    def __init__(self, symbol: str, message: str):
        super().__init__(f"{symbol}: {message}")
        self.symbol = symbol


class ConfigError(PyramidError):
    """Malformed configuration (percentages, levels, leverage)."""


class EntriesSuspended(PyramidError):
    """New entries blocked after repeated exchange failures."""
