"""
errors.py
~~~~~~~~~

Typed failures raised by the recognition engine.

None of these are retried by the library; each one stops the operation that
raised it and is handed to the caller.
"""


class DigitOCRError(Exception):
    """Base class for every error raised by digit_ocr."""


class InvalidInputError(DigitOCRError, ValueError):
    """An image (or other required input) is missing or empty."""


class DimensionMismatchError(DigitOCRError, ValueError):
    """A vector length does not match the configured network topology."""


class ModelFormatError(DigitOCRError, ValueError):
    """A persisted model is malformed or its shapes contradict its topology."""


class ModelIOError(DigitOCRError, OSError):
    """A model file could not be read or written."""
