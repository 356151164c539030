"""Exceptions raised by fmembed."""


class ConfigError(ValueError):
    """Invalid configuration, detected before any training work starts."""


class BinRangeError(ValueError):
    """An occurrence count falls beyond the last metric bin boundary."""


class UnsupportedOperationError(TypeError):
    """The dataset variant does not support the requested operation."""
