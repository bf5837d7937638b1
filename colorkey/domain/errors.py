from __future__ import annotations


class InvalidInputError(ValueError):
    """Pixel buffer or dimensions do not describe a valid RGBA grid."""


class ConfigurationError(ValueError):
    """Removal parameters are outside their accepted range."""
