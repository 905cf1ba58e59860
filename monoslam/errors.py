"""Error types raised by the estimation pipeline.

All of them are recoverable: the pipeline turns them into an absent result
for the current frame and keeps its previous state.
"""


class SlamError(Exception):
    """Base class for monoslam errors."""


class InsufficientDataError(SlamError, ValueError):
    """Too few features, matches or inliers to proceed."""


class GeometricDegeneracyError(SlamError, ValueError):
    """No motion hypothesis passes the consensus or chirality checks."""


class NumericInvalidError(SlamError, ValueError):
    """A computation produced a non-finite value."""


class ConfigError(SlamError, ValueError):
    """Invalid or unknown configuration values."""
