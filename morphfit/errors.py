"""Exception types raised by morphfit."""


class MorphfitError(Exception):
    """Base class for all morphfit errors."""


class InvalidInputError(MorphfitError, ValueError):
    """Malformed or inconsistent input data (landmarks, model, topology, ...)."""


class UnderdeterminedFitError(MorphfitError):
    """Not enough (or degenerate) correspondences to solve for camera or shape."""
