"""Exception taxonomy shared across the package."""

from __future__ import annotations


class GraphMFError(Exception):
    """Base class for every error raised by graphmf."""


class ConfigurationError(GraphMFError, ValueError):
    """A hyperparameter, config file or input file is malformed."""


class InvalidStateError(GraphMFError, RuntimeError):
    """An operation was requested in a lifecycle state that forbids it."""


class InvariantViolationError(GraphMFError, AssertionError):
    """
    An entity id is out of range or on the wrong side of the bipartite split.

    This always indicates corrupted id translation upstream and is never
    recovered from.
    """


class CorruptCheckpointError(GraphMFError):
    """A checkpoint on disk is inconsistent with its declared dimensions."""


class IOFailure(GraphMFError, OSError):
    """Reading or writing a checkpoint failed at the filesystem level."""
