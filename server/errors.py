"""Exceptions raised by the timeline engine."""


class TimelineError(Exception):
    """Base class for timeline engine errors."""


class InvalidConfig(TimelineError, ValueError):
    """A timeline configuration failed validation."""


class InvalidInput(TimelineError, ValueError):
    """A required input was missing, empty, or out of range."""


class TimelineStorageError(TimelineError):
    """The timeline cache could not be read or written."""
