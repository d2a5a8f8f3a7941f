class BuildError(Exception):
    """Base class for every failure that ends a build run."""


class ValidationError(BuildError):
    """Malformed or missing input, detected before any side effect."""


class StageError(BuildError):
    """A command, file or directory a stage depends on failed or is missing."""


class ReporterError(StageError):
    """The Telegram endpoint did not confirm a request."""
