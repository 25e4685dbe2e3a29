class SfMError(Exception):
    """Base class for errors raised by the reconstruction engine."""


class WindowInvariantError(SfMError):
    """
    Raised when a sliding-window expansion leaves a view both in the active
    subset and in the remaining pool (or re-admits an already processed view).
    """
