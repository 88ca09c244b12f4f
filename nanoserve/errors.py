"""
Error taxonomy for NanoServe.

Every failure the orchestration loop surfaces to its caller is a NanoServeError,
so the CLI and the API server can map them to an exit status or HTTP response.
"""


class NanoServeError(RuntimeError):
    """Base class for all NanoServe errors."""


class LoadError(NanoServeError):
    """The model backend could not be initialized."""


class ResetError(NanoServeError):
    """Clearing model state between generations failed.

    The master should be considered unusable until a later reset succeeds.
    """


class AppendError(NanoServeError):
    """A message could not be added to the model conversation."""


class TokenError(NanoServeError):
    """The backend failed to produce the next token."""


class GenerationInProgressError(NanoServeError):
    """A generation was started on a master that is already generating."""
