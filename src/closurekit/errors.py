"""Exceptions raised while capturing, signing and reconstructing closures.

The capture-side errors subclass ``pickle.PicklingError`` and the load-side
errors subclass ``pickle.UnpicklingError`` so callers that already guard
pickle calls keep working when a closure sits somewhere in the payload.
"""

import pickle


class AnalysisError(pickle.PicklingError):
    """The source of a function could not be read, tokenized or located."""


class MissingKeyError(pickle.PicklingError):
    """A signed operation was requested but no signing key is configured."""

    def __init__(self, message: str = "No serializable closure secret key has been specified."):
        super().__init__(message)


class ReconstructionError(pickle.UnpicklingError):
    """A captured unit could not be compiled back into a live function."""


class InvalidSignatureError(pickle.UnpicklingError):
    """The integrity code of a signed payload does not match its contents."""

    def __init__(
        self,
        message: str = "Your serialized closure might have been modified or it's unsafe to be unserialized.",
    ):
        super().__init__(message)
