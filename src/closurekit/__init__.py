"""Serializable closures.

Capture a function value (a lambda, a nested function, a bound method or a
decorated callable) together with the outer variables it reads, store it,
and rebuild an equivalent live function later, possibly in another process.

Example:
    >>> import closurekit
    >>> closurekit.set_signing_key("secret")
    >>> n = 5
    >>> data = closurekit.seal(lambda x: x + n)
    >>> closurekit.unseal(data)(10)
    15
"""

__version__ = "0.1.0"

from .closure import SerializableClosure, UnsignedSerializableClosure, capture, uses
from .config import CONFIG, ConfigModel
from .errors import AnalysisError, InvalidSignatureError, MissingKeyError, ReconstructionError
from .serialization import ClosurePickler, ClosureUnpickler, dumps, loads
from .signing import HmacSigner, SignedEnvelope, seal, sign, signer_for, unseal, verify

set_signing_key = CONFIG.set_signing_key
set_capture_transform = CONFIG.set_capture_transform
set_capture_resolver = CONFIG.set_capture_resolver

__all__ = [
    "CONFIG",
    "AnalysisError",
    "ClosurePickler",
    "ClosureUnpickler",
    "ConfigModel",
    "HmacSigner",
    "InvalidSignatureError",
    "MissingKeyError",
    "ReconstructionError",
    "SerializableClosure",
    "SignedEnvelope",
    "UnsignedSerializableClosure",
    "capture",
    "dumps",
    "loads",
    "seal",
    "set_capture_resolver",
    "set_capture_transform",
    "set_signing_key",
    "sign",
    "signer_for",
    "unseal",
    "uses",
    "verify",
]
