"""Callable wrappers that make a function value serializable.

``SerializableClosure`` wraps a live function and behaves like it. Pickled with
any pickler, it travels as a nested ``dumps`` payload, signed when a key is
configured (or when ``signed=True``), and unpickles back into a wrapper
around the rebuilt function.

Example:
    >>> import pickle
    >>> from closurekit import capture
    >>> n = 5
    >>> wrapper = capture(lambda x: x + n)
    >>> data = pickle.dumps(wrapper)
    >>> n = 99
    >>> pickle.loads(data)(10)
    15
"""

from typing import Any, Callable, Optional, Type

from .config import ConfigModel, active_config
from .errors import MissingKeyError
from .serialization import dumps, loads
from .signing import seal, unseal
from .support.analysis import USES_ATTRIBUTE


def _restore(cls: Type["SerializableClosure"], payload: bytes) -> "SerializableClosure":
    return cls(loads(payload), signed=False)


def _restore_signed(cls: Type["SerializableClosure"], envelope: bytes) -> "SerializableClosure":
    return cls(unseal(envelope), signed=True)


class SerializableClosure:
    """A live function that can be pickled, stored and rebuilt elsewhere.

    Args:
        func: The function to wrap. Lambdas, nested functions, bound methods
            and decorated callables are all accepted.
        config: Configuration to capture with. Defaults to the active config.
        signed: Force (True) or skip (False) signing. With None the payload is
            signed exactly when a signing key is configured at pickling time.
    """

    def __init__(
        self,
        func: Callable,
        config: Optional[ConfigModel] = None,
        signed: Optional[bool] = None,
    ):
        if not callable(func):
            raise TypeError(f"Expected a callable, got {type(func).__name__}.")

        self.func = func
        self.config = config
        self.signed = signed

    @classmethod
    def unsigned(cls, func: Callable, config: Optional[ConfigModel] = None) -> "UnsignedSerializableClosure":
        return UnsignedSerializableClosure(func, config=config)

    def __call__(self, *args, **kwargs) -> Any:
        return self.func(*args, **kwargs)

    def invoke(self, *args, **kwargs) -> Any:
        return self.func(*args, **kwargs)

    def live_function(self) -> Callable:
        return self.func

    def is_signed(self) -> bool:
        if self.signed is not None:
            return self.signed
        return active_config(self.config).SIGNING.KEY is not None

    def __reduce__(self):
        config = active_config(self.config)

        if self.is_signed():
            if config.SIGNING.KEY is None:
                raise MissingKeyError()
            return (_restore_signed, (type(self), seal(self.func, config=config)))

        return (_restore, (type(self), dumps(self.func, config=config)))

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {getattr(self.func, '__qualname__', self.func)!r}>"


class UnsignedSerializableClosure(SerializableClosure):
    """A ``SerializableClosure`` that is never signed.

    Unpickling an unsigned closure compiles and runs code taken from the
    payload. Never load one from a source you do not trust.
    """

    def __init__(
        self,
        func: Callable,
        config: Optional[ConfigModel] = None,
        signed: Optional[bool] = None,
    ):
        super().__init__(func, config=config, signed=False)


def capture(
    func: Callable,
    *,
    signed: Optional[bool] = None,
    config: Optional[ConfigModel] = None,
) -> SerializableClosure:
    """Wrap ``func`` so that it can be serialized.

    Passing ``signed=False`` returns an ``UnsignedSerializableClosure``.
    """
    if isinstance(func, SerializableClosure):
        return func

    if signed is False:
        return UnsignedSerializableClosure(func, config=config)

    return SerializableClosure(func, config=config, signed=signed)


def uses(*names: str) -> Callable[[Callable], Callable]:
    """Declare the outer variables a function captures.

    Without a declaration a function captures every outer variable it reads.
    With one, only the listed names are captured and any other free name is
    looked up in the rebuilt function's globals, like a plain global.

    Example:
        >>> a, b = 1, 2
        >>> f = uses("a")(lambda: a + b)
    """
    for name in names:
        if not isinstance(name, str) or not name.isidentifier():
            raise ValueError(f"Invalid variable name {name!r}.")

    def decorator(func: Callable) -> Callable:
        setattr(func, USES_ATTRIBUTE, tuple(names))
        return func

    return decorator
