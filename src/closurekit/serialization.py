"""Outer byte encoding for captured closures.

Built on cloudpickle: ``ClosurePickler`` overrides how dynamic functions are
reduced so that, instead of bytecode, each function travels as a
``CapturedFunction`` record holding its rewritten source and captured state.
Everything else in the payload is left to cloudpickle.

One ``dump`` holds a single capture scope for its whole duration, and one
``load`` a single reconstruction scope, so a function reachable from several
places in the payload is captured once and rebuilt once.

Example:
    >>> from closurekit import dumps, loads
    >>> n = 5
    >>> data = dumps(lambda x: x + n)
    >>> n = 99
    >>> loads(data)(10)
    15
"""

import io
import pickle
import types
from pathlib import Path
from typing import Any, BinaryIO, Optional, Union

import cloudpickle

from .config import ConfigModel, using
from .support.reconstruct import reconstruct
from .support.scope import CapturedFunction, capture_scope, reconstruct_scope
from .support.walker import capture_function, decorated_function, is_generated_method

# Protocol 4 is available on every supported interpreter and supports large objects.
DEFAULT_PROTOCOL = 4


def restore_function(record: CapturedFunction) -> Any:
    """Unpickling entry point: rebuild ``record`` under the active config."""
    return reconstruct(record)


class ClosurePickler(cloudpickle.Pickler):
    """A cloudpickle-based pickler that serializes functions as captured closures.

    Dynamic functions (lambdas, nested functions, anything defined in
    ``__main__``) and decorated callables wrapping them are reduced to
    ``CapturedFunction`` records. Importable functions and classes are still
    pickled by reference, as cloudpickle does.

    Example:
        >>> import io
        >>> def my_func(x):
        ...     return x * 2
        >>> buffer = io.BytesIO()
        >>> ClosurePickler(buffer).dump(my_func)
    """

    def __init__(
        self,
        file: BinaryIO,
        protocol: int = DEFAULT_PROTOCOL,
        config: Optional[ConfigModel] = None,
    ):
        super().__init__(file, protocol=protocol)
        self.config = config

    def dump(self, obj: Any) -> None:
        with capture_scope(hold=True):
            return super().dump(obj)

    def reducer_override(self, obj):
        if decorated_function(obj) is not None:
            return self._closure_reduce(obj)

        return super().reducer_override(obj)

    def _closure_reduce(self, obj: Any) -> tuple:
        return (restore_function, (capture_function(obj, self.config),))

    def _dynamic_function_reduce(self, func: types.FunctionType) -> tuple:
        """Serialize a function as a ``CapturedFunction`` record.

        Called by cloudpickle for every function it would otherwise pickle by
        value. The record is built inside the scope held by ``dump``; since it
        only refers to other functions through records and self references,
        the plain 2-tuple reduce is enough to keep recursion and sharing intact.

        Raises:
            AnalysisError: If the source of ``func`` cannot be read or located.
        """
        if is_generated_method(func):
            return super()._dynamic_function_reduce(func)

        return self._closure_reduce(func)


class ClosureUnpickler(pickle.Unpickler):
    """Unpickler that rebuilds every record of one payload in a shared scope."""

    def __init__(self, file: BinaryIO, config: Optional[ConfigModel] = None):
        super().__init__(file)
        self.config = config

    def load(self) -> Any:
        with using(self.config), reconstruct_scope(hold=True):
            return super().load()


def dumps(
    obj: Any,
    path: Optional[Union[str, Path]] = None,
    protocol: int = DEFAULT_PROTOCOL,
    config: Optional[ConfigModel] = None,
) -> Optional[bytes]:
    """Serialize an object, capturing every dynamic function it reaches.

    Args:
        obj: Any picklable object.
        path: Optional file path to write the serialized data to.
            If None, returns the serialized bytes directly.
        protocol: Pickle protocol version to use. Defaults to DEFAULT_PROTOCOL (4).
        config: Configuration to capture with. Defaults to the global ``CONFIG``.

    Returns:
        If path is None: The serialized data as bytes.
        If path is provided: None (data is written to file).

    Raises:
        AnalysisError: If a reached function's source cannot be captured.
    """
    if path is None:
        buffer = io.BytesIO()
        ClosurePickler(buffer, protocol=protocol, config=config).dump(obj)
        buffer.seek(0)
        return buffer.read()

    path = Path(path)
    with path.open("wb") as file:
        ClosurePickler(file, protocol=protocol, config=config).dump(obj)


def loads(
    data: Union[str, bytes, Path],
    config: Optional[ConfigModel] = None,
) -> Any:
    """Deserialize data that was serialized with dumps().

    Unsigned payloads are executed as code when loaded: only load data from a
    trusted source, or use ``seal``/``unseal``.

    Args:
        data: One of:
            - bytes: Serialized data
            - str: Path to a file containing serialized data
            - Path: pathlib.Path to a file containing serialized data
        config: Configuration to reconstruct with. Defaults to the global ``CONFIG``.

    Raises:
        ReconstructionError: If a captured unit cannot be compiled back.
        FileNotFoundError: If a file path is provided but the file doesn't exist.
    """
    if isinstance(data, (bytes, bytearray)):
        return ClosureUnpickler(io.BytesIO(data), config).load()

    path = Path(data)
    with path.open("rb") as file:
        return ClosureUnpickler(file, config).load()
