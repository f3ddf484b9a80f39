"""Capture side of the closure graph walk.

``Capturer.capture`` analyzes a function and hands everything it captured to
a ``GraphWalker``, which copies the reachable state while keeping shared
references shared:

    - the function at the root of the walk becomes a ``SelfReference``,
    - other dynamic functions (and bound methods, and decorated callables
      wrapping them) become nested ``CapturedFunction`` records,
    - ``SerializableClosure`` wrappers become ``CapturedWrapper`` markers
      around their walked function,
    - ``list`` and ``dict`` values are copied, registered before their items
      are walked so cycles through them close on the copy,
    - tuples and sets are rebuilt only when an item changed,
    - plain instances are rebuilt as shells through their pickle construction
      protocol and their fields walked,
    - everything else passes through untouched.

Every visited object is registered in the scope's identity map, so an
object reachable along two paths is wrapped once and referenced twice.
"""

import copyreg
import datetime
import decimal
import enum
import fractions
import linecache
import logging
import pathlib
import types
import uuid
from typing import Any, Iterator, Optional, Tuple

from cloudpickle.cloudpickle import _lookup_module_and_qualname, _should_pickle_by_reference

from ..config import ConfigModel, active_config
from ..errors import AnalysisError
from .analysis import analyze, mangle
from .scope import CaptureScope, CapturedFunction, CapturedWrapper, SelfReference, capture_scope

logger = logging.getLogger(__name__)

OPAQUE_TYPES = (
    type(None),
    bool,
    int,
    float,
    complex,
    str,
    bytes,
    bytearray,
    range,
    slice,
    type,
    types.ModuleType,
    types.BuiltinFunctionType,
    types.CodeType,
    datetime.date,
    datetime.time,
    datetime.timedelta,
    datetime.tzinfo,
    enum.Enum,
    decimal.Decimal,
    fractions.Fraction,
    uuid.UUID,
    pathlib.PurePath,
)

CONTAINER_TYPES = (list, dict, tuple, set, frozenset)

# Registered for an immutable container while its items are being walked.
_IN_PROGRESS = object()

# Methods ``@dataclass`` generates with exec(); they have no source to capture.
_DATACLASS_GENERATED_METHODS = frozenset(
    {
        "__init__",
        "__repr__",
        "__eq__",
        "__ne__",
        "__lt__",
        "__le__",
        "__gt__",
        "__ge__",
        "__hash__",
        "__setattr__",
        "__delattr__",
        "__getstate__",
        "__setstate__",
    }
)


def is_dynamic_function(value: Any) -> bool:
    """True for functions cloudpickle would serialize by value."""
    return isinstance(value, types.FunctionType) and not _should_pickle_by_reference(value)


def is_generated_method(func: types.FunctionType) -> bool:
    """Check if ``func`` is a method generated from a string with no backing file.

    Functions such as dataclass ``__init__``/``__repr__`` are compiled by the
    standard library from text it builds itself. They are left to cloudpickle.
    """
    if func.__name__ == "__annotate__":
        # Synthesized by the compiler from annotations; there is no literal to locate.
        return True

    if func.__name__ not in _DATACLASS_GENERATED_METHODS:
        return False

    if "." not in func.__qualname__:
        return False

    filename = func.__code__.co_filename
    return filename.startswith("<") and not linecache.getlines(filename)


def decorated_function(value: Any) -> Optional[types.FunctionType]:
    """The dynamic function wrapped by a decorated, non-function callable."""
    if isinstance(value, (types.FunctionType, types.MethodType, type)) or not callable(value):
        return None
    wrapped = getattr(value, "__wrapped__", None)
    if is_dynamic_function(wrapped):
        return wrapped
    return None


def scope_name(cls: type) -> Optional[str]:
    """``module:Qualname`` for an importable class, None otherwise."""
    if not _should_pickle_by_reference(cls):
        return None
    found = _lookup_module_and_qualname(cls)
    if found is None:
        return None
    module, qualname = found
    return f"{module.__name__}:{qualname}"


def is_plain_instance(value: Any) -> bool:
    """True for instances that pickle through ``cls.__new__`` and their fields."""
    cls = type(value)

    if isinstance(value, OPAQUE_TYPES) or isinstance(value, CONTAINER_TYPES):
        return False
    if cls.__module__ == "builtins" or cls in copyreg.dispatch_table:
        return False
    if cls.__reduce_ex__ is not object.__reduce_ex__ or cls.__reduce__ is not object.__reduce__:
        return False
    if getattr(cls, "__getstate__", None) is not getattr(object, "__getstate__", None):
        return False
    if hasattr(cls, "__setstate__"):
        return False
    return True


def instance_fields(value: Any) -> Iterator[Tuple[str, Any, bool]]:
    """Yield ``(name, value, is_slot)`` for every set field of a plain instance."""
    state = getattr(value, "__dict__", None)
    if isinstance(state, dict):
        for name, field_value in list(state.items()):
            yield name, field_value, False

    for klass in type(value).__mro__:
        if klass.__module__ == "builtins":
            continue
        slots = klass.__dict__.get("__slots__", ())
        if isinstance(slots, str):
            slots = (slots,)
        for slot in slots:
            if slot in ("__dict__", "__weakref__"):
                continue
            name = mangle(slot, klass.__name__)
            try:
                field_value = getattr(value, name)
            except AttributeError:
                # Declared but never assigned.
                continue
            yield name, field_value, True


def make_shell(value: Any) -> Optional[Any]:
    """Allocate an empty instance of ``type(value)`` without running ``__init__``."""
    try:
        reduced = value.__reduce_ex__(4)
    except TypeError:
        return None
    if not isinstance(reduced, tuple) or reduced[0] is not copyreg.__newobj__:
        return None
    constructor, args = reduced[0], reduced[1]
    return constructor(*args)


def set_field(instance: Any, name: str, value: Any, is_slot: bool) -> None:
    if is_slot:
        object.__setattr__(instance, name, value)
    else:
        instance.__dict__[name] = value


class GraphWalker:
    """Copies the state captured by one function."""

    def __init__(
        self,
        capturer: "Capturer",
        scope: CaptureScope,
        record: CapturedFunction,
        root: Any,
    ):
        self.capturer = capturer
        self.scope = scope
        self.record = record
        self.root = root

    def wrap(self, value: Any) -> Any:
        scope = self.scope

        if value is self.root:
            return SelfReference(self.record.identity)

        if value in scope:
            found = scope.get(value)
            if found is _IN_PROGRESS:
                raise AnalysisError(
                    f"Cannot capture a cycle through immutable {type(value).__name__} values."
                )
            return found

        from ..closure import SerializableClosure

        if isinstance(value, SerializableClosure):
            marker = scope.register(value, CapturedWrapper(type(value), signed=value.signed))
            marker.function = self.wrap(value.func)
            return marker

        if isinstance(value, types.FunctionType) and is_generated_method(value):
            return scope.register(value, value)

        if is_dynamic_function(value) or decorated_function(value) is not None:
            return self.capturer.capture(value)

        if isinstance(value, types.MethodType):
            if is_dynamic_function(value.__func__):
                return self.capturer.capture(value)
            method = types.MethodType(value.__func__, self.wrap(value.__self__))
            return scope.register(value, method)

        if isinstance(value, OPAQUE_TYPES) or isinstance(value, types.FunctionType):
            return scope.register(value, value)

        cls = type(value)

        if cls is list:
            copy = scope.register(value, [])
            copy.extend(self.wrap(item) for item in value)
            return copy

        if cls is dict:
            copy = scope.register(value, {})
            for key, item in value.items():
                copy[key] = self.wrap(item)
            return copy

        if cls in (set, frozenset) or (isinstance(value, tuple) and (cls is tuple or hasattr(cls, "_make"))):
            return self._wrap_immutable(value)

        if is_plain_instance(value):
            return self._wrap_instance(value)

        return scope.register(value, value)

    def _wrap_immutable(self, value: Any) -> Any:
        scope = self.scope
        cls = type(value)

        scope.register(value, _IN_PROGRESS)
        items = [self.wrap(item) for item in value]

        for item in items:
            if isinstance(item, SelfReference) or (
                isinstance(item, CapturedFunction) and scope.in_progress(item)
            ):
                raise AnalysisError(
                    f"A function cannot be captured through a reference to itself "
                    f"held in an immutable {cls.__name__}."
                )

        if all(new is old for new, old in zip(items, value)):
            result = value
        elif cls in (tuple, set, frozenset):
            result = cls(items)
        else:
            result = cls._make(items)

        return scope.register(value, result)

    def _wrap_instance(self, value: Any) -> Any:
        scope = self.scope

        shell = make_shell(value)
        if shell is None:
            return scope.register(value, value)

        scope.register(value, shell)

        for name, field_value, is_slot in instance_fields(value):
            wrapped = self.wrap(field_value)
            if isinstance(wrapped, SelfReference) and wrapped.identity == self.record.identity:
                self.record.fixups.append((shell, name))
                wrapped = None
            set_field(shell, name, wrapped, is_slot)

        return shell


class Capturer:
    """Turns live functions into ``CapturedFunction`` records."""

    def __init__(self, config: Optional[ConfigModel] = None):
        self.config = active_config(config)

    def capture(self, value: Any) -> CapturedFunction:
        with capture_scope() as scope:
            existing = scope.get(value)
            if isinstance(existing, CapturedFunction):
                return existing

            return self._capture(value, scope)

    def _capture(self, value: Any, scope: CaptureScope) -> CapturedFunction:
        receiver = None
        bind_method = False
        decorated = False

        function = value
        if isinstance(value, types.MethodType):
            function, receiver, bind_method = value.__func__, value.__self__, True
        elif decorated_function(value) is not None:
            function, decorated = value.__wrapped__, True

        if not isinstance(function, types.FunctionType):
            raise AnalysisError(f"Cannot capture {value!r}: not a Python function.")

        analysis = analyze(function, decorated=decorated)

        record = CapturedFunction(
            function=analysis.code,
            name=function.__name__,
            identity=id(value),
            is_static=analysis.is_static,
            is_short_form=analysis.is_short_form,
            requires_receiver_binding=analysis.requires_receiver_binding,
            requires_scope_binding=analysis.requires_scope_binding,
            receiver_name=analysis.receiver_name,
            bind_method=bind_method,
            decorated=analysis.decorated,
            qualname=function.__qualname__,
            module=function.__module__,
            doc=function.__doc__,
        )

        scope.register(value, record)
        scope.begin(record)

        try:
            walker = GraphWalker(self, scope, record, value)

            # The transform sees the live values; whatever it returns is walked.
            variables = analysis.use_variables
            transform = self.config.CAPTURE.TRANSFORM
            if transform is not None:
                variables = transform(dict(variables))

            use = {name: walker.wrap(item) for name, item in variables.items()}

            if bind_method:
                record.receiver = walker.wrap(receiver)
                record.requires_receiver_binding = True
                if isinstance(receiver, type):
                    record.requires_scope_binding = True
            elif analysis.receiver_name is not None:
                record.receiver = walker.wrap(analysis.receiver)

            if analysis.scope_class is not None:
                record.scope = scope_name(analysis.scope_class)
                if record.scope is None:
                    use["__class__"] = walker.wrap(analysis.scope_class)

            record.globals = {
                name: walker.wrap(item) for name, item in analysis.global_variables.items()
            }
            record.defaults = walker.wrap(function.__defaults__)
            record.kwdefaults = walker.wrap(function.__kwdefaults__)
            record.annotations = walker.wrap(dict(function.__annotations__))
            record.attributes = walker.wrap(dict(function.__dict__))

            record.use = use
        finally:
            scope.finish(record)

        logger.debug("Captured %r", record)

        return record


def capture_function(value: Any, config: Optional[ConfigModel] = None) -> CapturedFunction:
    """Capture ``value`` into a record, joining the current capture scope if any."""
    return Capturer(config).capture(value)
