"""Rebuilding live functions from ``CapturedFunction`` records.

The rewritten unit is compiled inside a generated factory whose parameters
are the captured names, so each captured value lands in a real closure cell:

    def __closure_factory__(n, helper):
        import json
        def fn(x):
            return json.dumps(x + n)
        return fn

References that cannot exist yet (the function itself, or a function whose
reconstruction is still in progress further up the stack) are compiled as
``None`` and patched in once their target exists: closure cells, list and
dict items, instance fields and globals are all written after the fact.
"""

import __future__
import ast
import builtins
import functools
import hashlib
import importlib
import keyword
import linecache
import logging
import types
from collections import OrderedDict
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..config import ConfigModel, active_config
from ..errors import ReconstructionError
from .scope import CaptureScope, CapturedFunction, CapturedWrapper, SelfReference, reconstruct_scope
from .walker import instance_fields, is_plain_instance, set_field

logger = logging.getLogger(__name__)

FACTORY_NAME = "__closure_factory__"

_IN_PROGRESS = object()


class CompileCache:
    """LRU cache of compiled factory code keyed by the hash of the unit."""

    def __init__(self, size: int = 256):
        self.size = size
        self.code_cache: "OrderedDict[str, Tuple[types.CodeType, str]]" = OrderedDict()

    def get_code(self, cache_key: str) -> Optional[Tuple[types.CodeType, str]]:
        """
        Get a cached compiled code object.
        """
        entry = self.code_cache.get(cache_key, None)
        if entry is not None:
            self.code_cache.move_to_end(cache_key)
        return entry

    def add_code(self, cache_key: str, entry: Tuple[types.CodeType, str]) -> None:
        """
        Cache a compiled code object, evicting the least recently used one.
        """
        self.code_cache[cache_key] = entry
        self.code_cache.move_to_end(cache_key)
        while len(self.code_cache) > self.size:
            self.code_cache.popitem(last=False)

    def clear(self) -> None:
        self.code_cache.clear()


CODE_CACHE = CompileCache()


def _register_source(filename: str, source: str) -> None:
    # Lets tracebacks show the unit and lets a rebuilt function be captured again.
    linecache.cache[filename] = (len(source), None, source.splitlines(True), filename)


def compile_unit(
    source: str, params: List[str], config: Optional[ConfigModel] = None
) -> Tuple[types.CodeType, str]:
    """Compile ``source`` into a module defining the closure factory.

    Raises:
        ReconstructionError: If the unit is over the size budget, is not a run
            of imports followed by one function literal, or fails to compile.
    """
    config = active_config(config)

    if len(source) > config.RECONSTRUCT.MAX_SOURCE_LENGTH:
        raise ReconstructionError(
            f"Captured source is {len(source)} characters long, over the limit of "
            f"{config.RECONSTRUCT.MAX_SOURCE_LENGTH}."
        )

    for name in params:
        if not name.isidentifier() or keyword.iskeyword(name):
            raise ReconstructionError(f"Invalid captured variable name {name!r}.")

    digest = hashlib.sha256((",".join(params) + "\n" + source).encode("utf-8")).hexdigest()
    filename = f"<closurekit-{digest[:16]}>"

    CODE_CACHE.size = config.RECONSTRUCT.CODE_CACHE_SIZE
    entry = CODE_CACHE.get_code(digest)
    if entry is not None:
        logger.debug("Compile cache hit for %s", filename)
        _register_source(filename, source)
        return entry

    logger.debug("Compiling %s", filename)

    try:
        tree = ast.parse(source, filename=filename)
    except (SyntaxError, ValueError) as e:
        raise ReconstructionError(f"Captured source failed to parse: {e}") from e

    if not tree.body:
        raise ReconstructionError("Captured source is empty.")

    *header, literal = tree.body

    if not all(isinstance(statement, (ast.Import, ast.ImportFrom)) for statement in header):
        raise ReconstructionError("Captured source may only import modules before the function.")

    if isinstance(literal, (ast.FunctionDef, ast.AsyncFunctionDef)):
        body = header + [literal, ast.Return(value=ast.Name(id=literal.name, ctx=ast.Load()))]
    elif isinstance(literal, ast.Expr) and isinstance(literal.value, ast.Lambda):
        body = header + [ast.Return(value=literal.value)]
    else:
        raise ReconstructionError("Captured source does not end in a function literal.")

    factory = ast.parse(f"def {FACTORY_NAME}({', '.join(params)}):\n    pass\n").body[0]
    factory.body = body

    module = ast.Module(body=[factory], type_ignores=[])
    ast.fix_missing_locations(module)

    try:
        code = compile(
            module,
            filename,
            "exec",
            flags=__future__.annotations.compiler_flag,
            dont_inherit=True,
        )
    except (SyntaxError, ValueError, TypeError) as e:
        raise ReconstructionError(f"Captured source failed to compile: {e}") from e

    entry = (code, filename)
    CODE_CACHE.add_code(digest, entry)
    _register_source(filename, source)

    return entry


def resolve_scope(scope: str) -> type:
    """Import the class named by a ``module:Qualname`` string."""
    module_name, _, qualname = scope.partition(":")
    try:
        obj = importlib.import_module(module_name)
        for part in qualname.split("."):
            obj = getattr(obj, part)
    except (ImportError, AttributeError) as e:
        raise ReconstructionError(f"Cannot resolve scope '{scope}': {e}") from e
    if not isinstance(obj, type):
        raise ReconstructionError(f"Scope '{scope}' does not name a class.")
    return obj


class _Deferred:
    """A reference to a function that does not exist yet."""

    __slots__ = ("record",)

    def __init__(self, record: CapturedFunction):
        self.record = record


def _set_cell(function: types.FunctionType, name: str, value: Any) -> None:
    freevars = function.__code__.co_freevars
    if name in freevars and function.__closure__ is not None:
        function.__closure__[freevars.index(name)].cell_contents = value


class Reconstructor:
    """Rebuilds records into live functions within one reconstruction scope."""

    def __init__(self, scope: CaptureScope, config: Optional[ConfigModel] = None):
        self.scope = scope
        self.config = active_config(config)

    def _wait(self, record: CapturedFunction, setter: Callable[[Any], None]) -> None:
        self.scope.waiting.setdefault(id(record), []).append(setter)

    def _resolve_waiting(self, record: CapturedFunction, live: Any) -> None:
        for setter in self.scope.waiting.pop(id(record), []):
            setter(live)

    def reconstruct(self, record: CapturedFunction) -> Any:
        scope = self.scope

        if record in scope:
            return scope.get(record)

        scope.begin(record)

        try:
            live, target = self._build(record)
            scope.register(record, live)
        finally:
            scope.finish(record)

        self._resolve_waiting(record, live)

        for instance, name in record.fixups:
            if hasattr(instance, "__dict__") and name in vars(instance):
                instance.__dict__[name] = live
            else:
                object.__setattr__(instance, name, live)

        logger.debug("Reconstructed %r", record)

        return live

    def _build(self, record: CapturedFunction) -> Tuple[Any, types.FunctionType]:
        use = dict(record.use)

        resolver = self.config.RECONSTRUCT.RESOLVER
        if resolver is not None:
            use = resolver(use)

        values: Dict[str, Any] = {}
        cells: Dict[str, CapturedFunction] = {}
        for name, value in use.items():
            mapped = self.map(value)
            if isinstance(mapped, _Deferred):
                values[name] = None
                cells[name] = mapped.record
            else:
                values[name] = mapped

        receiver = self.map(record.receiver)
        if isinstance(receiver, _Deferred):
            raise ReconstructionError("A receiver cannot be a function still being rebuilt.")

        if record.receiver_name is not None:
            values[record.receiver_name] = receiver

        if record.scope is not None:
            values["__class__"] = resolve_scope(record.scope)

        func_globals = {"__builtins__": builtins, "__name__": record.module or "__main__"}
        for name, value in record.globals.items():
            mapped = self.map(value)
            if isinstance(mapped, _Deferred):
                func_globals[name] = None
                self._wait(mapped.record, functools.partial(func_globals.__setitem__, name))
            else:
                func_globals[name] = mapped

        defaults = self._map_strict(record.defaults)
        kwdefaults = self._map_strict(record.kwdefaults)
        annotations = self._map_strict(record.annotations)
        attributes = self._map_strict(record.attributes)

        code, filename = compile_unit(record.function, list(values), self.config)

        exec(code, func_globals)
        factory = func_globals.pop(FACTORY_NAME)

        try:
            live = factory(*values.values())
        except Exception as e:
            raise ReconstructionError(
                f"Rebuilding '{record.qualname or record.name}' failed: {e}"
            ) from e

        target = live.__wrapped__ if record.decorated else live
        if not isinstance(target, types.FunctionType):
            raise ReconstructionError(
                f"Rebuilding '{record.qualname or record.name}' did not produce a function."
            )

        # The factory path doesn't preserve defaults, so restore them
        target.__defaults__ = defaults
        target.__kwdefaults__ = kwdefaults
        if annotations:
            target.__annotations__ = annotations
        if attributes:
            target.__dict__.update(attributes)

        target.__name__ = record.name
        target.__module__ = record.module
        target.__doc__ = record.doc
        if record.qualname is not None:
            target.__qualname__ = record.qualname

        if record.decorated:
            functools.update_wrapper(live, target)

        for name, awaited in cells.items():
            self._wait(awaited, functools.partial(_set_cell, target, name))

        if record.bind_method:
            live = types.MethodType(live, receiver)

        return live, target

    def _rebuild_wrapper(self, marker: CapturedWrapper) -> Any:
        # Registered before its function is mapped so cycles back to it close here.
        wrapper = marker.cls.__new__(marker.cls)
        wrapper.func = None
        wrapper.config = None
        wrapper.signed = marker.signed
        self.scope.register(marker, wrapper)

        function = self.map(marker.function)
        if isinstance(function, _Deferred):
            self._wait(function.record, functools.partial(setattr, wrapper, "func"))
        else:
            wrapper.func = function

        return wrapper

    def _map_strict(self, value: Any) -> Any:
        mapped = self.map(value)
        if isinstance(mapped, _Deferred):
            raise ReconstructionError("Function metadata cannot refer to a function still being rebuilt.")
        return mapped

    def map(self, value: Any) -> Any:
        """Replace records in ``value`` with live functions, in place where possible."""
        scope = self.scope

        if isinstance(value, SelfReference):
            record = next(
                (
                    pending
                    for pending in scope.pending.values()
                    if pending.identity == value.identity
                ),
                None,
            )
            if record is None:
                raise ReconstructionError("Self reference does not match any function being rebuilt.")
            return _Deferred(record)

        if isinstance(value, CapturedFunction):
            if scope.in_progress(value):
                return _Deferred(value)
            return self.reconstruct(value)

        if value in scope:
            found = scope.get(value)
            if found is _IN_PROGRESS:
                raise ReconstructionError(
                    f"Cannot rebuild a cycle through immutable {type(value).__name__} values."
                )
            return found

        if isinstance(value, CapturedWrapper):
            return self._rebuild_wrapper(value)

        cls = type(value)

        if cls is list:
            scope.register(value, value)
            for index, item in enumerate(value):
                mapped = self.map(item)
                if isinstance(mapped, _Deferred):
                    value[index] = None
                    self._wait(mapped.record, functools.partial(value.__setitem__, index))
                elif mapped is not item:
                    value[index] = mapped
            return value

        if cls is dict:
            scope.register(value, value)
            for key, item in list(value.items()):
                mapped = self.map(item)
                if isinstance(mapped, _Deferred):
                    value[key] = None
                    self._wait(mapped.record, functools.partial(value.__setitem__, key))
                elif mapped is not item:
                    value[key] = mapped
            return value

        if cls in (set, frozenset) or (isinstance(value, tuple) and (cls is tuple or hasattr(cls, "_make"))):
            scope.register(value, _IN_PROGRESS)
            items = [self.map(item) for item in value]
            if any(isinstance(item, _Deferred) for item in items):
                raise ReconstructionError(
                    f"A {cls.__name__} cannot hold a function that is still being rebuilt."
                )
            if all(new is old for new, old in zip(items, value)):
                result = value
            elif cls in (tuple, set, frozenset):
                result = cls(items)
            else:
                result = cls._make(items)
            return scope.register(value, result)

        if isinstance(value, types.MethodType):
            owner = self.map(value.__self__)
            if owner is value.__self__:
                return scope.register(value, value)
            return scope.register(value, types.MethodType(value.__func__, owner))

        if is_plain_instance(value):
            scope.register(value, value)
            for name, field_value, is_slot in instance_fields(value):
                mapped = self.map(field_value)
                if isinstance(mapped, _Deferred):
                    set_field(value, name, None, is_slot)
                    self._wait(
                        mapped.record,
                        functools.partial(set_field, value, name, is_slot=is_slot),
                    )
                elif mapped is not field_value:
                    set_field(value, name, mapped, is_slot)
            return value

        return value


def reconstruct(record: CapturedFunction, config: Optional[ConfigModel] = None) -> Any:
    """Rebuild ``record`` into a live function, joining the current scope if any."""
    with reconstruct_scope() as scope:
        return Reconstructor(scope, config).reconstruct(record)
