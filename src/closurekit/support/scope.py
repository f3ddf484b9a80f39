"""Records and traversal state shared by capture and reconstruction."""

from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Tuple


class IdentityMap:
    """Maps original objects, by identity, to their replacements.

    Replacements live in an arena list; the index maps ``id(original)`` to an
    arena slot. Originals are kept alive for the lifetime of the map so their
    ids cannot be reused by other objects mid-traversal.
    """

    def __init__(self):
        self.arena: List[Any] = []
        self.index: Dict[int, int] = {}
        self.originals: List[Any] = []

    def __contains__(self, original: Any) -> bool:
        return id(original) in self.index

    def __len__(self) -> int:
        return len(self.arena)

    def get(self, original: Any, default: Any = None) -> Any:
        slot = self.index.get(id(original))
        if slot is None:
            return default
        return self.arena[slot]

    def register(self, original: Any, replacement: Any) -> Any:
        slot = self.index.get(id(original))
        if slot is None:
            self.index[id(original)] = len(self.arena)
            self.arena.append(replacement)
            self.originals.append(original)
        else:
            self.arena[slot] = replacement
        return replacement

    def clear(self) -> None:
        self.arena.clear()
        self.index.clear()
        self.originals.clear()


class CaptureScope(IdentityMap):
    """Identity map shared by every nested call of one top-level operation.

    ``serializations`` counts captures (or reconstructions) in flight and
    ``to_serialize`` counts outer holders, such as a pickler in the middle of
    ``dump``, that will still hand more functions to this scope. The map is
    torn down when both return to zero.
    """

    def __init__(self):
        super().__init__()
        self.serializations = 0
        self.to_serialize = 0
        self.pending: Dict[int, Any] = {}
        self.waiting: Dict[int, List[Any]] = {}

    @property
    def done(self) -> bool:
        return self.serializations == 0 and self.to_serialize == 0

    def begin(self, record: Any) -> None:
        self.pending[id(record)] = record

    def finish(self, record: Any) -> None:
        self.pending.pop(id(record), None)

    def in_progress(self, record: Any) -> bool:
        return id(record) in self.pending

    def clear(self) -> None:
        super().clear()
        self.pending.clear()
        self.waiting.clear()


_capture_scope: ContextVar[Optional[CaptureScope]] = ContextVar(
    "closurekit_capture_scope", default=None
)
_reconstruct_scope: ContextVar[Optional[CaptureScope]] = ContextVar(
    "closurekit_reconstruct_scope", default=None
)


@contextmanager
def _enter(var: ContextVar, hold: bool) -> Iterator[CaptureScope]:
    scope = var.get()
    token = None
    if scope is None:
        scope = CaptureScope()
        token = var.set(scope)

    if hold:
        scope.to_serialize += 1
    else:
        scope.serializations += 1

    try:
        yield scope
    finally:
        if hold:
            scope.to_serialize -= 1
        else:
            scope.serializations -= 1

        if token is not None:
            var.reset(token)
            if scope.done:
                scope.clear()


def capture_scope(hold: bool = False):
    """Join the capture scope of the current call tree, creating it at the root."""
    return _enter(_capture_scope, hold)


def reconstruct_scope(hold: bool = False):
    """Join the reconstruction scope of the current call tree, creating it at the root."""
    return _enter(_reconstruct_scope, hold)


@dataclass(frozen=True)
class SelfReference:
    """Stands for the function being captured inside its own captured state."""

    identity: int


@dataclass(eq=False)
class CapturedWrapper:
    """A ``SerializableClosure`` reached from captured state.

    ``function`` is walked like any other captured value, so a wrapper around
    the function being captured holds a ``SelfReference``.
    """

    cls: type
    function: Any = None
    signed: Optional[bool] = None


@dataclass(eq=False)
class CapturedFunction:
    """Portable record of one captured function.

    ``function`` is the rewritten source unit: header imports followed by a
    single ``lambda`` or ``def``. Compiled with ``use`` bound as the enclosing
    scope it behaves like the original, wherever it is compiled.
    """

    function: str
    name: str
    identity: int
    use: Dict[str, Any] = field(default_factory=dict)
    globals: Dict[str, Any] = field(default_factory=dict)
    receiver: Any = None
    receiver_name: Optional[str] = None
    scope: Optional[str] = None
    is_static: bool = False
    is_short_form: bool = False
    requires_receiver_binding: bool = False
    requires_scope_binding: bool = False
    bind_method: bool = False
    decorated: bool = False

    qualname: Optional[str] = None
    module: Optional[str] = None
    doc: Optional[str] = None
    defaults: Optional[tuple] = None
    kwdefaults: Optional[dict] = None
    annotations: Optional[dict] = None
    attributes: Dict[str, Any] = field(default_factory=dict)

    # (instance, field name) pairs whose field aliased this function.
    fixups: List[Tuple[Any, str]] = field(default_factory=list)

    def __repr__(self) -> str:
        return f"<CapturedFunction {self.qualname or self.name} uses={sorted(self.use)}>"
