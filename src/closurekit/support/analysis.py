"""Lexical analysis of captured functions.

``analyze`` turns a live function into a self-contained source unit: the
function literal with every module-relative name rewritten into an absolute
reference, preceded by the ``import`` lines those references need. Alongside
the text it reports what the function captures and how it must be bound
when rebuilt.

The rewriting works on the tokens of the defining file (see
:mod:`closurekit.support.source`) and on the compiled code objects of the
function: the compiler already knows which names are globals in which scope,
so the token pass only has to decide how each of those names is resolved.
"""

import dis
import inspect
import logging
import sys
import time
import tokenize
import types
import warnings
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Set, Tuple

from cloudpickle.cloudpickle import (
    _empty_cell_value,
    _get_cell_contents,
    _lookup_module_and_qualname,
    _should_pickle_by_reference,
)

from ..errors import AnalysisError
from .source import (
    Position,
    SourceUnit,
    Structure,
    def_default_spans,
    lambda_colon,
    lambda_default_spans,
    lambda_end,
    lambda_params,
)

logger = logging.getLogger(__name__)

# Attribute set by ``closurekit.uses`` listing the names a function captures.
USES_ATTRIBUTE = "__capture_uses__"

# Module-level names whose meaning depends on where the code runs.
MAGIC_NAMES = frozenset({"__file__", "__name__", "__package__"})

# Decorators that describe how a function sits in a class, not what it does.
DESCRIPTOR_DECORATORS = frozenset({"staticmethod", "classmethod", "property"})

_GLOBAL_OPS = frozenset(
    {"LOAD_GLOBAL", "STORE_GLOBAL", "DELETE_GLOBAL", "LOAD_NAME", "LOAD_FROM_DICT_OR_GLOBALS"}
)
_DECLARED_OPS = frozenset({"STORE_GLOBAL", "DELETE_GLOBAL"})
_CLASS_STORE_OPS = frozenset({"STORE_NAME", "DELETE_NAME"})

Edit = Tuple[Position, Position, str]


@dataclass
class Analysis:
    """What ``analyze`` learned about a function."""

    code: str
    name: str
    captured_names: List[str] = field(default_factory=list)
    use_variables: Dict[str, Any] = field(default_factory=dict)
    global_variables: Dict[str, Any] = field(default_factory=dict)
    is_static: bool = False
    is_short_form: bool = False
    is_explicit: bool = False
    requires_receiver_binding: bool = False
    requires_scope_binding: bool = False
    receiver_name: Optional[str] = None
    receiver: Any = None
    scope_class: Optional[type] = None
    decorated: bool = False


@dataclass
class _Resolution:
    kind: str
    text: Optional[str] = None
    headers: Tuple[str, ...] = ()
    value: Any = None
    module: Optional[str] = None
    attr: Optional[str] = None


@dataclass
class _Scope:
    first: int
    last: int
    kind: str
    bound: Set[str]


def code_tree(code: types.CodeType) -> Iterator[types.CodeType]:
    yield code
    for const in code.co_consts:
        if isinstance(const, types.CodeType):
            yield from code_tree(const)


def global_names(code: types.CodeType) -> Set[str]:
    """Names the code object looks up in its globals."""
    loads = set()
    stores = set()
    for instruction in dis.get_instructions(code):
        if instruction.opname in _GLOBAL_OPS:
            loads.add(instruction.argval)
        elif instruction.opname in _CLASS_STORE_OPS:
            stores.add(instruction.argval)
    return loads - stores


def declared_globals(code: types.CodeType) -> Set[str]:
    return {
        instruction.argval
        for instruction in dis.get_instructions(code)
        if instruction.opname in _DECLARED_OPS
    }


def class_bindings(code: types.CodeType) -> Set[str]:
    return {
        instruction.argval
        for instruction in dis.get_instructions(code)
        if instruction.opname in _CLASS_STORE_OPS
    }


def mangle(name: str, class_name: Optional[str]) -> str:
    """Apply private name mangling the way the compiler does inside ``class_name``."""
    if not class_name or not name.startswith("__") or name.endswith("__") or "." in name:
        return name
    stripped = class_name.lstrip("_")
    if not stripped:
        return name
    return f"_{stripped}{name}"


def resolve_dotted(path: str) -> Any:
    """Import the longest module prefix of ``path`` and walk the remaining attributes."""
    import importlib

    parts = path.split(".")
    for cut in range(len(parts), 0, -1):
        module_name = ".".join(parts[:cut])
        try:
            obj = importlib.import_module(module_name)
        except ImportError:
            continue
        for attr in parts[cut:]:
            obj = getattr(obj, attr)
        return obj
    raise ImportError(f"No module found for '{path}'")


class _Analyzer:

    def __init__(self, function: types.FunctionType, decorated: bool = False):
        self.function = function
        self.code = function.__code__
        self.globals = function.__globals__
        self.package = self.globals.get("__package__") or None
        if self.package is None and self.globals.get("__spec__") is not None:
            self.package = self.globals["__spec__"].parent
        self.decorated = decorated

        self.unit = SourceUnit.for_code(self.code, self.globals)
        self.tokens = self.unit.tokens

        self.codes = list(code_tree(self.code))
        self.globals_used: Set[str] = set()
        self.declared: Set[str] = set()
        for code in self.codes:
            self.globals_used |= global_names(code)
            self.declared |= declared_globals(code)

        self.local_names: Set[str] = set()
        for code in self.codes:
            self.local_names.update(code.co_varnames, code.co_cellvars, code.co_freevars)

        self.explicit = getattr(function, USES_ATTRIBUTE, None)

        self.headers: Set[str] = set()
        self.candidates: Dict[str, Any] = {}
        self.global_variables: Dict[str, Any] = {}
        self.resolved: Dict[str, _Resolution] = {}
        self.seen: Set[str] = set()

    # ------------------------------------------------------------------
    # Locating the literal
    # ------------------------------------------------------------------

    def locate(self) -> None:
        tokens = self.tokens

        if self.code.co_name == "<lambda>":
            self.structure = None
            self.start = self._locate_lambda()
            self.colon = lambda_colon(tokens, self.start)
            if self.colon is None:
                raise AnalysisError("Could not find the body of the captured lambda.")
            self.end = lambda_end(tokens, self.start)
            self.params = lambda_params(tokens, self.start, self.colon)
            self.literal_start = self.start
            return

        structure = self.unit.structure_at(self.code.co_firstlineno, self.code.co_name)

        if structure is None:
            raise AnalysisError(
                f"Could not locate the definition of '{self.code.co_name}' "
                f"at line {self.code.co_firstlineno} of '{self.code.co_filename}'."
            )

        self.structure = structure
        self.start = structure.start
        self.colon = structure.colon
        self.end = structure.end
        self.params = structure.params

        keyword = structure.keyword
        if keyword > 0 and tokens[keyword - 1].string == "async":
            keyword -= 1
        self.literal_start = keyword

    def _locate_lambda(self) -> int:
        code = self.code
        tokens = self.tokens
        candidates = list(self.unit.lambdas.get(code.co_firstlineno, []))

        if not candidates:
            raise AnalysisError(
                f"Could not locate the lambda at line {code.co_firstlineno} of '{code.co_filename}'."
            )

        if len(candidates) > 1:
            count = code.co_argcount + code.co_kwonlyargcount
            count += bool(code.co_flags & inspect.CO_VARARGS) + bool(code.co_flags & inspect.CO_VARKEYWORDS)
            expected = list(code.co_varnames[:count])
            matching = []
            for index in candidates:
                colon = lambda_colon(tokens, index)
                if colon is not None and lambda_params(tokens, index, colon) == expected:
                    matching.append(index)
            candidates = matching or candidates

        if len(candidates) > 1 and hasattr(code, "co_positions"):
            # co_positions points into the body, so the lambda whose colon is
            # closest to but before that position is the one we want.
            target = None
            for line, _, col, end_col in code.co_positions():
                if line is not None and (col or end_col):
                    target = (line, col)
                    break

            if target is not None:
                best = None
                best_colon = None
                for index in candidates:
                    colon = lambda_colon(tokens, index)
                    if colon is None:
                        continue
                    position = tokens[colon].start
                    if position < target and (best_colon is None or position > best_colon):
                        best = index
                        best_colon = position
                if best is not None:
                    return best

        return candidates[0]

    # ------------------------------------------------------------------
    # Lexical scopes inside the literal
    # ------------------------------------------------------------------

    def nested_scopes(self) -> List[_Scope]:
        tokens = self.tokens
        scopes = []

        for structure in self.unit.structures:
            if structure is self.structure or not (self.start < structure.keyword <= self.end):
                continue
            lines = {tokens[structure.start].start[0], tokens[structure.keyword].start[0]}
            bound = set(structure.params)
            for code in self.codes:
                if code.co_name == structure.name and code.co_firstlineno in lines:
                    if structure.kind == "class":
                        bound |= class_bindings(code)
                    else:
                        bound.update(code.co_varnames, code.co_cellvars)
            scopes.append(_Scope(structure.colon + 1, structure.end, structure.kind, bound))
            # Parameter names in the header belong to the nested function.
            if structure.kind == "def":
                scopes.append(_Scope(structure.keyword, structure.colon, "def", set(structure.params)))

        for row, indexes in self.unit.lambdas.items():
            for index in indexes:
                if index == self.start or not (self.start < index <= self.end):
                    continue
                colon = lambda_colon(tokens, index)
                if colon is None:
                    continue
                bound = set(lambda_params(tokens, index, colon))
                for code in self.codes:
                    if code.co_name == "<lambda>" and code.co_firstlineno == row:
                        bound.update(code.co_varnames, code.co_cellvars)
                scopes.append(_Scope(index, lambda_end(tokens, index), "lambda", bound))

        scopes.extend(self._comprehension_scopes())

        return scopes

    def _comprehension_scopes(self) -> List[_Scope]:
        tokens = self.tokens
        scopes = []
        brackets: List[int] = []
        pending: List[Tuple[int, Set[str]]] = []

        j = self.start
        while j <= self.end:
            t = tokens[j]
            if t.type == tokenize.OP and t.string in "([{":
                brackets.append(j)
            elif t.type == tokenize.OP and t.string in ")]}":
                if brackets:
                    opened = brackets.pop()
                    scopes.extend(
                        _Scope(opened, j, "comprehension", targets)
                        for owner, targets in pending
                        if owner == opened
                    )
                    pending = [p for p in pending if p[0] != opened]
            elif t.type == tokenize.NAME and t.string == "for" and brackets:
                targets = set()
                depth = 0
                k = j + 1
                while k <= self.end:
                    u = tokens[k]
                    if u.type == tokenize.OP and u.string in "([{":
                        depth += 1
                    elif u.type == tokenize.OP and u.string in ")]}":
                        depth -= 1
                    elif u.type == tokenize.NAME and u.string == "in" and depth == 0:
                        break
                    elif u.type == tokenize.NAME:
                        targets.add(u.string)
                    k += 1
                pending.append((brackets[-1], targets))
            j += 1

        return scopes

    def shadowed(self, index: int, ident: str, scopes: List[_Scope]) -> bool:
        containing = sorted(
            (scope for scope in scopes if scope.first <= index <= scope.last),
            key=lambda scope: scope.first,
            reverse=True,
        )
        for depth, scope in enumerate(containing):
            # Class bodies do not enclose the functions defined in them.
            if scope.kind == "class" and depth > 0:
                continue
            if ident in scope.bound:
                return True
        return False

    def in_nested(self, index: int, scopes: List[_Scope]) -> bool:
        return any(
            scope.first <= index <= scope.last and scope.kind != "comprehension"
            for scope in scopes
        )

    def class_name_at(self, index: int) -> Optional[str]:
        structure = self.unit.innermost(index, kind="class")
        return structure.name if structure is not None else None

    # ------------------------------------------------------------------
    # Symbol resolution
    # ------------------------------------------------------------------

    def resolve(self, name: str) -> _Resolution:
        resolution = self.resolved.get(name)
        if resolution is None:
            resolution = self.resolved[name] = self._resolve(name)
        return resolution

    def _resolve(self, name: str) -> _Resolution:
        if name in self.declared:
            if name in self.globals:
                self.global_variables[name] = self.globals[name]
            return _Resolution("keep")

        if name in MAGIC_NAMES and name in self.globals:
            return _Resolution("rewrite", text=repr(self.globals[name]))

        if name not in self.globals:
            return _Resolution("keep")

        value = self.globals[name]

        for binding in reversed(self.unit.imports.get(name, [])):
            try:
                target = binding.target(self.package)
                if resolve_dotted(target) is not value:
                    continue
            except (ImportError, AttributeError, ValueError):
                continue

            if binding.bound_to_root:
                return self._module_reference(target, value, submodule=binding.module)

            if isinstance(value, types.ModuleType):
                return self._module_reference(target, value)

            base = binding.base_module(self.package)
            return self._attribute_reference(base, binding.attr)

        if isinstance(value, types.ModuleType) and value.__name__ in sys.modules:
            if _should_pickle_by_reference(value):
                return self._module_reference(value.__name__, value)

        if isinstance(value, types.BuiltinFunctionType):
            module_name = getattr(value, "__module__", None)
            if module_name:
                try:
                    if resolve_dotted(f"{module_name}.{value.__qualname__}") is value:
                        return self._attribute_reference(module_name, value.__qualname__)
                except (ImportError, AttributeError):
                    pass
            return _Resolution("capture", value=value)

        if isinstance(value, (type, types.FunctionType)):
            if value is not self.function and _should_pickle_by_reference(value, name=name):
                found = _lookup_module_and_qualname(value, name=name)
                if found is not None and "<locals>" not in found[1]:
                    module, qualname = found
                    return self._attribute_reference(module.__name__, qualname)

        return _Resolution("capture", value=value)

    def _collides(self, root: str, value: Any) -> bool:
        if root in self.local_names:
            return True
        if root in self.globals_used and self.globals.get(root, value) is not value:
            return True
        return False

    def _module_reference(
        self, target: str, value: Any, submodule: Optional[str] = None
    ) -> _Resolution:
        root = target.split(".", 1)[0]
        module = submodule or target

        if not self._collides(root, sys.modules.get(root)):
            return _Resolution(
                "rewrite", text=target, headers=(f"import {module}",), module=target
            )

        alias = "_" + target.replace(".", "_")
        return _Resolution(
            "rewrite", text=alias, headers=(f"import {target} as {alias}",), module=target
        )

    def _attribute_reference(self, base: str, attr: str) -> _Resolution:
        resolution = self._module_reference(base, sys.modules.get(base))
        return _Resolution(
            "rewrite",
            text=f"{resolution.text}.{attr}",
            headers=resolution.headers,
            module=base,
            attr=attr,
        )

    # ------------------------------------------------------------------
    # Rewriting
    # ------------------------------------------------------------------

    def edits(self) -> List[Edit]:
        tokens = self.tokens
        scopes = self.nested_scopes()

        if self.structure is not None:
            default_spans = def_default_spans(tokens, self.structure)
        else:
            default_spans = lambda_default_spans(tokens, self.start, self.colon)

        edits: List[Edit] = []
        skipped: Set[int] = set()
        for first, last in default_spans:
            edits.append((tokens[first].start, tokens[last].end, "None"))
            skipped.update(range(first, last + 1))

        first_param = self.params[0] if self.params else None

        j = self.literal_start
        while j <= self.end:
            if j in skipped:
                j += 1
                continue

            t = tokens[j]

            if t.type == tokenize.COMMENT and t.string.lstrip("#").strip().lower() == "trackme":
                edits.append((t.start, t.end, self._provenance(t.start[0])))
                j += 1
                continue

            if t.type != tokenize.NAME:
                j += 1
                continue

            previous = tokens[j - 1] if j > 0 else None
            following = tokens[j + 1] if j + 1 < len(tokens) else None
            ident = mangle(t.string, self.class_name_at(j))

            if (
                t.string == "super"
                and self.structure is not None
                and first_param is not None
                and not self.in_nested(j, scopes)
                and following is not None
                and following.string == "("
                and tokens[j + 2].string == ")"
                and (previous is None or previous.string != ".")
            ):
                edits.append((t.start, tokens[j + 2].end, f"super(__class__, {first_param})"))
                j += 3
                continue

            is_attribute = previous is not None and previous.type == tokenize.OP and previous.string == "."
            is_keyword = following is not None and following.type == tokenize.OP and following.string == "="

            replacement = None
            if (
                not is_attribute
                and not is_keyword
                and ident in self.globals_used
                and not self.shadowed(j, ident, scopes)
            ):
                self.seen.add(ident)
                resolution = self.resolve(ident)
                if resolution.kind == "rewrite":
                    replacement = resolution.text
                    self.headers.update(resolution.headers)
                elif resolution.kind == "capture":
                    self.candidates[ident] = resolution.value

            if replacement is None and ident != t.string:
                replacement = ident

            if replacement is not None:
                edits.append((t.start, t.end, replacement))

            j += 1

        return edits

    def bind_unseen(self) -> None:
        """Bind globals the code uses but the token pass never saw.

        Names inside f-string replacement fields are not separate tokens before
        Python 3.12, so they are bound under their original name in the header
        instead of being rewritten in place.
        """
        for name in sorted(self.globals_used - self.seen):
            if name.startswith("__") or name not in self.globals:
                continue

            resolution = self.resolve(name)
            if resolution.kind == "capture":
                self.candidates[name] = resolution.value
            elif resolution.kind == "rewrite" and resolution.module is not None:
                if resolution.attr is None:
                    self.headers.add(f"import {resolution.module} as {name}")
                elif "." not in resolution.attr:
                    self.headers.add(f"from {resolution.module} import {resolution.attr} as {name}")
                else:
                    self.candidates[name] = self.globals[name]

    def decorator_lines(self) -> List[str]:
        if not self.decorated or self.structure is None:
            return []

        tokens = self.tokens
        lines = []
        for first, last in self.structure.decorators:
            head = "".join(
                t.string for t in tokens[first : last + 1] if t.type in (tokenize.NAME, tokenize.OP)
            ).split("(", 1)[0]
            if head.rsplit(".", 1)[-1] in DESCRIPTOR_DECORATORS:
                continue

            edits = []
            for j in range(first, last + 1):
                t = tokens[j]
                previous = tokens[j - 1]
                following = tokens[j + 1]
                if t.type != tokenize.NAME or previous.string == "." or following.string == "=":
                    continue
                resolution = self.resolve(t.string)
                if resolution.kind == "rewrite":
                    edits.append((t.start, t.end, resolution.text))
                    self.headers.update(resolution.headers)
                elif resolution.kind == "capture":
                    self.candidates[t.string] = resolution.value

            text = self.render(tokens[first].start, tokens[last].end, edits, dedent=False)
            lines.append("@" + text)
        return lines

    def render(self, start: Position, end: Position, edits: List[Edit], dedent: bool) -> str:
        unit = self.unit
        edits = [edit for edit in edits if start <= edit[0] and edit[1] <= end]

        if dedent and end[0] > start[0]:
            indent = start[1]
            covered: Set[int] = set()
            for first, last, _ in edits:
                covered.update(range(first[0] + 1, last[0] + 1))

            for row in range(start[0] + 1, end[0] + 1):
                if row in unit.string_rows or row in covered:
                    continue
                line = unit.lines[row - 1]
                width = len(line) - len(line.lstrip(" \t"))
                if line.strip():
                    width = min(width, indent)
                if width:
                    edits.append(((row, 0), (row, width), ""))

        parts = []
        cursor = start
        for first, last, text in sorted(edits, key=lambda edit: edit[0]):
            parts.append(unit.slice(cursor, first))
            parts.append(text)
            cursor = last
        parts.append(unit.slice(cursor, end))

        return "".join(parts)

    def _provenance(self, row: int) -> str:
        now = time.time()
        stamp = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(now))
        return f"# captured {stamp} ({int(now)}) from line {row} of {self.code.co_filename}"

    # ------------------------------------------------------------------
    # Binding
    # ------------------------------------------------------------------

    def enclosing_method(self) -> Optional[Structure]:
        if self.structure is not None:
            current = self.structure.parent
        else:
            current = self.unit.innermost(self.start, kind="def")

        while current is not None:
            if current.kind == "def" and current.parent is not None and current.parent.kind == "class":
                return current
            current = current.parent
        return None

    def decorator_heads(self, structure: Structure) -> List[str]:
        heads = []
        for first, last in structure.decorators:
            names = []
            for t in self.tokens[first : last + 1]:
                if t.type == tokenize.OP and t.string == "(":
                    break
                if t.type == tokenize.NAME:
                    names.append(t.string)
            if names:
                heads.append(names[-1])
        return heads


def analyze(function: types.FunctionType, decorated: bool = False) -> Analysis:
    """Extract and rewrite the source of ``function`` into a self-contained unit.

    Args:
        function: The live function to analyze.
        decorated: Re-emit the function's decorators ahead of the definition,
            for when the captured object is the decorated result rather than
            the plain function.

    Raises:
        AnalysisError: If the source is unavailable, cannot be tokenized or
            the literal cannot be located in it.
    """
    if not isinstance(function, types.FunctionType):
        raise AnalysisError(f"Cannot analyze {function!r}: not a Python function.")

    analyzer = _Analyzer(function, decorated=decorated)
    analyzer.locate()

    code = function.__code__
    tokens = analyzer.tokens

    edits = analyzer.edits()
    literal = analyzer.render(
        tokens[analyzer.literal_start].start,
        tokens[analyzer.end].end,
        edits,
        dedent=analyzer.structure is not None,
    )
    if analyzer.structure is None and "\n" in literal:
        # Multi-line lambdas need parentheses to be syntactically valid
        literal = "(" + literal + ")"

    analyzer.bind_unseen()
    decorators = analyzer.decorator_lines()

    analysis = Analysis(
        code="",
        name=code.co_name,
        is_short_form=analyzer.structure is None,
        is_explicit=analyzer.explicit is not None,
        decorated=bool(decorators),
    )

    if analyzer.structure is not None:
        analysis.is_static = "staticmethod" in analyzer.decorator_heads(analyzer.structure)

    method = analyzer.enclosing_method()
    if method is not None and method.params and "staticmethod" not in analyzer.decorator_heads(method):
        if method.params[0] in code.co_freevars:
            analysis.receiver_name = method.params[0]

    cell_names = set()
    closure = function.__closure__ or ()
    for name, cell in zip(code.co_freevars, closure):
        value = _get_cell_contents(cell)
        if value is _empty_cell_value:
            continue

        if name == "__class__":
            analysis.scope_class = value
            analysis.requires_scope_binding = True
        elif name == analysis.receiver_name:
            analysis.receiver = value
            analysis.requires_receiver_binding = True
        elif isinstance(value, types.ModuleType) and value.__name__ in sys.modules:
            if name == value.__name__:
                analyzer.headers.add(f"import {name}")
            else:
                analyzer.headers.add(f"import {value.__name__} as {name}")
        else:
            analyzer.candidates[name] = value
            cell_names.add(name)

    if analysis.receiver_name is not None and not analysis.requires_receiver_binding:
        analysis.receiver_name = None

    candidates = analyzer.candidates
    if analyzer.explicit is not None:
        listed = list(analyzer.explicit)
        for name in listed:
            if name not in candidates:
                warnings.warn(
                    f"'{name}' is listed as captured by '{code.co_name}' but is not bound.",
                    stacklevel=2,
                )
        # Only outer variables are subject to the declaration; module data stays captured.
        candidates = {
            name: value
            for name, value in candidates.items()
            if name in listed or name not in cell_names
        }

    analysis.use_variables = candidates
    analysis.captured_names = list(candidates)
    analysis.global_variables = analyzer.global_variables

    analysis.code = "\n".join(sorted(analyzer.headers) + decorators + [literal]) + "\n"

    logger.debug(
        "Analyzed %s: captured=%s receiver=%s scope=%s",
        code.co_qualname if hasattr(code, "co_qualname") else code.co_name,
        analysis.captured_names,
        analysis.receiver_name,
        analysis.requires_scope_binding,
    )

    return analysis
