"""Tokenized view of the source unit a function was defined in.

A ``SourceUnit`` is built once per distinct source text (cached by SHA-1 of the
content) and holds everything the analyzer needs from a single pass over the
tokens:

    - the import table, mapping each bound name to the import statements that
      could have bound it (plain, aliased, dotted, grouped and relative forms),
    - the structure table, one entry per ``class`` and ``def`` with its span,
      decorators, parameters and qualified name,
    - the positions of every ``lambda`` keyword, grouped by line,
    - the rows that sit inside multi-line string literals.

Source is read through ``linecache`` so files, notebook cells and units
registered by the reconstructor are all handled the same way.
"""

import hashlib
import io
import linecache
import logging
import tokenize
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple

from ..errors import AnalysisError

logger = logging.getLogger(__name__)

Position = Tuple[int, int]

# Token types that carry no code.
_LAYOUT = frozenset(
    {
        tokenize.NL,
        tokenize.NEWLINE,
        tokenize.INDENT,
        tokenize.DEDENT,
        tokenize.ENDMARKER,
        tokenize.COMMENT,
    }
)

_FSTRING_START = getattr(tokenize, "FSTRING_START", None)
_FSTRING_END = getattr(tokenize, "FSTRING_END", None)


@dataclass
class ImportBinding:
    """One way a name may have been bound by an import statement.

    ``import a.b``           -> name "a", module "a.b", bound_to_root True
    ``import a.b as c``      -> name "c", module "a.b"
    ``from a.b import c``    -> name "c", module "a.b", attr "c"
    ``from ..x import y``    -> name "y", module "x", attr "y", level 2
    """

    name: str
    module: str
    attr: Optional[str] = None
    level: int = 0
    bound_to_root: bool = False

    def base_module(self, package: Optional[str]) -> str:
        if not self.level:
            return self.module

        import importlib.util

        relative = "." * self.level + self.module
        return importlib.util.resolve_name(relative, package)

    def target(self, package: Optional[str]) -> str:
        """Absolute dotted path of the object the bound name refers to."""
        base = self.base_module(package)

        if self.attr is not None:
            return f"{base}.{self.attr}" if base else self.attr

        if self.bound_to_root:
            return base.split(".", 1)[0]

        return base


@dataclass
class Structure:
    kind: str
    name: str
    qualname: str
    start: int
    keyword: int
    colon: int
    end: int
    params: List[str] = field(default_factory=list)
    decorators: List[Tuple[int, int]] = field(default_factory=list)
    parent: Optional["Structure"] = None
    body_level: Optional[int] = None

    def contains(self, index: int) -> bool:
        return self.start <= index <= self.end


class SourceUnit:
    """Tokens and lexical tables for one source text."""

    def __init__(self, text: str):
        self.text = text
        self.lines = text.splitlines(keepends=True)
        self.digest = hashlib.sha1(text.encode("utf-8")).hexdigest()

        self.offsets = [0]
        for line in self.lines:
            self.offsets.append(self.offsets[-1] + len(line))

        try:
            self.tokens = list(tokenize.generate_tokens(io.StringIO(text).readline))
        except (tokenize.TokenError, SyntaxError) as e:
            raise AnalysisError(f"Source unit could not be tokenized: {e}") from e

        self.imports: Dict[str, List[ImportBinding]] = {}
        self.structures: List[Structure] = []
        self.lambdas: Dict[int, List[int]] = {}
        self.string_rows: Set[int] = set()

        self._scan()

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    @classmethod
    def for_code(cls, code, module_globals: Optional[dict] = None) -> "SourceUnit":
        filename = code.co_filename
        lines = linecache.getlines(filename, module_globals)

        if not lines:
            raise AnalysisError(
                f"Cannot capture '{code.co_name}': source code of '{filename}' is unavailable."
            )

        return cls.from_text("".join(lines))

    @classmethod
    def from_text(cls, text: str) -> "SourceUnit":
        key = hashlib.sha1(text.encode("utf-8")).hexdigest()

        unit = _UNITS.get(key)

        if unit is None:
            logger.debug("Tokenizing source unit %s", key)
            unit = cls(text)
            _UNITS.add(key, unit)

        return unit

    def offset(self, position: Position) -> int:
        row, col = position
        return self.offsets[row - 1] + col

    def slice(self, start: Position, end: Position) -> str:
        return self.text[self.offset(start) : self.offset(end)]

    def structure_at(self, line: int, name: str) -> Optional[Structure]:
        """Find the ``def`` called ``name`` whose first line (decorators included) is ``line``."""
        for structure in self.structures:
            if (
                structure.kind == "def"
                and structure.name == name
                and self.tokens[structure.start].start[0] == line
            ):
                return structure
        return None

    def innermost(self, index: int, kind: Optional[str] = None) -> Optional[Structure]:
        """The innermost structure containing token ``index`` (optionally of one kind)."""
        found = None
        for structure in self.structures:
            if structure.contains(index) and (kind is None or structure.kind == kind):
                if found is None or structure.start >= found.start:
                    found = structure
        return found

    # ------------------------------------------------------------------
    # Scanning
    # ------------------------------------------------------------------

    def _scan(self) -> None:
        tokens = self.tokens

        stack: List[Structure] = []
        one_liners: List[Structure] = []
        decorators: List[Tuple[int, int]] = []
        decorator_start: Optional[int] = None
        fstrings: List[int] = []

        level = 0
        last_code = -1
        last_sig = -1
        line_start = True

        def close(structure: Structure) -> None:
            structure.end = max(last_sig, structure.colon)

        i = 0
        n = len(tokens)
        while i < n:
            tok = tokens[i]

            if tok.type == tokenize.STRING and tok.end[0] > tok.start[0]:
                self.string_rows.update(range(tok.start[0] + 1, tok.end[0] + 1))
            elif _FSTRING_START is not None and tok.type == _FSTRING_START:
                fstrings.append(i)
            elif _FSTRING_END is not None and tok.type == _FSTRING_END and fstrings:
                begin = tokens[fstrings.pop()]
                self.string_rows.update(range(begin.start[0] + 1, tok.end[0] + 1))

            if tok.type == tokenize.INDENT:
                level += 1
            elif tok.type == tokenize.DEDENT:
                level -= 1
                while stack and stack[-1].body_level is not None and level < stack[-1].body_level:
                    close(stack.pop())
            elif tok.type == tokenize.NEWLINE:
                while one_liners:
                    structure = one_liners.pop()
                    close(structure)
                    if stack and stack[-1] is structure:
                        stack.pop()
                line_start = True
                i += 1
                continue
            elif tok.type == tokenize.COMMENT:
                if last_code >= 0 and tok.start[0] == tokens[last_code].end[0]:
                    last_sig = i
            elif tok.type not in _LAYOUT:
                last_code = last_sig = i

            if tok.type in _LAYOUT:
                i += 1
                continue

            if line_start and tok.type == tokenize.OP and tok.string == "@":
                end = self._statement_end(i)
                if decorator_start is None:
                    decorator_start = i
                decorators.append((i + 1, end))
                last_code = last_sig = end
                i = end + 1
                continue

            if line_start and tok.type == tokenize.NAME and tok.string in ("import", "from"):
                end = self._parse_import(i)
                last_code = last_sig = end
                i = end + 1
                line_start = i < n and tokens[i].type == tokenize.OP and tokens[i].string == ";"
                if line_start:
                    i += 1
                continue

            keyword = i
            if tok.type == tokenize.NAME and tok.string == "async" and i + 1 < n:
                if tokens[i + 1].type == tokenize.NAME and tokens[i + 1].string == "def":
                    keyword = i + 1

            if line_start and tokens[keyword].type == tokenize.NAME and tokens[keyword].string in ("def", "class"):
                structure = self._parse_header(
                    start=decorator_start if decorator_start is not None else i,
                    keyword=keyword,
                    parent=stack[-1] if stack else None,
                    decorators=decorators,
                )
                decorators = []
                decorator_start = None

                self.structures.append(structure)
                stack.append(structure)

                after = structure.colon + 1
                while after < n and tokens[after].type == tokenize.COMMENT:
                    after += 1

                if after < n and tokens[after].type == tokenize.NEWLINE:
                    structure.body_level = level + 1
                else:
                    one_liners.append(structure)

                last_code = last_sig = structure.colon
                i = structure.colon + 1
                line_start = False
                continue

            if line_start:
                decorators = []
                decorator_start = None

            if tok.type == tokenize.NAME and tok.string == "lambda":
                self.lambdas.setdefault(tok.start[0], []).append(i)

            line_start = tok.type == tokenize.OP and tok.string == ";"
            i += 1

        while stack:
            close(stack.pop())

    def _statement_end(self, index: int) -> int:
        """Index of the last code token of the logical line starting at ``index``."""
        tokens = self.tokens
        end = index
        for j in range(index, len(tokens)):
            if tokens[j].type in (tokenize.NEWLINE, tokenize.ENDMARKER):
                break
            if tokens[j].type not in _LAYOUT:
                end = j
        return end

    def _parse_header(
        self,
        start: int,
        keyword: int,
        parent: Optional[Structure],
        decorators: List[Tuple[int, int]],
    ) -> Structure:
        tokens = self.tokens
        kind = tokens[keyword].string
        name = tokens[keyword + 1].string

        params: List[str] = []
        depth = 0
        colon = keyword + 1
        previous = None
        for j in range(keyword + 2, len(tokens)):
            t = tokens[j]
            if t.type == tokenize.OP:
                if t.string in "([{":
                    depth += 1
                elif t.string in ")]}":
                    depth -= 1
                elif t.string == ":" and depth == 0:
                    colon = j
                    break
            elif (
                kind == "def"
                and t.type == tokenize.NAME
                and depth == 1
                and previous is not None
                and previous.type == tokenize.OP
                and previous.string in ("(", ",", "*", "**")
            ):
                params.append(t.string)
            if t.type not in _LAYOUT:
                previous = t

        if parent is None:
            qualname = name
        elif parent.kind == "class":
            qualname = f"{parent.qualname}.{name}"
        else:
            qualname = f"{parent.qualname}.<locals>.{name}"

        return Structure(
            kind=kind,
            name=name,
            qualname=qualname,
            start=start,
            keyword=keyword,
            colon=colon,
            end=colon,
            params=params,
            decorators=list(decorators),
            parent=parent,
        )

    def _parse_import(self, index: int) -> int:
        tokens = self.tokens
        end = self._statement_end(index)

        # Stop at ';' so a following statement on the same line is scanned normally.
        for j in range(index, end + 1):
            if tokens[j].type == tokenize.OP and tokens[j].string == ";":
                end = j - 1
                break

        words = [t for t in tokens[index : end + 1] if t.type not in _LAYOUT]

        if words[0].string == "import":
            for clause in _split(words[1:]):
                dotted, alias = _dotted_with_alias(clause)
                if not dotted:
                    continue
                if alias is None:
                    binding = ImportBinding(
                        name=dotted.split(".", 1)[0], module=dotted, bound_to_root=True
                    )
                else:
                    binding = ImportBinding(name=alias, module=dotted)
                self.imports.setdefault(binding.name, []).append(binding)
            return end

        level = 0
        position = 1
        while position < len(words) and words[position].string in (".", "..."):
            level += len(words[position].string)
            position += 1

        module_tokens = []
        while position < len(words) and words[position].string != "import":
            module_tokens.append(words[position])
            position += 1
        module = "".join(t.string for t in module_tokens)

        names = [t for t in words[position + 1 :] if t.string not in ("(", ")")]
        for clause in _split(names):
            attr, alias = _dotted_with_alias(clause)
            if not attr or attr == "*":
                continue
            binding = ImportBinding(
                name=alias or attr, module=module, attr=attr, level=level
            )
            self.imports.setdefault(binding.name, []).append(binding)

        return end


class UnitCache:

    def __init__(self, size: int = 64):
        self.size = size
        self.cache: Dict[str, SourceUnit] = {}

    def get(self, key: str) -> Optional[SourceUnit]:
        """
        Get the tokenized unit for the given content digest.
        """
        return self.cache.get(key, None)

    def add(self, key: str, unit: SourceUnit) -> None:
        """
        Add a tokenized unit, evicting the oldest entry when full.
        """
        if len(self.cache) >= self.size:
            self.cache.pop(next(iter(self.cache)))
        self.cache[key] = unit

    def clear(self) -> None:
        self.cache.clear()


_UNITS = UnitCache()


def _split(words: list) -> List[list]:
    clauses = [[]]
    for word in words:
        if word.string == ",":
            clauses.append([])
        else:
            clauses[-1].append(word)
    return [clause for clause in clauses if clause]


def _dotted_with_alias(clause: list) -> Tuple[str, Optional[str]]:
    strings = [t.string for t in clause]
    if "as" in strings:
        at = strings.index("as")
        return "".join(strings[:at]), strings[at + 1] if at + 1 < len(strings) else None
    return "".join(strings), None


# ----------------------------------------------------------------------
# Lambda spans
# ----------------------------------------------------------------------


def lambda_colon(tokens: list, index: int) -> Optional[int]:
    """Index of the ':' that opens the body of the lambda at ``index``."""
    depth = 0
    lambda_depth = 0
    for j in range(index + 1, len(tokens)):
        t = tokens[j]
        if t.type == tokenize.NAME and t.string == "lambda":
            lambda_depth += 1
        elif t.type == tokenize.OP:
            if t.string in "([{":
                depth += 1
            elif t.string in ")]}":
                depth -= 1
            elif t.string == ":" and depth == 0:
                if lambda_depth > 0:
                    # This colon belongs to a nested lambda
                    lambda_depth -= 1
                else:
                    return j
    return None


def lambda_end(tokens: list, index: int) -> int:
    """Index of the last token of the lambda expression starting at ``index``.

    The body ends at a comma, colon or ``for`` at depth 0, at a closing bracket
    the lambda did not open, or at the end of the logical line.
    """
    depth = 0
    lambda_depth = 0
    past_colon = False
    end = index
    for j in range(index + 1, len(tokens)):
        t = tokens[j]
        if t.type == tokenize.NAME and t.string == "lambda":
            lambda_depth += 1
        elif t.type == tokenize.NAME and t.string in ("for", "async") and depth == 0 and past_colon:
            break
        elif t.type == tokenize.OP:
            if t.string == ":" and depth == 0:
                if lambda_depth > 0:
                    lambda_depth -= 1
                elif past_colon:
                    # Second colon at depth 0 - enclosing lambda's body
                    break
                else:
                    past_colon = True
            elif t.string in "([{":
                depth += 1
            elif t.string in ")]}":
                if depth == 0:
                    break
                depth -= 1
            elif t.string in (",", ";") and depth == 0 and past_colon:
                break
        elif t.type in (tokenize.NEWLINE, tokenize.ENDMARKER):
            break
        if t.type not in _LAYOUT:
            end = j
    return end


def lambda_params(tokens: list, index: int, colon: int) -> List[str]:
    params = []
    depth = 0
    lambda_depth = 0
    previous = tokens[index]
    for j in range(index + 1, colon):
        t = tokens[j]
        if t.type == tokenize.OP and t.string in "([{":
            depth += 1
        elif t.type == tokenize.OP and t.string in ")]}":
            depth -= 1
        elif t.type == tokenize.NAME and t.string == "lambda":
            lambda_depth += 1
        elif t.type == tokenize.OP and t.string == ":" and lambda_depth:
            lambda_depth -= 1
        elif (
            t.type == tokenize.NAME
            and depth == 0
            and not lambda_depth
            and (previous.string in ("lambda", ",", "*", "**"))
        ):
            params.append(t.string)
        if t.type not in _LAYOUT:
            previous = t
    return params


def lambda_default_spans(tokens: list, index: int, colon: int) -> List[Tuple[int, int]]:
    """Token spans of the default expressions in a lambda's parameter list."""
    return _default_spans(tokens, index + 1, colon, base_depth=0)


def def_default_spans(tokens: list, structure: Structure) -> List[Tuple[int, int]]:
    """Token spans of the default expressions in a ``def`` header."""
    open_paren = structure.keyword + 2
    return _default_spans(tokens, open_paren + 1, structure.colon, base_depth=0, closing=True)


def _default_spans(
    tokens: list, begin: int, stop: int, base_depth: int, closing: bool = False
) -> List[Tuple[int, int]]:
    spans = []
    depth = base_depth
    lambda_depth = 0
    default_start = None
    last = None
    for j in range(begin, stop):
        t = tokens[j]
        if t.type == tokenize.OP:
            if t.string in "([{":
                depth += 1
            elif t.string in ")]}":
                if depth == base_depth and closing:
                    if default_start is not None and last is not None:
                        spans.append((default_start, last))
                    return spans
                depth -= 1
            elif t.string == "=" and depth == base_depth and not lambda_depth and default_start is None:
                default_start = j + 1
                last = None
                continue
            elif t.string == "," and depth == base_depth and not lambda_depth:
                if default_start is not None and last is not None:
                    spans.append((default_start, last))
                default_start = None
                continue
            elif t.string == ":" and lambda_depth:
                lambda_depth -= 1
        elif t.type == tokenize.NAME and t.string == "lambda":
            lambda_depth += 1
        if t.type not in _LAYOUT and default_start is not None:
            last = j
    if default_start is not None and last is not None:
        spans.append((default_start, last))
    return spans
