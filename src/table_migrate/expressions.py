"""table_migrate.expressions

Column-mapping expression language.

Each configured column mapping pairs a source expression with a target
column. The expression is parsed once, when the configuration is loaded,
into a small tagged tree:

    $NAME                     ColumnRef   raw value of input column NAME
    $hash(A, B, ...)          HashOf      20-hex-char md5 of the concatenated raw values
    $replace(A, pat, repl)    ReplaceOf   regex substitute-all over column A
    $concat('x=', A, '!')     ConcatOf    concatenation of quoted text and columns
    anything else             Literal     emitted verbatim for every row

Arguments are split on commas outside single quotes and trimmed. In
replace(), a single-quoted pattern or replacement keeps its inner spaces and
commas. The replacement follows Go template rules: $1, ${1} and ${name}
expand to that group, a group the pattern does not define expands to "",
$$ is a literal dollar and a backslash is plain text.

Usage:
    from table_migrate.expressions import RowMapper, parse_columns

    mapper = RowMapper(parse_columns({"$hash(A, B)": "id", "$A": "a"}))
    mapper.bind({"A": 0, "B": 1}, "wells.csv")
    values = mapper.map_row(["x", "y"])
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass
from typing import Any, Mapping, Sequence, Union

from table_migrate.normalize import finish_value, keep_trailing
from table_migrate.shared import (
    ExpressionSyntaxError,
    MigrationConfigError,
    UnknownColumnError,
)

HASH_LENGTH = 20

_FUNCTION_RE = re.compile(r"^(hash|replace|concat)\s*\((.*)\)$", re.DOTALL)
_TEMPLATE_RE = re.compile(r"\$(?:\$|\{([A-Za-z0-9_]+)\}|([A-Za-z0-9_]+))|\\")


# ---------------------------------------------------------------------------
# Expression tree
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ColumnRef:
    name: str


@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class TextPart:
    text: str


@dataclass(frozen=True)
class HashOf:
    """Surrogate key from the listed columns' raw values.

    This is NOT a security hash: md5 truncated to 20 hex characters
    (80 bits). Distinct inputs can collide, and no uniqueness check is made;
    callers that need guaranteed uniqueness must enforce it in the target
    table. Concatenation has no separator, so ("ab", "c") and ("a", "bc")
    hash identically.
    """

    columns: tuple[str, ...]


@dataclass(frozen=True)
class ReplaceOf:
    column: str
    pattern: re.Pattern
    replacement: str


@dataclass(frozen=True)
class ConcatOf:
    parts: tuple[Union[TextPart, ColumnRef], ...]


Expr = Union[ColumnRef, Literal, HashOf, ReplaceOf, ConcatOf]


@dataclass(frozen=True)
class ColumnMapping:
    source: Expr
    target: str


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------

def _split_args(body: str) -> list[str]:
    """Split on commas that are not inside single quotes, trimming each token."""
    args: list[str] = []
    current: list[str] = []
    quoted = False
    for ch in body:
        if ch == "'":
            quoted = not quoted
        if ch == "," and not quoted:
            args.append("".join(current).strip())
            current = []
            continue
        current.append(ch)
    if quoted:
        raise ExpressionSyntaxError(f"unterminated quote in {body!r}")
    args.append("".join(current).strip())
    return args


def _is_quoted(token: str) -> bool:
    return len(token) >= 2 and token.startswith("'") and token.endswith("'")


def _unquote(token: str) -> str:
    return token[1:-1] if _is_quoted(token) else token


def _require_column(token: str, source: str) -> str:
    if not token or _is_quoted(token):
        raise ExpressionSyntaxError(f"expected a column name in {source!r}, got {token!r}")
    return token


def translate_replacement(repl: str, pattern: re.Pattern) -> str:
    """Rewrite a Go replacement template into an re.sub template for pattern.

    $name and ${name} become \\g<..> when pattern defines that group (by
    number or by name) and "" otherwise; $$ becomes "$"; backslashes are
    escaped. A "$" that starts no reference is kept as text.
    """

    def _group(name: str) -> str:
        if name.isdigit():
            return r"\g<%d>" % int(name) if int(name) <= pattern.groups else ""
        return r"\g<" + name + ">" if name in pattern.groupindex else ""

    def _sub(m: re.Match) -> str:
        token = m.group(0)
        if token == "\\":
            return "\\\\"
        if token == "$$":
            return "$"
        return _group(m.group(1) or m.group(2))

    return _TEMPLATE_RE.sub(_sub, repl)


def parse_expression(source: Any) -> Expr:
    """Parse one mapping key into an expression tree.

    Non-string keys (numbers, booleans, dates from YAML) and strings without
    a leading '$' are static literals.

    Raises:
        ExpressionSyntaxError: On bad function syntax or arity.
    """
    if not isinstance(source, str) or not source.startswith("$"):
        return Literal(source)

    body = source[1:].strip()
    if not body:
        raise ExpressionSyntaxError("empty column reference '$'")

    m = _FUNCTION_RE.match(body)
    if m is None:
        if re.match(r"^(hash|replace|concat)\s*\(", body):
            raise ExpressionSyntaxError(f"missing closing parenthesis in {source!r}")
        return ColumnRef(body)

    func, arg_text = m.group(1), m.group(2)
    args = _split_args(arg_text)

    if func == "hash":
        if args == [""]:
            raise ExpressionSyntaxError(f"hash() needs at least one column: {source!r}")
        return HashOf(tuple(_require_column(a, source) for a in args))

    if func == "replace":
        if len(args) != 3:
            raise ExpressionSyntaxError(
                f"need 3 parameters for replace: column, old, new; got {len(args)} in {source!r}"
            )
        column = _require_column(args[0], source)
        try:
            pattern = re.compile(_unquote(args[1]))
        except re.error as exc:
            raise ExpressionSyntaxError(f"invalid pattern in {source!r}: {exc}") from exc
        replacement = translate_replacement(_unquote(args[2]), pattern)
        try:
            pattern.sub(replacement, "")
        except re.error as exc:
            raise ExpressionSyntaxError(f"invalid replacement in {source!r}: {exc}") from exc
        return ReplaceOf(column, pattern, replacement)

    # concat
    if args == [""]:
        raise ExpressionSyntaxError(f"concat() needs at least one part: {source!r}")
    parts: list[Union[TextPart, ColumnRef]] = []
    for arg in args:
        if _is_quoted(arg):
            parts.append(TextPart(arg[1:-1]))
        else:
            parts.append(ColumnRef(_require_column(arg, source)))
    return ConcatOf(tuple(parts))


def parse_columns(columns: Mapping[Any, Any]) -> list[ColumnMapping]:
    """Parse an ordered {expression: target_column} mapping."""
    mappings = []
    for source, target in columns.items():
        if not isinstance(target, str) or not target.strip():
            raise MigrationConfigError(
                f"target column for {source!r} must be a non-empty string, got {target!r}"
            )
        mappings.append(ColumnMapping(parse_expression(source), target.strip()))
    return mappings


def referenced_columns(expr: Expr) -> list[str]:
    """Return the input column names an expression reads, in order."""
    if isinstance(expr, ColumnRef):
        return [expr.name]
    if isinstance(expr, HashOf):
        return list(expr.columns)
    if isinstance(expr, ReplaceOf):
        return [expr.column]
    if isinstance(expr, ConcatOf):
        return [p.name for p in expr.parts if isinstance(p, ColumnRef)]
    return []


# ---------------------------------------------------------------------------
# Evaluator
# ---------------------------------------------------------------------------

def content_hash(values: Sequence[str]) -> str:
    digest = hashlib.md5("".join(values).encode("utf-8"), usedforsecurity=False)
    return digest.hexdigest()[:HASH_LENGTH]


def _field(fields: Sequence[str], header: Mapping[str, int], name: str) -> str:
    try:
        return fields[header[name]]
    except KeyError:
        raise UnknownColumnError(name) from None


def evaluate(
    mapping: ColumnMapping,
    fields: Sequence[str],
    header: Mapping[str, int],
    truncate_columns: frozenset[str] = frozenset(),
) -> Any:
    """Evaluate one mapping against one data row.

    Literals pass through untouched. Every other result is trimmed; blank
    becomes None; text holding an exponent that parses as a float becomes
    that float.
    """
    expr = mapping.source
    if isinstance(expr, Literal):
        return expr.value

    if isinstance(expr, ColumnRef):
        value = _field(fields, header, expr.name)
        if mapping.target in truncate_columns:
            value = keep_trailing(value)
    elif isinstance(expr, HashOf):
        value = content_hash([_field(fields, header, c) for c in expr.columns])
    elif isinstance(expr, ReplaceOf):
        value = expr.pattern.sub(expr.replacement, _field(fields, header, expr.column))
    elif isinstance(expr, ConcatOf):
        value = "".join(
            p.text if isinstance(p, TextPart) else _field(fields, header, p.name)
            for p in expr.parts
        )
    else:
        raise TypeError(f"unsupported expression {expr!r}")

    return finish_value(value)


class RowMapper:
    """Binds a section's column mappings to a source header and maps rows."""

    def __init__(
        self,
        mappings: Sequence[ColumnMapping],
        truncate_columns: frozenset[str] = frozenset(),
    ) -> None:
        self.mappings = tuple(mappings)
        self.truncate_columns = truncate_columns
        self._header: Mapping[str, int] | None = None

    @property
    def target_columns(self) -> list[str]:
        return [m.target for m in self.mappings]

    def bind(self, header: Mapping[str, int], source_name: str | None = None) -> None:
        """Check every referenced column exists, then remember the header."""
        for mapping in self.mappings:
            for name in referenced_columns(mapping.source):
                if name not in header:
                    raise UnknownColumnError(name, source_name)
        self._header = header

    def map_row(self, fields: Sequence[str]) -> list[Any]:
        if self._header is None:
            raise RuntimeError("RowMapper.map_row called before bind()")
        return [
            evaluate(m, fields, self._header, self.truncate_columns)
            for m in self.mappings
        ]
