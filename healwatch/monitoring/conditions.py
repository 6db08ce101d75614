"""Alert rule condition expressions.

A condition is a list of ``field op literal`` clauses joined by ``and`` /
``or`` (``and`` binds tighter)::

    cpu_usage > 80
    severity in {high, critical} and trend == increasing
    deviation >= 0.3 or system_load > 4

Ordering comparisons on ``severity`` use the tier order
normal < medium < high < critical.
"""

import operator
import re
from collections.abc import Mapping
from dataclasses import dataclass
from functools import lru_cache
from typing import Any

from ..core.exceptions import ValidationError
from .baseline import Severity

_TOKEN = re.compile(
    r"""\s*(?:
        (?P<set>\{[^}]*\})
      | (?P<op>>=|<=|==|!=|>|<)
      | (?P<string>"[^"]*"|'[^']*')
      | (?P<word>[A-Za-z0-9_.:+\-]+)
    )""",
    re.VERBOSE,
)

_COMPARATORS = {
    ">": operator.gt,
    "<": operator.lt,
    ">=": operator.ge,
    "<=": operator.le,
    "==": operator.eq,
    "!=": operator.ne,
}
ORDERING_OPERATORS = frozenset({">", "<", ">=", "<="})


@dataclass(frozen=True)
class Clause:
    """A single ``field op literal`` comparison."""

    field: str
    op: str
    literal: Any

    @property
    def is_threshold(self) -> bool:
        return self.op in _COMPARATORS and isinstance(self.literal, float)

    def evaluate(self, values: Mapping[str, Any]) -> bool:
        if self.field not in values:
            return False
        actual = values[self.field]

        if self.field == "severity":
            actual = Severity.parse(actual)
            if self.op == "in":
                return actual.value in self.literal
            return _COMPARATORS[self.op](actual.rank, Severity.parse(self.literal).rank)

        if self.op == "in":
            normalized = _normalize(actual)
            if isinstance(normalized, float):
                normalized = f"{normalized:g}"
            return normalized in self.literal

        if isinstance(self.literal, float):
            if isinstance(actual, bool) or not isinstance(actual, int | float):
                return False
            return _COMPARATORS[self.op](float(actual), self.literal)

        if self.op in ORDERING_OPERATORS:
            return False
        return _COMPARATORS[self.op](_normalize(actual), self.literal)

    def __str__(self) -> str:
        if self.op == "in":
            return f"{self.field} in {{{', '.join(sorted(self.literal))}}}"
        literal = self.literal
        if isinstance(literal, float) and literal.is_integer():
            literal = int(literal)
        return f"{self.field} {self.op} {literal}"


@dataclass(frozen=True)
class Condition:
    """Disjunction of conjunctions of clauses."""

    source: str
    groups: tuple[tuple[Clause, ...], ...]

    @property
    def fields(self) -> frozenset[str]:
        return frozenset(clause.field for group in self.groups for clause in group)

    @property
    def clauses(self) -> tuple[Clause, ...]:
        return tuple(clause for group in self.groups for clause in group)

    def threshold_clause(self) -> Clause | None:
        """First numeric comparison, used when exporting alert definitions."""
        for clause in self.clauses:
            if clause.is_threshold and clause.field not in ("deviation", "severity"):
                return clause
        for clause in self.clauses:
            if clause.is_threshold:
                return clause
        return None

    def applies_to(self, values: Mapping[str, Any]) -> bool:
        """True when every referenced field is present in ``values``.

        ``or`` groups are independent, so one fully satisfiable group is enough.
        """
        return any(all(clause.field in values for clause in group) for group in self.groups)

    def evaluate(self, values: Mapping[str, Any]) -> bool:
        return any(all(clause.evaluate(values) for clause in group) for group in self.groups)

    def __str__(self) -> str:
        return self.source


def _normalize(value: Any) -> Any:
    if isinstance(value, Severity):
        return value.value
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, int | float):
        return float(value)
    return str(value)


def _literal(token: str, quoted: bool = False) -> Any:
    if quoted:
        return token[1:-1]
    try:
        return float(token)
    except ValueError:
        return token


def _tokenize(source: str) -> list[tuple[str, str]]:
    tokens = []
    position = 0
    source = source.rstrip()
    while position < len(source):
        match = _TOKEN.match(source, position)
        if match is None or match.end() == position:
            raise ValidationError(
                f"Unexpected character in condition at {position}: {source!r}", field="condition"
            )
        kind = match.lastgroup
        tokens.append((kind, match.group(kind)))
        position = match.end()
    return tokens


@lru_cache(maxsize=256)
def parse_condition(source: str) -> Condition:
    """Parse a condition expression.

    Args:
        source: Condition text

    Returns:
        Parsed condition

    Raises:
        ValidationError: If the expression is malformed
    """
    if not source or not source.strip():
        raise ValidationError("Condition cannot be empty", field="condition")

    tokens = _tokenize(source)
    groups: list[tuple[Clause, ...]] = []
    current: list[Clause] = []
    index = 0

    while index < len(tokens):
        if len(tokens) - index < 3:
            raise ValidationError(f"Incomplete clause in condition: {source!r}", field="condition")

        (field_kind, field_name), (op_kind, op), (literal_kind, literal_text) = tokens[index : index + 3]
        if field_kind != "word" or field_name.lower() in ("and", "or", "in"):
            raise ValidationError(f"Expected a field name in condition: {source!r}", field="condition")

        if op_kind == "word" and op.lower() == "in":
            if literal_kind != "set":
                raise ValidationError(f"'in' requires a {{...}} set: {source!r}", field="condition")
            members = frozenset(
                item.strip().strip("'\"") for item in literal_text[1:-1].split(",") if item.strip()
            )
            if not members:
                raise ValidationError(f"Empty set in condition: {source!r}", field="condition")
            if field_name == "severity":
                try:
                    members = frozenset(Severity.parse(member).value for member in members)
                except ValueError as e:
                    raise ValidationError(str(e), field="condition") from e
            clause = Clause(field_name, "in", members)
        elif op_kind == "op":
            if literal_kind not in ("word", "string"):
                raise ValidationError(f"Expected a literal in condition: {source!r}", field="condition")
            literal = _literal(literal_text, quoted=literal_kind == "string")
            if field_name == "severity":
                try:
                    literal = Severity.parse(str(literal)).value
                except ValueError as e:
                    raise ValidationError(str(e), field="condition") from e
            elif op in ORDERING_OPERATORS and not isinstance(literal, float):
                raise ValidationError(
                    f"Ordering comparison needs a number: {source!r}", field="condition"
                )
            clause = Clause(field_name, op, literal)
        else:
            raise ValidationError(f"Unknown operator {op!r} in condition", field="condition")

        current.append(clause)
        index += 3

        if index < len(tokens):
            kind, joiner = tokens[index]
            joiner = joiner.lower()
            if kind != "word" or joiner not in ("and", "or"):
                raise ValidationError(
                    f"Expected 'and' or 'or' in condition: {source!r}", field="condition"
                )
            if index + 1 >= len(tokens):
                raise ValidationError(f"Dangling {joiner!r} in condition", field="condition")
            if joiner == "or":
                groups.append(tuple(current))
                current = []
            index += 1

    groups.append(tuple(current))
    return Condition(source=source.strip(), groups=tuple(groups))
