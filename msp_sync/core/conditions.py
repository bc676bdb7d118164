"""
Builder for the ConnectWise ``conditions`` query language.

Conditions are composed as a small expression tree and rendered to the
remote syntax once, e.g.::

    all_of(
        Field("board/id").in_([1, 2]),
        Field("owner/identifier").eq("jdoe") | Field("resources").like("%jdoe%"),
        Field("_info/lastUpdated").gt(watermark),
    ).render()
    # board/id in (1,2) AND (owner/identifier="jdoe" OR resources like "%jdoe%")
    #   AND _info/lastUpdated>[2024-01-01T00:00:00Z]
"""

from datetime import date, datetime, timezone
from typing import Any, Iterable, List, Optional


def format_value(value: Any) -> str:
    """Render a literal value in ConnectWise condition syntax."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return f"[{value.strftime('%Y-%m-%dT%H:%M:%SZ')}]"
    if isinstance(value, date):
        return f"[{value.isoformat()}T00:00:00Z]"
    if isinstance(value, (int, float)):
        return str(value)
    text = str(value).replace("\\", "\\\\").replace('"', '\\"')
    return f'"{text}"'


class Condition:
    """Base class for condition expression nodes."""

    def render(self) -> str:
        raise NotImplementedError

    def __and__(self, other: "Condition") -> "Condition":
        return And(self, other)

    def __or__(self, other: "Condition") -> "Condition":
        return Or(self, other)

    def __str__(self) -> str:
        return self.render()


class Comparison(Condition):
    """``field<op>value`` with one of ``=``, ``!=``, ``<``, ``<=``, ``>``, ``>=``."""

    OPERATORS = {"=", "!=", "<", "<=", ">", ">="}

    def __init__(self, field: str, op: str, value: Any):
        if op not in self.OPERATORS:
            raise ValueError(f"Unsupported operator: {op}")
        self.field = field
        self.op = op
        self.value = value

    def render(self) -> str:
        return f"{self.field}{self.op}{format_value(self.value)}"


class InList(Condition):
    """``field in (v1,v2,...)``."""

    def __init__(self, field: str, values: Iterable[Any]):
        self.field = field
        self.values = list(values)
        if not self.values:
            raise ValueError(f"Empty value list for {field} in (...)")

    def render(self) -> str:
        rendered = ",".join(format_value(v) for v in self.values)
        return f"{self.field} in ({rendered})"


class Like(Condition):
    """``field like "pattern"`` (``%`` is the wildcard)."""

    def __init__(self, field: str, pattern: str):
        self.field = field
        self.pattern = pattern

    def render(self) -> str:
        return f"{self.field} like {format_value(self.pattern)}"


class _Compound(Condition):
    keyword = ""

    def __init__(self, *parts: Condition):
        flattened: List[Condition] = []
        for part in parts:
            # Same-operator children are merged: (a AND b) AND c == a AND b AND c
            if type(part) is type(self):
                flattened.extend(part.parts)
            else:
                flattened.append(part)
        if not flattened:
            raise ValueError(f"{self.keyword} needs at least one condition")
        self.parts = flattened

    def render(self) -> str:
        rendered = []
        for part in self.parts:
            text = part.render()
            if isinstance(part, _Compound) and len(part.parts) > 1:
                text = f"({text})"
            rendered.append(text)
        return f" {self.keyword} ".join(rendered)


class And(_Compound):
    keyword = "AND"


class Or(_Compound):
    keyword = "OR"


class Field:
    """Entry point for building conditions on a single field."""

    def __init__(self, name: str):
        self.name = name

    def eq(self, value: Any) -> Comparison:
        return Comparison(self.name, "=", value)

    def ne(self, value: Any) -> Comparison:
        return Comparison(self.name, "!=", value)

    def gt(self, value: Any) -> Comparison:
        return Comparison(self.name, ">", value)

    def gte(self, value: Any) -> Comparison:
        return Comparison(self.name, ">=", value)

    def lt(self, value: Any) -> Comparison:
        return Comparison(self.name, "<", value)

    def lte(self, value: Any) -> Comparison:
        return Comparison(self.name, "<=", value)

    def in_(self, values: Iterable[Any]) -> InList:
        return InList(self.name, values)

    def like(self, pattern: str) -> Like:
        return Like(self.name, pattern)

    def contains(self, text: str) -> Like:
        return Like(self.name, f"%{text}%")


def in_list(field: str, values: Iterable[Any]) -> Optional[InList]:
    """``field in (...)``, or ``None`` when there are no values."""
    values = list(values)
    return InList(field, values) if values else None


def all_of(*parts: Optional[Condition]) -> Optional[Condition]:
    """AND together the given conditions, ignoring ``None`` entries."""
    present = [p for p in parts if p is not None]
    if not present:
        return None
    if len(present) == 1:
        return present[0]
    return And(*present)


def any_of(*parts: Optional[Condition]) -> Optional[Condition]:
    """OR together the given conditions, ignoring ``None`` entries."""
    present = [p for p in parts if p is not None]
    if not present:
        return None
    if len(present) == 1:
        return present[0]
    return Or(*present)


def render(condition: Optional[Condition]) -> Optional[str]:
    """Render a condition, passing ``None`` through."""
    return condition.render() if condition is not None else None
