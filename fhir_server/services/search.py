"""
Search parameter resolution and matching.

``resolve_search_params`` turns raw query parameters into a ``SearchQuery``:
a flat list of (field, matcher, value) criteria plus paging. Parameters may
come as a mapping or as (name, value) pairs when a name repeats. Problems are
reported here, before the store is touched:

- unknown parameter or modifier        -> UnsupportedParameter
- value outside a typed domain / bad date -> SchemaViolation

Semantics:
- parameters are ANDed; comma-separated values of one parameter are ORed
  (criteria sharing a ``group``)
- string: case-insensitive prefix by default, ``:exact`` and ``:contains``
- token: ``code`` or ``system|code``, ``:not`` negates; ``:not=a,b`` excludes both
- date: ``eq`` (default) ``ne lt le gt ge`` prefixes, compared on the
  precision range of both values
- reference: ``Type/id`` or a bare ``id``
- any parameter: ``:missing=true|false``
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, Iterator

from fhir_server.services.errors import SchemaViolation, UnsupportedParameter
from fhir_server.services.registry import ResourceKind, SearchParameter, SearchParamType

CONTROL_PARAMS = ("_count", "_offset")
DATE_PREFIXES = ("eq", "ne", "lt", "le", "gt", "ge")

MODIFIERS: dict[SearchParamType, tuple[str, ...]] = {
    SearchParamType.STRING: ("exact", "contains", "missing"),
    SearchParamType.TOKEN: ("not", "missing"),
    SearchParamType.DATE: ("missing",),
    SearchParamType.REFERENCE: ("missing",),
}

_DATE_VALUE = re.compile(r"^(\d{4})(?:-(\d{2})(?:-(\d{2}))?)?$")


@dataclass(frozen=True)
class SearchCriterion:
    field: str
    matcher: str
    value: str
    group: int = 0


@dataclass
class SearchQuery:
    criteria: list[SearchCriterion] = field(default_factory=list)
    count: int = 20
    offset: int = 0

    def groups(self) -> dict[int, list[SearchCriterion]]:
        grouped: dict[int, list[SearchCriterion]] = {}
        for criterion in self.criteria:
            grouped.setdefault(criterion.group, []).append(criterion)
        return grouped


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------

def resolve_search_params(
    kind: ResourceKind,
    params: dict[str, str] | list[tuple[str, str]],
    default_count: int = 20,
    max_count: int = 100,
) -> SearchQuery:
    query = SearchQuery(count=min(default_count, max_count))
    group = 0

    items = params.items() if isinstance(params, dict) else params
    for raw_name, raw_value in items:
        if raw_name in CONTROL_PARAMS:
            number = _non_negative_int(raw_name, raw_value)
            if raw_name == "_count":
                query.count = min(number, max_count)
            else:
                query.offset = number
            continue

        name, _, modifier = raw_name.partition(":")
        param = kind.search_params.get(name)
        if param is None:
            raise UnsupportedParameter(
                f"Unknown search parameter '{name}' for {kind.name}",
                resource_type=kind.name,
                field=name,
            )
        if modifier and modifier not in MODIFIERS[param.type]:
            raise UnsupportedParameter(
                f"Modifier ':{modifier}' is not supported for parameter '{name}'",
                resource_type=kind.name,
                field=raw_name,
            )

        values = [v.strip() for v in raw_value.split(",")]
        if not all(values):
            raise SchemaViolation(
                f"Empty value for search parameter '{raw_name}'",
                resource_type=kind.name,
                field=raw_name,
            )

        for value in values:
            matcher, value = _resolve_value(kind, param, modifier, value)
            query.criteria.append(SearchCriterion(name, matcher, value, group))
        group += 1

    return query


def _non_negative_int(name: str, value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        number = -1
    if number < 0:
        raise UnsupportedParameter(
            f"'{name}' must be a non-negative integer, got '{value}'", field=name
        )
    return number


def _resolve_value(
    kind: ResourceKind, param: SearchParameter, modifier: str, value: str
) -> tuple[str, str]:
    if modifier == "missing":
        if value not in ("true", "false"):
            raise SchemaViolation(
                f"':missing' expects true or false, got '{value}'",
                resource_type=kind.name,
                field=param.name,
            )
        return "missing", value

    if param.type is SearchParamType.STRING:
        return modifier or "startswith", value

    if param.type is SearchParamType.TOKEN:
        if param.domain is not None:
            code = value.rpartition("|")[2]
            if code not in param.domain:
                raise SchemaViolation(
                    f"'{code}' is not a valid value for '{param.name}' "
                    f"(expected one of {', '.join(sorted(param.domain))})",
                    resource_type=kind.name,
                    field=param.name,
                )
        return ("not" if modifier == "not" else "token"), value

    if param.type is SearchParamType.DATE:
        prefix = value[:2] if value[:2] in DATE_PREFIXES else "eq"
        date_value = value[2:] if value[:2] in DATE_PREFIXES else value
        if parse_date_range(date_value) is None:
            raise SchemaViolation(
                f"'{value}' is not a valid date for '{param.name}'",
                resource_type=kind.name,
                field=param.name,
            )
        return prefix, date_value

    return "reference", value


# ---------------------------------------------------------------------------
# Matching
# ---------------------------------------------------------------------------

def matches(kind: ResourceKind, resource: dict[str, Any], query: SearchQuery) -> bool:
    """True if the resource satisfies every criteria group."""
    for criteria in query.groups().values():
        param = kind.search_params[criteria[0].field]
        elements = list(extract_values(resource, param.paths))
        if criteria[0].matcher == "not":
            # a negated value list excludes every listed value
            if not all(_match_one(param, c, elements) for c in criteria):
                return False
        elif not any(_match_one(param, c, elements) for c in criteria):
            return False
    return True


def extract_values(resource: dict[str, Any], paths: tuple[str, ...]) -> Iterator[Any]:
    """Yield every value found at the dotted paths, flattening lists."""
    for path in paths:
        yield from _walk(resource, path.split("."))


def _walk(node: Any, parts: list[str]) -> Iterator[Any]:
    if isinstance(node, list):
        for item in node:
            yield from _walk(item, parts)
        return
    if not parts:
        if node is not None:
            yield node
        return
    if isinstance(node, dict) and parts[0] in node:
        yield from _walk(node[parts[0]], parts[1:])


def _match_one(param: SearchParameter, criterion: SearchCriterion, elements: list[Any]) -> bool:
    matcher, value = criterion.matcher, criterion.value

    if matcher == "missing":
        return (not elements) == (value == "true")
    if matcher == "not":
        return not any(_token_matches(e, value) for e in elements)
    if matcher == "token":
        return any(_token_matches(e, value) for e in elements)
    if matcher == "reference":
        return any(_reference_matches(e, value, param.target) for e in elements)
    if matcher in DATE_PREFIXES:
        return any(_date_matches(e, matcher, value) for e in elements)
    return any(_string_matches(e, matcher, value) for e in elements)


def _string_matches(element: Any, matcher: str, value: str) -> bool:
    if not isinstance(element, str):
        return False
    if matcher == "exact":
        return element == value
    if matcher == "contains":
        return value.casefold() in element.casefold()
    return element.casefold().startswith(value.casefold())


def _token_matches(element: Any, value: str) -> bool:
    system, sep, code = value.rpartition("|")
    if not isinstance(element, dict):
        # Plain code elements have an implied system
        return element == code
    element_code = element.get("code", element.get("value"))
    element_system = element.get("system")

    if sep:
        # "|code" means no system; "system|" means any code in system
        if system and element_system != system:
            return False
        if not system and element_system:
            return False
        if not code:
            return True
    return element_code == code


def _reference_matches(element: Any, value: str, target: str | None) -> bool:
    reference = element.get("reference") if isinstance(element, dict) else None
    if not isinstance(reference, str):
        return False
    if "/" in value:
        return reference == value and (target is None or value.startswith(f"{target}/"))
    if target:
        return reference == f"{target}/{value}"
    return reference.rpartition("/")[2] == value


def parse_date_range(value: str) -> tuple[date, date] | None:
    """Half-open [start, end) range covered by a FHIR date at its precision."""
    found = _DATE_VALUE.match(value)
    if not found:
        return None
    year, month, day = found.groups()
    try:
        if day:
            start = date(int(year), int(month), int(day))
            return start, start + timedelta(days=1) if start < date.max else date.max
        if month:
            start = date(int(year), int(month), 1)
            return start, _first_of_month(start.year + start.month // 12, start.month % 12 + 1)
        return date(int(year), 1, 1), _first_of_month(int(year) + 1, 1)
    except ValueError:
        return None


def _first_of_month(year: int, month: int) -> date:
    # range ends past year 9999 are clamped to the last representable day
    return date(year, month, 1) if year <= date.max.year else date.max


def _date_matches(element: Any, prefix: str, value: str) -> bool:
    target = parse_date_range(element) if isinstance(element, str) else None
    search = parse_date_range(value)
    if target is None or search is None:
        return False

    contained = search[0] <= target[0] and target[1] <= search[1]
    if prefix == "eq":
        return contained
    if prefix == "ne":
        return not contained
    if prefix == "gt":
        return target[1] > search[1]
    if prefix == "lt":
        return target[0] < search[0]
    if prefix == "ge":
        return contained or target[1] > search[1]
    return contained or target[0] < search[0]
