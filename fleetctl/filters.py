"""Declarative include/exclude filtering of appliances.

A :class:`FilterSpec` holds two :class:`FieldFilters` records, ``include``
and ``exclude``.  Each record has one typed field per filterable attribute::

    spec = FilterSpec.from_dict({
        "include": {"function": "gateway&portal", "site": "^eu-"},
        "exclude": {"tags": "canary"},
    })
    selected = filter_appliances(appliances, spec)

Values are lists of patterns joined by :data:`FILTER_DELIMITER`.  Patterns are
regular expressions searched anywhere in the attribute, except ``function``
(exact function names) and ``active`` (a boolean).  Within one record an
appliance is selected if *any* pattern of *any* field matches.  Problems with
the input (unknown keys, a non-boolean ``active``, a bad regex) become
warnings: they are logged when filtering and the offending entry is ignored.
An include side whose entries were all ignored selects nothing.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterable, List, Mapping, Optional, Pattern, Sequence, Tuple

from .errors import ValidationError
from .functions import active_functions
from .models import Appliance

logger = logging.getLogger(__name__)

FILTER_DELIMITER = "&"

_REGEX_FIELDS = ("name", "id", "tags", "version", "hostname", "site")

_ALIASES = {
    "tag": "tags",
    "host": "hostname",
    "activated": "active",
    "site-id": "site",
}

_TRUE_VALUES = {"1", "t", "T", "TRUE", "true", "True"}
_FALSE_VALUES = {"0", "f", "F", "FALSE", "false", "False"}


def parse_bool(value: str) -> bool:
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ValidationError(f"Failed to parse boolean filter value: {value!r}")


@dataclass(frozen=True)
class FieldFilters:
    """Per-attribute patterns of one side (include or exclude) of a filter."""

    name: Tuple[Pattern[str], ...] = ()
    id: Tuple[Pattern[str], ...] = ()
    tags: Tuple[Pattern[str], ...] = ()
    version: Tuple[Pattern[str], ...] = ()
    hostname: Tuple[Pattern[str], ...] = ()
    site: Tuple[Pattern[str], ...] = ()
    function: Tuple[str, ...] = ()
    active: Optional[bool] = None
    # Set when any key was given, even one that was ignored.
    restricted: bool = False

    def is_empty(self) -> bool:
        return (
            not self.restricted
            and not any(getattr(self, f) for f in _REGEX_FIELDS)
            and not self.function
            and self.active is None
        )

    def matches(self, appliance: Appliance) -> bool:
        if any(p.search(appliance.name) for p in self.name):
            return True
        if any(p.search(appliance.id) for p in self.id):
            return True
        if any(p.search(tag) for p in self.tags for tag in appliance.tags):
            return True
        if any(p.search(str(appliance.version)) for p in self.version):
            return True
        if any(p.search(appliance.hostname) for p in self.hostname):
            return True
        if any(p.search(appliance.site) for p in self.site):
            return True
        if self.function:
            enabled = active_functions(appliance)
            if any(fn in enabled for fn in self.function):
                return True
        if self.active is not None and appliance.activated == self.active:
            return True
        return False

    def to_dict(self) -> Dict[str, str]:
        out: Dict[str, str] = {}
        for f in _REGEX_FIELDS:
            patterns = getattr(self, f)
            if patterns:
                out[f] = FILTER_DELIMITER.join(p.pattern for p in patterns)
        if self.function:
            out["function"] = FILTER_DELIMITER.join(self.function)
        if self.active is not None:
            out["active"] = str(self.active).lower()
        return out

    @classmethod
    def from_mapping(cls, raw: Mapping[str, str], warnings: List[str]) -> "FieldFilters":
        values: Dict[str, Any] = {}
        if raw:
            values["restricted"] = True
        for key, value in raw.items():
            canonical = _ALIASES.get(key, key)
            value = "" if value is None else str(value)
            if canonical in _REGEX_FIELDS:
                patterns = list(values.get(canonical, ()))
                for pattern in value.split(FILTER_DELIMITER):
                    try:
                        patterns.append(re.compile(pattern))
                    except re.error as exc:
                        _warn(warnings, f"Invalid {key} filter pattern {pattern!r}: {exc}. Ignoring.")
                values[canonical] = tuple(patterns)
            elif canonical == "function":
                values["function"] = tuple(values.get("function", ())) + tuple(
                    value.split(FILTER_DELIMITER)
                )
            elif canonical == "active":
                try:
                    values["active"] = parse_bool(value)
                except ValidationError as exc:
                    _warn(warnings, str(exc))
            else:
                _warn(warnings, f"'{key}' is not a filterable keyword. Ignoring.")
        return cls(**values)


def _warn(warnings: List[str], message: str) -> None:
    if message not in warnings:
        warnings.append(message)


@dataclass(frozen=True)
class FilterSpec:
    include: FieldFilters = field(default_factory=FieldFilters)
    exclude: FieldFilters = field(default_factory=FieldFilters)
    warnings: Tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Mapping[str, str]]]) -> "FilterSpec":
        """Build a spec from ``{"include": {...}, "exclude": {...}}``.

        ``"filter"`` is accepted as an alias of ``"include"``.
        """
        data = data or {}
        warnings: List[str] = []
        include_raw: Dict[str, str] = {}
        include_raw.update(data.get("filter") or {})
        include_raw.update(data.get("include") or {})
        include = FieldFilters.from_mapping(include_raw, warnings)
        exclude = FieldFilters.from_mapping(data.get("exclude") or {}, warnings)
        return cls(include=include, exclude=exclude, warnings=tuple(warnings))

    def to_dict(self) -> Dict[str, Dict[str, str]]:
        return {"include": self.include.to_dict(), "exclude": self.exclude.to_dict()}

    def is_empty(self) -> bool:
        return self.include.is_empty() and self.exclude.is_empty()

    def with_ids(self, ids: Iterable[str]) -> "FilterSpec":
        """Return a copy whose include side also selects the exact *ids*."""
        extra = tuple(re.compile(f"^{re.escape(i)}$") for i in ids)
        return replace(self, include=replace(self.include, id=self.include.id + extra))

    def with_names(self, names: Iterable[str]) -> "FilterSpec":
        """Return a copy whose include side also selects the exact *names*."""
        extra = tuple(re.compile(f"^{re.escape(n)}$") for n in names)
        return replace(self, include=replace(self.include, name=self.include.name + extra))


DEFAULT_COMMAND_FILTER = FilterSpec()


def _select(appliances: Sequence[Appliance], filters: Optional[FieldFilters]) -> List[Appliance]:
    """First-seen, id de-duplicated selection; ``None`` selects everything."""
    seen = set()
    selected: List[Appliance] = []
    for appliance in appliances:
        if appliance.id in seen:
            continue
        if filters is None or filters.matches(appliance):
            seen.add(appliance.id)
            selected.append(appliance)
    return selected


def filter_appliances(appliances: Sequence[Appliance], spec: Optional[FilterSpec]) -> List[Appliance]:
    """Apply *spec* to *appliances*.

    The include side selects (everything when no include key was given), the exclude side then
    removes by id.  The result is de-duplicated by id and ordered by name.
    """
    spec = spec or DEFAULT_COMMAND_FILTER
    for message in spec.warnings:
        logger.warning(message)

    if spec.include.is_empty():
        included = _select(appliances, None)
    else:
        included = _select(appliances, spec.include)

    if not spec.exclude.is_empty():
        excluded_ids = {a.id for a in _select(included, spec.exclude)}
        included = [a for a in included if a.id not in excluded_ids]

    return sorted(included, key=lambda a: a.name)


def _split_pairs(values: Iterable[str], warnings: List[str]) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for value in values:
        for pair in value.split(","):
            if not pair:
                continue
            key, sep, val = pair.partition("=")
            if not sep:
                _warn(warnings, f"Filter {pair!r} is not in key=value form. Ignoring.")
                continue
            out[key.strip()] = val.strip()
    return out


def parse_filter_flags(
    filters: Iterable[str] = (),
    excludes: Iterable[str] = (),
    default: Optional[FilterSpec] = None,
) -> FilterSpec:
    """Build a :class:`FilterSpec` from ``--filter``/``--exclude`` CLI values.

    Each value is ``key=value`` (several may be comma separated).  When both
    lists are empty, *default* is returned.
    """
    warnings: List[str] = []
    include_raw = _split_pairs(filters, warnings)
    exclude_raw = _split_pairs(excludes, warnings)
    if not include_raw and not exclude_raw and not warnings:
        return default or DEFAULT_COMMAND_FILTER
    spec = FilterSpec.from_dict({"include": include_raw, "exclude": exclude_raw})
    if any(filters):
        spec = replace(spec, include=replace(spec.include, restricted=True))
    return replace(spec, warnings=tuple(warnings) + spec.warnings)
