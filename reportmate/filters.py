"""
Query-string filtering over a cached aggregate.

Filters run on the payload after it comes out of the cache, so a filtered
request is served from the same entry as an unfiltered one and never
writes a partial view back.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

# query parameter -> record fields it matches (case-insensitive equality)
FILTER_FIELDS: Dict[str, Tuple[str, ...]] = {
    "deviceNames": ("deviceName", "serialNumber"),
    "serialNumbers": ("serialNumber",),
    "applicationNames": ("name",),
    "publishers": ("publisher", "vendor"),
    "categories": ("category",),
    "versions": ("version",),
    "statuses": ("status", "currentStatus"),
    "kinds": ("kind", "eventType"),
    "platforms": ("platform",),
    "usages": ("usage",),
    "catalogs": ("catalog",),
    "locations": ("location",),
    "rooms": ("location",),
    "fleets": ("fleet",),
}

SEARCH_FIELDS = ("name", "itemName", "deviceName", "serialNumber", "message")


def _norm(value: Any) -> str:
    return str(value).strip().lower()


@dataclass
class RecordFilter:
    """Parsed filters for one request."""
    values: Dict[str, List[str]] = field(default_factory=dict)
    search: Optional[str] = None

    @classmethod
    def from_params(cls, params: Mapping[str, Sequence[str]]) -> "RecordFilter":
        """
        Build from a multi-value mapping (e.g. ``{"publishers": ["Microsoft"]}``).

        Unknown parameters are ignored.
        """
        values = {
            name: [v for v in params.get(name, []) if v]
            for name in FILTER_FIELDS
        }
        values = {name: selected for name, selected in values.items() if selected}
        search_values = [s for s in params.get("search", []) if s and s.strip()]
        return cls(values=values, search=search_values[0].strip() if search_values else None)

    @property
    def active(self) -> bool:
        return bool(self.values) or bool(self.search)

    def matches(self, record: Mapping[str, Any]) -> bool:
        for name, selected in self.values.items():
            wanted = {_norm(v) for v in selected}
            candidates = (record.get(f) for f in FILTER_FIELDS[name])
            if not any(c is not None and _norm(c) in wanted for c in candidates):
                return False
        if self.search:
            needle = self.search.lower()
            haystack = (record.get(f) for f in SEARCH_FIELDS)
            if not any(h is not None and needle in str(h).lower() for h in haystack):
                return False
        return True

    def apply(self, records: Iterable[Mapping[str, Any]]) -> List[Mapping[str, Any]]:
        if not self.active:
            return list(records)
        return [r for r in records if self.matches(r)]
