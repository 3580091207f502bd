"""
Ordered field extraction for inconsistently named upstream documents.

The upstream mixes camelCase, PascalCase and snake_case, and nests the same
data at different depths depending on the agent version. Rather than
sniffing shapes ad hoc, each lookup is an ordered list of extractors; the
first one that yields a non-empty value wins.
"""
from typing import Any, Callable, Iterable, Mapping, Optional, Sequence

Extractor = Callable[[Mapping[str, Any]], Optional[Any]]


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, (str, list, tuple, dict)) and len(value) == 0:
        return True
    return False


def path(dotted: str) -> Extractor:
    """Extractor for a dotted path such as ``modules.inventory.deviceName``."""
    parts = dotted.split(".")

    def extract(document: Mapping[str, Any]) -> Optional[Any]:
        current: Any = document
        for part in parts:
            if not isinstance(current, Mapping):
                return None
            current = current.get(part)
        return None if _is_empty(current) else current

    extract.__name__ = f"path[{dotted}]"
    return extract


def first_of(extractors: Iterable[Extractor]) -> Extractor:
    """Combine extractors; the first non-empty result wins."""
    chain = tuple(extractors)

    def extract(document: Mapping[str, Any]) -> Optional[Any]:
        for extractor in chain:
            value = extractor(document)
            if not _is_empty(value):
                return value
        return None

    return extract


def first_value(
    document: Mapping[str, Any],
    paths: Sequence[str],
    default: Any = None,
) -> Any:
    """Shorthand: try dotted ``paths`` in order against ``document``."""
    value = first_of(path(p) for p in paths)(document)
    return default if value is None else value


ENTITY_ID_PATHS = ("serialNumber", "serial_number", "deviceId", "device_id", "id")

DEVICE_NAME_PATHS = (
    "modules.inventory.deviceName",
    "modules.inventory.hostname",
    "name",
    "deviceName",
    "hostname",
    "modules.inventory.computerName",
    "modules.system.computerName",
    "modules.system.hostname",
)


def entity_id(document: Mapping[str, Any]) -> Optional[str]:
    """Natural device key from a list-endpoint entry, stringified."""
    value = first_value(document, ENTITY_ID_PATHS)
    return None if value is None else str(value)


def device_name(document: Mapping[str, Any], serial_number: Optional[str]) -> str:
    """Friendly device name, falling back to ``Device <serial>``."""
    name = first_value(document, DEVICE_NAME_PATHS)
    if name is not None:
        return str(name)
    return f"Device {serial_number}" if serial_number else "Unknown Device"
