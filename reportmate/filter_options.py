"""
Filter option lists for the dashboard's filter panels.

Built from the cached aggregates, so discovering filter values costs no
extra upstream traffic once the aggregates are warm.
"""
from typing import Any, Dict, Iterable, List, Mapping, Sequence

from reportmate.extractors import first_value

Record = Mapping[str, Any]

# Cimian bookkeeping items, never shown as managed installs
INTERNAL_INSTALL_ITEMS = ("managed_apps", "managed_profiles")


def distinct(records: Iterable[Record], fields: Sequence[str]) -> List[str]:
    """Sorted distinct non-blank values found under any of ``fields``."""
    values = set()
    for record in records:
        for name in fields:
            value = record.get(name)
            if value is None:
                continue
            text = str(value).strip()
            if text:
                values.add(text)
    return sorted(values)


def inventory_options(inventory: Iterable[Record]) -> Dict[str, List[str]]:
    """Usage, catalog, location and fleet values from the inventory aggregate."""
    inventory = list(inventory)
    locations = distinct(inventory, ("location",))
    return {
        "usages": distinct(inventory, ("usage",)),
        "catalogs": distinct(inventory, ("catalog",)),
        "locations": locations,
        "rooms": locations,
        "fleets": distinct(inventory, ("fleet",)),
    }


def application_filter_options(
    applications: Sequence[Record],
    inventory: Sequence[Record],
) -> Dict[str, Any]:
    devices = {}
    for record in applications:
        serial = record.get("serialNumber")
        if serial and serial not in devices:
            devices[serial] = {
                "deviceId": record.get("deviceId"),
                "serialNumber": serial,
                "deviceName": record.get("deviceName"),
            }
    return {
        "devices": [devices[serial] for serial in sorted(devices)],
        "applicationNames": distinct(applications, ("name",)),
        "publishers": distinct(applications, ("publisher", "vendor")),
        "categories": distinct(applications, ("category",)),
        "versions": distinct(applications, ("version",)),
        **inventory_options(inventory),
    }


def _is_internal_install(record: Record) -> bool:
    name = first_value(record, ("itemName", "displayName", "name"))
    kind = first_value(record, ("type", "itemType", "group"))
    return name in INTERNAL_INSTALL_ITEMS or kind in INTERNAL_INSTALL_ITEMS


def install_filter_options(
    installs: Sequence[Record],
    inventory: Sequence[Record],
) -> Dict[str, Any]:
    managed = [record for record in installs if not _is_internal_install(record)]
    names = set()
    for record in managed:
        name = first_value(record, ("itemName", "displayName", "name"))
        if name is not None and str(name).strip():
            names.add(str(name).strip())
    return {
        "managedInstalls": sorted(names),
        "statuses": distinct(managed, ("status", "currentStatus")),
        "platforms": distinct(installs, ("platform",)),
        "devicesWithData": len({r.get("serialNumber") for r in inventory if r.get("serialNumber")}),
        **inventory_options(inventory),
    }
