"""
Flatten per-device documents into one list of records.

Every function here is pure: the same documents always give the same
records in the same order.
"""
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from reportmate.extractors import device_name, first_of, first_value, path

Record = Dict[str, Any]
ItemNormalizer = Callable[[Mapping[str, Any]], Record]


def extract_collection(document: Mapping[str, Any], fields: Sequence[str]) -> List[Any]:
    """
    Pull the sub-collection out of a device document.

    ``fields`` are tried in order; the first non-empty one wins. A mapping
    (single module such as inventory) counts as a one-item collection.
    Nothing found means an empty collection, never an error.
    """
    value = first_of(path(f) for f in fields)(document)
    if value is None:
        return []
    if isinstance(value, Mapping):
        return [value]
    if isinstance(value, (list, tuple)):
        return list(value)
    return []


def parent_identity(document: Mapping[str, Any]) -> Dict[str, Any]:
    """Identifiers stamped onto every record flattened out of ``document``."""
    serial = first_value(document, ("serialNumber", "serial_number"))
    device_id = first_value(document, ("deviceId", "device_id"), default=serial)
    return {
        "deviceId": device_id,
        "serialNumber": serial,
        "deviceName": device_name(document, serial),
        "lastSeen": first_value(document, ("lastSeen", "last_seen")),
    }


def normalize_application(app: Mapping[str, Any]) -> Record:
    """Common field names for an installed application, whatever the agent sent."""
    publisher = first_value(app, ("publisher", "signed_by", "vendor"), default="Unknown")
    return {
        "name": first_value(app, ("name", "displayName"), default="Unknown Application"),
        "version": first_value(app, ("version", "bundle_version"), default="Unknown"),
        "publisher": publisher,
        "vendor": publisher,
        "category": first_value(app, ("category",), default="Other"),
        "installDate": first_value(app, ("installDate", "install_date", "last_modified")),
        "size": first_value(app, ("size", "estimatedSize")),
        "path": first_value(app, ("path", "install_location")),
        "bundleId": first_value(app, ("bundleId", "bundle_id")),
    }


def flatten(
    documents: Sequence[Mapping[str, Any]],
    fields: Sequence[str],
    normalize: Optional[ItemNormalizer] = None,
) -> List[Record]:
    """
    One record per sub-collection item across all documents.

    Records carry the item's own fields, or the normalized view of them with
    the untouched item under ``raw``, plus the parent device identifiers and
    a synthetic ``id`` of ``<deviceId>_<index>``.
    """
    records: List[Record] = []
    for document in documents:
        parent = parent_identity(document)
        parent_id = parent["deviceId"]
        for index, item in enumerate(extract_collection(document, fields)):
            if not isinstance(item, Mapping):
                item = {"value": item}
            if normalize:
                record = {**normalize(item), **parent, "id": f"{parent_id}_{index}", "raw": dict(item)}
            else:
                record = {**item, **parent, "id": f"{parent_id}_{index}"}
            records.append(record)
    return records
