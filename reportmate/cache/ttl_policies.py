"""
Per-endpoint cache and fan-out configuration.
"""
from dataclasses import dataclass, replace
from typing import Dict, Optional, Tuple


@dataclass(frozen=True)
class EndpointPolicy:
    """
    Constants for one bulk endpoint.

    ``collection_fields`` are dotted paths tried in order against each
    device document; the first non-empty value is the sub-collection that
    gets flattened. An empty tuple means the source already returns flat
    records.
    """
    name: str
    ttl_seconds: float
    description: str = ""
    batch_size: int = 10
    item_timeout: float = 30.0
    batch_pause: float = 0.1
    collection_fields: Tuple[str, ...] = ()


APPLICATION_FIELDS = (
    "modules.applications.installedApplications",
    "modules.applications.InstalledApplications",
    "modules.applications.installed_applications",
)

INVENTORY_FIELDS = (
    "modules.inventory",
    "modules.Inventory",
)

HARDWARE_FIELDS = (
    "modules.hardware",
    "modules.Hardware",
)


ENDPOINT_POLICIES: Dict[str, EndpointPolicy] = {
    "devices": EndpointPolicy(
        name="devices",
        ttl_seconds=60,           # 1 minute
        description="Device listings with inventory and system data",
    ),
    "applications": EndpointPolicy(
        name="applications",
        ttl_seconds=30,           # 30 seconds
        description="Installed applications across all devices",
        batch_size=10,
        item_timeout=30.0,
        batch_pause=0.1,
        collection_fields=APPLICATION_FIELDS,
    ),
    "inventory": EndpointPolicy(
        name="inventory",
        ttl_seconds=60,
        description="Inventory module (asset tag, usage, catalog, location) per device",
        batch_size=50,
        item_timeout=15.0,
        batch_pause=0.1,
        collection_fields=INVENTORY_FIELDS,
    ),
    "hardware": EndpointPolicy(
        name="hardware",
        ttl_seconds=60,
        description="Hardware module per device",
        batch_size=50,
        item_timeout=15.0,
        batch_pause=0.1,
        collection_fields=HARDWARE_FIELDS,
    ),
    "installs": EndpointPolicy(
        name="installs",
        ttl_seconds=300,          # 5 minutes, bulk upstream call is expensive
        description="Managed software install records for all devices",
    ),
    "events": EndpointPolicy(
        name="events",
        ttl_seconds=30,
        description="Recent events feed",
    ),
}


def get_policy(name: str, overrides: Optional[Dict[str, object]] = None) -> EndpointPolicy:
    """
    Look up an endpoint policy, optionally replacing some of its fields.

    Raises:
        KeyError: Unknown endpoint name
    """
    policy = ENDPOINT_POLICIES[name]
    if overrides:
        policy = replace(policy, **overrides)
    return policy
