"""
Optional direct database access with SQLAlchemy.

Only used when DATABASE_URL is configured. The schema is owned by the
upstream backend; this module just runs read queries and hands back rows.
"""
import json
import logging
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine

logger = logging.getLogger("db")

JSON_COLUMNS = ("applications_data", "inventory_data", "data")


# Latest applications module per device, with the inventory name fields
APPLICATIONS_QUERY = """
    SELECT DISTINCT ON (d.serial_number)
        d.serial_number,
        d.device_id,
        d.last_seen,
        a.data AS applications_data,
        a.collected_at AS applications_collected_at,
        inv.data->>'deviceName' AS device_name,
        inv.data->>'computerName' AS computer_name
    FROM devices d
    LEFT JOIN applications a ON d.id = a.device_id
    LEFT JOIN inventory inv ON d.id = inv.device_id
    WHERE d.serial_number IS NOT NULL
      AND d.serial_number NOT LIKE 'TEST-%'
      AND d.serial_number != 'localhost'
      AND a.data IS NOT NULL
    ORDER BY d.serial_number, a.updated_at DESC, inv.updated_at DESC
"""


class DatabaseRowSource:
    """``fetch_rows(query) -> rows`` over a SQLAlchemy engine."""

    def __init__(self, engine: Engine):
        self.engine = engine

    @classmethod
    def from_url(cls, database_url: str) -> "DatabaseRowSource":
        engine = create_engine(database_url, pool_pre_ping=True, echo=False)
        return cls(engine)

    def fetch_rows(self, query: str, params: Optional[Mapping[str, Any]] = None) -> List[Dict[str, Any]]:
        """
        Run a read query and return each row as a dict.

        JSON columns stored as text are decoded; drivers that already return
        dicts (PostgreSQL jsonb) are left alone.
        """
        with self.engine.connect() as conn:
            result = conn.execute(text(query), dict(params or {}))
            rows = [dict(row) for row in result.mappings()]
        for row in rows:
            for column in JSON_COLUMNS:
                if isinstance(row.get(column), str):
                    try:
                        row[column] = json.loads(row[column])
                    except ValueError:
                        logger.warning(f"Column {column} is not valid JSON, leaving as text")
        logger.debug(f"Query returned {len(rows)} rows")
        return rows

    def dispose(self) -> None:
        self.engine.dispose()


def application_row_to_document(row: Mapping[str, Any]) -> Dict[str, Any]:
    """Shape an APPLICATIONS_QUERY row like an upstream device document."""
    last_seen = row.get("last_seen")
    return {
        "serialNumber": row.get("serial_number"),
        "deviceId": row.get("device_id"),
        "lastSeen": last_seen.isoformat() if hasattr(last_seen, "isoformat") else last_seen,
        "modules": {
            "applications": row.get("applications_data") or {},
            "inventory": {
                "deviceName": row.get("device_name"),
                "computerName": row.get("computer_name"),
            },
        },
    }
