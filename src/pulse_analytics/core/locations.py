"""Entity locations: the region/category keys used for pattern sharing."""

from __future__ import annotations

import logging
from dataclasses import dataclass, asdict
from typing import Dict, Optional, Protocol

from .db_adapter import get_connection

logger = logging.getLogger(__name__)


@dataclass
class Location:
    lat: float
    lon: float
    region: str
    category: Optional[str] = None

    def to_dict(self) -> Dict:
        return asdict(self)


class LocationResolver(Protocol):
    def resolve(self, entity_id: str) -> Optional[Location]:
        ...


class SqliteLocationResolver:
    """Reads entity locations from the ``entity_locations`` table."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS entity_locations (
                    entity_id TEXT PRIMARY KEY,
                    lat REAL NOT NULL,
                    lon REAL NOT NULL,
                    region TEXT NOT NULL,
                    category TEXT
                )
            """)
            conn.commit()
        finally:
            conn.close()

    def register(self, entity_id: str, location: Location) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                INSERT INTO entity_locations (entity_id, lat, lon, region, category)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(entity_id) DO UPDATE SET
                    lat = excluded.lat, lon = excluded.lon,
                    region = excluded.region, category = excluded.category
            """, (entity_id, location.lat, location.lon, location.region, location.category))
            conn.commit()
        finally:
            conn.close()

    def resolve(self, entity_id: str) -> Optional[Location]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT lat, lon, region, category FROM entity_locations WHERE entity_id = ?",
                (entity_id,),
            ).fetchone()
        finally:
            conn.close()

        if row is None:
            logger.debug(f"No location registered for entity {entity_id}")
            return None
        return Location(lat=row["lat"], lon=row["lon"], region=row["region"], category=row["category"])

    def entity_ids(self) -> list[str]:
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute("SELECT entity_id FROM entity_locations ORDER BY entity_id").fetchall()
        finally:
            conn.close()
        return [r["entity_id"] for r in rows]
