"""
Inventory snapshot backed by the dealership Google Sheet.

The whole sheet is re-read when the cached copy is older than the TTL;
there is no partial invalidation.
"""
import asyncio
import logging
from collections import Counter
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol, Sequence

from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from app.clients.google_auth import SHEETS_READONLY_SCOPE, load_credentials
from app.core.clock import Clock, RealClock
from app.core.errors import InventoryError
from app.models.inventory import InventoryView, SearchCriteria, Vehicle

logger = logging.getLogger(__name__)

_SHEET_HINTS = ("inventario", "vehiculo", "vehículo")


class InventorySource(Protocol):
    async def fetch_rows(self) -> List[List[str]]: ...


class SheetsInventorySource:
    """Reads raw rows (header first) from the inventory spreadsheet"""

    def __init__(self, spreadsheet_id: str, cell_range: str = "A:O", credentials_file: Optional[str] = None):
        self.spreadsheet_id = spreadsheet_id
        self.cell_range = cell_range
        self.credentials_file = credentials_file
        self._service = None

    def _get_service(self):
        if self._service is None:
            credentials = load_credentials([SHEETS_READONLY_SCOPE], self.credentials_file)
            self._service = build("sheets", "v4", credentials=credentials, cache_discovery=False)
        return self._service

    def _fetch_sync(self) -> List[List[str]]:
        service = self._get_service()
        meta = service.spreadsheets().get(spreadsheetId=self.spreadsheet_id).execute()
        titles = [sheet["properties"]["title"] for sheet in meta.get("sheets", [])]
        if not titles:
            return []
        title = next(
            (t for t in titles if any(hint in t.lower() for hint in _SHEET_HINTS)),
            titles[0],
        )
        result = (
            service.spreadsheets()
            .values()
            .get(spreadsheetId=self.spreadsheet_id, range=f"'{title}'!{self.cell_range}")
            .execute()
        )
        return result.get("values", [])

    async def fetch_rows(self) -> List[List[str]]:
        if not self.spreadsheet_id:
            raise InventoryError("Inventory spreadsheet not configured", reason="missing_spreadsheet_id")
        try:
            return await asyncio.to_thread(self._fetch_sync)
        except HttpError as e:
            raise InventoryError(f"Sheets API error: {e.status_code}", reason=f"http_{e.status_code}") from e
        except (OSError, ValueError) as e:
            raise InventoryError(f"Inventory read failed: {e}", reason=type(e).__name__) from e


def parse_vehicles(rows: Sequence[Sequence[str]]) -> List[Vehicle]:
    if len(rows) < 2:
        return []
    headers = rows[0]
    vehicles = []
    for row in rows[1:]:
        vehicle = Vehicle.from_sheet_row(headers, row)
        if vehicle is not None:
            vehicles.append(vehicle)
    return vehicles


def _distinct(values) -> List[str]:
    return sorted({v for v in values if v})


class InventorySnapshot:
    def __init__(self, source: InventorySource, ttl_s: float = 300.0, clock: Optional[Clock] = None):
        self.source = source
        self.ttl_ms = int(ttl_s * 1000)
        self.clock = clock or RealClock()
        self._view: Optional[InventoryView] = None
        self._loaded_at_ms: Optional[int] = None
        self._lock = asyncio.Lock()

    def _fresh(self) -> bool:
        if self._view is None or self._loaded_at_ms is None:
            return False
        return self.clock.now_ms() - self._loaded_at_ms < self.ttl_ms

    async def get(self) -> InventoryView:
        """Cached view, re-read from the source once the TTL has elapsed"""
        if self._fresh():
            return self._view

        async with self._lock:
            if self._fresh():
                return self._view
            try:
                rows = await self.source.fetch_rows()
            except InventoryError as e:
                logger.error(f"INVENTORY|load_failed|reason={e.reason}")
                return InventoryView(available=False, error=e.message)

            vehicles = parse_vehicles(rows)
            self._view = InventoryView(
                available=True,
                vehicles=vehicles,
                brands=_distinct(v.brand for v in vehicles),
                models=_distinct(v.model for v in vehicles),
                types=_distinct(v.vehicle_type for v in vehicles),
                colors=_distinct(v.color for v in vehicles),
                transmissions=_distinct(v.transmission for v in vehicles),
                last_update=datetime.now(timezone.utc).isoformat(),
            )
            self._loaded_at_ms = self.clock.now_ms()
            logger.info(f"INVENTORY|loaded|vehicles={len(vehicles)}|brands={len(self._view.brands)}")
            return self._view

    def invalidate(self) -> None:
        self._view = None
        self._loaded_at_ms = None
        logger.info("INVENTORY|cache_cleared")

    async def search(self, criteria: SearchCriteria) -> List[Vehicle]:
        view = await self.get()
        if not view.available:
            return []

        def contains(value: Optional[str], wanted: Optional[str]) -> bool:
            return not wanted or (value is not None and wanted.lower() in value.lower())

        def at_most(value: Optional[int], limit: Optional[int]) -> bool:
            return limit is None or (value is not None and value <= limit)

        def at_least(value: Optional[int], limit: Optional[int]) -> bool:
            return limit is None or (value is not None and value >= limit)

        return [
            v for v in view.vehicles
            if contains(v.brand, criteria.brand)
            and contains(v.model, criteria.model)
            and contains(v.vehicle_type, criteria.vehicle_type)
            and contains(v.color, criteria.color)
            and contains(v.transmission, criteria.transmission)
            and contains(v.fuel, criteria.fuel)
            and at_least(v.year_number, criteria.year_min)
            and at_most(v.year_number, criteria.year_max)
            and at_most(v.mileage_number, criteria.max_mileage)
            and at_most(v.price_number, criteria.max_price)
        ]

    async def by_reference(self, reference: str) -> Optional[Vehicle]:
        view = await self.get()
        wanted = (reference or "").strip().lower()
        if not wanted:
            return None
        return next((v for v in view.vehicles if v.reference.lower() == wanted), None)

    async def stats(self) -> Dict[str, Any]:
        view = await self.get()
        if not view.available:
            return {"available": False, "error": view.error}

        prices = [p for p in (v.price_number for v in view.vehicles) if p]
        return {
            "available": True,
            "total": view.total,
            "by_brand": dict(Counter(v.brand for v in view.vehicles)),
            "by_type": dict(Counter(v.vehicle_type or "Sin tipo" for v in view.vehicles)),
            "by_year": dict(Counter(v.year or "Sin año" for v in view.vehicles)),
            "by_transmission": dict(Counter(v.transmission or "Sin dato" for v in view.vehicles)),
            "by_fuel": dict(Counter(v.fuel or "Sin dato" for v in view.vehicles)),
            "price": {
                "min": min(prices) if prices else None,
                "max": max(prices) if prices else None,
                "avg": round(sum(prices) / len(prices)) if prices else None,
            },
            "with_images": sum(1 for v in view.vehicles if v.images),
            "last_update": view.last_update,
        }

    async def test_connection(self) -> Dict[str, Any]:
        """Force a fresh read and report what came back"""
        self.invalidate()
        view = await self.get()
        return {
            "success": view.available,
            "total_vehicles": view.total,
            "brands": view.brands,
            "error": view.error,
        }
