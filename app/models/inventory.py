"""
Inventory models built from the dealership spreadsheet
"""
import re
from typing import Dict, List, Optional, Sequence

from pydantic import BaseModel, Field

# Spreadsheet header -> Vehicle field
HEADER_MAP: Dict[str, str] = {
    "Referencia_Vehiculo": "reference",
    "Marca": "brand",
    "Modelo": "model",
    "Año": "year",
    "KM": "mileage",
    "Kilometraje": "mileage",
    "Tipo_Vehiculo": "vehicle_type",
    "Precio": "price",
    "Color": "color",
    "Transmision": "transmission",
    "Combustible": "fuel",
    "Cilindraje": "engine",
    "Estado": "condition",
    "Descripcion": "description",
    "Ubicacion": "location",
}

_REQUIRED = ("reference", "brand", "model")


def parse_number(raw: Optional[str]) -> Optional[int]:
    """Digits of a sheet cell as int ("$45.000.000" -> 45000000), None if absent"""
    if not raw:
        return None
    digits = re.sub(r"\D", "", str(raw))
    return int(digits) if digits else None


class Vehicle(BaseModel):
    reference: str
    brand: str
    model: str
    year: Optional[str] = None
    mileage: Optional[str] = None
    vehicle_type: Optional[str] = None
    price: Optional[str] = None
    color: Optional[str] = None
    transmission: Optional[str] = None
    fuel: Optional[str] = None
    engine: Optional[str] = None
    condition: Optional[str] = None
    description: Optional[str] = None
    location: Optional[str] = None
    images: List[str] = Field(default_factory=list)

    @classmethod
    def from_sheet_row(cls, headers: Sequence[str], row: Sequence[str]) -> Optional["Vehicle"]:
        """
        Map one spreadsheet row by header name.

        The first three columns stand in for reference, brand and model when
        those headers are missing. Rows without all three return None.
        """
        values: Dict[str, object] = {}
        for index, header in enumerate(headers):
            if index >= len(row):
                break
            cell = str(row[index]).strip()
            if not cell:
                continue
            header = str(header).strip()
            if header == "Imagenes":
                values["images"] = [img.strip() for img in cell.split(",") if img.strip()]
            elif header in HEADER_MAP:
                values.setdefault(HEADER_MAP[header], cell)

        for index, field in enumerate(_REQUIRED):
            if not values.get(field) and index < len(row) and str(row[index]).strip():
                values[field] = str(row[index]).strip()

        if not all(values.get(field) for field in _REQUIRED):
            return None
        return cls(**values)

    @property
    def year_number(self) -> Optional[int]:
        return parse_number(self.year)

    @property
    def mileage_number(self) -> Optional[int]:
        return parse_number(self.mileage)

    @property
    def price_number(self) -> Optional[int]:
        return parse_number(self.price)

    def describe(self) -> str:
        """One-line summary used in prompts and admin views"""
        parts = [f"{self.brand} {self.model}"]
        if self.year:
            parts.append(self.year)
        if self.mileage:
            parts.append(f"{self.mileage} km")
        if self.transmission:
            parts.append(self.transmission)
        if self.price:
            parts.append(f"Precio: {self.price}")
        return f"{' - '.join(parts)} (Ref: {self.reference})"


class SearchCriteria(BaseModel):
    brand: Optional[str] = None
    model: Optional[str] = None
    vehicle_type: Optional[str] = None
    year_min: Optional[int] = None
    year_max: Optional[int] = None
    max_mileage: Optional[int] = None
    max_price: Optional[int] = None
    color: Optional[str] = None
    transmission: Optional[str] = None
    fuel: Optional[str] = None


class InventoryView(BaseModel):
    """Result of reading the inventory snapshot"""
    available: bool
    vehicles: List[Vehicle] = Field(default_factory=list)
    brands: List[str] = Field(default_factory=list)
    models: List[str] = Field(default_factory=list)
    types: List[str] = Field(default_factory=list)
    colors: List[str] = Field(default_factory=list)
    transmissions: List[str] = Field(default_factory=list)
    last_update: Optional[str] = None
    error: Optional[str] = None

    @property
    def total(self) -> int:
        return len(self.vehicles)
