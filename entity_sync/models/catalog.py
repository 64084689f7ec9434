"""Catalog items — categories as a closed enum with one payload variant each."""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, Field


class Category(str, Enum):
    SHEET = "sheet"
    HANDLE = "handle"
    HARDWARE = "hardware"
    ACCESSORY = "accessory"
    EDGING_TAPE = "edging_tape"


class _Details(BaseModel, ABC):
    @abstractmethod
    def searchable(self) -> List[Optional[str]]:
        """Descriptive parts, in label order."""

    def label(self) -> str:
        parts = [p for p in self.searchable() if p]
        return " ".join(parts)


class SheetDetails(_Details):
    category: Literal["sheet"] = "sheet"
    brand: Optional[str] = None
    color: Optional[str] = None
    finish: Optional[str] = None

    def searchable(self) -> List[Optional[str]]:
        return [self.brand, self.color]


class HandleDetails(_Details):
    category: Literal["handle"] = "handle"
    brand: Optional[str] = None
    color: Optional[str] = None
    type: Optional[str] = None

    def searchable(self) -> List[Optional[str]]:
        return [self.brand, self.color, self.type]


class HardwareDetails(_Details):
    category: Literal["hardware"] = "hardware"
    name: Optional[str] = None
    brand: Optional[str] = None
    type: Optional[str] = None

    def searchable(self) -> List[Optional[str]]:
        return [self.name, self.brand, self.type]


class AccessoryDetails(_Details):
    category: Literal["accessory"] = "accessory"
    name: Optional[str] = None

    def searchable(self) -> List[Optional[str]]:
        return [self.name]


class EdgingTapeDetails(_Details):
    category: Literal["edging_tape"] = "edging_tape"
    brand: Optional[str] = None
    color: Optional[str] = None
    finish: Optional[str] = None

    def searchable(self) -> List[Optional[str]]:
        return [self.brand, self.color, self.finish]


ItemDetails = Annotated[
    Union[SheetDetails, HandleDetails, HardwareDetails, AccessoryDetails, EdgingTapeDetails],
    Field(discriminator="category"),
]


class CatalogItem(BaseModel):
    """An inventory item a line item can point at."""

    id: str
    description: Optional[str] = None
    details: ItemDetails

    @property
    def category(self) -> Category:
        return Category(self.details.category)

    def label(self) -> str:
        return self.details.label() or self.description or self.id

    def matches(self, term: str) -> bool:
        """Case-insensitive search over the description and variant fields."""
        term = term.strip().lower()
        if not term:
            return False
        haystack = [self.description] + self.details.searchable()
        return any(term in value.lower() for value in haystack if value)
