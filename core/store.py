"""
Persistent store port used by the inventory ledger and the order sequencer.

Services receive a Store at construction and never reach for a global
client, so tests can hand them a substitute implementation.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from django.utils import timezone


@dataclass(frozen=True)
class ProductRecord:
    """Snapshot of the stock-relevant columns of a product row."""
    id: int
    name: str
    sku: str
    on_hand: int
    low_stock_threshold: int
    is_active: bool = True


@dataclass(frozen=True)
class MovementEntry:
    """One append-only ledger row."""
    product_id: int
    movement_type: str
    quantity: int
    balance_before: int
    balance_after: int
    ref_type: Optional[str] = None
    ref_id: Optional[str] = None
    note: str = ''
    created_by: str = ''
    unit_cost: Optional[Decimal] = None
    movement_date: datetime = field(default_factory=timezone.now)


@dataclass(frozen=True)
class AtomicDeductResult:
    """
    Outcome of a store-side compare-and-decrement.

    When sufficient is False nothing was written and previous_stock is the
    quantity the store observed under lock.
    """
    previous_stock: int
    new_stock: int
    sufficient: bool = True


class Store(ABC):
    """Read/write operations the core needs from the relational store."""

    @abstractmethod
    def get_product(self, product_id) -> Optional[ProductRecord]:
        """Return the product or None if it does not exist."""

    @abstractmethod
    def update_product(self, product_id, on_hand: int) -> None:
        """Overwrite the on-hand quantity of a product."""

    @abstractmethod
    def insert_movement(self, entry: MovementEntry) -> None:
        """Append a row to the movement ledger."""

    @abstractmethod
    def atomic_deduct(self, product_id, quantity: int, reference_id,
                      actor_id) -> Optional[AtomicDeductResult]:
        """
        Check and decrement stock as one indivisible operation, recording the
        sale movement in the same unit of work.

        Returns None if the product does not exist.
        """

    @abstractmethod
    def max_order_number_for_date(self, date_string: str) -> Optional[str]:
        """Return the highest order number with the YYMMDD prefix, or None."""

    @abstractmethod
    def order_number_exists(self, order_no: str) -> bool:
        """Return True if an order with this number is visible to the caller."""

    @abstractmethod
    def list_low_stock(self, threshold: Optional[int] = None) -> List[ProductRecord]:
        """
        Active products at or below the threshold (or their own threshold
        when None), ordered by on-hand ascending.
        """

    @abstractmethod
    def list_movements(self, product_id=None, movement_type: Optional[str] = None,
                       start: Optional[datetime] = None, end: Optional[datetime] = None,
                       limit: Optional[int] = None,
                       newest_first: bool = True) -> List[MovementEntry]:
        """Movement history filtered by product, type and date range."""
