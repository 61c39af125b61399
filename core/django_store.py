"""
Django ORM implementation of the store port.
"""
import logging
from typing import List, Optional

from django.db import transaction
from django.db.models import F
from django.utils import timezone

from inventory.models import Product, InventoryMovement
from orders.models import Order
from .store import Store, ProductRecord, MovementEntry, AtomicDeductResult

logger = logging.getLogger(__name__)

PRODUCT_FIELDS = ('id', 'name', 'sku', 'on_hand', 'low_stock_threshold', 'is_active')


def _to_record(row: dict) -> ProductRecord:
    return ProductRecord(
        id=row['id'],
        name=row['name'],
        sku=row['sku'] or '',
        on_hand=row['on_hand'],
        low_stock_threshold=row['low_stock_threshold'],
        is_active=row['is_active'],
    )


def _to_entry(movement: InventoryMovement) -> MovementEntry:
    return MovementEntry(
        product_id=movement.product_id,
        movement_type=movement.movement_type,
        quantity=movement.quantity,
        balance_before=movement.balance_before,
        balance_after=movement.balance_after,
        ref_type=movement.ref_type or None,
        ref_id=movement.ref_id or None,
        note=movement.note,
        created_by=movement.created_by,
        unit_cost=movement.unit_cost,
        movement_date=movement.movement_date,
    )


class DjangoStore(Store):
    """Store backed by the inventory and orders tables."""

    def get_product(self, product_id) -> Optional[ProductRecord]:
        row = Product.objects.filter(pk=product_id).values(*PRODUCT_FIELDS).first()
        return _to_record(row) if row else None

    def update_product(self, product_id, on_hand: int) -> None:
        updated = Product.objects.filter(pk=product_id).update(
            on_hand=on_hand,
            updated_at=timezone.now()
        )
        if not updated:
            raise Product.DoesNotExist(f"Product {product_id} vanished during update")

    def insert_movement(self, entry: MovementEntry) -> None:
        # Savepoint so a failed append leaves the caller's transaction usable
        with transaction.atomic():
            InventoryMovement.objects.create(
                product_id=entry.product_id,
                movement_type=entry.movement_type,
                quantity=entry.quantity,
                balance_before=entry.balance_before,
                balance_after=entry.balance_after,
                unit_cost=entry.unit_cost,
                ref_type=entry.ref_type or '',
                ref_id='' if entry.ref_id is None else str(entry.ref_id),
                note=entry.note or '',
                created_by='' if entry.created_by is None else str(entry.created_by),
                movement_date=entry.movement_date,
            )

    def atomic_deduct(self, product_id, quantity: int, reference_id,
                      actor_id) -> Optional[AtomicDeductResult]:
        """
        Lock the product row, check and decrement, and write the sale
        movement, all inside one transaction.
        """
        with transaction.atomic():
            try:
                product = Product.objects.select_for_update().only('id', 'on_hand').get(
                    pk=product_id
                )
            except Product.DoesNotExist:
                return None

            previous = product.on_hand
            if previous < quantity:
                return AtomicDeductResult(previous, previous, sufficient=False)

            Product.objects.filter(pk=product_id).update(
                on_hand=F('on_hand') - quantity,
                updated_at=timezone.now()
            )
            new_stock = previous - quantity
            self.insert_movement(MovementEntry(
                product_id=product_id,
                movement_type=InventoryMovement.MovementType.SALE,
                quantity=-quantity,
                balance_before=previous,
                balance_after=new_stock,
                ref_type='order',
                ref_id=reference_id,
                created_by=actor_id,
            ))

        logger.debug(
            f"Atomic deduction of {quantity} for product {product_id}: "
            f"{previous} -> {new_stock}"
        )
        return AtomicDeductResult(previous, new_stock)

    def max_order_number_for_date(self, date_string: str) -> Optional[str]:
        return (
            Order.objects.filter(order_no__startswith=f"{date_string}-")
            .order_by('-order_no')
            .values_list('order_no', flat=True)
            .first()
        )

    def order_number_exists(self, order_no: str) -> bool:
        return Order.objects.filter(order_no=order_no).exists()

    def list_low_stock(self, threshold: Optional[int] = None) -> List[ProductRecord]:
        queryset = Product.objects.filter(is_active=True)
        if threshold is not None:
            queryset = queryset.filter(on_hand__lte=threshold)
        else:
            queryset = queryset.filter(on_hand__lte=F('low_stock_threshold'))
        rows = queryset.order_by('on_hand', 'id').values(*PRODUCT_FIELDS)
        return [_to_record(row) for row in rows]

    def list_movements(self, product_id=None, movement_type=None, start=None, end=None,
                       limit=None, newest_first=True) -> List[MovementEntry]:
        queryset = InventoryMovement.objects.all()
        if product_id is not None:
            queryset = queryset.filter(product_id=product_id)
        if movement_type:
            queryset = queryset.filter(movement_type=movement_type)
        if start is not None:
            queryset = queryset.filter(movement_date__gte=start)
        if end is not None:
            queryset = queryset.filter(movement_date__lte=end)

        if newest_first:
            queryset = queryset.order_by('-movement_date', '-id')
        else:
            queryset = queryset.order_by('movement_date', 'id')
        if limit is not None:
            queryset = queryset[:limit]
        return [_to_entry(movement) for movement in queryset]
