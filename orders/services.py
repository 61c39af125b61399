"""
Order Service Layer - Order creation and refund workflows.

create_order:
1. Validate items and the customer's PCCC (OrderValidationError on failure)
2. Under the date-prefix lock, mint an order number and insert the order
   in PENDING status; the lock is held until the transaction ends
3. Reject the order if any product is missing or inactive
4. Deduct stock for ALL items atomically inside a savepoint
5. If ANY deduction fails: roll back the savepoint, mark REJECTED
6. If ALL pass: mark CONFIRMED
"""
import logging
from datetime import date
from typing import List, Dict, Tuple, Optional

from django.db import transaction

from core.django_store import DjangoStore
from core.locking import date_prefix_lock
from inventory.models import Product
from inventory.services import (
    InventoryLedger,
    InsufficientStockError,
    ProductNotFoundError,
)
from . import clearance
from .models import Order, OrderItem
from .sequencing import OrderSequencer, format_order_date, today

logger = logging.getLogger(__name__)


class OrderValidationError(Exception):
    """Raised when order validation fails."""
    def __init__(self, message: str, errors: Optional[List[str]] = None):
        self.errors = errors or [message]
        super().__init__(message)


def validate_order_items(items: List[Dict]) -> None:
    """
    Validate order items structure.

    Args:
        items: List of dicts with 'product_id' and 'quantity'

    Raises:
        OrderValidationError: If validation fails
    """
    if not items:
        raise OrderValidationError("Order must contain at least one item")

    seen_products = set()
    for idx, item in enumerate(items):
        if 'product_id' not in item:
            raise OrderValidationError(f"Item {idx}: missing 'product_id'")
        if 'quantity' not in item:
            raise OrderValidationError(f"Item {idx}: missing 'quantity'")

        product_id = item['product_id']
        quantity = item['quantity']

        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
            raise OrderValidationError(f"Item {idx}: quantity must be a positive integer")

        if product_id in seen_products:
            raise OrderValidationError(f"Item {idx}: duplicate product_id {product_id}")
        seen_products.add(product_id)


def create_order(customer_pccc: str, items: List[Dict], actor_id,
                 order_date: Optional[date] = None) -> Tuple[Order, Optional[str]]:
    """
    Create an order, reserving stock with atomic deductions.

    Args:
        customer_pccc: Customer's personal customs clearance code
        items: List of dicts with 'product_id' and 'quantity'
        actor_id: User creating the order
        order_date: Day used for the order number (defaults to today)

    Returns:
        Tuple of (Order object, error message or None)

    Raises:
        OrderValidationError: If items or the PCCC are invalid
        SequenceError: If no order number could be assigned
    """
    validate_order_items(items)

    pccc = clearance.validate(customer_pccc)
    if not pccc.is_valid:
        raise OrderValidationError(pccc.errors[0], pccc.errors)

    store = DjangoStore()
    ledger = InventoryLedger(store)
    sequencer = OrderSequencer(store)
    order_date = order_date or today()

    # The new order row stays invisible to other requests until commit, so
    # the date-prefix lock has to outlive the transaction
    with date_prefix_lock(format_order_date(order_date)), transaction.atomic():
        def insert(order_no):
            Order.objects.create(
                order_no=order_no,
                customer_pccc=pccc.normalized,
                status=Order.Status.PENDING,
                created_by=str(actor_id),
            )

        order_no = sequencer.generate_order_number(
            order_date, with_retry=True, insert=insert, lock=False
        )
        order = Order.objects.get(order_no=order_no)
        logger.info(f"Created order {order_no} with {len(items)} items")

        product_ids = [item['product_id'] for item in items]
        available_ids = set(
            Product.objects.filter(id__in=product_ids, is_active=True)
            .values_list('id', flat=True)
        )
        unavailable = sorted(set(product_ids) - available_ids)
        if unavailable:
            return _reject(order, f"Products not found or inactive: {unavailable}")

        # Stable lock order prevents deadlocks between concurrent checkouts
        sorted_items = sorted(items, key=lambda item: item['product_id'])
        try:
            with transaction.atomic():
                for item in sorted_items:
                    ledger.validate_and_deduct_stock(
                        item['product_id'],
                        item['quantity'],
                        reference_id=order_no,
                        actor_id=actor_id,
                        atomic=True,
                    )
                OrderItem.objects.bulk_create([
                    OrderItem(order=order, product_id=item['product_id'],
                              quantity=item['quantity'])
                    for item in sorted_items
                ])
        except (InsufficientStockError, ProductNotFoundError) as e:
            return _reject(order, str(e))

        order.status = Order.Status.CONFIRMED
        order.save(update_fields=['status', 'updated_at'])
        logger.info(f"Order {order_no} confirmed")
        return order, None


def _reject(order: Order, reason: str) -> Tuple[Order, str]:
    order.status = Order.Status.REJECTED
    order.rejection_reason = reason
    order.save(update_fields=['status', 'rejection_reason', 'updated_at'])
    logger.warning(f"Order {order.order_no} rejected: {reason}")
    return order, reason


def refund_order(order_no: str, actor_id) -> Order:
    """
    Refund a confirmed order and put its stock back on hand.

    Raises:
        OrderValidationError: Order missing or not CONFIRMED
    """
    ledger = InventoryLedger(DjangoStore())

    with transaction.atomic():
        try:
            order = Order.objects.select_for_update().get(order_no=order_no)
        except Order.DoesNotExist:
            raise OrderValidationError(f"Order {order_no} not found")

        if order.status != Order.Status.CONFIRMED:
            raise OrderValidationError(
                f"Order {order_no} cannot be refunded (status: {order.status})"
            )

        items = list(order.items.all())
        # Hold the product rows so a concurrent atomic deduction cannot
        # interleave with the read-then-write restore
        list(
            Product.objects.select_for_update()
            .filter(pk__in=[item.product_id for item in items])
            .order_by('pk')
        )
        for item in items:
            ledger.restore_stock(
                item.product_id,
                item.quantity,
                reference_id=order_no,
                actor_id=actor_id,
            )

        order.status = Order.Status.REFUNDED
        order.save(update_fields=['status', 'updated_at'])

    logger.info(f"Order {order_no} refunded")
    return order


def get_order_summary(order_no: str) -> Dict:
    """
    Get detailed order summary with optimized queries.
    """
    order = Order.objects.prefetch_related('items__product').get(order_no=order_no)

    return {
        'order_no': order.order_no,
        'status': order.status,
        'customer_pccc': clearance.mask(order.customer_pccc),
        'items': [
            {
                'product_id': item.product.id,
                'product_name': item.product.name,
                'sku': item.product.sku,
                'quantity': item.quantity,
            }
            for item in order.items.all()
        ],
        'rejection_reason': order.rejection_reason or None,
        'created_at': order.created_at.isoformat(),
    }
