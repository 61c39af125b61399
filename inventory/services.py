"""
Inventory Service Layer - Stock ledger operations.

Every mutation follows the same shape:
1. Validate the quantity
2. Read the product through the store (ProductNotFoundError if missing)
3. Write the new on-hand value
4. Append a movement row (best-effort: failures are logged, not raised)

Checkout paths must deduct with atomic=True. The non-atomic path reads and
writes in two steps and can oversell when two callers race on one product.
"""
import logging
from datetime import timedelta
from typing import Dict, Iterable, List, Optional

from django.utils import timezone

from core.store import Store, MovementEntry
from .models import InventoryMovement

logger = logging.getLogger(__name__)

MovementType = InventoryMovement.MovementType

REFERENCE_TYPES = {
    MovementType.SALE: 'order',
    MovementType.REFUND: 'refund',
}

REORDER_WINDOW_DAYS = 7


class InventoryError(Exception):
    """Base class for stock ledger failures."""
    pass


class ProductNotFoundError(InventoryError):
    """Raised when a product id does not exist in the store."""
    def __init__(self, product_id):
        self.product_id = product_id
        super().__init__(f"Product not found: {product_id}")


class InsufficientStockError(InventoryError):
    """Raised when there's not enough stock for a deduction."""
    def __init__(self, product_id, requested: int, available: int):
        self.product_id = product_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient stock for product {product_id}: "
            f"requested {requested}, available {available}"
        )


class InvalidQuantityError(InventoryError):
    """Raised when a quantity is negative, zero where forbidden, or not an int."""
    def __init__(self, quantity, reason: str = ''):
        self.quantity = quantity
        self.reason = reason
        message = f"Invalid quantity: {quantity}"
        if reason:
            message = f"{message}. {reason}"
        super().__init__(message)


def _require_int(quantity, reason: str):
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        raise InvalidQuantityError(quantity, reason)


class InventoryLedger:
    """
    Stock checks and mutations over an injected store.

    The ledger holds no state of its own; the store is the only shared
    resource and all concurrency guarantees come from it.
    """

    def __init__(self, store: Store):
        self.store = store

    def _get_product(self, product_id):
        product = self.store.get_product(product_id)
        if product is None:
            raise ProductNotFoundError(product_id)
        return product

    def _record_movement(self, product_id, movement_type, quantity: int,
                         balance_before: int, balance_after: int, ref_id=None,
                         actor_id=None, note: str = '', unit_cost=None) -> None:
        entry = MovementEntry(
            product_id=product_id,
            movement_type=movement_type,
            quantity=quantity,
            balance_before=balance_before,
            balance_after=balance_after,
            ref_type=REFERENCE_TYPES.get(movement_type),
            ref_id=ref_id,
            note=note or '',
            created_by=actor_id,
            unit_cost=unit_cost,
        )
        try:
            self.store.insert_movement(entry)
        except Exception:
            # The stock write already happened and stays the source of truth
            logger.exception(
                f"Failed to record {movement_type} movement for product {product_id} "
                f"({balance_before} -> {balance_after})"
            )

    def check_stock(self, product_id, quantity: int) -> bool:
        """Return True if the product has at least `quantity` on hand."""
        product = self._get_product(product_id)
        if quantity == 0:
            return True
        return product.on_hand >= quantity

    def validate_and_deduct_stock(self, product_id, quantity: int, reference_id,
                                  actor_id, atomic: bool = False) -> Dict:
        """
        Deduct stock for a sale.

        Args:
            product_id: Product to deduct from
            quantity: Units to deduct (0 is a no-op)
            reference_id: Order the sale belongs to
            actor_id: User performing the operation
            atomic: Delegate check-and-decrement to the store as one
                indivisible operation. Required on checkout paths.

        Returns:
            Dict with previous_stock, new_stock and deducted

        Raises:
            InvalidQuantityError: quantity is negative or not an integer
            ProductNotFoundError: product does not exist
            InsufficientStockError: on-hand is lower than quantity
        """
        _require_int(quantity, 'Quantity must be an integer')
        if quantity < 0:
            raise InvalidQuantityError(quantity, 'Quantity must be non-negative')

        if quantity == 0:
            product = self._get_product(product_id)
            return {
                'product_id': product_id,
                'previous_stock': product.on_hand,
                'new_stock': product.on_hand,
                'deducted': 0,
            }

        if atomic:
            result = self.store.atomic_deduct(product_id, quantity, reference_id, actor_id)
            if result is None:
                raise ProductNotFoundError(product_id)
            if not result.sufficient:
                logger.warning(
                    f"Atomic deduction rejected for product {product_id}: "
                    f"requested {quantity}, available {result.previous_stock}"
                )
                raise InsufficientStockError(product_id, quantity, result.previous_stock)
            previous_stock, new_stock = result.previous_stock, result.new_stock
        else:
            product = self._get_product(product_id)
            if product.on_hand < quantity:
                raise InsufficientStockError(product_id, quantity, product.on_hand)

            previous_stock = product.on_hand
            new_stock = previous_stock - quantity
            self.store.update_product(product_id, new_stock)
            self._record_movement(
                product_id, MovementType.SALE, -quantity, previous_stock, new_stock,
                ref_id=reference_id, actor_id=actor_id
            )

        logger.info(
            f"Deducted {quantity} of product {product_id} for order {reference_id}: "
            f"{previous_stock} -> {new_stock}"
        )
        return {
            'product_id': product_id,
            'previous_stock': previous_stock,
            'new_stock': new_stock,
            'deducted': quantity,
        }

    def restore_stock(self, product_id, quantity: int, reference_id, actor_id) -> Dict:
        """Put refunded units back on hand."""
        _require_int(quantity, 'Restore quantity must be an integer')
        if quantity < 0:
            raise InvalidQuantityError(quantity, 'Restore quantity must be non-negative')

        product = self._get_product(product_id)
        if quantity == 0:
            return {
                'product_id': product_id,
                'previous_stock': product.on_hand,
                'new_stock': product.on_hand,
                'restored': 0,
            }

        new_stock = product.on_hand + quantity
        self.store.update_product(product_id, new_stock)
        self._record_movement(
            product_id, MovementType.REFUND, quantity, product.on_hand, new_stock,
            ref_id=reference_id, actor_id=actor_id
        )
        logger.info(
            f"Restored {quantity} of product {product_id} for refund {reference_id}: "
            f"{product.on_hand} -> {new_stock}"
        )
        return {
            'product_id': product_id,
            'previous_stock': product.on_hand,
            'new_stock': new_stock,
            'restored': quantity,
        }

    def adjust_stock(self, product_id, new_quantity: int, reason: str, actor_id) -> Dict:
        """Set on-hand to an absolute value, e.g. after a physical count."""
        _require_int(new_quantity, 'Stock must be an integer')
        if new_quantity < 0:
            raise InvalidQuantityError(new_quantity, 'Stock cannot be negative')

        product = self._get_product(product_id)
        adjustment = new_quantity - product.on_hand

        self.store.update_product(product_id, new_quantity)
        self._record_movement(
            product_id, MovementType.ADJUSTMENT, adjustment, product.on_hand, new_quantity,
            actor_id=actor_id, note=reason
        )
        logger.info(
            f"Adjusted product {product_id} by {adjustment:+d}: "
            f"{product.on_hand} -> {new_quantity} ({reason})"
        )
        return {
            'product_id': product_id,
            'previous_stock': product.on_hand,
            'new_stock': new_quantity,
            'adjustment': adjustment,
        }

    def record_inbound(self, product_id, quantity: int, unit_cost, note: str,
                       actor_id) -> Dict:
        """Receive purchased stock."""
        _require_int(quantity, 'Inbound quantity must be an integer')
        if quantity <= 0:
            raise InvalidQuantityError(quantity, 'Inbound quantity must be positive')

        product = self._get_product(product_id)
        new_stock = product.on_hand + quantity

        self.store.update_product(product_id, new_stock)
        self._record_movement(
            product_id, MovementType.INBOUND, quantity, product.on_hand, new_stock,
            actor_id=actor_id, note=note, unit_cost=unit_cost
        )
        logger.info(
            f"Received {quantity} of product {product_id} at {unit_cost}: "
            f"{product.on_hand} -> {new_stock}"
        )
        return {
            'product_id': product_id,
            'previous_stock': product.on_hand,
            'new_stock': new_stock,
            'added_quantity': quantity,
            'unit_cost': unit_cost,
        }

    def record_disposal(self, product_id, quantity: int, reason: str, actor_id) -> Dict:
        """Write off damaged or expired units."""
        _require_int(quantity, 'Disposal quantity must be an integer')
        if quantity <= 0:
            raise InvalidQuantityError(quantity, 'Disposal quantity must be positive')

        product = self._get_product(product_id)
        if product.on_hand < quantity:
            raise InsufficientStockError(product_id, quantity, product.on_hand)

        new_stock = product.on_hand - quantity
        self.store.update_product(product_id, new_stock)
        self._record_movement(
            product_id, MovementType.DISPOSAL, -quantity, product.on_hand, new_stock,
            actor_id=actor_id, note=reason
        )
        logger.info(
            f"Disposed {quantity} of product {product_id}: "
            f"{product.on_hand} -> {new_stock} ({reason})"
        )
        return {
            'product_id': product_id,
            'previous_stock': product.on_hand,
            'new_stock': new_stock,
            'disposed': quantity,
        }

    def get_low_stock_products(self, threshold: Optional[int] = None) -> List[Dict]:
        """
        List active products at or below their low stock threshold.

        Args:
            threshold: Overrides every product's own threshold when given

        Returns:
            List of dicts ordered by on_hand ascending, each with the
            stock_shortage against the effective threshold
        """
        low_stock = []
        for product in self.store.list_low_stock(threshold):
            limit = threshold if threshold is not None else product.low_stock_threshold
            if not product.is_active or product.on_hand > limit:
                continue
            low_stock.append({
                'id': product.id,
                'name': product.name,
                'sku': product.sku,
                'on_hand': product.on_hand,
                'low_stock_threshold': limit,
                'stock_shortage': limit - product.on_hand,
            })
        low_stock.sort(key=lambda item: item['on_hand'])
        return low_stock

    def check_availability(self, items: Iterable[Dict]) -> Dict:
        """
        Check several order lines at once without raising.

        Missing and inactive products are reported as unavailable.
        """
        details = []
        for item in items:
            product_id = item['product_id']
            requested = item['quantity']
            product = self.store.get_product(product_id)

            if product is None:
                detail = {'available': 0, 'sufficient': False,
                          'product_name': 'Product not found'}
            elif not product.is_active:
                detail = {'available': 0, 'sufficient': False,
                          'product_name': f"{product.name} (Inactive)"}
            else:
                detail = {'available': product.on_hand,
                          'sufficient': product.on_hand >= requested,
                          'product_name': product.name}

            details.append({'product_id': product_id, 'requested': requested, **detail})

        return {
            'available': all(detail['sufficient'] for detail in details),
            'details': details,
        }

    def get_movements(self, product_id=None, movement_type=None, start=None, end=None,
                      limit: int = 50) -> List[MovementEntry]:
        """Movement history, newest first."""
        return self.store.list_movements(
            product_id=product_id,
            movement_type=movement_type,
            start=start,
            end=end,
            limit=limit,
        )

    def reconcile_stock(self, product_id) -> Dict:
        """
        Replay the movement ledger and compare it with the stored on-hand.

        Movement appends are best-effort, so the ledger can fall behind the
        product row. broken_rows lists movements whose balance_before does
        not continue the previous row's balance_after.
        """
        product = self._get_product(product_id)
        movements = self.store.list_movements(product_id=product_id, newest_first=False)

        balance = None
        broken_rows = []
        for movement in movements:
            if balance is not None and movement.balance_before != balance:
                broken_rows.append(movement)
            balance = movement.balance_before + movement.quantity

        consistent = not broken_rows and (
            balance == product.on_hand if balance is not None else product.on_hand == 0
        )
        if not consistent:
            logger.warning(
                f"Ledger for product {product_id} does not reproduce on-hand "
                f"{product.on_hand} (replayed {balance}, {len(broken_rows)} broken rows)"
            )
        return {
            'product_id': product_id,
            'on_hand': product.on_hand,
            'replayed_balance': balance,
            'consistent': consistent,
            'broken_rows': broken_rows,
        }

    def forecast_stock_depletion(self, product_id, days: int = 30) -> Dict:
        """Estimate when a product runs out from its recent sales."""
        if days <= 0:
            raise InvalidQuantityError(days, 'Forecast window must be positive')

        product = self._get_product(product_id)
        now = timezone.now()
        sales = self.store.list_movements(
            product_id=product_id,
            movement_type=MovementType.SALE,
            start=now - timedelta(days=days),
        )

        total_usage = sum(abs(movement.quantity) for movement in sales)
        average_daily_usage = total_usage / days

        if average_daily_usage > 0:
            days_until_depletion = int(product.on_hand // average_daily_usage)
            depletion_date = now + timedelta(days=days_until_depletion)
        else:
            days_until_depletion = -1
            depletion_date = None

        needs_reorder = product.on_hand <= product.low_stock_threshold or (
            0 <= days_until_depletion <= REORDER_WINDOW_DAYS
        )
        return {
            'current_stock': product.on_hand,
            'average_daily_usage': average_daily_usage,
            'days_until_depletion': days_until_depletion,
            'depletion_date': depletion_date,
            'needs_reorder': needs_reorder,
        }
