"""
Tests for the stock ledger and SKU generation.

Test Cases:
1. Stock checks and deductions in both execution modes
2. Restore, adjust, inbound and disposal bookkeeping
3. Low stock listing and the Celery report
4. Best-effort movement logging and ledger reconciliation
5. SKU generation, validation and parsing
"""
from decimal import Decimal
from io import StringIO
from unittest.mock import patch

from django.contrib import admin
from django.core.management import call_command
from django.db import DatabaseError
from django.test import TestCase, SimpleTestCase

from core.django_store import DjangoStore
from inventory.admin import InventoryMovementAdmin
from inventory.models import Category, Product, InventoryMovement
from inventory.services import (
    InventoryLedger,
    InsufficientStockError,
    InvalidQuantityError,
    ProductNotFoundError,
)
from inventory.sku import generate_sku, is_valid_sku, parse_sku
from inventory.tasks import report_low_stock

MISSING_PRODUCT_ID = 99999


class InventoryLedgerTestCase(TestCase):
    """Test cases for stock mutations."""

    def setUp(self):
        """Set up test data."""
        self.category = Category.objects.create(name='Electronics', code='ELEC')
        self.product = Product.objects.create(
            name='Wireless Earbuds',
            sku='ELEC-Earbuds-White-Acme-AB12C',
            category=self.category,
            on_hand=10,
            low_stock_threshold=5
        )
        self.store = DjangoStore()
        self.ledger = InventoryLedger(self.store)

    def _on_hand(self):
        self.product.refresh_from_db()
        return self.product.on_hand

    def test_check_stock(self):
        self.assertTrue(self.ledger.check_stock(self.product.id, 10))
        self.assertFalse(self.ledger.check_stock(self.product.id, 11))
        self.assertTrue(self.ledger.check_stock(self.product.id, 0))

    def test_check_stock_unknown_product(self):
        with self.assertRaises(ProductNotFoundError) as context:
            self.ledger.check_stock(MISSING_PRODUCT_ID, 1)

        self.assertEqual(context.exception.product_id, MISSING_PRODUCT_ID)

    def test_deduct_records_sale_movement(self):
        """
        Test: Deduction writes the new stock and a sale movement.

        Given: 10 units on hand
        When: Deducting 4 units for order 240823-001
        Then: 6 units remain and the ledger holds one sale row
        """
        result = self.ledger.validate_and_deduct_stock(
            self.product.id, 4, reference_id='240823-001', actor_id='staff-1'
        )

        self.assertEqual(result['previous_stock'], 10)
        self.assertEqual(result['new_stock'], 6)
        self.assertEqual(result['deducted'], 4)
        self.assertEqual(self._on_hand(), 6)

        movement = InventoryMovement.objects.get(product=self.product)
        self.assertEqual(movement.movement_type, InventoryMovement.MovementType.SALE)
        self.assertEqual(movement.quantity, -4)
        self.assertEqual(movement.balance_before, 10)
        self.assertEqual(movement.balance_after, 6)
        self.assertEqual(movement.ref_type, 'order')
        self.assertEqual(movement.ref_id, '240823-001')
        self.assertEqual(movement.created_by, 'staff-1')

    def test_deduct_more_than_on_hand_leaves_stock_unchanged(self):
        for atomic in (False, True):
            with self.subTest(atomic=atomic):
                with self.assertRaises(InsufficientStockError) as context:
                    self.ledger.validate_and_deduct_stock(
                        self.product.id, 11, 'ORDER', 'staff-1', atomic=atomic
                    )

                self.assertEqual(context.exception.requested, 11)
                self.assertEqual(context.exception.available, 10)
                self.assertEqual(self._on_hand(), 10)

        self.assertFalse(InventoryMovement.objects.exists())

    def test_deduct_zero_is_noop(self):
        result = self.ledger.validate_and_deduct_stock(self.product.id, 0, 'ORDER', 'staff-1')

        self.assertEqual(result['previous_stock'], result['new_stock'])
        self.assertEqual(result['deducted'], 0)
        self.assertFalse(InventoryMovement.objects.exists())

    def test_deduct_negative_quantity(self):
        with self.assertRaises(InvalidQuantityError):
            self.ledger.validate_and_deduct_stock(self.product.id, -1, 'ORDER', 'staff-1')

    def test_deduct_non_integer_quantity(self):
        with self.assertRaises(InvalidQuantityError):
            self.ledger.validate_and_deduct_stock(self.product.id, 1.5, 'ORDER', 'staff-1')

    def test_atomic_deduct(self):
        result = self.ledger.validate_and_deduct_stock(
            self.product.id, 10, '240823-002', 'staff-1', atomic=True
        )

        self.assertEqual(result, {
            'product_id': self.product.id,
            'previous_stock': 10,
            'new_stock': 0,
            'deducted': 10,
        })
        self.assertEqual(self._on_hand(), 0)
        self.assertEqual(InventoryMovement.objects.filter(product=self.product).count(), 1)

    def test_atomic_deduct_unknown_product(self):
        with self.assertRaises(ProductNotFoundError):
            self.ledger.validate_and_deduct_stock(
                MISSING_PRODUCT_ID, 1, 'ORDER', 'staff-1', atomic=True
            )

    def test_deduct_then_restore_round_trip(self):
        for quantity in (1, 7, 10):
            with self.subTest(quantity=quantity):
                self.ledger.validate_and_deduct_stock(self.product.id, quantity, 'ORDER', 'staff-1')
                self.ledger.restore_stock(self.product.id, quantity, 'REFUND', 'staff-1')
                self.assertEqual(self._on_hand(), 10)

    def test_restore_records_refund_movement(self):
        result = self.ledger.restore_stock(self.product.id, 3, 'RF-1', 'staff-2')

        self.assertEqual(result['previous_stock'], 10)
        self.assertEqual(result['new_stock'], 13)
        self.assertEqual(result['restored'], 3)

        movement = InventoryMovement.objects.get(product=self.product)
        self.assertEqual(movement.movement_type, InventoryMovement.MovementType.REFUND)
        self.assertEqual(movement.ref_type, 'refund')
        self.assertEqual(movement.ref_id, 'RF-1')

    def test_restore_zero_and_negative(self):
        result = self.ledger.restore_stock(self.product.id, 0, 'RF-1', 'staff-2')
        self.assertEqual(result['previous_stock'], result['new_stock'])

        with self.assertRaises(InvalidQuantityError):
            self.ledger.restore_stock(self.product.id, -2, 'RF-1', 'staff-2')

    def test_adjust_stock(self):
        for new_quantity in (25, 3, 0):
            with self.subTest(new_quantity=new_quantity):
                previous = self._on_hand()
                result = self.ledger.adjust_stock(
                    self.product.id, new_quantity, 'Cycle count', 'staff-3'
                )
                self.assertEqual(self._on_hand(), new_quantity)
                self.assertEqual(result['adjustment'], new_quantity - previous)

        movement = InventoryMovement.objects.filter(product=self.product).last()
        self.assertEqual(movement.movement_type, InventoryMovement.MovementType.ADJUSTMENT)
        self.assertEqual(movement.note, 'Cycle count')
        self.assertEqual(movement.ref_type, '')

    def test_adjust_stock_negative(self):
        with self.assertRaises(InvalidQuantityError):
            self.ledger.adjust_stock(self.product.id, -1, 'Typo', 'staff-3')
        self.assertEqual(self._on_hand(), 10)

    def test_record_inbound(self):
        result = self.ledger.record_inbound(
            self.product.id, 20, Decimal('35.50'), 'PO-17 container', 'staff-4'
        )

        self.assertEqual(result['previous_stock'], 10)
        self.assertEqual(result['new_stock'], 30)
        self.assertEqual(result['added_quantity'], 20)
        self.assertEqual(result['unit_cost'], Decimal('35.50'))

        movement = InventoryMovement.objects.get(product=self.product)
        self.assertEqual(movement.movement_type, InventoryMovement.MovementType.INBOUND)
        self.assertEqual(movement.unit_cost, Decimal('35.50'))
        self.assertEqual(movement.note, 'PO-17 container')

    def test_record_inbound_requires_positive_quantity(self):
        for quantity in (0, -5):
            with self.subTest(quantity=quantity):
                with self.assertRaises(InvalidQuantityError):
                    self.ledger.record_inbound(self.product.id, quantity, Decimal('1.00'), '', 'staff-4')

    def test_record_disposal(self):
        result = self.ledger.record_disposal(self.product.id, 2, 'Water damage', 'staff-5')

        self.assertEqual(result['new_stock'], 8)
        self.assertEqual(result['disposed'], 2)
        movement = InventoryMovement.objects.get(product=self.product)
        self.assertEqual(movement.movement_type, InventoryMovement.MovementType.DISPOSAL)
        self.assertEqual(movement.quantity, -2)

        with self.assertRaises(InsufficientStockError):
            self.ledger.record_disposal(self.product.id, 9, 'Water damage', 'staff-5')
        with self.assertRaises(InvalidQuantityError):
            self.ledger.record_disposal(self.product.id, 0, 'Nothing', 'staff-5')

    def test_mutations_on_unknown_product(self):
        with self.assertRaises(ProductNotFoundError):
            self.ledger.validate_and_deduct_stock(MISSING_PRODUCT_ID, 1, 'ORDER', 'staff-1')
        with self.assertRaises(ProductNotFoundError):
            self.ledger.restore_stock(MISSING_PRODUCT_ID, 1, 'RF-1', 'staff-1')
        with self.assertRaises(ProductNotFoundError):
            self.ledger.adjust_stock(MISSING_PRODUCT_ID, 1, 'Count', 'staff-1')
        with self.assertRaises(ProductNotFoundError):
            self.ledger.record_inbound(MISSING_PRODUCT_ID, 1, Decimal('1.00'), '', 'staff-1')

    def test_movement_balances_are_consistent(self):
        self.ledger.record_inbound(self.product.id, 5, Decimal('2.00'), '', 'staff-1')
        self.ledger.validate_and_deduct_stock(self.product.id, 8, 'ORDER', 'staff-1')
        self.ledger.adjust_stock(self.product.id, 4, 'Count', 'staff-1')
        self.ledger.restore_stock(self.product.id, 1, 'RF-1', 'staff-1')

        for movement in InventoryMovement.objects.all():
            self.assertEqual(movement.balance_after, movement.balance_before + movement.quantity)

    def test_movement_failure_does_not_fail_mutation(self):
        """
        Test: A ledger write failure is logged and swallowed.

        Given: The movement table rejects inserts
        When: Deducting stock
        Then: The deduction still succeeds and an error is logged
        """
        with patch.object(self.store, 'insert_movement', side_effect=DatabaseError('ledger down')):
            with self.assertLogs('inventory.services', level='ERROR'):
                result = self.ledger.validate_and_deduct_stock(self.product.id, 3, 'ORDER', 'staff-1')

        self.assertEqual(result['new_stock'], 7)
        self.assertEqual(self._on_hand(), 7)
        self.assertFalse(InventoryMovement.objects.exists())


class LedgerQueryTestCase(TestCase):
    """Test cases for low stock listing, history and reconciliation."""

    def setUp(self):
        self.ledger = InventoryLedger(DjangoStore())
        self.low = Product.objects.create(name='Vitamin D', on_hand=3, low_stock_threshold=5)
        self.lowest = Product.objects.create(name='Omega 3', on_hand=1, low_stock_threshold=5)
        self.healthy = Product.objects.create(name='Collagen', on_hand=40, low_stock_threshold=5)
        self.inactive = Product.objects.create(
            name='Discontinued Serum', on_hand=0, low_stock_threshold=5, is_active=False
        )

    def test_low_stock_products(self):
        products = self.ledger.get_low_stock_products()

        self.assertEqual([p['id'] for p in products], [self.lowest.id, self.low.id])
        self.assertEqual([p['on_hand'] for p in products], [1, 3])
        self.assertEqual([p['stock_shortage'] for p in products], [4, 2])

    def test_low_stock_threshold_override(self):
        products = self.ledger.get_low_stock_products(threshold=2)

        self.assertEqual(len(products), 1)
        self.assertEqual(products[0]['id'], self.lowest.id)
        self.assertEqual(products[0]['low_stock_threshold'], 2)
        self.assertEqual(products[0]['stock_shortage'], 1)

        products = self.ledger.get_low_stock_products(threshold=50)
        self.assertEqual([p['on_hand'] for p in products], [1, 3, 40])

    def test_check_availability(self):
        result = self.ledger.check_availability([
            {'product_id': self.healthy.id, 'quantity': 10},
            {'product_id': self.low.id, 'quantity': 4},
            {'product_id': self.inactive.id, 'quantity': 1},
            {'product_id': MISSING_PRODUCT_ID, 'quantity': 1},
        ])

        self.assertFalse(result['available'])
        sufficient = [detail['sufficient'] for detail in result['details']]
        self.assertEqual(sufficient, [True, False, False, False])
        self.assertEqual(result['details'][1]['available'], 3)
        self.assertEqual(result['details'][3]['product_name'], 'Product not found')

    def test_get_movements_newest_first(self):
        self.ledger.record_inbound(self.healthy.id, 10, Decimal('5.00'), 'PO-1', 'staff-1')
        self.ledger.validate_and_deduct_stock(self.healthy.id, 2, 'ORDER-1', 'staff-1')
        self.ledger.validate_and_deduct_stock(self.low.id, 1, 'ORDER-2', 'staff-1')

        movements = self.ledger.get_movements(product_id=self.healthy.id)
        self.assertEqual([m.movement_type for m in movements], ['sale', 'inbound'])

        sales = self.ledger.get_movements(movement_type='sale')
        self.assertEqual(len(sales), 2)

        self.assertEqual(len(self.ledger.get_movements(limit=1)), 1)

    def test_reconcile_consistent_ledger(self):
        product = Product.objects.create(name='Air Fryer', on_hand=0, low_stock_threshold=2)
        self.ledger.record_inbound(product.id, 12, Decimal('40.00'), 'PO-2', 'staff-1')
        self.ledger.validate_and_deduct_stock(product.id, 5, 'ORDER-3', 'staff-1', atomic=True)
        self.ledger.restore_stock(product.id, 2, 'RF-3', 'staff-1')

        result = self.ledger.reconcile_stock(product.id)

        self.assertTrue(result['consistent'])
        self.assertEqual(result['on_hand'], 9)
        self.assertEqual(result['replayed_balance'], 9)
        self.assertEqual(result['broken_rows'], [])

    def test_reconcile_detects_lost_movement(self):
        store = DjangoStore()
        ledger = InventoryLedger(store)
        product = Product.objects.create(name='Rice Cooker', on_hand=0, low_stock_threshold=2)
        ledger.record_inbound(product.id, 10, Decimal('60.00'), 'PO-3', 'staff-1')

        with patch.object(store, 'insert_movement', side_effect=DatabaseError('ledger down')):
            with self.assertLogs('inventory.services', level='ERROR'):
                ledger.validate_and_deduct_stock(product.id, 3, 'ORDER-4', 'staff-1')

        ledger.validate_and_deduct_stock(product.id, 2, 'ORDER-5', 'staff-1')

        with self.assertLogs('inventory.services', level='WARNING'):
            result = ledger.reconcile_stock(product.id)

        self.assertFalse(result['consistent'])
        self.assertEqual(result['on_hand'], 5)
        self.assertEqual(len(result['broken_rows']), 1)
        self.assertEqual(result['broken_rows'][0].balance_before, 7)

    def test_forecast_stock_depletion(self):
        self.ledger.record_inbound(self.healthy.id, 60, Decimal('9.00'), 'PO-4', 'staff-1')
        self.ledger.validate_and_deduct_stock(self.healthy.id, 30, 'ORDER-6', 'staff-1')

        forecast = self.ledger.forecast_stock_depletion(self.healthy.id, days=30)

        self.assertEqual(forecast['current_stock'], 70)
        self.assertEqual(forecast['average_daily_usage'], 1.0)
        self.assertEqual(forecast['days_until_depletion'], 70)
        self.assertIsNotNone(forecast['depletion_date'])
        self.assertFalse(forecast['needs_reorder'])

    def test_forecast_without_sales(self):
        forecast = self.ledger.forecast_stock_depletion(self.low.id)

        self.assertEqual(forecast['average_daily_usage'], 0)
        self.assertEqual(forecast['days_until_depletion'], -1)
        self.assertIsNone(forecast['depletion_date'])
        self.assertTrue(forecast['needs_reorder'])

    def test_report_low_stock_task(self):
        result = report_low_stock()

        self.assertEqual(result['count'], 2)
        self.assertEqual(
            [p['id'] for p in result['products']],
            [self.lowest.id, self.low.id]
        )


class InventoryMovementModelTestCase(TestCase):
    """Test cases for the append-only ledger row."""

    def setUp(self):
        self.product = Product.objects.create(name='Power Bank', on_hand=5)
        self.movement = InventoryMovement.objects.create(
            product=self.product,
            movement_type=InventoryMovement.MovementType.INBOUND,
            quantity=5,
            balance_before=0,
            balance_after=5,
        )

    def test_movement_cannot_be_updated(self):
        self.movement.note = 'Rewritten'
        with self.assertRaises(ValueError):
            self.movement.save()

    def test_movement_cannot_be_deleted(self):
        with self.assertRaises(ValueError):
            self.movement.delete()
        self.assertTrue(InventoryMovement.objects.filter(pk=self.movement.pk).exists())

    def test_admin_is_read_only(self):
        model_admin = InventoryMovementAdmin(InventoryMovement, admin.site)

        self.assertFalse(model_admin.has_add_permission(None))
        self.assertFalse(model_admin.has_change_permission(None, self.movement))
        self.assertFalse(model_admin.has_delete_permission(None, self.movement))


class SeedDataCommandTestCase(TestCase):
    """Test cases for the seed_data management command."""

    def test_seed_data(self):
        call_command('seed_data', products=8, stdout=StringIO())

        self.assertEqual(Product.objects.count(), 8)
        ledger = InventoryLedger(DjangoStore())
        for product in Product.objects.all():
            self.assertTrue(is_valid_sku(product.sku))
            self.assertTrue(ledger.reconcile_stock(product.id)['consistent'])

    def test_seed_data_clear(self):
        call_command('seed_data', products=3, stdout=StringIO())
        call_command('seed_data', '--clear', products=2, stdout=StringIO())

        self.assertEqual(Product.objects.count(), 2)


class SKUTestCase(SimpleTestCase):
    """Test cases for SKU generation."""

    def test_generate_sku_structure(self):
        sku = generate_sku(category='ELEC', model='iPhone15', color='Black', brand='Apple')

        parts = sku.split('-')
        self.assertEqual(len(parts), 5)
        self.assertEqual(parts[:4], ['ELEC', 'iPhone15', 'Black', 'Apple'])
        self.assertRegex(parts[4], r'^[A-Z0-9]{5}$')
        self.assertTrue(is_valid_sku(sku))

    def test_identical_input_yields_different_skus(self):
        first = generate_sku('ELEC', 'iPhone15', 'Black', 'Apple')
        second = generate_sku('ELEC', 'iPhone15', 'Black', 'Apple')

        self.assertNotEqual(first, second)
        self.assertEqual(first.split('-')[:4], second.split('-')[:4])

    def test_generate_sku_sanitizes_segments(self):
        sku = generate_sku('전자 제품!', 'Galaxy S24 Ultra', 'Titanium-Gray', 'Sam$ung')

        parts = sku.split('-')
        self.assertEqual(parts[:4], ['전자제품', 'GalaxyS24Ultra', 'TitaniumGray', 'Samung'])

    def test_generate_sku_truncates_segments(self):
        sku = generate_sku('C' * 40, 'M' * 40, 'K' * 40, 'B' * 40)

        category, model, color, brand, _ = sku.split('-')
        self.assertEqual(len(category), 20)
        self.assertEqual(len(model), 30)
        self.assertEqual(len(color), 20)
        self.assertEqual(len(brand), 20)

    def test_generate_sku_optional_fields(self):
        sku = generate_sku('BEAU', 'SunCream')

        self.assertTrue(is_valid_sku(sku))
        parsed = parse_sku(sku)
        self.assertEqual(parsed['category'], 'BEAU')
        self.assertEqual(parsed['model'], 'SunCream')
        self.assertIsNone(parsed['color'])
        self.assertIsNone(parsed['brand'])

    def test_is_valid_sku(self):
        self.assertTrue(is_valid_sku('ELEC-iPhone15-Black-Apple-A1B2C'))
        self.assertFalse(is_valid_sku(''))
        self.assertFalse(is_valid_sku(None))
        self.assertFalse(is_valid_sku('ELEC-iPhone15-Black-A1B2C'))
        self.assertFalse(is_valid_sku('-iPhone15-Black-Apple-A1B2C'))
        self.assertFalse(is_valid_sku('ELEC--Black-Apple-A1B2C'))
        self.assertFalse(is_valid_sku('ELEC-iPhone15-Black-Apple-a1b2c'))
        self.assertFalse(is_valid_sku('ELEC-iPhone15-Black-Apple-A1B2'))

    def test_parse_sku(self):
        self.assertEqual(parse_sku('ELEC-iPhone15-Black-Apple-A1B2C'), {
            'category': 'ELEC',
            'model': 'iPhone15',
            'color': 'Black',
            'brand': 'Apple',
            'hash': 'A1B2C',
        })
        self.assertIsNone(parse_sku('not-a-sku'))
