"""
Tests for the store adapter and the order sequence lock.
"""
from unittest.mock import MagicMock, patch

import redis
from django.test import TestCase, SimpleTestCase, override_settings

from inventory.models import Product, InventoryMovement
from orders.models import Order
from .django_store import DjangoStore
from .locking import date_prefix_lock, sequence_lock_key
from .store import MovementEntry


class DjangoStoreTestCase(TestCase):
    """Test cases for the ORM-backed store."""

    def setUp(self):
        self.store = DjangoStore()
        self.product = Product.objects.create(
            name='Omega 3', sku='HLTH-Omega3---AB12C', on_hand=20, low_stock_threshold=5
        )

    def test_get_product(self):
        record = self.store.get_product(self.product.id)

        self.assertEqual(record.id, self.product.id)
        self.assertEqual(record.on_hand, 20)
        self.assertEqual(record.sku, 'HLTH-Omega3---AB12C')
        self.assertIsNone(self.store.get_product(99999))

    def test_update_product(self):
        self.store.update_product(self.product.id, 7)

        self.product.refresh_from_db()
        self.assertEqual(self.product.on_hand, 7)

        with self.assertRaises(Product.DoesNotExist):
            self.store.update_product(99999, 1)

    def test_insert_movement(self):
        self.store.insert_movement(MovementEntry(
            product_id=self.product.id,
            movement_type=InventoryMovement.MovementType.ADJUSTMENT,
            quantity=-2,
            balance_before=20,
            balance_after=18,
            note='Damaged box',
            created_by=42,
        ))

        movement = InventoryMovement.objects.get()
        self.assertEqual(movement.created_by, '42')
        self.assertEqual(movement.ref_type, '')

    def test_atomic_deduct(self):
        result = self.store.atomic_deduct(self.product.id, 6, '240823-001', 'staff-1')

        self.assertTrue(result.sufficient)
        self.assertEqual((result.previous_stock, result.new_stock), (20, 14))
        movement = InventoryMovement.objects.get()
        self.assertEqual(movement.quantity, -6)
        self.assertEqual(movement.ref_type, 'order')
        self.assertEqual(movement.ref_id, '240823-001')

    def test_atomic_deduct_insufficient(self):
        result = self.store.atomic_deduct(self.product.id, 21, '240823-001', 'staff-1')

        self.assertFalse(result.sufficient)
        self.assertEqual(result.previous_stock, 20)
        self.product.refresh_from_db()
        self.assertEqual(self.product.on_hand, 20)
        self.assertFalse(InventoryMovement.objects.exists())

    def test_atomic_deduct_missing_product(self):
        self.assertIsNone(self.store.atomic_deduct(99999, 1, '240823-001', 'staff-1'))

    def test_max_order_number_for_date(self):
        for order_no in ('240823-002', '240823-010', '240824-001'):
            Order.objects.create(order_no=order_no, customer_pccc='P880101123456')

        self.assertEqual(self.store.max_order_number_for_date('240823'), '240823-010')
        self.assertEqual(self.store.max_order_number_for_date('240824'), '240824-001')
        self.assertIsNone(self.store.max_order_number_for_date('240825'))

    def test_order_number_exists(self):
        Order.objects.create(order_no='240823-004', customer_pccc='P880101123456')

        self.assertTrue(self.store.order_number_exists('240823-004'))
        self.assertFalse(self.store.order_number_exists('240823-005'))


class DatePrefixLockTestCase(SimpleTestCase):
    """Test cases for the best-effort Redis lock."""

    def test_lock_key(self):
        self.assertEqual(sequence_lock_key('240823'), 'order_sequence:240823')

    @override_settings(ORDER_SEQUENCE_LOCK_ENABLED=True, ORDER_SEQUENCE_LOCK_TIMEOUT=10)
    def test_lock_acquired_and_released(self):
        client = MagicMock()
        client.lock.return_value.acquire.return_value = True

        with patch('core.locking.redis_client', client):
            with date_prefix_lock('240823') as locked:
                self.assertTrue(locked)

        client.lock.assert_called_once_with(
            'order_sequence:240823', timeout=10, blocking_timeout=5
        )
        client.lock.return_value.release.assert_called_once()

    @override_settings(ORDER_SEQUENCE_LOCK_ENABLED=True)
    def test_lock_timeout_runs_unlocked(self):
        client = MagicMock()
        client.lock.return_value.acquire.return_value = False

        with patch('core.locking.redis_client', client):
            with self.assertLogs('core.locking', level='WARNING'):
                with date_prefix_lock('240823') as locked:
                    self.assertFalse(locked)

        client.lock.return_value.release.assert_not_called()

    @override_settings(ORDER_SEQUENCE_LOCK_ENABLED=True)
    def test_redis_error_fails_open(self):
        client = MagicMock()
        client.lock.side_effect = redis.ConnectionError('connection refused')

        with patch('core.locking.redis_client', client):
            with self.assertLogs('core.locking', level='ERROR'):
                with date_prefix_lock('240823') as locked:
                    self.assertFalse(locked)

    @override_settings(ORDER_SEQUENCE_LOCK_ENABLED=True)
    def test_without_redis(self):
        with patch('core.locking.redis_client', None):
            with date_prefix_lock('240823') as locked:
                self.assertFalse(locked)

    @override_settings(ORDER_SEQUENCE_LOCK_ENABLED=False)
    def test_disabled(self):
        client = MagicMock()

        with patch('core.locking.redis_client', client):
            with date_prefix_lock('240823') as locked:
                self.assertFalse(locked)

        client.lock.assert_not_called()

    @override_settings(ORDER_SEQUENCE_LOCK_ENABLED=True)
    def test_release_error_is_logged(self):
        client = MagicMock()
        client.lock.return_value.acquire.return_value = True
        client.lock.return_value.release.side_effect = redis.exceptions.LockError('lock expired')

        with patch('core.locking.redis_client', client):
            with self.assertLogs('core.locking', level='ERROR'):
                with date_prefix_lock('240823'):
                    pass


class HealthCheckTestCase(TestCase):

    def test_health_check(self):
        response = self.client.get('/health/')

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {'status': 'healthy', 'service': 'stock-ledger'})
