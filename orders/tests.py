"""
Tests for order numbering, PCCC validation and the order workflows.

Test Cases:
1. Order number formatting, parsing and validation
2. Sequence generation, exhaustion and collision retry
3. PCCC normalization, validation and masking
4. Order confirmed / rejected with atomic stock deduction
5. Refund restores stock
6. Concurrent checkout cannot oversell (PostgreSQL only)
"""
import threading
from datetime import date, datetime
from unittest import skipUnless
from unittest.mock import MagicMock, patch

from django.db import connection, IntegrityError
from django.test import TestCase, TransactionTestCase, SimpleTestCase, override_settings

from core.django_store import DjangoStore
from inventory.models import Product, InventoryMovement
from orders import clearance
from orders.models import Order
from orders.sequencing import (
    OrderSequencer,
    OrderNumberConflictError,
    SequenceExhaustedError,
    format_order_date,
    is_valid_order_number,
    parse_order_number,
    today,
)
from orders.services import create_order, refund_order, get_order_summary, OrderValidationError

ORDER_DATE = date(2024, 8, 23)
VALID_PCCC = 'P880101123456'


class StaleReadStore(DjangoStore):
    """Store whose first `stale_reads` max lookups miss existing orders."""

    def __init__(self, stale_reads=1):
        self.stale_reads = stale_reads

    def max_order_number_for_date(self, date_string):
        if self.stale_reads > 0:
            self.stale_reads -= 1
            return None
        return super().max_order_number_for_date(date_string)


class OrderNumberFormatTestCase(SimpleTestCase):
    """Test cases for the pure order number helpers."""

    def test_format_order_date(self):
        self.assertEqual(format_order_date(ORDER_DATE), '240823')
        self.assertEqual(format_order_date(date(2025, 1, 5)), '250105')
        self.assertEqual(format_order_date(datetime(2030, 12, 31, 23, 59)), '301231')

    def test_parse_order_number(self):
        self.assertEqual(parse_order_number('240823-007'), {
            'year': 24,
            'month': 8,
            'day': 23,
            'sequence': 7,
            'date_string': '240823',
            'full_date': date(2024, 8, 23),
        })

    def test_parse_order_number_mismatch(self):
        for value in ('', None, 'ORD-240823-001', '240823001', '240823-1000', '24082-001', 12345):
            with self.subTest(value=value):
                self.assertIsNone(parse_order_number(value))

    def test_parse_order_number_impossible_date(self):
        parsed = parse_order_number('240231-001')

        self.assertEqual(parsed['month'], 2)
        self.assertIsNone(parsed['full_date'])

    def test_is_valid_order_number(self):
        self.assertTrue(is_valid_order_number('240823-001'))
        self.assertTrue(is_valid_order_number('241231-999'))
        self.assertFalse(is_valid_order_number('241301-001'))  # month 13
        self.assertFalse(is_valid_order_number('240001-001'))  # month 0
        self.assertFalse(is_valid_order_number('240832-001'))  # day 32
        self.assertFalse(is_valid_order_number('240800-001'))  # day 0
        self.assertFalse(is_valid_order_number('240823-000'))  # sequence 0
        self.assertFalse(is_valid_order_number('240823-1000'))
        self.assertFalse(is_valid_order_number(None))


@override_settings(ORDER_SEQUENCE_LOCK_ENABLED=False)
class OrderSequencerTestCase(TestCase):
    """Test cases for sequence generation against the orders table."""

    def setUp(self):
        self.sequencer = OrderSequencer(DjangoStore())

    def _create_order(self, order_no):
        return Order.objects.create(order_no=order_no, customer_pccc=VALID_PCCC)

    def test_first_order_of_the_day(self):
        self.assertEqual(self.sequencer.generate_order_number(ORDER_DATE), '240823-001')

    def test_next_after_existing(self):
        self._create_order('240823-005')
        self._create_order('240823-002')
        self._create_order('240824-050')  # other day

        self.assertEqual(self.sequencer.get_next_sequence_number('240823'), 6)
        self.assertEqual(self.sequencer.generate_order_number(ORDER_DATE), '240823-006')

    def test_sequence_exhausted(self):
        self._create_order('240823-999')

        with self.assertRaises(SequenceExhaustedError) as context:
            self.sequencer.generate_order_number(ORDER_DATE)

        self.assertEqual(context.exception.date_string, '240823')

    def test_defaults_to_today(self):
        order_no = self.sequencer.generate_order_number()

        self.assertTrue(order_no.startswith(format_order_date(today()) + '-'))

    def test_insert_claims_number(self):
        order_no = self.sequencer.generate_order_number(
            ORDER_DATE, insert=self._create_order
        )

        self.assertEqual(order_no, '240823-001')
        self.assertTrue(Order.objects.filter(order_no='240823-001').exists())

    def test_retry_after_collision(self):
        """
        Test: A collision on insert re-queries and takes the next number.

        Given: 240823-001 exists but the first lookup does not see it
        When: Generating with retry
        Then: The second attempt claims 240823-002
        """
        self._create_order('240823-001')
        sequencer = OrderSequencer(StaleReadStore(stale_reads=1))
        attempts = []

        def insert(order_no):
            attempts.append(order_no)
            self._create_order(order_no)

        with self.assertLogs('orders.sequencing', level='WARNING'):
            order_no = sequencer.generate_order_number(ORDER_DATE, with_retry=True, insert=insert)

        self.assertEqual(order_no, '240823-002')
        self.assertEqual(attempts, ['240823-001', '240823-002'])

    def test_unrelated_integrity_error_is_not_retried(self):
        """
        Test: Only a taken order number counts as a collision.

        Given: An insert that violates a different constraint
        When: Generating with retry
        Then: The IntegrityError propagates after a single attempt
        """
        attempts = []

        def insert(order_no):
            attempts.append(order_no)
            Order.objects.create(order_no=order_no, customer_pccc=None)

        with self.assertRaises(IntegrityError):
            self.sequencer.generate_order_number(ORDER_DATE, with_retry=True, insert=insert)

        self.assertEqual(attempts, ['240823-001'])

    def test_collision_without_retry(self):
        self._create_order('240823-001')
        sequencer = OrderSequencer(StaleReadStore(stale_reads=1))

        with self.assertRaises(OrderNumberConflictError) as context:
            sequencer.generate_order_number(ORDER_DATE, insert=self._create_order)

        self.assertEqual(context.exception.attempts, 1)

    @override_settings(ORDER_SEQUENCE_MAX_ATTEMPTS=3)
    def test_retry_gives_up(self):
        self._create_order('240823-001')
        sequencer = OrderSequencer(StaleReadStore(stale_reads=10))
        attempts = []

        def insert(order_no):
            attempts.append(order_no)
            self._create_order(order_no)

        with self.assertRaises(OrderNumberConflictError):
            sequencer.generate_order_number(ORDER_DATE, with_retry=True, insert=insert)

        self.assertEqual(len(attempts), 3)
        self.assertEqual(Order.objects.count(), 1)


class ClearanceCodeTestCase(SimpleTestCase):
    """Test cases for PCCC validation."""

    def test_validate_valid_codes(self):
        for code in ('P123456789012', 'M123456789012', VALID_PCCC):
            with self.subTest(code=code):
                result = clearance.validate(code)
                self.assertTrue(result.is_valid)
                self.assertEqual(result.errors, [])
                self.assertEqual(result.normalized, code)

        self.assertEqual(clearance.validate('P123456789012').formatted, 'P1234-5678-9012')

    def test_validate_normalizes_input(self):
        for code in ('P-1234-5678-9012', 'P 1234 5678 9012', 'p123456789012', '123456789012'):
            with self.subTest(code=code):
                result = clearance.validate(code)
                self.assertTrue(result.is_valid)
                self.assertEqual(result.normalized, 'P123456789012')

    def test_validate_required(self):
        for code in ('', '   ', None):
            with self.subTest(code=code):
                result = clearance.validate(code)
                self.assertFalse(result.is_valid)
                self.assertEqual(result.errors, [clearance.ERROR_REQUIRED])

    def test_validate_format_errors(self):
        cases = {
            'X123456789012': clearance.ERROR_PREFIX,
            'P12345678901A': clearance.ERROR_DIGITS,
            'P12345': clearance.ERROR_LENGTH,
            'P' + '1' * 20: clearance.ERROR_LENGTH,
        }
        for code, error in cases.items():
            with self.subTest(code=code):
                result = clearance.validate(code)
                self.assertFalse(result.is_valid)
                self.assertIsNone(result.normalized)
                self.assertEqual(result.errors, [error])

        self.assertFalse(clearance.validate(123456789012).is_valid)

    def test_validate_placeholder_codes(self):
        for code in ('P000000000000', 'P111111111111', 'M999999999999'):
            with self.subTest(code=code):
                self.assertTrue(clearance.is_valid_format(code))
                result = clearance.validate(code)
                self.assertFalse(result.is_valid)
                self.assertEqual(result.normalized, code)
                self.assertEqual(result.errors, [clearance.ERROR_BLOCKED])

    def test_is_valid_format(self):
        self.assertTrue(clearance.is_valid_format(' p123456789012 '))
        self.assertTrue(clearance.is_valid_format('M123456789012'))
        self.assertFalse(clearance.is_valid_format('P-1234-5678-9012'))
        self.assertFalse(clearance.is_valid_format('123456789012'))
        self.assertFalse(clearance.is_valid_format(''))

    def test_normalize(self):
        self.assertEqual(clearance.normalize('p-1234-5678-9012'), 'P123456789012')
        self.assertEqual(clearance.normalize('M.1234.5678.9012'), 'M123456789012')
        self.assertEqual(clearance.normalize('P_1234_5678_9012'), 'P123456789012')
        self.assertEqual(clearance.normalize('1234 5678 9012'), 'P123456789012')
        self.assertIsNone(clearance.normalize('X123456789012'))
        self.assertIsNone(clearance.normalize(''))
        self.assertIsNone(clearance.normalize(None))

    def test_sanitize(self):
        self.assertEqual(clearance.sanitize('m 1234-5678.9012'), 'M123456789012')
        self.assertEqual(clearance.sanitize(None), '')

    def test_mask(self):
        self.assertEqual(clearance.mask('P123456789012'), 'P****-****-9012')
        self.assertEqual(clearance.mask('M123456789012'), 'M****-****-9012')
        self.assertEqual(clearance.mask('P1234-5678-9012'), 'P****-****-9012')
        self.assertEqual(clearance.mask('P123456789012', show_last=2), 'P****-****-**12')
        self.assertEqual(clearance.mask('P123456789012', show_last=6), 'P****-**78-9012')
        self.assertEqual(clearance.mask('P123456789012', show_last=0), 'P****-****-****')

    def test_mask_invalid_input(self):
        self.assertEqual(clearance.mask(''), '')
        self.assertEqual(clearance.mask(None), '')
        self.assertEqual(clearance.mask('P123'), 'P***')
        self.assertEqual(clearance.mask('INVALID'), '*******')

    def test_format_for_display(self):
        self.assertEqual(clearance.format_for_display('P123456789012'), 'P1234-5678-9012')
        self.assertEqual(clearance.format_for_display('P1234-5678-9012'), 'P1234-5678-9012')
        self.assertEqual(clearance.format_for_display('p 1234 5678 9012'), 'P1234-5678-9012')
        self.assertEqual(clearance.format_for_display('INVALID'), 'INVALID')
        self.assertEqual(clearance.format_for_display(''), '')

    def test_validate_batch(self):
        results = clearance.validate_batch(['P123456789012', 'X1', ''])

        self.assertEqual(list(results), ['P123456789012', 'X1', ''])
        self.assertTrue(results['P123456789012'].is_valid)
        self.assertFalse(results['X1'].is_valid)
        self.assertEqual(results[''].errors, [clearance.ERROR_REQUIRED])


@override_settings(ORDER_SEQUENCE_LOCK_ENABLED=False)
class OrderWorkflowTestCase(TestCase):
    """Test cases for order creation and refunds."""

    def setUp(self):
        self.earbuds = Product.objects.create(name='Wireless Earbuds', on_hand=100)
        self.serum = Product.objects.create(name='Vitamin C Serum', on_hand=50)
        self.cream = Product.objects.create(name='Sun Cream', on_hand=10)

    def _refresh(self, *products):
        for product in products:
            product.refresh_from_db()

    def test_order_confirmed_with_sufficient_stock(self):
        items = [
            {'product_id': self.earbuds.id, 'quantity': 5},
            {'product_id': self.serum.id, 'quantity': 3},
        ]

        order, error = create_order('p-8801-0112-3456', items, actor_id='staff-1', order_date=ORDER_DATE)

        self.assertIsNone(error)
        self.assertEqual(order.status, Order.Status.CONFIRMED)
        self.assertEqual(order.order_no, '240823-001')
        self.assertEqual(order.customer_pccc, VALID_PCCC)
        self.assertEqual(order.items.count(), 2)

        self._refresh(self.earbuds, self.serum)
        self.assertEqual(self.earbuds.on_hand, 95)
        self.assertEqual(self.serum.on_hand, 47)

        sales = InventoryMovement.objects.filter(ref_type='order', ref_id='240823-001')
        self.assertEqual(sales.count(), 2)

    def test_orders_get_consecutive_numbers(self):
        items = [{'product_id': self.earbuds.id, 'quantity': 1}]

        first, _ = create_order(VALID_PCCC, items, 'staff-1', order_date=ORDER_DATE)
        second, _ = create_order(VALID_PCCC, items, 'staff-1', order_date=ORDER_DATE)

        self.assertEqual(first.order_no, '240823-001')
        self.assertEqual(second.order_no, '240823-002')

    def test_order_rejected_without_deductions(self):
        """
        Test: Inventory unchanged after rejected order.

        Given: Sun Cream has only 10 units
        When: One line asks for 20
        Then: The order is REJECTED and no stock or ledger row changes
        """
        items = [
            {'product_id': self.earbuds.id, 'quantity': 5},
            {'product_id': self.serum.id, 'quantity': 10},
            {'product_id': self.cream.id, 'quantity': 20},
        ]

        order, error = create_order(VALID_PCCC, items, 'staff-1', order_date=ORDER_DATE)

        self.assertEqual(order.status, Order.Status.REJECTED)
        self.assertIn('Insufficient stock', error)
        self.assertEqual(order.items.count(), 0)

        self._refresh(self.earbuds, self.serum, self.cream)
        self.assertEqual(self.earbuds.on_hand, 100)
        self.assertEqual(self.serum.on_hand, 50)
        self.assertEqual(self.cream.on_hand, 10)
        self.assertFalse(InventoryMovement.objects.exists())

    def test_order_with_exact_stock(self):
        order, _ = create_order(
            VALID_PCCC, [{'product_id': self.cream.id, 'quantity': 10}], 'staff-1',
            order_date=ORDER_DATE
        )

        self.assertEqual(order.status, Order.Status.CONFIRMED)
        self._refresh(self.cream)
        self.assertEqual(self.cream.on_hand, 0)

    def test_order_invalid_product(self):
        order, error = create_order(
            VALID_PCCC, [{'product_id': 99999, 'quantity': 5}], 'staff-1', order_date=ORDER_DATE
        )

        self.assertEqual(order.status, Order.Status.REJECTED)
        self.assertIn('not found', error.lower())

    def test_order_inactive_product_rejected(self):
        """
        Test: Discontinued products cannot be sold.

        Given: An inactive product with 5 units on hand
        When: An order asks for 2 of them
        Then: The order is REJECTED and the stock is untouched
        """
        retired = Product.objects.create(name='Retired Serum', on_hand=5, is_active=False)
        items = [
            {'product_id': self.earbuds.id, 'quantity': 1},
            {'product_id': retired.id, 'quantity': 2},
        ]

        order, error = create_order(VALID_PCCC, items, 'staff-1', order_date=ORDER_DATE)

        self.assertEqual(order.status, Order.Status.REJECTED)
        self.assertIn('inactive', error)
        self.assertIn(str(retired.id), error)
        self._refresh(retired, self.earbuds)
        self.assertEqual(retired.on_hand, 5)
        self.assertEqual(self.earbuds.on_hand, 100)
        self.assertFalse(InventoryMovement.objects.exists())

    @override_settings(ORDER_SEQUENCE_LOCK_ENABLED=True)
    def test_sequence_lock_held_until_order_finished(self):
        """
        Test: The date-prefix lock outlives the order transaction.

        Given: Redis is available
        When: An order is created
        Then: The lock is taken once and released only after the order is confirmed
        """
        client = MagicMock()
        client.lock.return_value.acquire.return_value = True
        status_at_release = []
        client.lock.return_value.release.side_effect = (
            lambda: status_at_release.append(Order.objects.get().status)
        )

        with patch('core.locking.redis_client', client):
            create_order(
                VALID_PCCC, [{'product_id': self.serum.id, 'quantity': 1}], 'staff-1',
                order_date=ORDER_DATE
            )

        client.lock.assert_called_once()
        self.assertEqual(client.lock.call_args.args[0], 'order_sequence:240823')
        self.assertEqual(status_at_release, [Order.Status.CONFIRMED])

    def test_invalid_pccc(self):
        items = [{'product_id': self.earbuds.id, 'quantity': 1}]

        with self.assertRaises(OrderValidationError) as context:
            create_order('X123', items, 'staff-1', order_date=ORDER_DATE)

        self.assertEqual(context.exception.errors, [clearance.ERROR_PREFIX])
        self.assertFalse(Order.objects.exists())

    def test_validation_errors(self):
        cases = [
            [],
            [{'product_id': self.earbuds.id, 'quantity': 0}],
            [{'product_id': self.earbuds.id}],
            [{'product_id': self.earbuds.id, 'quantity': 1},
             {'product_id': self.earbuds.id, 'quantity': 2}],
        ]
        for items in cases:
            with self.subTest(items=items):
                with self.assertRaises(OrderValidationError):
                    create_order(VALID_PCCC, items, 'staff-1', order_date=ORDER_DATE)

    def test_refund_restores_stock(self):
        order, _ = create_order(
            VALID_PCCC, [{'product_id': self.serum.id, 'quantity': 4}], 'staff-1',
            order_date=ORDER_DATE
        )

        refunded = refund_order(order.order_no, 'staff-2')

        self.assertEqual(refunded.status, Order.Status.REFUNDED)
        self._refresh(self.serum)
        self.assertEqual(self.serum.on_hand, 50)
        refund = InventoryMovement.objects.get(ref_type='refund')
        self.assertEqual(refund.ref_id, order.order_no)
        self.assertEqual(refund.quantity, 4)

        with self.assertRaises(OrderValidationError):
            refund_order(order.order_no, 'staff-2')

    def test_refund_unknown_order(self):
        with self.assertRaises(OrderValidationError):
            refund_order('240823-123', 'staff-2')

    def test_order_summary_masks_pccc(self):
        order, _ = create_order(
            VALID_PCCC, [{'product_id': self.earbuds.id, 'quantity': 2}], 'staff-1',
            order_date=ORDER_DATE
        )

        summary = get_order_summary(order.order_no)

        self.assertEqual(summary['customer_pccc'], 'P****-****-3456')
        self.assertEqual(summary['items'][0]['quantity'], 2)


@skipUnless(connection.vendor == 'postgresql', 'Row locking needs PostgreSQL')
@override_settings(ORDER_SEQUENCE_LOCK_ENABLED=False)
class ConcurrentCheckoutTestCase(TransactionTestCase):
    """
    Test concurrent checkout to verify the atomic deduction holds.
    Uses TransactionTestCase for proper multi-threading support.
    """

    def setUp(self):
        # Only 10 units available
        self.product = Product.objects.create(name='Limited Stock Product', on_hand=10)

    def test_concurrent_orders_no_overselling(self):
        """
        Test: Concurrent orders don't oversell inventory.

        Given: 10 units in stock
        When: Two concurrent orders of 8 units each
        Then: At most one is CONFIRMED and stock never goes negative
        """
        results = {}

        def place_order(key):
            try:
                order, _ = create_order(
                    VALID_PCCC, [{'product_id': self.product.id, 'quantity': 8}], 'staff-1'
                )
                results[key] = order.status
            except OrderNumberConflictError:
                results[key] = 'CONFLICT'
            finally:
                connection.close()

        threads = [threading.Thread(target=place_order, args=(key,)) for key in ('a', 'b')]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.product.refresh_from_db()
        confirmed = sum(1 for status in results.values() if status == Order.Status.CONFIRMED)

        self.assertLessEqual(confirmed, 1)
        self.assertEqual(self.product.on_hand, 10 - 8 * confirmed)
