"""
Order Models - Order and OrderItem entities with status tracking.

Order Status Flow:
    PENDING -> CONFIRMED (stock deducted for every line)
    PENDING -> REJECTED (insufficient stock or unknown product)
    CONFIRMED -> REFUNDED (stock restored)
"""
from django.db import models
from django.core.validators import MinValueValidator

from inventory.models import Product


class Order(models.Model):
    """
    Customer order identified by a date-scoped order number (YYMMDD-NNN).

    The unique constraint on order_no is what turns a sequence collision
    into an IntegrityError the sequencer can retry on.
    """

    class Status(models.TextChoices):
        PENDING = 'PENDING', 'Pending'
        CONFIRMED = 'CONFIRMED', 'Confirmed'
        REJECTED = 'REJECTED', 'Rejected'
        REFUNDED = 'REFUNDED', 'Refunded'

    order_no = models.CharField(
        max_length=10,
        unique=True,
        help_text="Order number in YYMMDD-NNN form"
    )
    customer_pccc = models.CharField(
        max_length=13,
        help_text="Normalized personal customs clearance code"
    )
    status = models.CharField(
        max_length=20,
        choices=Status.choices,
        default=Status.PENDING,
        db_index=True,
        help_text="Current order status"
    )
    rejection_reason = models.TextField(
        blank=True,
        default='',
        help_text="Reason for rejection if order was rejected"
    )
    created_by = models.CharField(max_length=64, blank=True, default='')
    created_at = models.DateTimeField(auto_now_add=True, db_index=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = 'Order'
        verbose_name_plural = 'Orders'
        ordering = ['-order_no']

    def __str__(self):
        return f"Order {self.order_no} ({self.status})"

    @property
    def is_confirmed(self) -> bool:
        return self.status == self.Status.CONFIRMED

    @property
    def is_rejected(self) -> bool:
        return self.status == self.Status.REJECTED


class OrderItem(models.Model):
    """A product line in an order."""
    order = models.ForeignKey(
        Order,
        on_delete=models.CASCADE,
        related_name='items',
        help_text="Parent order"
    )
    product = models.ForeignKey(
        Product,
        on_delete=models.PROTECT,
        related_name='order_items',
        help_text="Ordered product"
    )
    quantity = models.PositiveIntegerField(
        validators=[MinValueValidator(1)],
        help_text="Quantity ordered"
    )
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        verbose_name = 'Order Item'
        verbose_name_plural = 'Order Items'
        ordering = ['id']

    def __str__(self):
        return f"{self.quantity}x {self.product.name}"
