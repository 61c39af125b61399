"""
Inventory Models - Products and their append-only stock movement ledger.

Models:
    - Category: Product categorization, supplies the SKU category segment
    - Product: Sellable item carrying the on-hand quantity
    - InventoryMovement: Immutable record of a single stock change
"""
from django.db import models
from django.db.models import F, Q
from django.utils import timezone


class Category(models.Model):
    """
    Product category for organizing products.
    """
    name = models.CharField(
        max_length=100,
        unique=True,
        db_index=True,
        help_text="Unique category name"
    )
    code = models.CharField(
        max_length=20,
        help_text="Short code used as the SKU category segment"
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = 'Category'
        verbose_name_plural = 'Categories'
        ordering = ['name']

    def __str__(self):
        return self.name


class Product(models.Model):
    """
    Product entity holding the physical stock count.

    on_hand is only changed through inventory.services.InventoryLedger so
    every change leaves a movement row behind.
    """
    name = models.CharField(
        max_length=200,
        db_index=True,
        help_text="Product name for display and search"
    )
    sku = models.CharField(
        max_length=120,
        unique=True,
        null=True,
        blank=True,
        help_text="Stock keeping unit"
    )
    category = models.ForeignKey(
        Category,
        on_delete=models.PROTECT,
        related_name='products',
        null=True,
        blank=True,
        help_text="Product category"
    )
    on_hand = models.PositiveIntegerField(
        default=0,
        help_text="Current physical stock quantity"
    )
    low_stock_threshold = models.PositiveIntegerField(
        default=10,
        help_text="Threshold for low stock alerts"
    )
    is_active = models.BooleanField(
        default=True,
        db_index=True,
        help_text="Whether product is available for ordering"
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = 'Product'
        verbose_name_plural = 'Products'
        ordering = ['name']
        indexes = [
            models.Index(fields=['is_active', 'on_hand']),
        ]

    def __str__(self):
        return f"{self.name} ({self.on_hand} on hand)"

    @property
    def is_low_stock(self) -> bool:
        """Check if stock is at or below the low stock threshold."""
        return self.on_hand <= self.low_stock_threshold

    @property
    def is_out_of_stock(self) -> bool:
        return self.on_hand == 0


class InventoryMovement(models.Model):
    """
    Append-only ledger row for one stock change.

    balance_after = balance_before + quantity holds for every row and is
    enforced by a check constraint. Rows are never updated or deleted.
    """

    class MovementType(models.TextChoices):
        INBOUND = 'inbound', 'Inbound'
        SALE = 'sale', 'Sale'
        ADJUSTMENT = 'adjustment', 'Adjustment'
        DISPOSAL = 'disposal', 'Disposal'
        REFUND = 'refund', 'Refund'

    product = models.ForeignKey(
        Product,
        on_delete=models.PROTECT,
        related_name='movements',
        help_text="Product whose stock changed"
    )
    movement_type = models.CharField(
        max_length=20,
        choices=MovementType.choices,
        db_index=True,
    )
    quantity = models.IntegerField(help_text="Signed quantity delta")
    balance_before = models.IntegerField()
    balance_after = models.IntegerField()
    unit_cost = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        null=True,
        blank=True,
        help_text="Unit cost for inbound movements"
    )
    ref_type = models.CharField(max_length=20, blank=True, default='')
    ref_id = models.CharField(max_length=64, blank=True, default='')
    note = models.TextField(blank=True, default='')
    created_by = models.CharField(max_length=64, blank=True, default='')
    movement_date = models.DateTimeField(default=timezone.now, db_index=True)

    class Meta:
        verbose_name = 'Inventory Movement'
        verbose_name_plural = 'Inventory Movements'
        ordering = ['movement_date', 'id']
        indexes = [
            models.Index(fields=['product', 'movement_date']),
            models.Index(fields=['ref_type', 'ref_id']),
        ]
        constraints = [
            models.CheckConstraint(
                condition=Q(balance_after=F('balance_before') + F('quantity')),
                name='movement_balance_consistent'
            ),
        ]

    def __str__(self):
        return (
            f"{self.movement_type} {self.quantity:+d} for product {self.product_id} "
            f"({self.balance_before} -> {self.balance_after})"
        )

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ValueError("Inventory movements are append-only")
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ValueError("Inventory movements are append-only")
