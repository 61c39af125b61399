"""
Django Admin configuration for inventory models.

Movements are read-only here: the ledger is append-only and rows are only
written by inventory.services.InventoryLedger.
"""
from django.contrib import admin
from .models import Category, Product, InventoryMovement


@admin.register(Category)
class CategoryAdmin(admin.ModelAdmin):
    list_display = ['id', 'name', 'code', 'product_count', 'created_at']
    search_fields = ['name', 'code']
    ordering = ['name']

    def product_count(self, obj):
        return obj.products.count()
    product_count.short_description = 'Products'


@admin.register(Product)
class ProductAdmin(admin.ModelAdmin):
    list_display = ['id', 'name', 'sku', 'on_hand', 'low_stock_threshold', 'is_low_stock', 'is_active']
    list_filter = ['category', 'is_active']
    search_fields = ['name', 'sku']
    ordering = ['name']
    raw_id_fields = ['category']
    # Stock changes go through the ledger so they leave a movement behind
    readonly_fields = ['on_hand', 'created_at', 'updated_at']

    def is_low_stock(self, obj):
        return obj.is_low_stock
    is_low_stock.boolean = True
    is_low_stock.short_description = 'Low Stock'


@admin.register(InventoryMovement)
class InventoryMovementAdmin(admin.ModelAdmin):
    list_display = [
        'id', 'product', 'movement_type', 'quantity',
        'balance_before', 'balance_after', 'ref_type', 'ref_id',
        'created_by', 'movement_date'
    ]
    list_filter = ['movement_type', 'movement_date']
    search_fields = ['product__name', 'product__sku', 'ref_id']
    ordering = ['-movement_date']

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False
