"""
Django Admin configuration for order models.
"""
from django.contrib import admin

from . import clearance
from .models import Order, OrderItem


class OrderItemInline(admin.TabularInline):
    model = OrderItem
    extra = 0
    readonly_fields = ['product', 'quantity']
    can_delete = False


@admin.register(Order)
class OrderAdmin(admin.ModelAdmin):
    list_display = ['id', 'order_no', 'masked_pccc', 'status', 'item_count', 'created_at']
    list_filter = ['status', 'created_at']
    search_fields = ['order_no']
    ordering = ['-order_no']
    readonly_fields = [
        'order_no', 'customer_pccc', 'status', 'rejection_reason',
        'created_by', 'created_at', 'updated_at'
    ]
    inlines = [OrderItemInline]

    def item_count(self, obj):
        return obj.items.count()
    item_count.short_description = 'Items'

    def masked_pccc(self, obj):
        return clearance.mask(obj.customer_pccc)
    masked_pccc.short_description = 'PCCC'
