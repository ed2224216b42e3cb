"""
Django Admin configuration for order models.
"""
from django.contrib import admin
from .models import AdminNotification, Order, OrderItem


class OrderItemInline(admin.TabularInline):
    model = OrderItem
    extra = 0
    readonly_fields = ['product', 'quantity', 'unit_price', 'subtotal']
    can_delete = False

    def subtotal(self, obj):
        return f"KES {obj.subtotal}"
    subtotal.short_description = 'Subtotal'


@admin.register(Order)
class OrderAdmin(admin.ModelAdmin):
    list_display = [
        'id', 'customer_name', 'payment_status', 'delivery_status',
        'total_amount', 'item_count', 'created_at'
    ]
    list_filter = ['payment_status', 'delivery_status', 'created_at']
    search_fields = ['id', 'user_id', 'customer_name', 'customer_phone']
    ordering = ['-created_at']
    # Payment status is owned by gateway reconciliation
    readonly_fields = ['payment_status', 'total_amount', 'paid_at', 'created_at', 'updated_at']
    inlines = [OrderItemInline]

    def item_count(self, obj):
        return obj.items.count()
    item_count.short_description = 'Items'

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(AdminNotification)
class AdminNotificationAdmin(admin.ModelAdmin):
    list_display = ['id', 'title', 'order', 'is_read', 'created_at']
    list_filter = ['is_read', 'type']
    raw_id_fields = ['order']
