"""
Django Admin configuration for payment models.

Everything here is written by the gateway integration, so the admin is
read-mostly.
"""
from django.contrib import admin
from .models import CallbackLog, GatewayTransaction, StagedOrder


@admin.register(GatewayTransaction)
class GatewayTransactionAdmin(admin.ModelAdmin):
    list_display = [
        'merchant_reference', 'tracking_id', 'status', 'amount',
        'gateway_status_code', 'order', 'created_at'
    ]
    list_filter = ['status', 'created_at']
    search_fields = ['merchant_reference', 'tracking_id', 'customer_phone']
    readonly_fields = [
        'tracking_id', 'merchant_reference', 'amount', 'currency', 'redirect_url',
        'gateway_status_code', 'gateway_status_description', 'order',
        'created_at', 'updated_at'
    ]
    ordering = ['-created_at']


@admin.register(StagedOrder)
class StagedOrderAdmin(admin.ModelAdmin):
    list_display = ['merchant_reference', 'tracking_id', 'user_id', 'total_amount', 'consumed_at', 'created_at']
    list_filter = ['consumed_at']
    search_fields = ['merchant_reference', 'tracking_id', 'user_id']

    def has_change_permission(self, request, obj=None):
        return False


@admin.register(CallbackLog)
class CallbackLogAdmin(admin.ModelAdmin):
    list_display = ['id', 'notification_type', 'tracking_id', 'processed', 'received_at']
    list_filter = ['processed', 'notification_type']
    search_fields = ['tracking_id', 'merchant_reference']

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False
