from django.contrib import admin

from .models import Order, OrderEvent, OrderItem, OrderNumberSequence


class OrderItemInline(admin.TabularInline):
    model = OrderItem
    extra = 0
    readonly_fields = ("product_id", "variant_id", "quantity", "unit_price", "metadata")
    can_delete = False


class OrderEventInline(admin.TabularInline):
    model = OrderEvent
    extra = 0
    readonly_fields = ("type", "status", "payload", "created_at")
    can_delete = False


@admin.register(Order)
class OrderAdmin(admin.ModelAdmin):
    list_display = ("order_number", "order_status", "payment_status", "total_amount", "is_preorder",
                    "customer_email", "created_at")
    search_fields = ("order_number", "customer_email", "customer_name", "payment_reference")
    list_filter = ("order_status", "payment_status", "is_preorder", "payment_gateway", "created_at")
    # status changes go through the guarded admin endpoints
    readonly_fields = ("order_number", "total_amount", "is_preorder", "order_status", "payment_status",
                       "payment_reference", "payment_gateway", "created_at", "updated_at")
    ordering = ("-created_at",)
    inlines = (OrderItemInline, OrderEventInline)


admin.site.register(OrderNumberSequence)
