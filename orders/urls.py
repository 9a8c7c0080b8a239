from django.urls import path

from . import views

app_name = "orders"
urlpatterns = [
    path("", views.create_order_view, name="create"),
    path("<uuid:order_id>/", views.order_detail_view, name="detail"),
    path("<uuid:order_id>/payment-status", views.payment_status_view, name="payment_status"),

    # admin console
    path("admin/", views.admin_order_list_view, name="admin_list"),
    path("admin/<uuid:order_id>/status", views.admin_update_status_view, name="admin_status"),
    path("admin/<uuid:order_id>/delivery-date", views.admin_delivery_date_view, name="admin_delivery_date"),
    path("admin/<uuid:order_id>/delete", views.admin_delete_order_view, name="admin_delete"),
]
