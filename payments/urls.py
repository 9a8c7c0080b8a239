from django.urls import path

from . import views, webhook

app_name = "payments"
urlpatterns = [
    path("initiate", views.initiate_payment_view, name="initiate"),
    path("verify", views.verify_payment_view, name="verify"),
    path("webhook", webhook.payment_webhook, name="webhook"),
    path("webhook/", webhook.payment_webhook),
]
