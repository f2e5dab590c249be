from django.urls import path

from .views import (
    CancelOrderView,
    CheckoutSessionView,
    OrderPreviewView,
    OrdersCollectionView,
    OrdersPingView,
    OrderStatusView,
    PaymentIntentView,
    PaymentWebhookView,
    RetrieveOrderView,
    ShipmentTrackingView,
    UserOrdersView,
)

app_name = "orders"

urlpatterns = [
    path("ping/", OrdersPingView.as_view(), name="ping"),
    path("", OrdersCollectionView.as_view(), name="orders-collection"),  # GET list / POST create
    path("preview/", OrderPreviewView.as_view(), name="orders-preview"),
    path("user/<int:user_id>/", UserOrdersView.as_view(), name="orders-by-user"),
    path("shipments/<str:tracking_number>/", ShipmentTrackingView.as_view(), name="shipment-tracking"),
    path("<int:order_id>/", RetrieveOrderView.as_view(), name="orders-detail"),
    path("<int:order_id>/status/", OrderStatusView.as_view(), name="orders-status"),
    path("<int:order_id>/cancel/", CancelOrderView.as_view(), name="orders-cancel"),
    path("<int:order_id>/payment-intent/", PaymentIntentView.as_view(), name="orders-payment-intent"),
    path("<int:order_id>/checkout-session/", CheckoutSessionView.as_view(), name="orders-checkout-session"),
]

payment_urlpatterns = [
    path("webhook/", PaymentWebhookView.as_view(), name="payments-webhook"),
]
