from django.urls import include, path

from apps.orders.urls import payment_urlpatterns

urlpatterns = [
    path("", include("apps.monitoring.urls")),
    path("api/orders/", include("apps.orders.urls")),
    path("api/payments/", include((payment_urlpatterns, "payments"))),
]
