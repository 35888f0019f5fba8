from django.urls import path

from .views import (
    ApplyCouponView,
    CancelOrderView,
    CouponCollectionView,
    CouponDetailView,
    CreateIntentView,
    OrderDetailView,
    OrdersCollectionView,
    PaymentWebhookView,
    VerifyPaymentView,
)

app_name = "orders"

urlpatterns = [
    path("orders/", OrdersCollectionView.as_view(), name="orders-collection"),  # GET list / POST create
    path("orders/cancel/", CancelOrderView.as_view(), name="orders-cancel"),
    path("orders/<str:number>/", OrderDetailView.as_view(), name="orders-detail"),
    path("payments/intent/", CreateIntentView.as_view(), name="payments-intent"),
    path("payments/verify/", VerifyPaymentView.as_view(), name="payments-verify"),
    path("payments/webhook/", PaymentWebhookView.as_view(), name="payments-webhook"),
    path("coupons/", CouponCollectionView.as_view(), name="coupons-collection"),
    path("coupons/apply/", ApplyCouponView.as_view(), name="coupons-apply"),
    path("coupons/<str:code>/", CouponDetailView.as_view(), name="coupons-detail"),
]
