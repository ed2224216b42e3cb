"""
URL routing for payment API endpoints.
"""
from django.urls import path
from . import views

app_name = 'payments'

urlpatterns = [
    path('payments/orders/', views.CheckoutView.as_view(), name='checkout'),
    path('payments/callback/', views.PaymentCallbackView.as_view(), name='callback'),
    path('payments/status/', views.PaymentStatusView.as_view(), name='status'),
    path('payments/reconcile/', views.ReconcileView.as_view(), name='reconcile'),
]
