"""
URL routing for order API endpoints.
"""
from django.urls import path
from . import views

app_name = 'orders'

urlpatterns = [
    path('orders/', views.OrderListView.as_view(), name='order-list'),
    path('orders/<uuid:pk>/', views.OrderDetailView.as_view(), name='order-detail'),
    path(
        'orders/<uuid:pk>/delivery-status/',
        views.OrderDeliveryStatusView.as_view(),
        name='order-delivery-status'
    ),
    path(
        'orders/<uuid:pk>/complete/',
        views.OrderCompleteView.as_view(),
        name='order-complete'
    ),
]
