"""
Catalog API Views.

Implements:
- Category list/create
- Product list/create with search and low stock filters
- Product detail with soft delete
"""
from django.db.models import Q
from django.utils import timezone
from rest_framework import generics, status
from rest_framework.response import Response

from .models import Category, Product
from .serializers import CategorySerializer, ProductSerializer


class CategoryListCreateView(generics.ListCreateAPIView):
    """
    GET: List all categories
    POST: Create a new category
    """
    queryset = Category.objects.all()
    serializer_class = CategorySerializer


class ProductListCreateView(generics.ListCreateAPIView):
    """
    GET: List orderable products
    POST: Create a new product

    Query Parameters (GET):
        - q: Keyword to search in name, description and category name
        - category_id: Filter by category
        - low_stock: Show only products at or below their threshold (true/false)
    """
    serializer_class = ProductSerializer

    def get_queryset(self):
        queryset = Product.objects.select_related('category').available()

        keyword = self.request.query_params.get('q', '').strip()
        if keyword:
            queryset = queryset.filter(
                Q(name__icontains=keyword) |
                Q(description__icontains=keyword) |
                Q(category__name__icontains=keyword)
            )

        category_id = self.request.query_params.get('category_id')
        if category_id:
            queryset = queryset.filter(category_id=category_id)

        low_stock = self.request.query_params.get('low_stock', '').lower()
        if low_stock == 'true':
            queryset = queryset.low_stock()

        return queryset.order_by('name')


class ProductDetailView(generics.RetrieveUpdateDestroyAPIView):
    """
    GET: Retrieve a product
    PUT/PATCH: Update a product
    DELETE: Soft-delete a product (existing order items keep referencing it)
    """
    serializer_class = ProductSerializer

    def get_queryset(self):
        return Product.objects.select_related('category').filter(deleted_at__isnull=True)

    def destroy(self, request, *args, **kwargs):
        product = self.get_object()
        product.deleted_at = timezone.now()
        product.is_active = False
        product.save(update_fields=['deleted_at', 'is_active', 'updated_at'])
        return Response(status=status.HTTP_204_NO_CONTENT)
