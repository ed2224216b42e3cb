"""
Catalog Models - Products sold by the shop and their stock levels.

Models:
    - Category: Product categorization (fingerlings, feeds, equipment, ...)
    - Product: Items available for sale, with a single shop-wide stock count
"""
from django.db import models
from django.core.validators import MinValueValidator
from decimal import Decimal


class Category(models.Model):
    """
    Product category for organizing products.
    """
    name = models.CharField(
        max_length=100,
        unique=True,
        db_index=True,
        help_text="Unique category name"
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = 'Category'
        verbose_name_plural = 'Categories'
        ordering = ['name']

    def __str__(self):
        return self.name


class ProductQuerySet(models.QuerySet):

    def available(self):
        """Products that can be ordered: active and not soft-deleted."""
        return self.filter(is_active=True, deleted_at__isnull=True)

    def low_stock(self):
        return self.filter(stock__lte=models.F('low_stock_threshold'))


class Product(models.Model):
    """
    Product entity representing items available for sale.

    Stock is decremented only by the order completion transition, via a
    single conditional UPDATE per product, and never drops below zero.
    """
    name = models.CharField(
        max_length=200,
        db_index=True,
        help_text="Product name for display and search"
    )
    description = models.TextField(
        blank=True,
        default='',
        help_text="Optional product description"
    )
    price = models.DecimalField(
        max_digits=10,
        decimal_places=2,
        validators=[MinValueValidator(Decimal('0.01'))],
        help_text="Current catalog price in KES (must be positive)"
    )
    category = models.ForeignKey(
        Category,
        on_delete=models.PROTECT,
        related_name='products',
        null=True,
        blank=True,
        help_text="Product category"
    )
    stock = models.PositiveIntegerField(
        default=0,
        help_text="Units currently available"
    )
    low_stock_threshold = models.PositiveIntegerField(
        default=10,
        help_text="Threshold for low stock alerts"
    )
    is_active = models.BooleanField(
        default=True,
        db_index=True,
        help_text="Whether product is available for ordering"
    )
    deleted_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="Soft-delete marker; deleted products cannot be ordered"
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    objects = ProductQuerySet.as_manager()

    class Meta:
        verbose_name = 'Product'
        verbose_name_plural = 'Products'
        ordering = ['name']
        indexes = [
            models.Index(fields=['name', 'is_active']),
            models.Index(fields=['category', 'is_active']),
            models.Index(fields=['stock']),
        ]

    def __str__(self):
        return f"{self.name} (KES {self.price})"

    @property
    def is_low_stock(self) -> bool:
        """Check if stock is at or below the low stock threshold."""
        return self.stock <= self.low_stock_threshold

    @property
    def is_out_of_stock(self) -> bool:
        return self.stock == 0
