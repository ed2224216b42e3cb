"""
Tests for the product catalog.
"""
from decimal import Decimal
from io import StringIO

from django.core.management import call_command
from django.urls import reverse
from rest_framework import status
from rest_framework.test import APITestCase

from inventory.management.commands.seed_data import CATALOG
from inventory.models import Category, Product


class ProductAPITestCase(APITestCase):
    """Test cases for catalog endpoints."""

    def setUp(self):
        self.category = Category.objects.create(name='Fingerlings')
        self.tilapia = Product.objects.create(
            name='Tilapia Fingerlings',
            price=Decimal('1500.00'),
            category=self.category,
            stock=40,
            low_stock_threshold=10
        )
        self.catfish = Product.objects.create(
            name='Catfish Fingerlings',
            price=Decimal('1800.00'),
            category=self.category,
            stock=3,
            low_stock_threshold=10
        )

    def test_list_products(self):
        response = self.client.get(reverse('inventory:product-list'))

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['count'], 2)

    def test_low_stock_filter(self):
        response = self.client.get(reverse('inventory:product-list'), {'low_stock': 'true'})

        names = [p['name'] for p in response.data['results']]
        self.assertEqual(names, ['Catfish Fingerlings'])
        self.assertTrue(response.data['results'][0]['is_low_stock'])

    def test_keyword_search(self):
        response = self.client.get(reverse('inventory:product-list'), {'q': 'tilapia'})
        self.assertEqual(response.data['count'], 1)

    def test_create_product(self):
        response = self.client.post(reverse('inventory:product-list'), {
            'name': 'Mono-sex Tilapia Fry',
            'price': '6000.00',
            'category_id': self.category.pk,
            'stock': 12,
        }, format='json')

        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(response.data['category']['name'], 'Fingerlings')

    def test_soft_delete(self):
        """
        Test: Deleting a product hides it without removing the row.
        """
        url = reverse('inventory:product-detail', args=[self.catfish.pk])

        response = self.client.delete(url)

        self.assertEqual(response.status_code, status.HTTP_204_NO_CONTENT)
        self.catfish.refresh_from_db()
        self.assertIsNotNone(self.catfish.deleted_at)
        self.assertFalse(self.catfish.is_active)
        self.assertEqual(Product.objects.available().count(), 1)
        self.assertEqual(self.client.get(url).status_code, status.HTTP_404_NOT_FOUND)

    def test_stock_properties(self):
        self.assertFalse(self.tilapia.is_low_stock)
        self.assertTrue(self.catfish.is_low_stock)
        self.catfish.stock = 0
        self.assertTrue(self.catfish.is_out_of_stock)


class SeedDataTestCase(APITestCase):

    def test_seed_is_idempotent(self):
        expected = sum(len(entries) for entries in CATALOG.values())

        call_command('seed_data', stdout=StringIO())
        call_command('seed_data', stdout=StringIO())

        self.assertEqual(Category.objects.count(), len(CATALOG))
        self.assertEqual(Product.objects.count(), expected)
        self.assertFalse(Product.objects.filter(stock__gt=200).exists())
