"""
Management command to seed the database with a sample aquaculture catalog.

Generates:
- Categories for fingerlings, feeds, equipment and pond supplies
- Products with KES prices and random stock levels

Usage:
    python manage.py seed_data
    python manage.py seed_data --clear  # Clear existing catalog first
"""
import random
from decimal import Decimal
from django.core.management.base import BaseCommand
from django.db import transaction

from inventory.models import Category, Product


CATALOG = {
    'Fingerlings': [
        ('Tilapia Fingerlings (pack of 100)', '1500.00'),
        ('Catfish Fingerlings (pack of 100)', '1800.00'),
        ('Mono-sex Tilapia Fry (pack of 500)', '6000.00'),
    ],
    'Fish Feed': [
        ('Floating Pellets 2mm (10kg)', '1450.00'),
        ('Floating Pellets 4mm (25kg)', '3400.00'),
        ('Starter Crumble (5kg)', '950.00'),
        ('Broodstock Feed (25kg)', '3900.00'),
    ],
    'Pond Equipment': [
        ('Pond Liner 0.5mm (per m2)', '350.00'),
        ('Aerator 1HP', '42000.00'),
        ('Seine Net 20m', '7500.00'),
        ('Scoop Net', '850.00'),
    ],
    'Water Quality': [
        ('pH Test Kit', '2200.00'),
        ('Dissolved Oxygen Meter', '18500.00'),
        ('Agricultural Lime (50kg)', '700.00'),
    ],
}


class Command(BaseCommand):
    help = 'Seed the database with a sample aquaculture product catalog'

    def add_arguments(self, parser):
        parser.add_argument(
            '--clear',
            action='store_true',
            help='Clear existing catalog before seeding (products with orders are kept)',
        )
        parser.add_argument(
            '--max-stock',
            type=int,
            default=200,
            help='Upper bound for random stock levels (default: 200)',
        )

    def handle(self, *args, **options):
        if options['clear']:
            self.stdout.write('Clearing existing catalog...')
            self._clear_data()

        self.stdout.write('Starting catalog seeding...')

        with transaction.atomic():
            categories = self._create_categories()
            self._create_products(categories, options['max_stock'])

        self.stdout.write(self.style.SUCCESS('Catalog seeding completed successfully!'))

    def _clear_data(self):
        # Order items protect their products; only unreferenced rows go
        Product.objects.filter(order_items__isnull=True).delete()
        Category.objects.filter(products__isnull=True).delete()
        self.stdout.write(self.style.WARNING('Unreferenced catalog rows cleared.'))

    def _create_categories(self):
        categories = {}
        for name in CATALOG:
            category, created = Category.objects.get_or_create(name=name)
            categories[name] = category
            if created:
                self.stdout.write(f'  Created category: {name}')

        self.stdout.write(self.style.SUCCESS(f'Created {len(categories)} categories'))
        return categories

    def _create_products(self, categories, max_stock):
        created_count = 0
        for category_name, entries in CATALOG.items():
            for name, price in entries:
                _, created = Product.objects.get_or_create(
                    name=name,
                    defaults={
                        'category': categories[category_name],
                        'price': Decimal(price),
                        'stock': random.randint(0, max_stock),
                        'low_stock_threshold': random.randint(5, 20),
                    }
                )
                if created:
                    created_count += 1

        self.stdout.write(self.style.SUCCESS(f'Created {created_count} products'))
