"""
Management command to seed the database with sample data.

Generates:
- Categories with SKU codes
- Products with generated SKUs
- Opening stock recorded as inbound movements, so the ledger
  reproduces every product's on-hand from the first row

Usage:
    python manage.py seed_data
    python manage.py seed_data --clear  # Clear existing data first
"""
import random
from decimal import Decimal
from django.core.management.base import BaseCommand
from django.db import transaction

from core.django_store import DjangoStore
from inventory.models import Category, Product, InventoryMovement
from inventory.services import InventoryLedger
from inventory.sku import generate_sku

SEED_ACTOR = 'seed_data'


class Command(BaseCommand):
    help = 'Seed the database with sample categories, products and opening stock'

    def add_arguments(self, parser):
        parser.add_argument(
            '--clear',
            action='store_true',
            help='Clear existing data before seeding',
        )
        parser.add_argument(
            '--products',
            type=int,
            default=200,
            help='Number of products to create (default: 200)',
        )

    def handle(self, *args, **options):
        if options['clear']:
            self.stdout.write('Clearing existing data...')
            self._clear_data()

        self.stdout.write('Starting database seeding...')

        with transaction.atomic():
            categories = self._create_categories()
            products = self._create_products(options['products'], categories)
            self._receive_opening_stock(products)

        self.stdout.write(self.style.SUCCESS('Database seeding completed successfully!'))

    def _clear_data(self):
        """Clear all existing data."""
        from orders.models import OrderItem, Order

        OrderItem.objects.all().delete()
        Order.objects.all().delete()
        # Queryset delete skips the per-row append-only guard
        InventoryMovement.objects.all().delete()
        Product.objects.all().delete()
        Category.objects.all().delete()

        self.stdout.write(self.style.WARNING('All existing data cleared.'))

    def _create_categories(self):
        """Create sample categories."""
        category_codes = [
            ('Electronics', 'ELEC'), ('Cosmetics', 'BEAU'), ('Clothing', 'CLTH'),
            ('Health Supplements', 'HLTH'), ('Baby Products', 'BABY'),
            ('Kitchen', 'KTCH'), ('Toys & Games', 'TOYS'),
        ]

        categories = []
        for name, code in category_codes:
            category, created = Category.objects.get_or_create(
                name=name,
                defaults={'code': code}
            )
            categories.append(category)
            if created:
                self.stdout.write(f'  Created category: {name}')

        self.stdout.write(self.style.SUCCESS(f'Created {len(categories)} categories'))
        return categories

    def _create_products(self, count, categories):
        """Create sample products with generated SKUs."""
        models_by_code = {
            'ELEC': ['iPhone15', 'GalaxyBuds', 'PowerBank', 'SmartWatch', 'USBCHub'],
            'BEAU': ['SerumMini', 'SunCream', 'LipTint', 'CushionPact'],
            'CLTH': ['CottonTee', 'DenimJacket', 'WoolScarf', 'RunningSocks'],
            'HLTH': ['Omega3', 'VitaminD', 'Probiotics', 'Collagen'],
            'BABY': ['Diapers', 'FormulaStage1', 'BabyWipes'],
            'KTCH': ['AirFryer', 'RiceCooker', 'KnifeSet'],
            'TOYS': ['BlockSet', 'PuzzleBox', 'RCCar'],
        }
        colors = ['Black', 'White', 'Silver', 'Blue', 'Red', 'Pink', '']
        brands = ['Apple', 'Samsung', 'Xiaomi', 'Anker', 'Nike', 'iHerb', '']

        products = []
        self.stdout.write(f'Creating {count} products...')

        for i in range(count):
            category = random.choice(categories)
            model = random.choice(models_by_code.get(category.code, ['Product']))
            color = random.choice(colors)
            brand = random.choice(brands)

            products.append(Product(
                name=' '.join(part for part in [brand, model, color] if part),
                sku=generate_sku(category.code, model, color, brand),
                category=category,
                low_stock_threshold=random.randint(5, 20),
                is_active=random.random() > 0.05  # 95% active
            ))

        Product.objects.bulk_create(products)

        products = list(Product.objects.filter(movements__isnull=True))
        self.stdout.write(self.style.SUCCESS(f'Created {len(products)} products'))
        return products

    def _receive_opening_stock(self, products):
        """Record opening stock through the ledger."""
        ledger = InventoryLedger(DjangoStore())

        for product in products:
            quantity = random.randint(0, 300)
            if quantity == 0:
                continue
            ledger.record_inbound(
                product.id,
                quantity,
                unit_cost=Decimal(str(round(random.uniform(2, 400), 2))),
                note='Opening stock',
                actor_id=SEED_ACTOR,
            )

        self.stdout.write(self.style.SUCCESS(f'Received opening stock for {len(products)} products'))
