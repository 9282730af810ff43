from datetime import datetime, timezone
from decimal import Decimal

import pytest

from app.models import Order, Product
from app.services.order_service import OrderCreationError, build_order_number, create_order, find_product

T0 = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)


class TestFindProduct:
    def test_case_insensitive_and_tenant_scoped(self, catalog):
        product = find_product(catalog, "T1", "sku-001")

        assert product.sku == "SKU-001"
        assert product.name == "Green Tea"
        assert product.unit_price == Decimal("4.50")
        assert product.stock == 10
        assert find_product(catalog, "T3", "SKU-001") is None

    def test_inactive_product_hidden(self, catalog):
        product = catalog.query(Product).filter(Product.tenant_id == "T1", Product.sku == "SKU-001").one()
        product.is_active = False
        catalog.commit()

        assert find_product(catalog, "T1", "SKU-001") is None


class TestCreateOrder:
    def test_creates_order_and_decrements_stock(self, catalog):
        reference = create_order(catalog, "T1", "C1", "SKU-001", 4, "bank_transfer", now=T0)

        assert reference.startswith(f"ORD-{int(T0.timestamp())}-SKU-001-")
        order = catalog.query(Order).one()
        assert order.order_number == reference
        assert order.total_amount == Decimal("18.00")
        assert order.payment_method == "bank_transfer"
        assert order.status == "pending"
        assert find_product(catalog, "T1", "SKU-001").stock == 6

    def test_insufficient_stock(self, catalog):
        with pytest.raises(OrderCreationError, match="Only 10"):
            create_order(catalog, "T1", "C1", "SKU-001", 11)

        assert catalog.query(Order).count() == 0
        assert find_product(catalog, "T1", "SKU-001").stock == 10

    def test_unknown_product(self, catalog):
        with pytest.raises(OrderCreationError):
            create_order(catalog, "T1", "C1", "SKU-404", 1)

    def test_order_numbers_are_unique(self):
        assert build_order_number("SKU-001", T0) != build_order_number("SKU-001", T0)
