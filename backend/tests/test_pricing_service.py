"""Unit-price resolution, tax and order totals."""

from decimal import Decimal
from types import SimpleNamespace

import pytest

from smartbiz.pos.tab import CartLine
from smartbiz.services import pricing_service
from smartbiz.services.pricing_service import SaleType


def line(price=100, *, cost=None, tax_rate=0, quantity=1, sale_type=SaleType.NORMAL, override=None):
    return CartLine(
        product_id=1,
        name="Item",
        quantity=quantity,
        list_price=Decimal(str(price)),
        cost_price=Decimal(str(cost)) if cost is not None else None,
        tax_rate=Decimal(str(tax_rate)),
        sale_type=sale_type,
        override_price=Decimal(str(override)) if override is not None else None,
    )


class TestResolveUnitPrice:
    def test_normal_and_vip_use_list_price(self):
        assert pricing_service.resolve_unit_price(line(250)) == Decimal("250")
        assert pricing_service.resolve_unit_price(line(250, sale_type=SaleType.VIP)) == Decimal("250")

    def test_override_is_returned_verbatim(self):
        assert pricing_service.resolve_unit_price(line(250, override="199.5")) == Decimal("199.5")

    def test_free_is_zero_even_with_override(self):
        assert pricing_service.resolve_unit_price(line(250, sale_type=SaleType.FREE)) == 0
        assert pricing_service.resolve_unit_price(line(250, sale_type=SaleType.FREE, override=80)) == 0

    def test_at_cost_uses_cost_price(self):
        assert pricing_service.resolve_unit_price(line(100, cost=70, sale_type=SaleType.AT_COST)) == Decimal("70")

    def test_at_cost_with_zero_cost_falls_back_to_list_price(self):
        assert pricing_service.resolve_unit_price(line(100, cost=0, sale_type=SaleType.AT_COST)) == Decimal("100")
        assert pricing_service.resolve_unit_price(line(100, cost=None, sale_type=SaleType.AT_COST)) == Decimal("100")

    def test_clearance_without_manual_price_never_returns_zero(self):
        assert pricing_service.resolve_unit_price(line(100, cost=0, sale_type=SaleType.CLEARANCE)) == Decimal("100")
        assert pricing_service.resolve_unit_price(line(100, cost=40, sale_type=SaleType.CLEARANCE)) == Decimal("40")
        assert pricing_service.resolve_unit_price(
            line(100, cost=40, sale_type=SaleType.CLEARANCE, override=25)
        ) == Decimal("25")

    def test_unknown_tag_fails_closed_to_list_price(self):
        item = SimpleNamespace(
            list_price=Decimal("90"), cost_price=Decimal("10"), tax_rate=0,
            quantity=1, sale_type="WHOLESALE", override_price=None,
        )
        assert pricing_service.resolve_unit_price(item) == Decimal("90")

    def test_parse_rejects_unknown_tags(self):
        assert SaleType.parse(None) is SaleType.NORMAL
        assert SaleType.parse("at_cost") is SaleType.AT_COST
        with pytest.raises(ValueError):
            SaleType.parse("WHOLESALE")

    def test_every_sale_type_has_a_policy(self):
        for sale_type in SaleType:
            pricing_service.resolve_unit_price(line(10, cost=5, sale_type=sale_type))


class TestTax:
    def test_not_taxable_sentinel(self):
        assert pricing_service.line_tax(line(100, tax_rate=-1, quantity=3)) == 0

    def test_line_tax_is_percentage_of_line_subtotal(self):
        assert pricing_service.line_tax(line(100000, tax_rate=10, quantity=3)) == Decimal("30000")

    def test_line_tax_is_not_rounded(self):
        assert pricing_service.line_tax(line(333, tax_rate=10)) == Decimal("33.3")


class TestOrderTotals:
    def test_single_taxed_line(self):
        totals = pricing_service.order_totals([line(100000, tax_rate=10, quantity=3)])
        assert totals.subtotal == Decimal("300000")
        assert totals.discount == 0
        assert totals.tax_total == Decimal("30000")
        assert totals.grand_total == Decimal("330000")

    def test_rounding_happens_once_on_totals(self):
        lines = [line(333, tax_rate=10) for _ in range(3)]
        totals = pricing_service.order_totals(lines)
        # 3 x 33.3 = 99.9 -> 100; rounding per line would give 99
        assert totals.tax_total == Decimal("100")
        assert totals.grand_total == Decimal("1099")

    def test_discount_is_capped_at_subtotal(self):
        totals = pricing_service.order_totals([line(50000, tax_rate=10)], loyalty_discount=Decimal("80000"))
        assert totals.discount == Decimal("50000")
        assert totals.subtotal - totals.discount == 0
        assert totals.grand_total == Decimal("5000")

    def test_mixed_sale_types(self):
        lines = [
            line(20000, quantity=2),
            line(15000, cost=9000, sale_type=SaleType.AT_COST),
            line(50000, sale_type=SaleType.FREE, tax_rate=10),
        ]
        totals = pricing_service.order_totals(lines)
        assert totals.subtotal == Decimal("49000")
        assert totals.tax_total == 0
        assert totals.to_dict() == {
            "subtotal": "49000",
            "discount": "0",
            "tax_total": "0",
            "grand_total": "49000",
        }


class TestChangeAndLoyalty:
    def test_exact_cash_gives_zero_change(self):
        assert pricing_service.change_due(Decimal("330000"), Decimal("330000")) == 0

    def test_short_cash_gives_none(self):
        assert pricing_service.change_due(Decimal("300000"), Decimal("330000")) is None

    def test_loyalty_discount(self):
        assert pricing_service.loyalty_discount(5, Decimal("1000")) == Decimal("5000")
        assert pricing_service.loyalty_discount(0, Decimal("1000")) == 0

    def test_earned_points_respects_minimum_and_floors(self):
        setting = SimpleNamespace(
            is_active=True,
            points_per_currency=Decimal("0.0001"),
            min_order_value=Decimal("50000"),
        )
        assert pricing_service.earned_points(Decimal("330000"), setting) == 33
        assert pricing_service.earned_points(Decimal("49999"), setting) == 0
        assert pricing_service.earned_points(Decimal("330000"), None) == 0
        setting.is_active = False
        assert pricing_service.earned_points(Decimal("330000"), setting) == 0
