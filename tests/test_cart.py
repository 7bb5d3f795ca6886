"""Tests for cart reconciliation (in-memory Cart)."""

import pytest

from shop_service.cart import (
    Cart,
    QuantityUpdate,
    StockInfo,
    compute_line_key,
    line_id_for,
)
from shop_service.errors import (
    CartLineNotFoundError,
    CartValidationError,
    InsufficientStockError,
    ProductUnavailableError,
)


def lookup_for(stock=10, price=1000, status="published", adjustment=0):
    def lookup(product_id, variants):
        return StockInfo(product_id=product_id, unit_price=price, stock=stock,
                         status=status, price_adjustment=adjustment, name=f"Name {product_id}")
    return lookup


class TestLineKey:
    def test_variant_order_does_not_matter(self):
        a = compute_line_key("p1", {"size": "M", "color": "red"})
        b = compute_line_key("p1", {"color": "red", "size": "M"})
        assert a == b == "p1|color:red|size:M"

    def test_no_variants(self):
        assert compute_line_key("p1", {}) == "p1|"
        assert compute_line_key("p1", None) == "p1|"

    def test_different_variants_differ(self):
        assert compute_line_key("p1", {"size": "M"}) != compute_line_key("p1", {"size": "L"})

    def test_line_id_is_stable(self):
        key = compute_line_key("p1", {"size": "M"})
        assert line_id_for(key) == line_id_for(key)
        assert len(line_id_for(key)) == 16


class TestAddLine:
    def test_add_new_line(self):
        cart = Cart("u1")
        line = cart.add_line("p1", 2, {"size": "M"}, lookup_for())
        assert line.quantity == 2
        assert line.stock_ceiling == 10
        assert len(cart) == 1
        assert line.id in cart

    def test_merges_same_product_and_variants(self):
        cart = Cart("u1")
        cart.add_line("p1", 2, {"size": "M", "color": "red"}, lookup_for())
        line = cart.add_line("p1", 3, {"color": "red", "size": "M"}, lookup_for())
        assert len(cart) == 1
        assert line.quantity == 5

    def test_different_variants_make_separate_lines(self):
        cart = Cart("u1")
        cart.add_line("p1", 1, {"size": "M"}, lookup_for())
        cart.add_line("p1", 1, {"size": "L"}, lookup_for())
        assert len(cart) == 2

    def test_clamps_to_stock(self):
        cart = Cart("u1")
        line = cart.add_line("p1", 15, None, lookup_for(stock=10))
        assert line.quantity == 10

    def test_merge_clamps_to_stock(self):
        cart = Cart("u1")
        cart.add_line("p1", 8, None, lookup_for(stock=10))
        line = cart.add_line("p1", 5, None, lookup_for(stock=10))
        assert line.quantity == 10

    def test_merge_uses_fresh_stock(self):
        cart = Cart("u1")
        cart.add_line("p1", 4, None, lookup_for(stock=10))
        line = cart.add_line("p1", 1, None, lookup_for(stock=3))
        assert line.quantity == 3
        assert line.stock_ceiling == 3

    def test_no_stock_is_rejected(self):
        cart = Cart("u1")
        with pytest.raises(InsufficientStockError):
            cart.add_line("p1", 1, None, lookup_for(stock=0))
        assert len(cart) == 0

    def test_unpublished_product_is_rejected(self):
        cart = Cart("u1")
        with pytest.raises(ProductUnavailableError):
            cart.add_line("p1", 1, None, lookup_for(status="draft"))

    @pytest.mark.parametrize("quantity", [0, -1])
    def test_quantity_below_one_is_rejected(self, quantity):
        cart = Cart("u1")
        with pytest.raises(CartValidationError):
            cart.add_line("p1", quantity, None, lookup_for())


class TestSetQuantity:
    def test_sets_quantity(self):
        cart = Cart("u1")
        line = cart.add_line("p1", 1, None, lookup_for())
        assert cart.set_quantity(line.id, 4).quantity == 4

    def test_clamps_to_ceiling(self):
        cart = Cart("u1")
        line = cart.add_line("p1", 1, None, lookup_for(stock=5))
        assert cart.set_quantity(line.id, 50).quantity == 5

    def test_no_stock_keeps_quantity(self):
        cart = Cart("u1")
        line = cart.add_line("p1", 2, None, lookup_for(stock=5))
        line.stock_ceiling = 0
        with pytest.raises(InsufficientStockError):
            cart.set_quantity(line.id, 5)
        assert cart.get(line.id).quantity == 2
        assert cart.total_quantity == 2

    def test_zero_removes_line(self):
        cart = Cart("u1")
        line = cart.add_line("p1", 1, None, lookup_for())
        assert cart.set_quantity(line.id, 0) is None
        assert len(cart) == 0

    def test_zero_on_missing_line_is_noop(self):
        cart = Cart("u1")
        assert cart.set_quantity("missing", 0) is None

    def test_missing_line(self):
        cart = Cart("u1")
        with pytest.raises(CartLineNotFoundError):
            cart.set_quantity("missing", 2)


class TestRemoveAndClear:
    def test_remove_is_idempotent(self):
        cart = Cart("u1")
        line = cart.add_line("p1", 1, None, lookup_for())
        assert cart.remove_line(line.id) is True
        assert cart.remove_line(line.id) is False

    def test_clear(self):
        cart = Cart("u1")
        cart.add_line("p1", 1, None, lookup_for())
        cart.add_line("p2", 1, None, lookup_for())
        cart.clear()
        cart.clear()
        assert cart.lines == []


class TestBatchUpdate:
    def _cart(self):
        cart = Cart("u1")
        a = cart.add_line("p1", 1, None, lookup_for(stock=5))
        b = cart.add_line("p2", 1, None, lookup_for(stock=5))
        return cart, a, b

    def test_applies_all(self):
        cart, a, b = self._cart()
        cart.batch_update([QuantityUpdate(a.id, 3), QuantityUpdate(b.id, 5)])
        assert cart.get(a.id).quantity == 3
        assert cart.get(b.id).quantity == 5

    def test_one_failure_rejects_all(self):
        cart, a, b = self._cart()
        with pytest.raises(CartValidationError) as exc_info:
            cart.batch_update([QuantityUpdate(a.id, 3), QuantityUpdate(b.id, 6)])
        assert len(exc_info.value.details) == 1
        assert cart.get(a.id).quantity == 1
        assert cart.get(b.id).quantity == 1

    def test_reports_every_failure(self):
        cart, a, _ = self._cart()
        with pytest.raises(CartValidationError) as exc_info:
            cart.batch_update([
                QuantityUpdate(a.id, 0),
                QuantityUpdate("foreign-line", 1),
            ])
        assert len(exc_info.value.details) == 2
        assert cart.get(a.id).quantity == 1


class TestTotalsAndSelection:
    def test_totals_include_variant_adjustment(self):
        cart = Cart("u1")
        cart.add_line("p1", 2, {"color": "silver"}, lookup_for(price=15000, adjustment=1000))
        cart.add_line("p2", 1, None, lookup_for(price=8000))
        assert cart.total_quantity == 3
        assert cart.total_price == 2 * 16000 + 8000

    def test_selected_totals(self):
        cart = Cart("u1")
        a = cart.add_line("p1", 2, None, lookup_for(price=1000))
        cart.add_line("p2", 1, None, lookup_for(price=500))
        cart.toggle_selected(a.id)
        assert cart.selected_quantity == 1
        assert cart.selected_price == 500
        assert [line.product_id for line in cart.selected_lines()] == ["p2"]

    def test_toggle_all_selects_when_any_unselected(self):
        cart = Cart("u1")
        a = cart.add_line("p1", 1, None, lookup_for())
        cart.add_line("p2", 1, None, lookup_for())
        cart.toggle_selected(a.id)
        assert cart.toggle_all() is True
        assert all(line.selected for line in cart.lines)

    def test_toggle_all_deselects_when_all_selected(self):
        cart = Cart("u1")
        cart.add_line("p1", 1, None, lookup_for())
        assert cart.toggle_all() is False
        assert not any(line.selected for line in cart.lines)

    def test_toggle_missing_line(self):
        with pytest.raises(CartLineNotFoundError):
            Cart("u1").toggle_selected("missing")
