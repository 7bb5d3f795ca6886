"""Tests for order assembly and the order lifecycle."""

from datetime import datetime, timezone

import pytest

from shop_service.errors import InvalidTransitionError, OrderValidationError
from shop_service.orders import (
    TERMINAL_STATES,
    OrderStatus,
    assemble_order,
    can_transition,
    ensure_transition,
    generate_order_number,
    generate_uuid_order_number,
)
from shop_service.pricing import LineItem

ADDRESS = {
    "name": "Li Wei",
    "phone": "13800000000",
    "province": "Zhejiang",
    "city": "Hangzhou",
    "district": "Xihu",
    "detail": "1 Lingyin Road",
}


def items():
    return [
        LineItem("prod-headphones", 1, 16000, {"color": "silver"}, name="Headphones", image="/h.png"),
        LineItem("prod-backpack", 2, 8000, name="Backpack"),
    ]


class TestOrderNumbers:
    def test_timestamp_format(self):
        number = generate_order_number(now_ms=1718000000000)
        assert number.startswith("ORD1718000000000")
        assert len(number) == len("ORD1718000000000") + 3
        assert number[3:].isdigit()

    def test_uuid_format(self):
        number = generate_uuid_order_number()
        assert number.startswith("ORD-")
        assert len(number) == 4 + 36


class TestAssembleOrder:
    def test_builds_pending_order(self):
        draft = assemble_order(items(), ADDRESS, number_factory=lambda: "ORD1")
        assert draft.order_number == "ORD1"
        assert draft.status == OrderStatus.PENDING
        assert draft.calculation.subtotal == 32000
        assert draft.calculation.shipping == 0
        assert draft.calculation.total == 32000
        assert draft.payment_method == "wxpay"

    def test_applies_coupon(self):
        draft = assemble_order(items(), ADDRESS, coupon_code="SAVE20")
        assert draft.coupon_code == "SAVE20"
        assert draft.calculation.discount == 2000
        assert draft.calculation.total == 30000

    def test_snapshots_lines(self):
        draft = assemble_order(items(), ADDRESS)
        first = draft.items[0]
        assert first.name == "Headphones"
        assert first.unit_price == 16000
        assert dict(first.variant_selection) == {"color": "silver"}
        assert first.line_total == 16000

    def test_snapshot_is_independent_of_input(self):
        variants = {"color": "silver"}
        source = [LineItem("p1", 1, 1000, variants, name="Mug")]
        draft = assemble_order(source, ADDRESS)
        variants["color"] = "black"
        assert dict(draft.items[0].variant_selection) == {"color": "silver"}
        with pytest.raises(TypeError):
            draft.items[0].variant_selection["color"] = "gold"

    def test_uses_given_time(self):
        now = datetime(2024, 6, 1, tzinfo=timezone.utc)
        assert assemble_order(items(), ADDRESS, now=now).created_at == now

    def test_empty_items_rejected(self):
        with pytest.raises(OrderValidationError) as exc_info:
            assemble_order([], ADDRESS)
        assert "at least one item" in exc_info.value.details[0]

    def test_blank_address_field_rejected(self):
        address = dict(ADDRESS, city="  ")
        with pytest.raises(OrderValidationError) as exc_info:
            assemble_order(items(), address)
        assert any("city" in problem for problem in exc_info.value.details)

    def test_missing_address_rejected(self):
        with pytest.raises(OrderValidationError):
            assemble_order(items(), None)

    def test_invalid_items_rejected(self):
        bad = [LineItem("p1", 0, 1000), LineItem("p2", 1, -5)]
        with pytest.raises(OrderValidationError) as exc_info:
            assemble_order(bad, ADDRESS)
        assert len(exc_info.value.details) == 2

    def test_number_factory_not_called_on_invalid_input(self):
        calls = []

        def factory():
            calls.append(1)
            return "ORD1"

        with pytest.raises(OrderValidationError):
            assemble_order([], ADDRESS, number_factory=factory)
        assert calls == []


class TestLifecycle:
    @pytest.mark.parametrize("current,target", [
        ("pending", "paid"),
        ("pending", "cancelled"),
        ("paid", "shipped"),
        ("shipped", "delivered"),
    ])
    def test_allowed(self, current, target):
        assert can_transition(current, target)
        assert ensure_transition("o1", current, target) == OrderStatus(target)

    @pytest.mark.parametrize("current,target", [
        ("pending", "shipped"),
        ("pending", "delivered"),
        ("paid", "cancelled"),
        ("paid", "pending"),
        ("shipped", "paid"),
        ("delivered", "cancelled"),
        ("cancelled", "paid"),
    ])
    def test_rejected(self, current, target):
        assert not can_transition(current, target)
        with pytest.raises(InvalidTransitionError) as exc_info:
            ensure_transition("o1", current, target)
        assert exc_info.value.current == current
        assert exc_info.value.target == target

    def test_terminal_states(self):
        assert TERMINAL_STATES == {OrderStatus.DELIVERED, OrderStatus.CANCELLED}
