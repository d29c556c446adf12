"""Fulfillment status derivation for imported orders."""

from __future__ import annotations

from coinbook.imports.order_sync import advance_status, line_item_status


class TestLineItemStatus:
    def test_delivered_shipment_wins(self):
        order = {
            "fulfillment_status": "fulfilled",
            "fulfillments": [{"shipment_status": "delivered", "line_items": [{"id": 10}]}],
        }
        assert line_item_status({"id": 10, "fulfillment_status": "fulfilled"}, order) == "delivered"

    def test_other_lines_in_order_are_not_delivered(self):
        order = {"fulfillments": [{"shipment_status": "delivered", "line_items": [{"id": 10}]}]}
        assert line_item_status({"id": 11, "fulfillment_status": "fulfilled"}, order) == "fulfilled"

    def test_falls_back_to_order_status(self):
        assert line_item_status({"id": 1}, {"fulfillment_status": "partial"}) == "partial"

    def test_unknown_status_is_unfulfilled(self):
        assert line_item_status({"id": 1, "fulfillment_status": "restocked"}, {}) == "unfulfilled"
        assert line_item_status({"id": 1}, {}) == "unfulfilled"


class TestAdvanceStatus:
    def test_moves_forward(self):
        assert advance_status("unfulfilled", "fulfilled") == "fulfilled"
        assert advance_status("fulfilled", "delivered") == "delivered"

    def test_never_moves_back(self):
        assert advance_status("delivered", "fulfilled") == "delivered"
        assert advance_status("delivered", "unfulfilled") == "delivered"

    def test_unknown_incoming_ignored(self):
        assert advance_status("partial", "bogus") == "partial"
