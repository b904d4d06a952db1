"""Inventory adjustment for paid orders."""

from storepay.services.orders.inventory import adjust_inventory_for_paid_order


def _adjust(services, order_id):
    with services.session_factory() as db:
        changed = adjust_inventory_for_paid_order(db, order_id)
        db.commit()
        return changed


def test_deducts_tracked_products_once(services):
    services.seed_item("SKU1", quantity=5, reserved=3)
    services.seed_order("ORD1", items=[{"productId": "SKU1", "quantity": 3}])

    assert _adjust(services, "ORD1") is True
    assert _adjust(services, "ORD1") is False

    item = services.item("SKU1")
    assert (item.quantity, item.reserved, item.available) == (2, 0, 2)
    assert item.status == "active"
    assert services.order("ORD1").inventory_updated is True


def test_sold_out_item_marked_out_of_stock(services):
    services.seed_item("SKU1", quantity=2, reserved=2)
    services.seed_order("ORD1", items=[{"productId": "SKU1", "quantity": 2}])

    _adjust(services, "ORD1")

    item = services.item("SKU1")
    assert item.available == 0
    assert item.status == "out_of_stock"


def test_skips_untracked_services_missing_items_and_bad_lines(services):
    services.seed_item("SKU1", quantity=4, track_inventory=False)
    services.seed_item("SVC1", quantity=4, item_type="service")
    services.seed_order(
        "ORD1",
        items=[
            {"productId": "SKU1", "quantity": 1},
            {"productId": "SVC1", "quantity": 1},
            {"productId": "GONE", "quantity": 1},
            {"productId": "SKU1", "quantity": "many"},
            {"quantity": 1},
        ],
    )

    assert _adjust(services, "ORD1") is True
    assert services.item("SKU1").quantity == 4
    assert services.item("SVC1").quantity == 4
