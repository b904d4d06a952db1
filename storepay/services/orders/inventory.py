"""Inventory adjustment for paid orders."""

from datetime import datetime, timezone

from sqlalchemy import update

from storepay.common.logging import logger
from storepay.services.orders.models import Item, Order


def adjust_inventory_for_paid_order(db, order_id: str) -> bool:
    """Deduct ordered quantities from tracked product inventory, once per order.

    The `inventory_updated` flag is claimed with a compare-and-swap in the
    caller's transaction, so a second call (or a concurrent one that commits
    later) changes nothing. Returns True when this call did the adjustment.
    """

    claimed = db.execute(
        update(Order)
        .where(Order.order_id == order_id, Order.inventory_updated.is_(False))
        .values(inventory_updated=True, updated_at=datetime.now(timezone.utc))
    )
    if claimed.rowcount != 1:
        logger.info("inventory already updated order_id=%s", order_id)
        return False

    order = db.get(Order, order_id)
    for line in order.items or []:
        product_id = line.get("productId")
        try:
            ordered = int(line.get("quantity") or 0)
        except (TypeError, ValueError):
            logger.warning("inventory line skipped order_id=%s product_id=%s bad quantity", order_id, product_id)
            continue
        if not product_id or ordered <= 0:
            continue

        item = db.get(Item, product_id)
        if item is None:
            logger.warning("inventory item not found order_id=%s product_id=%s", order_id, product_id)
            continue
        if item.item_type != "product" or not item.track_inventory:
            continue

        item.quantity = max(0, (item.quantity or 0) - ordered)
        item.reserved = max(0, (item.reserved or 0) - ordered)
        item.available = max(0, item.quantity - item.reserved)
        if item.available <= 0:
            item.status = "out_of_stock"
        elif item.status == "out_of_stock":
            item.status = "active"
        logger.info(
            "inventory adjusted order_id=%s product_id=%s ordered=%s quantity=%s available=%s",
            order_id,
            product_id,
            ordered,
            item.quantity,
            item.available,
        )
    return True
