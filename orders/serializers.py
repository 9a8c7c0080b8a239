def _money(value):
    return str(value) if value is not None else None


def serialize_item(item) -> dict:
    return {
        "id": item.pk,
        "product_id": item.product_id,
        "variant_id": item.variant_id,
        "quantity": item.quantity,
        "unit_price": _money(item.unit_price),
        "metadata": item.metadata,
    }


def serialize_event(event) -> dict:
    return {
        "status": event.status,
        "type": event.type,
        "payload": event.payload,
        "created_at": event.created_at.isoformat(),
    }


def serialize_order(order, *, items: bool = False, events: bool = False) -> dict:
    data = {
        "id": str(order.pk),
        "order_number": order.order_number,
        "user_id": order.user_id,
        "customer_name": order.customer_name,
        "customer_email": order.customer_email,
        "customer_phone": order.customer_phone,
        "shipping_address": order.shipping_address,
        "total_amount": _money(order.total_amount),
        "is_preorder": order.is_preorder,
        "order_status": order.order_status,
        "payment_status": order.payment_status,
        "payment_reference": order.payment_reference,
        "payment_gateway": order.payment_gateway,
        "estimated_delivery_date": (
            order.estimated_delivery_date.isoformat() if order.estimated_delivery_date else None
        ),
        "created_at": order.created_at.isoformat() if order.created_at else None,
        "updated_at": order.updated_at.isoformat() if order.updated_at else None,
    }
    if items:
        data["items"] = [serialize_item(i) for i in order.items.all()]
    if events:
        data["events"] = [serialize_event(e) for e in order.events.all()]
    return data
