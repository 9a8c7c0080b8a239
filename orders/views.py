import json
import logging
from functools import wraps

from django.http import JsonResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_GET, require_POST

from .serializers import serialize_order
from .services import (
    OrderCreationError,
    OrderNotFound,
    OrderValidationError,
    create_order,
    delete_order,
    get_order,
    list_orders,
    set_estimated_delivery_date,
    update_order_status,
)
from .transitions import ConfirmationRequired, StatusTransitionError

logger = logging.getLogger(__name__)


def _json_body(request):
    try:
        body = json.loads(request.body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return None
    return body if isinstance(body, dict) else None


def _error(message: str, status: int, **extra) -> JsonResponse:
    return JsonResponse({"success": False, "error": message, **extra}, status=status)


def staff_required(view):
    @wraps(view)
    def wrapper(request, *args, **kwargs):
        if not (request.user.is_authenticated and request.user.is_staff):
            return _error("Admin access required", 403)
        return view(request, *args, **kwargs)
    return wrapper


def _can_view(request, order) -> bool:
    user = request.user
    if user.is_authenticated and user.is_staff:
        return True
    if order.user_id is None:
        return True  # guest order, the id is the capability
    return user.is_authenticated and str(user.pk) == order.user_id


@csrf_exempt
@require_POST
def create_order_view(request):
    body = _json_body(request)
    if body is None:
        return _error("Invalid JSON body", 400)

    user_id = str(request.user.pk) if request.user.is_authenticated else body.get("user_id")
    try:
        created = create_order(
            customer_info={
                "name": body.get("customer_name"),
                "email": body.get("customer_email"),
                "phone": body.get("customer_phone"),
            },
            shipping_address=body.get("shipping_address"),
            total_amount=body.get("total_amount"),
            is_preorder=bool(body.get("is_preorder")),
            line_items=body.get("items") or [],
            user_id=user_id,
        )
    except OrderValidationError as e:
        return _error(str(e), 400)
    except OrderCreationError as e:
        logger.error("Order creation failed at %s stage: %s", e.stage, e)
        return _error("Could not create order", 500, stage=e.stage)

    return JsonResponse(
        {"success": True, "order_id": created.order_id, "order_number": created.order_number}, status=201
    )


@require_GET
def order_detail_view(request, order_id):
    try:
        order = get_order(order_id)
    except OrderNotFound:
        return _error("Order not found", 404)
    if not _can_view(request, order):
        return _error("Order not found", 404)
    return JsonResponse({"success": True, "order": serialize_order(order, items=True, events=True)})


@require_GET
def payment_status_view(request, order_id):
    """Polled by the checkout page while waiting for the webhook."""
    try:
        order = get_order(order_id)
    except OrderNotFound:
        return JsonResponse({"status": "UNKNOWN", "reference": None, "gateway": None}, status=404)
    if not _can_view(request, order):
        return JsonResponse({"status": "UNKNOWN", "reference": None, "gateway": None}, status=404)
    return JsonResponse({
        "status": order.payment_status or "UNKNOWN",
        "reference": order.payment_reference,
        "gateway": order.payment_gateway or None,
        "order_status": order.order_status,
    })


@require_GET
@staff_required
def admin_order_list_view(request):
    try:
        limit = min(max(int(request.GET.get("limit", "50")), 1), 200)
        offset = max(int(request.GET.get("offset", "0")), 0)
    except ValueError:
        return _error("limit and offset must be integers", 400)

    orders, total = list_orders(
        status=request.GET.get("status") or None,
        payment_status=request.GET.get("payment_status") or None,
        search=(request.GET.get("search") or "").strip() or None,
        limit=limit,
        offset=offset,
    )
    return JsonResponse({"orders": [serialize_order(o) for o in orders], "total": total})


@require_POST
@staff_required
def admin_update_status_view(request, order_id):
    body = _json_body(request)
    if not body or not body.get("status"):
        return _error("status is required", 400)

    try:
        order, transition = update_order_status(
            order_id,
            str(body["status"]).upper(),
            confirmed=bool(body.get("confirm")),
            actor=request.user.get_username(),
        )
    except OrderNotFound:
        return _error("Order not found", 404)
    except ConfirmationRequired as e:
        return JsonResponse(
            {"success": False, "requires_confirmation": True, "warning": e.warning}, status=409
        )
    except StatusTransitionError as e:
        return _error(str(e), 400)

    return JsonResponse({
        "success": True,
        "backward": transition.backward,
        "order": serialize_order(order),
    })


@require_POST
@staff_required
def admin_delivery_date_view(request, order_id):
    body = _json_body(request)
    if body is None or "estimated_delivery_date" not in body:
        return _error("estimated_delivery_date is required", 400)
    try:
        order = set_estimated_delivery_date(
            order_id, body["estimated_delivery_date"], actor=request.user.get_username()
        )
    except OrderNotFound:
        return _error("Order not found", 404)
    except OrderValidationError as e:
        return _error(str(e), 400)
    return JsonResponse({"success": True, "order": serialize_order(order)})


@require_POST
@staff_required
def admin_delete_order_view(request, order_id):
    try:
        delete_order(order_id)
    except OrderNotFound:
        return _error("Order not found", 404)
    return JsonResponse({"success": True})
