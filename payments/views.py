import json
import logging

from django.http import JsonResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_POST

from orders.serializers import serialize_order

from .integrations import GatewayError
from .services import PaymentError, initiate_payment, verify_payment

logger = logging.getLogger(__name__)


def _json_body(request):
    try:
        body = json.loads(request.body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return None
    return body if isinstance(body, dict) else None


@csrf_exempt
@require_POST
def initiate_payment_view(request):
    body = _json_body(request)
    if body is None:
        return JsonResponse({"success": False, "paymentStatus": "PENDING", "error": "Invalid JSON body"}, status=400)

    order_id = body.get("orderId")
    order_number = body.get("orderNumber")
    required = ["orderId", "orderNumber", "amount", "customerEmail", "customerName"]
    missing = [k for k in required if not body.get(k)]
    if missing:
        return JsonResponse({
            "success": False,
            "paymentStatus": "PENDING",
            "orderId": order_id,
            "orderNumber": order_number,
            "error": f"Missing required fields: {', '.join(missing)}",
        }, status=400)

    base = {"orderId": order_id, "orderNumber": order_number}
    try:
        result = initiate_payment(
            order_id,
            str(order_number),
            body["amount"],
            customer={
                "name": body.get("customerName"),
                "email": body.get("customerEmail"),
                "phone": body.get("customerPhone"),
            },
        )
    except PaymentError as e:
        return JsonResponse({**base, "success": False, "paymentStatus": "PENDING", "error": str(e)},
                            status=e.status_code)
    except GatewayError as e:
        logger.error("Payment initiation failed for order %s: %s", order_id, e)
        return JsonResponse({**base, "success": False, "paymentStatus": "PENDING",
                             "error": "Failed to create payment order"}, status=500)

    resp = {
        **base,
        "success": True,
        "paymentStatus": result.payment_status,
        "paymentReference": result.payment_reference,
        "paymentGateway": result.gateway,
        "nextAction": result.next_action,
        "message": result.message,
        **result.launch_params,
    }
    if result.redirect_url:
        resp["redirectUrl"] = result.redirect_url
    return JsonResponse(resp, status=200)


@csrf_exempt
@require_POST
def verify_payment_view(request):
    body = _json_body(request)
    if body is None:
        return JsonResponse({"success": False, "error": "Invalid JSON body"}, status=400)

    required = ["razorpay_order_id", "razorpay_payment_id", "razorpay_signature", "orderId"]
    missing = [k for k in required if not body.get(k)]
    if missing:
        return JsonResponse({"success": False, "error": "Missing required payment details"}, status=400)

    try:
        order, applied = verify_payment(
            str(body["razorpay_order_id"]),
            str(body["razorpay_payment_id"]),
            str(body["razorpay_signature"]),
            body["orderId"],
        )
    except PaymentError as e:
        return JsonResponse({"success": False, "error": str(e)}, status=e.status_code)

    return JsonResponse({
        "success": True,
        "message": "Payment verified and order confirmed" if applied else "Payment already confirmed",
        "razorpay_payment_id": body["razorpay_payment_id"],
        "order": serialize_order(order),
    }, status=200)
