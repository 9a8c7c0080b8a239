import time

from django.core.management.base import BaseCommand
from django.utils import timezone

from orders.models import Order, PaymentStatus
from payments.integrations import GatewayError
from payments.services import reconcile_order


class Command(BaseCommand):
    help = "Poll the payment gateway for orders stuck at INITIATED and settle them"

    def add_arguments(self, parser):
        parser.add_argument("--max", type=int, default=50)
        parser.add_argument("--sleep", type=float, default=0.5)
        parser.add_argument("--older-than-minutes", type=int, default=15)
        parser.add_argument(
            "--abandon-after-hours", type=int, default=0,
            help="Fail orders with no gateway payment attempt after N hours (0 = never)",
        )

    def handle(self, *args, **opts):
        now = timezone.now()
        cutoff = now - timezone.timedelta(minutes=opts["older_than_minutes"])
        abandon_before = None
        if opts["abandon_after_hours"] > 0:
            abandon_before = now - timezone.timedelta(hours=opts["abandon_after_hours"])

        qs = (
            Order.objects.filter(payment_status=PaymentStatus.INITIATED, is_preorder=False, updated_at__lt=cutoff)
            .order_by("updated_at")[:opts["max"]]
        )
        pks = list(qs.values_list("pk", "order_number"))
        if not pks:
            self.stdout.write(self.style.SUCCESS("No pending payments to reconcile."))
            return

        updated = 0
        for pk, number in pks:
            try:
                outcome = reconcile_order(pk, abandon_before=abandon_before)
            except GatewayError as e:
                self.stdout.write(self.style.WARNING(f"{number}: {e}"))
                continue
            if outcome == "unchanged":
                self.stdout.write(f"{number}: still pending")
            else:
                updated += 1
                self.stdout.write(self.style.SUCCESS(f"Updated {number} -> {outcome}"))
            if opts["sleep"]:
                time.sleep(opts["sleep"])

        self.stdout.write(self.style.SUCCESS(f"Checked {len(pks)}, updated {updated} orders."))
