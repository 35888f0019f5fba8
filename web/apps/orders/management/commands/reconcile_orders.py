"""Retry unfinished cancellation side effects and release orphaned stock.

Run periodically (cron, k8s CronJob)::

    python manage.py reconcile_orders --limit 200 --orphan-minutes 30
"""

from datetime import timedelta

from django.core.management.base import BaseCommand

from apps.orders.cancellation import StepStatus
from apps.orders import providers


class Command(BaseCommand):
    help = "Re-run refunds and stock restoration for cancelled orders, and release orphaned reservations."

    def add_arguments(self, parser):
        parser.add_argument("--limit", type=int, default=100, help="Maximum orders (and orphans) per run.")
        parser.add_argument(
            "--orphan-minutes",
            type=int,
            default=30,
            help="Age after which an unlinked reservation is considered orphaned.",
        )

    def handle(self, *args, **options):
        report = providers.get_services().cancellation.reconcile(
            limit=options["limit"], orphan_age=timedelta(minutes=options["orphan_minutes"])
        )
        failed = 0
        for result in report.orders:
            steps = ", ".join(f"{s.step}={s.status.value}" for s in result.side_effects)
            self.stdout.write(f"{result.order.number}: {result.summary} ({steps})")
            failed += sum(1 for s in result.side_effects if s.status == StepStatus.FAILED)
        self.stdout.write(
            f"reconciled {len(report.orders)} orders, released {report.orphans_released} orphaned reservations, "
            f"{failed} steps still failing"
        )
        if report.payments_refunded:
            self.stdout.write(f"refunded {report.payments_refunded} payments received for unpayable orders")
