from django.core.management.base import BaseCommand

from orders.services import check_stale_offers


class Command(BaseCommand):
    help = "Alert store owners and drivers about orders waiting too long for a driver to accept."

    def add_arguments(self, parser):
        parser.add_argument(
            "--threshold",
            type=int,
            default=None,
            help="Minutes an order may wait before it is escalated (default: STALE_OFFER_THRESHOLD_MINUTES).",
        )

    def handle(self, *args, **options):
        result = check_stale_offers(threshold_minutes=options["threshold"])

        self.stdout.write(
            self.style.SUCCESS(
                f"Checked {result.checked} stale order(s); escalated {result.escalated}, "
                f"skipped {result.skipped} already escalated."
            )
        )
