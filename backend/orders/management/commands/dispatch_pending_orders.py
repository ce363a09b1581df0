from django.core.management.base import BaseCommand
from orders.services import sweep_pending_orders


class Command(BaseCommand):
    help = "Run a dispatch search for every pending or confirmed order, oldest first."

    def add_arguments(self, parser):
        parser.add_argument(
            "--limit",
            type=int,
            default=50,
            help="Maximum number of orders to dispatch in one sweep (default: 50).",
        )

    def handle(self, *args, **options):
        attempts = sweep_pending_orders(limit=options["limit"])
        matched = sum(1 for attempt in attempts if attempt.matched)

        self.stdout.write(
            self.style.SUCCESS(
                f"Dispatched {len(attempts)} order(s); matched {matched}, exhausted {len(attempts) - matched}."
            )
        )
