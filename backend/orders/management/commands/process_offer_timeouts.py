from django.core.management.base import BaseCommand

from services.wiring import get_services


class Command(BaseCommand):
    help = "Re-offer or expire pending orders whose offer window has passed."

    def handle(self, *args, **options):
        reoffered, expired = get_services().coordinator.sweep_offer_timeouts()

        self.stdout.write(
            self.style.SUCCESS(
                f"Re-offered {reoffered} order(s); expired {expired} order(s) with no driver."
            )
        )
