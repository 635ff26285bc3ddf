from django.core.management.base import BaseCommand

from novels.services import retry_pending_author_credits


class Command(BaseCommand):
    help = (
        "Retry author earnings that could not be credited when a chapter was purchased, "
        "including purchases that never reached the retry queue."
    )

    def add_arguments(self, parser):
        parser.add_argument(
            "--limit",
            type=int,
            default=None,
            help="Process at most this many credits.",
        )

    def handle(self, *args, **options):
        credited, failed = retry_pending_author_credits(limit=options["limit"])
        processed = credited + failed
        if not processed:
            self.stdout.write("No pending author credits.")
            return

        self.stdout.write(
            self.style.SUCCESS(f"Credited {credited} of {processed} pending author credits.")
        )
        if failed:
            self.stderr.write(self.style.WARNING(f"{failed} credits failed again and stay queued."))
