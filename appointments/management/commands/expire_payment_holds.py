from django.core.management.base import BaseCommand

from appointments.services import expire_lapsed_holds


class Command(BaseCommand):
    help = "Cancels appointments whose online payment hold has lapsed and frees their slots."

    def handle(self, *args, **options):
        expired = expire_lapsed_holds()
        if expired:
            self.stdout.write(self.style.SUCCESS(f"Expired {expired} lapsed payment hold(s)."))
        else:
            self.stdout.write("No lapsed payment holds.")
