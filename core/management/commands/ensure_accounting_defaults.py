"""
Seed the default construction chart of accounts and wire up AP/WIP settings.

USAGE:
  All businesses:
    python manage.py ensure_accounting_defaults

  One business:
    python manage.py ensure_accounting_defaults --business "Acme Builders"

Existing accounts and already-configured settings are left alone, so the
command is safe to run repeatedly.
"""
from django.core.management.base import BaseCommand, CommandError

from core.accounting_defaults import configure_default_settings
from core.models import Business


class Command(BaseCommand):
    help = "Create default accounts and fill blank AP/WIP accounting settings."

    def add_arguments(self, parser):
        parser.add_argument(
            "--business",
            help="Only seed the business with this exact name.",
        )

    def handle(self, *args, **options):
        businesses = Business.objects.order_by("id")
        name = options.get("business")
        if name:
            businesses = businesses.filter(name=name)
            if not businesses.exists():
                raise CommandError(f"No business named {name!r}.")

        count = 0
        for business in businesses:
            settings_obj = configure_default_settings(business)
            count += 1
            self.stdout.write(
                f"   • {business.name}: AP={settings_obj.ap_account}, WIP={settings_obj.wip_account}"
            )

        self.stdout.write(self.style.SUCCESS(f"✅ Accounting defaults ensured for {count} business(es)"))
