"""Management command to detect (and optionally repair) ledger/mirror divergence."""

from django.core.management.base import BaseCommand

from tallyman.exceptions import TallymanError
from tallyman.models import PrincipalBalance
from tallyman.services import reconciliation


class Command(BaseCommand):
    help = "Verify activity log, ledger balances and mirror snapshots agree"

    def add_arguments(self, parser):
        parser.add_argument(
            "--principal",
            default=None,
            help="Check a single principal instead of all of them",
        )
        parser.add_argument(
            "--repair",
            action="store_true",
            help="Resync the mirror for principals whose ledger is consistent",
        )

    def handle(self, *args, **options):
        if options["principal"]:
            principal_ids = [options["principal"]]
        else:
            principal_ids = list(
                PrincipalBalance.objects.order_by("id").values_list("principal_id", flat=True)
            )

        checked = divergent = repaired = 0
        for principal_id in principal_ids:
            checked += 1
            report = reconciliation.verify(principal_id)
            if report.is_consistent:
                continue

            divergent += 1
            self.stdout.write(
                self.style.WARNING(
                    f"{principal_id}: ledger={report.ledger_balance} "
                    f"folded={report.folded_balance} mirror={report.mirror_balance}"
                )
            )
            if not report.ledger_consistent:
                # Activity log and balance row disagree: needs a human.
                self.stdout.write(self.style.ERROR(f"{principal_id}: ledger inconsistent, not repaired"))
                continue
            if options["repair"]:
                try:
                    reconciliation.resync_mirror(principal_id)
                except TallymanError as exc:
                    self.stdout.write(self.style.ERROR(f"{principal_id}: repair failed ({exc.code})"))
                    continue
                repaired += 1

        self.stdout.write(
            self.style.SUCCESS(
                f"Checked {checked} principals: {divergent} divergent, {repaired} repaired."
            )
        )
