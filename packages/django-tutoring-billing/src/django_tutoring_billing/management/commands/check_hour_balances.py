"""Management command to compare stored hour balances with the hour ledger."""

from django.core.management.base import BaseCommand, CommandError

from django_tutoring_billing.balances import balance_discrepancies
from django_tutoring_billing.models import Guardian


class Command(BaseCommand):
    help = 'Report guardians and students whose stored hours differ from their HourEntry ledger'

    def add_arguments(self, parser):
        parser.add_argument(
            '--guardian',
            type=int,
            action='append',
            dest='guardians',
            help='Only check this guardian id (repeatable)'
        )
        parser.add_argument(
            '--fail-on-mismatch',
            action='store_true',
            help='Exit with an error when any mismatch is found'
        )

    def handle(self, *args, **options):
        guardians = Guardian.all_objects.order_by('pk')
        if options['guardians']:
            guardians = guardians.filter(pk__in=options['guardians'])

        mismatches = 0
        for obj, stored, ledger in balance_discrepancies(guardians):
            mismatches += 1
            self.stdout.write(
                f'  - {type(obj).__name__} {obj.pk} ({obj}): stored={stored} ledger={ledger}'
            )

        if not mismatches:
            self.stdout.write(self.style.SUCCESS('All hour balances match the ledger'))
            return

        message = f'{mismatches} hour balance mismatch(es) found'
        if options['fail_on_mismatch']:
            raise CommandError(message)
        self.stdout.write(self.style.WARNING(message))
