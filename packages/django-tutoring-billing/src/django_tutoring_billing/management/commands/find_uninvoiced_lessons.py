"""Management command to list past lessons that no live invoice bills."""

from django.core.management.base import BaseCommand, CommandError

from django_tutoring_billing.selectors import uninvoiced_lessons


class Command(BaseCommand):
    help = 'List attended lessons in the lookback window that are not held by a live invoice'

    def add_arguments(self, parser):
        parser.add_argument(
            '--since-days',
            type=int,
            default=None,
            help='Lookback window in days (default: TUTORING_BILLING_UNINVOICED_LOOKBACK_DAYS)'
        )
        parser.add_argument(
            '--guardian',
            type=int,
            default=None,
            help='Only check this guardian id'
        )
        parser.add_argument(
            '--include-unattended',
            action='store_true',
            help='Also report lessons marked as not attended'
        )
        parser.add_argument(
            '--fail-on-found',
            action='store_true',
            help='Exit with an error when any uninvoiced lesson is found'
        )

    def handle(self, *args, **options):
        if options['since_days'] is not None and options['since_days'] < 1:
            raise CommandError('--since-days must be at least 1')

        lessons = uninvoiced_lessons(
            since_days=options['since_days'],
            guardian=options['guardian'],
            include_unattended=options['include_unattended'],
        )

        found = 0
        for lesson in lessons:
            found += 1
            holder = lesson.billed_in_invoice
            reason = 'unbilled' if holder is None else f'held by {holder.status} {holder.invoice_number}'
            self.stdout.write(
                f'  - Lesson {lesson.pk} on {lesson.scheduled_at:%Y-%m-%d} for '
                f'{lesson.student.full_name} ({lesson.guardian.name}): {reason}'
            )

        if not found:
            self.stdout.write(self.style.SUCCESS('Every lesson in the window is invoiced'))
            return

        message = f'{found} uninvoiced lesson(s) found'
        if options['fail_on_found']:
            raise CommandError(message)
        self.stdout.write(self.style.WARNING(message))
