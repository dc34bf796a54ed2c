from datetime import datetime, timezone

from django.core.management.base import BaseCommand, CommandError

from apps.scheduling.services import build_scheduler


class Command(BaseCommand):
    help = 'Sends every appointment reminder that is due. Meant to run every 15 minutes from cron.'

    def add_arguments(self, parser):
        parser.add_argument('--now', help='ISO-8601 timestamp to evaluate reminders at (default: current time).')
        parser.add_argument('--dry-run', action='store_true', help='List due reminders without sending them.')

    def handle(self, *args, **options):
        now = None
        if options['now']:
            try:
                now = datetime.fromisoformat(options['now'])
            except ValueError:
                raise CommandError(f"--now must be an ISO-8601 timestamp, got {options['now']!r}")
            if now.tzinfo is None:
                now = now.replace(tzinfo=timezone.utc)

        scheduler = build_scheduler()

        if options['dry_run']:
            due = scheduler.preview_due_reminders(now)
            for appointment_id, kinds in due.items():
                self.stdout.write(f"Appointment {appointment_id}: {', '.join(kinds)}")
            self.stdout.write(f'{len(due)} appointment(s) have reminders due.')
            return

        self.stdout.write('Sending due reminders...')
        report = scheduler.generate_due_reminders(now)

        for item in report.appointments:
            if item.sent:
                self.stdout.write(f"Appointment {item.appointment_id}: sent {', '.join(item.sent)}")
            for failure in item.failed:
                self.stderr.write(f"Appointment {item.appointment_id}: {failure.kind} failed ({failure.reason})")
            if item.error:
                self.stderr.write(f"Appointment {item.appointment_id}: {item.error}")

        self.stdout.write(
            f'Reminders complete: {report.sent_count} sent, {report.failed_count} failed, '
            f'{report.error_count} error(s).'
        )
