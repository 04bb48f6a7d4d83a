from django.core.management.base import BaseCommand, CommandError
from django.db.models import Count, F, Q

from cases.models import Course, CourseUsage


class Command(BaseCommand):
    help = "Audit course balances and the session usage ledger; exits non-zero on any violation."

    def add_arguments(self, parser):
        parser.add_argument('--course', type=int, help='Only check this course id')

    def handle(self, *args, **options):
        courses = Course.objects.all()
        usage = CourseUsage.objects.all()
        if options.get('course'):
            courses = courses.filter(pk=options['course'])
            usage = usage.filter(course_id=options['course'])

        problems = []

        bad_balance = courses.exclude(remaining_sessions=F('total_sessions') - F('used_sessions'))
        for c in bad_balance:
            problems.append(
                f"course {c.course_code}: remaining={c.remaining_sessions} "
                f"but total-used={c.total_sessions - c.used_sessions}"
            )

        pairs = (
            usage.values('course_id', 'case_id')
            .annotate(
                uses=Count('id', filter=Q(action_type=CourseUsage.ACTION_USE)),
                returns=Count('id', filter=Q(action_type=CourseUsage.ACTION_RETURN)),
            )
            .order_by('course_id', 'case_id')
        )
        for row in pairs:
            net = row['uses'] - row['returns']
            if net > 1:
                problems.append(f"course {row['course_id']} case {row['case_id']}: {net} unreversed USE events")
            elif net < 0:
                problems.append(f"course {row['course_id']} case {row['case_id']}: {-net} more RETURN than USE events")

        for p in problems:
            self.stdout.write(self.style.ERROR(p))
        if problems:
            raise CommandError(f"{len(problems)} ledger problem(s) found")
        self.stdout.write(self.style.SUCCESS(f"ledger OK ({courses.count()} courses, {len(pairs)} course/case pairs)"))
