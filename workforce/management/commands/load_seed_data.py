import json
from pathlib import Path

from django.core.management.base import BaseCommand, CommandError
from django.db import transaction
from django.utils import timezone

from workforce.calculations import normalize_standard, parse_execution_date
from workforce.models import (
    ApiKey, EngineeringStandard, Employee, Operation, TaskExecution, TimeLog, User
)


class Command(BaseCommand):
    help = "Load demo seed data from JSON files in seed_data/."

    def add_arguments(self, parser):
        parser.add_argument(
            "--truncate",
            action="store_true",
            help="Delete existing data before loading.",
        )
        parser.add_argument(
            "--dir",
            default="seed_data",
            help="Directory containing JSON files (default: seed_data).",
        )

    @transaction.atomic
    def handle(self, *args, **options):
        base_dir = Path(options["dir"]).resolve()

        # 1. optional clean
        if options["truncate"]:
            self.stdout.write("Deleting existing records…")
            TaskExecution.objects.all().delete()
            TimeLog.objects.all().delete()
            Employee.objects.all().delete()
            EngineeringStandard.objects.all().delete()
            Operation.objects.all().delete()
            User.objects.all().delete()
            ApiKey.objects.all().delete()

        # 2. load json helpers
        def load_json(name):
            path = base_dir / f"{name}.json"
            if not path.exists():
                raise CommandError(f"{path} not found")
            with open(path) as f:
                return json.load(f)

        users      = load_json("users")
        operations = load_json("operations")
        employees  = load_json("employees")
        standards  = load_json("standards")

        # 3. create records (bulk for speed)
        User.objects.bulk_create(
            [User(id=u["id"], username=u["username"], role=u["role"]) for u in users],
            ignore_conflicts=True,
        )
        for u in users:
            if u.get("manager_id"):
                User.objects.filter(id=u["id"]).update(manager_id=u["manager_id"])

        Operation.objects.bulk_create(
            [
                Operation(
                    id=o["id"],
                    name=o["name"],
                    location=o.get("location", ""),
                    latitude=o.get("latitude"),
                    longitude=o.get("longitude"),
                    manager_id=o.get("manager_id"),
                    total_headcount=o.get("total_headcount", 0),
                    employees_on_vacation=o.get("employees_on_vacation", 0),
                )
                for o in operations
            ],
            ignore_conflicts=True,
        )
        for u in users:
            User.objects.get(id=u["id"]).accessible_operations.add(*u.get("accessible_operation_ids", []))

        Employee.objects.bulk_create(
            [Employee(id=e["id"], name=e["name"], activities=e.get("activities", [])) for e in employees],
            ignore_conflicts=True,
        )
        for e in employees:
            Employee.objects.get(id=e["id"]).operations.add(*e.get("operation_ids", []))

        # Derived fields are recomputed so seeded standards are never inconsistent.
        today = timezone.localdate()
        EngineeringStandard.objects.bulk_create(
            [
                EngineeringStandard(
                    id=s["id"],
                    **normalize_standard({
                        key: s[key]
                        for key in (
                            "activity", "process_type", "driver", "cycle_time", "hourly_productivity",
                            "daily_demand", "work_time", "break_time",
                        )
                        if key in s
                    }),
                    execution_date=parse_execution_date(s.get("execution_date")) or today,
                )
                for s in standards
            ],
            ignore_conflicts=True,
        )

        self.stdout.write(self.style.SUCCESS("✅  Seed data loaded successfully"))
