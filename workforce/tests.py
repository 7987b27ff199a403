from datetime import date, datetime, timedelta
from io import StringIO
from pathlib import Path

from django.core.management import call_command
from django.test import SimpleTestCase, TestCase
from django.test.client import Client
from django.utils import timezone

from . import calculations
from .models import (
    Activity, ApiKey, EngineeringStandard, Employee, LogType, Operation, Role, TaskExecution, TimeLog, User
)
from .services import ApiKeyService, EmployeeService, ShiftPlanningService

SEED_DIR = Path(__file__).resolve().parent.parent / "seed_data"


def form(**overrides):
    record = {
        "activity": "Picking", "process_type": "Systemic", "driver": "Lines",
        "cycle_time": 0, "hourly_productivity": 0, "daily_demand": 0,
        "work_time": 8, "break_time": 1, "headcounts": 0,
    }
    record.update(overrides)
    return record


def task(activity, quantity, hours, execution_date="13/01/2025", employee_id=1):
    return {
        "employee_id": employee_id, "activity": activity, "quantity": quantity,
        "execution_hours": hours, "execution_date": execution_date,
    }


def log(employee_id, log_type, activity, timestamp):
    return {"employee_id": employee_id, "type": log_type, "activity": activity, "timestamp": timestamp}


class StandardCalculatorTest(SimpleTestCase):
    """Cycle time, hourly productivity and headcount derivation."""

    def test_cycle_time_edit_derives_productivity_and_headcounts(self):
        result = calculations.recompute_standard_field(form(daily_demand=1000), "cycle_time", 60)

        self.assertEqual(result["hourly_productivity"], 60.0)
        self.assertEqual(result["headcounts"], 3)

    def test_productivity_edit_derives_cycle_time(self):
        result = calculations.recompute_standard_field(form(daily_demand=1500), "hourly_productivity", "120")

        self.assertEqual(result["cycle_time"], 30.0)
        self.assertEqual(result["hourly_productivity"], 120.0)
        self.assertEqual(result["headcounts"], 2)

    def test_conversion_round_trip(self):
        for cycle_time in (1.5, 7, 30, 45, 60, 90, 120):
            productivity = calculations.recompute_standard_field(form(), "cycle_time", cycle_time)["hourly_productivity"]
            back = calculations.recompute_standard_field(form(), "hourly_productivity", productivity)["cycle_time"]
            self.assertAlmostEqual(back, cycle_time, delta=0.01)

    def test_two_decimal_ties_round_up(self):
        # 3600 / 3200 is exactly 1.125
        from_cycle = calculations.recompute_standard_field(form(daily_demand=7.9), "cycle_time", 3200)
        from_rate = calculations.recompute_standard_field(form(), "hourly_productivity", 3200)

        self.assertEqual(from_cycle["hourly_productivity"], 1.13)
        self.assertEqual(from_cycle["headcounts"], 1)
        self.assertEqual(from_rate["cycle_time"], 1.13)

    def test_invalid_or_zero_input_yields_zero(self):
        result = calculations.recompute_standard_field(form(daily_demand=1000), "cycle_time", "abc")
        self.assertEqual(result["cycle_time"], 0.0)
        self.assertEqual(result["hourly_productivity"], 0.0)
        self.assertEqual(result["headcounts"], 0)

        result = calculations.recompute_standard_field(form(daily_demand=1000), "hourly_productivity", 0)
        self.assertEqual(result["cycle_time"], 0.0)

    def test_headcounts_zero_without_demand_or_effective_time(self):
        record = form(cycle_time=60, hourly_productivity=60, daily_demand=1000)

        self.assertEqual(calculations.recompute_standard_field(record, "daily_demand", 0)["headcounts"], 0)
        self.assertEqual(calculations.recompute_standard_field(record, "break_time", 8)["headcounts"], 0)
        self.assertEqual(calculations.recompute_standard_field(record, "work_time", 0.5)["headcounts"], 0)

    def test_non_numeric_field_edit_keeps_derivations(self):
        record = form(cycle_time=60, hourly_productivity=60, daily_demand=1000)
        result = calculations.recompute_standard_field(record, "activity", "Packing")

        self.assertEqual(result["activity"], "Packing")
        self.assertEqual(result["headcounts"], 3)

    def test_input_record_is_not_mutated(self):
        record = form(daily_demand=1000)
        calculations.recompute_standard_field(record, "cycle_time", 60)

        self.assertEqual(record["hourly_productivity"], 0)
        self.assertEqual(record["headcounts"], 0)

    def test_negative_values_pass_through(self):
        result = calculations.recompute_standard_field(form(hourly_productivity=60), "daily_demand", -5)

        self.assertEqual(result["daily_demand"], -5.0)
        self.assertEqual(result["headcounts"], 0)

    def test_normalize_fills_missing_half(self):
        from_cycle = calculations.normalize_standard(form(cycle_time=120, daily_demand=400))
        from_rate = calculations.normalize_standard(form(hourly_productivity=20, daily_demand=300))

        self.assertEqual(from_cycle["hourly_productivity"], 30.0)
        self.assertEqual(from_cycle["headcounts"], 2)
        self.assertEqual(from_rate["cycle_time"], 180.0)
        self.assertEqual(from_rate["headcounts"], 3)


class ProductivityAggregatorTest(SimpleTestCase):
    """Standard hours earned over actual hours worked."""

    def setUp(self):
        self.standards = [
            {"activity": "Picking", "hourly_productivity": 60},
            {"activity": "Packing", "hourly_productivity": 120},
        ]

    def test_empty_population(self):
        self.assertEqual(calculations.compute_productivity([], self.standards), 0)

    def test_on_standard_pace_is_one_hundred(self):
        tasks = [task("Picking", 150, 2.5)]
        self.assertEqual(calculations.compute_productivity(tasks, self.standards), 100.0)

    def test_zero_hours_uses_fallback(self):
        tasks = [task("Picking", 150, 0)]

        self.assertEqual(calculations.compute_productivity(tasks, self.standards), 0)
        self.assertEqual(calculations.compute_productivity(tasks, self.standards, fallback=100), 100)

    def test_first_matching_standard_wins(self):
        standards = [
            {"activity": "Picking", "hourly_productivity": 0},
            {"activity": "Picking", "hourly_productivity": 50},
            {"activity": "Picking", "hourly_productivity": 100},
        ]
        tasks = [task("Picking", 100, 1)]

        self.assertEqual(calculations.compute_productivity(tasks, standards), 200.0)

    def test_unmatched_activity_counts_actual_hours_only(self):
        tasks = [task("Picking", 60, 1), task("Dispatch", 10, 1)]
        self.assertEqual(calculations.compute_productivity(tasks, self.standards), 50.0)

    def test_result_is_not_clamped(self):
        tasks = [task("Picking", 600, 1)]
        self.assertEqual(calculations.compute_productivity(tasks, self.standards), 1000.0)

    def test_overall_productivity_rounding_and_fallbacks(self):
        self.assertEqual(calculations.overall_productivity([], self.standards), 100)
        self.assertEqual(calculations.overall_productivity([task("Picking", 60, 0)], self.standards), 0)
        self.assertEqual(calculations.overall_productivity([task("Picking", 40, 1)], self.standards), 67)
        self.assertEqual(calculations.overall_productivity([task("Picking", 90, 1)], self.standards), 150)


class DatesTest(SimpleTestCase):

    def test_parse_execution_date(self):
        self.assertEqual(calculations.parse_execution_date("05/01/2025"), date(2025, 1, 5))
        self.assertEqual(calculations.parse_execution_date(date(2025, 1, 5)), date(2025, 1, 5))
        self.assertIsNone(calculations.parse_execution_date("2025-01-05"))
        self.assertIsNone(calculations.parse_execution_date("31/02/2025"))
        self.assertIsNone(calculations.parse_execution_date(None))

    def test_filter_by_date_range_is_inclusive_and_skips_bad_dates(self):
        records = [
            {"execution_date": "12/01/2025"},
            {"execution_date": "13/01/2025"},
            {"execution_date": "19/01/2025"},
            {"execution_date": "not a date"},
        ]
        result = calculations.filter_by_date_range(records, date(2025, 1, 13), date(2025, 1, 19))

        self.assertEqual([r["execution_date"] for r in result], ["13/01/2025", "19/01/2025"])

    def test_period_bounds(self):
        wednesday = date(2025, 1, 15)

        self.assertEqual(calculations.period_bounds(wednesday, "day"), (wednesday, wednesday))
        self.assertEqual(calculations.period_bounds(wednesday, "week"), (date(2025, 1, 13), date(2025, 1, 19)))
        self.assertEqual(calculations.period_bounds(date(2024, 2, 10), "month"), (date(2024, 2, 1), date(2024, 2, 29)))
        with self.assertRaises(ValueError):
            calculations.period_bounds(wednesday, "year")

    def test_format_duration(self):
        self.assertEqual(calculations.format_duration(125), "02h 05m")
        self.assertEqual(calculations.format_duration(-3), "00h 00m")


class DashboardAggregatorTest(SimpleTestCase):
    """Dashboard snapshot built from plain records."""

    def setUp(self):
        self.day = date(2025, 1, 13)
        self.operation = {"id": 1, "name": "CD", "total_headcount": 10, "employees_on_vacation": 2}
        self.standards = [
            {"activity": "Picking", "driver": "Lines", "hourly_productivity": 60, "daily_demand": 1000,
             "headcounts": 3, "execution_date": "13/01/2025"},
            {"activity": "Packing", "driver": "Each", "hourly_productivity": 120, "daily_demand": 1500,
             "headcounts": 2, "execution_date": "13/01/2025"},
        ]
        # Most recent first.
        self.logs = [
            log(3, LogType.CHECK_IN, "Packing", "13/01/2025, 09:00:00"),
            log(2, LogType.CHECK_OUT, "Picking", "13/01/2025, 08:30:00"),
            log(2, LogType.CHECK_IN, "Picking", "13/01/2025, 08:05:00"),
            log(1, LogType.CHECK_IN, "Picking", "13/01/2025, 08:00:00"),
        ]
        self.tasks = [
            task("Picking", 150, 2.5, employee_id=1),
            task("Packing", 240, 2, employee_id=3),
            task("Picking", 999, 1, execution_date="14/01/2025", employee_id=2),
        ]

    def snapshot(self, logs=None, tasks=None, standards=None, activity_filter=None, operation=None):
        return calculations.build_dashboard_snapshot(
            operation or self.operation,
            self.day,
            self.day,
            activity_filter,
            time_logs=self.logs if logs is None else logs,
            tasks=self.tasks if tasks is None else tasks,
            standards=self.standards if standards is None else standards,
            employees=[{"id": 1}, {"id": 2}, {"id": 3}],
        )

    def test_headline_figures(self):
        snapshot = self.snapshot()

        self.assertEqual(snapshot["active_employees"], 2)
        self.assertEqual(snapshot["planned_tasks_today"], 2500)
        self.assertEqual(snapshot["total_tasks_today"], 390)
        self.assertAlmostEqual(snapshot["tasks_progress"], 15.6)
        self.assertEqual(snapshot["overall_productivity"], 100)
        self.assertEqual(snapshot["employee_distribution"], {"Picking": 1, "Packing": 1})

    def test_no_logs(self):
        snapshot = self.snapshot(logs=[])

        self.assertEqual(snapshot["active_employees"], 0)
        self.assertEqual(snapshot["employee_distribution"], {})

    def test_breakdown_lists_every_activity(self):
        rows = self.snapshot()["demand_vs_execution_by_activity"]

        self.assertEqual([r["name"] for r in rows], list(Activity.values))
        receiving = rows[0]
        self.assertEqual(receiving, {"name": "Receiving", "planned": 0, "actual": 0, "driver": "Lines"})
        packing = next(r for r in rows if r["name"] == "Packing")
        self.assertEqual((packing["planned"], packing["actual"], packing["driver"]), (1500, 240, "Each"))

    def test_nothing_planned_or_done(self):
        snapshot = self.snapshot(tasks=[], standards=[])

        self.assertEqual(snapshot["tasks_progress"], 0)
        self.assertEqual(snapshot["overall_productivity"], 100)

    def test_activity_filter_is_echoed_without_narrowing(self):
        tasks = [task("Picking", 150, 2.5, employee_id=1), task("Packing", 120, 2, employee_id=3)]
        unfiltered = self.snapshot(tasks=tasks)
        snapshot = self.snapshot(tasks=tasks, activity_filter=["Picking"])

        self.assertEqual(snapshot["activity_filter"], ["Picking"])
        self.assertEqual(snapshot["planned_tasks_today"], 2500)
        self.assertEqual(snapshot["total_tasks_today"], 270)
        # 3.5 standard hours over 4.5 actual hours, across both activities
        self.assertEqual(snapshot["overall_productivity"], 78)
        self.assertEqual(snapshot["employee_distribution"], {"Picking": 1, "Packing": 1})
        self.assertEqual(
            {k: v for k, v in snapshot.items() if k != "activity_filter"},
            {k: v for k, v in unfiltered.items() if k != "activity_filter"},
        )

    def test_absenteeism(self):
        self.assertEqual(
            self.snapshot()["absenteeism"],
            {"planned": 10, "on_vacation": 2, "active": 2, "absent": 6, "rate": 75.0},
        )
        no_headcount = dict(self.operation, total_headcount=0)
        self.assertIsNone(self.snapshot(operation=no_headcount)["absenteeism"])

    def test_headcount_trend(self):
        trend = self.snapshot()["headcount_vs_demand"]

        self.assertEqual(len(trend), 7)
        self.assertEqual(trend[-1], {"day": "Mon", "date": "13/01/2025", "headcount": 3, "demand": 5})
        self.assertEqual(trend[0]["date"], "07/01/2025")
        self.assertEqual(trend[0]["headcount"], 0)

    def test_latest_log_wins(self):
        latest = calculations.latest_logs_by_employee(self.logs)

        self.assertEqual(latest[2]["type"], LogType.CHECK_OUT)
        self.assertEqual(calculations.active_employee_ids(self.logs), {1, 3})


class WorkforceAPITestBase(TestCase):
    """Base test class with common setup and helper methods."""

    def setUp(self):
        """Set up common test data"""
        self.client = Client()
        self.base_date = date(2025, 1, 13)

        # Users and operations
        self.admin = User.objects.create(username="admin", role=Role.ADMIN)
        self.manager = User.objects.create(username="manager", role=Role.MANAGER)
        self.viewer = User.objects.create(username="viewer", role=Role.VIEWER, manager=self.manager)

        self.operation = Operation.objects.create(
            name="CD São Paulo", manager=self.manager, total_headcount=10, employees_on_vacation=2
        )
        self.other_operation = Operation.objects.create(name="CD Rio de Janeiro", total_headcount=4)
        self.viewer.accessible_operations.add(self.other_operation)

        # Employees
        self.ana = self._create_employee("Ana Souza", ["Picking", "Packing"], self.operation)
        self.bruno = self._create_employee("Bruno Lima", ["Picking"], self.operation)
        self.carla = self._create_employee("Carla Mendes", ["Packing"], self.operation)
        self.diego = self._create_employee("Diego Alves", ["Receiving"], self.other_operation)

        # Engineering standards
        self.picking = EngineeringStandard.objects.create(
            activity="Picking", driver="Lines", cycle_time=60, hourly_productivity=60,
            daily_demand=1000, headcounts=3, execution_date=self.base_date,
        )
        self.packing = EngineeringStandard.objects.create(
            activity="Packing", driver="Each", cycle_time=30, hourly_productivity=120,
            daily_demand=1500, headcounts=2, execution_date=self.base_date,
        )

        self._create_base_logs()
        self._create_base_tasks()

    def _create_employee(self, name, activities, operation):
        employee = Employee.objects.create(name=name, activities=activities)
        employee.operations.add(operation)
        return employee

    def at(self, hour, minute=0, day=None):
        """Aware datetime on the base date (or ``day``)."""
        day = day or self.base_date
        return timezone.make_aware(datetime(day.year, day.month, day.day, hour, minute))

    def _create_log(self, employee, log_type, activity, timestamp):
        return TimeLog.objects.create(
            employee=employee, employee_name=employee.name, type=log_type, activity=activity, timestamp=timestamp
        )

    def _create_base_logs(self):
        """Ana and Carla end the day checked in, Bruno checked out."""
        logs = [
            (self.ana, LogType.CHECK_IN, "Picking", self.at(8)),
            (self.bruno, LogType.CHECK_IN, "Picking", self.at(8, 5)),
            (self.bruno, LogType.CHECK_OUT, "Picking", self.at(12)),
            (self.carla, LogType.CHECK_IN, "Packing", self.at(9)),
        ]
        for employee, log_type, activity, timestamp in logs:
            self._create_log(employee, log_type, activity, timestamp)

    def _create_base_tasks(self):
        tasks = [
            (self.ana, "Picking", 150, 2.5, self.base_date),
            (self.carla, "Packing", 240, 2, self.base_date),
            (self.bruno, "Picking", 30, 1, self.base_date + timedelta(days=1)),
        ]
        for employee, activity, quantity, hours, execution_date in tasks:
            TaskExecution.objects.create(
                employee=employee, employee_name=employee.name, activity=activity,
                quantity=quantity, execution_hours=hours, execution_date=execution_date,
            )

    def post_json(self, url, data):
        return self.client.post(url, data, content_type="application/json")

    def get_dashboard(self, operation_id=None, **params):
        """Helper to get the dashboard response."""
        operation_id = operation_id or self.operation.id
        return self.client.get(f"/api/operations/{operation_id}/dashboard", params)

    def find_activity_row(self, data, name):
        """Helper to find a specific activity row in the demand breakdown."""
        return next((row for row in data["demand_vs_execution_by_activity"] if row["name"] == name), None)


class DashboardAPITest(WorkforceAPITestBase):
    """Test the operation dashboard endpoint."""

    def test_single_day(self):
        response = self.get_dashboard(reference_date="2025-01-13")

        self.assertEqual(response.status_code, 200)
        data = response.json()

        self.assertEqual(data["start_date"], "2025-01-13")
        self.assertEqual(data["end_date"], "2025-01-13")
        self.assertEqual(data["active_employees"], 2)
        self.assertEqual(data["planned_tasks_today"], 2500)
        self.assertEqual(data["total_tasks_today"], 390)
        self.assertAlmostEqual(data["tasks_progress"], 15.6)
        self.assertEqual(data["overall_productivity"], 100)
        self.assertEqual(data["employee_distribution"], {"Picking": 1, "Packing": 1})
        self.assertEqual(
            data["absenteeism"],
            {"planned": 10, "on_vacation": 2, "active": 2, "absent": 6, "rate": 75.0},
        )
        self.assertEqual(data["operation"]["name"], "CD São Paulo")

    def test_week_period_includes_later_tasks(self):
        data = self.get_dashboard(reference_date="2025-01-15", period="week").json()

        self.assertEqual(data["start_date"], "2025-01-13")
        self.assertEqual(data["end_date"], "2025-01-19")
        self.assertEqual(data["total_tasks_today"], 420)
        self.assertAlmostEqual(data["tasks_progress"], 16.8)
        # 5 standard hours over 5.5 actual hours
        self.assertEqual(data["overall_productivity"], 91)

        trend = data["headcount_vs_demand"]
        self.assertEqual(trend[0], {"day": "Mon", "date": "13/01/2025", "headcount": 3, "demand": 5})
        self.assertEqual(trend[-1]["date"], "19/01/2025")

    def test_explicit_window(self):
        data = self.get_dashboard(start_date="2025-01-13", end_date="2025-01-14").json()

        self.assertEqual(data["total_tasks_today"], 420)
        picking = self.find_activity_row(data, "Picking")
        self.assertEqual((picking["planned"], picking["actual"]), (1000, 180))

    def test_activity_filter(self):
        data = self.get_dashboard(reference_date="2025-01-13", activities=["Picking"]).json()

        self.assertEqual(data["activity_filter"], ["Picking"])
        self.assertEqual(data["planned_tasks_today"], 2500)
        self.assertEqual(data["total_tasks_today"], 390)
        self.assertEqual(data["overall_productivity"], 100)
        self.assertEqual(data["employee_distribution"], {"Picking": 1, "Packing": 1})
        self.assertEqual(self.find_activity_row(data, "Packing")["planned"], 1500)

    def test_empty_window(self):
        data = self.get_dashboard(reference_date="2025-03-03").json()

        self.assertEqual(data["tasks_progress"], 0)
        self.assertEqual(data["overall_productivity"], 100)
        self.assertEqual(self.find_activity_row(data, "Receiving"), {
            "name": "Receiving", "planned": 0, "actual": 0, "driver": "Lines"
        })

    def test_operation_without_headcount_has_no_absenteeism(self):
        self.other_operation.total_headcount = 0
        self.other_operation.save()

        data = self.get_dashboard(self.other_operation.id, reference_date="2025-01-13").json()

        self.assertIsNone(data["absenteeism"])
        self.assertEqual(data["active_employees"], 0)
        self.assertEqual(data["employee_distribution"], {})

    def test_errors(self):
        self.assertEqual(self.get_dashboard(999).status_code, 404)
        self.assertEqual(self.get_dashboard(start_date="2025-01-14", end_date="2025-01-13").status_code, 400)
        self.assertEqual(self.get_dashboard(period="year").status_code, 422)


class OperationAPITest(WorkforceAPITestBase):

    def test_accessible_operations_by_role(self):
        def ids(user):
            return [op["id"] for op in self.client.get(f"/api/users/{user.id}/operations").json()]

        self.assertEqual(ids(self.admin), [self.operation.id, self.other_operation.id])
        self.assertEqual(ids(self.manager), [self.operation.id])
        self.assertEqual(ids(self.viewer), [self.other_operation.id])

    def test_list_shows_manager_name(self):
        data = self.client.get("/api/operations").json()

        self.assertEqual([op["manager"] for op in data], ["manager", "N/A"])

    def test_create_update_delete(self):
        response = self.post_json("/api/operations", {"name": "CD Curitiba", "total_headcount": 6})
        self.assertEqual(response.status_code, 201)
        operation_id = response.json()["id"]

        response = self.client.put(
            f"/api/operations/{operation_id}",
            {"name": "CD Curitiba", "total_headcount": 7, "employees_on_vacation": 1, "manager_id": self.manager.id},
            content_type="application/json",
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["manager"], "manager")
        self.assertEqual(Operation.objects.get(pk=operation_id).total_headcount, 7)

        self.assertEqual(self.client.delete(f"/api/operations/{operation_id}").status_code, 204)
        self.assertEqual(self.get_dashboard(operation_id).status_code, 404)


class UserAPITest(WorkforceAPITestBase):
    """Test the user registry."""

    def test_list_all_or_by_manager(self):
        self.assertEqual(
            [u["username"] for u in self.client.get("/api/users").json()], ["admin", "manager", "viewer"]
        )
        self.assertEqual(
            [u["username"] for u in self.client.get("/api/users", {"manager_id": self.manager.id}).json()],
            ["manager", "viewer"],
        )

    def test_operation_grants_follow_role(self):
        viewer = self.post_json("/api/users", {
            "username": "auditor", "role": "Viewer", "manager_id": self.manager.id,
            "accessible_operation_ids": [self.operation.id],
        })
        admin = self.post_json("/api/users", {"username": "root", "role": "Admin", "accessible_operation_ids": []})
        manager = self.post_json("/api/users", {
            "username": "lead", "role": "Manager", "accessible_operation_ids": [self.operation.id],
        })

        self.assertEqual(viewer.status_code, 201)
        self.assertEqual(viewer.json()["manager_id"], self.manager.id)
        self.assertEqual(viewer.json()["accessible_operation_ids"], [self.operation.id])
        self.assertEqual(admin.json()["accessible_operation_ids"], [self.operation.id, self.other_operation.id])
        self.assertEqual(manager.json()["accessible_operation_ids"], [])

        operations = self.client.get(f"/api/users/{viewer.json()['id']}/operations").json()
        self.assertEqual([op["id"] for op in operations], [self.operation.id])

    def test_update(self):
        response = self.client.put(
            f"/api/users/{self.viewer.id}",
            {"username": "viewer", "role": "Viewer", "manager_id": self.manager.id,
             "accessible_operation_ids": [self.operation.id, self.other_operation.id]},
            content_type="application/json",
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(self.viewer.accessible_operations.count(), 2)

    def test_validation(self):
        duplicate = self.post_json("/api/users", {"username": "manager", "role": "Viewer"})
        blank = self.post_json("/api/users", {"username": "", "role": "Viewer"})
        bad_role = self.post_json("/api/users", {"username": "x", "role": "Owner"})
        unknown_manager = self.post_json("/api/users", {"username": "x", "role": "Viewer", "manager_id": 999})

        self.assertEqual(duplicate.status_code, 409)
        self.assertEqual(blank.status_code, 422)
        self.assertEqual(bad_role.status_code, 422)
        self.assertEqual(unknown_manager.status_code, 404)
        self.assertFalse(User.objects.filter(username="x").exists())

    def test_delete(self):
        self.assertEqual(self.client.delete(f"/api/users/{self.admin.id}").status_code, 400)
        self.assertEqual(self.client.delete(f"/api/users/{self.viewer.id}").status_code, 204)
        self.assertFalse(User.objects.filter(pk=self.viewer.id).exists())
        self.assertEqual(self.client.delete(f"/api/users/{self.viewer.id}").status_code, 404)


class EmployeeAPITest(WorkforceAPITestBase):

    def test_list_and_filter(self):
        url = f"/api/operations/{self.operation.id}/employees"

        self.assertEqual(len(self.client.get(url).json()), 3)
        self.assertEqual([e["name"] for e in self.client.get(url, {"name": "ana"}).json()], ["Ana Souza"])
        self.assertEqual(
            [e["name"] for e in self.client.get(url, {"activity": "Packing"}).json()],
            ["Ana Souza", "Carla Mendes"],
        )

    def test_register_update_delete(self):
        response = self.post_json("/api/employees", {
            "name": "Fábio Costa", "activities": ["Dispatch"], "operation_ids": [self.operation.id]
        })
        self.assertEqual(response.status_code, 201)
        data = response.json()
        self.assertEqual(data["operation_ids"], [self.operation.id])
        self.assertEqual(data["registration_date"], Employee.objects.get(pk=data["id"]).registration_date.strftime("%d/%m/%Y"))

        response = self.client.put(
            f"/api/employees/{data['id']}",
            {"name": "Fábio Costa", "activities": ["Dispatch", "Packing"], "operation_ids": [self.other_operation.id]},
            content_type="application/json",
        )
        self.assertEqual(response.json()["activities"], ["Dispatch", "Packing"])
        self.assertEqual(response.json()["operation_ids"], [self.other_operation.id])

        self.assertEqual(self.client.delete(f"/api/employees/{data['id']}").status_code, 204)
        self.assertFalse(Employee.objects.filter(pk=data["id"]).exists())

    def test_invalid_activity_is_rejected(self):
        response = self.post_json("/api/employees", {"name": "X", "activities": ["Sorting"]})
        self.assertEqual(response.status_code, 422)

    def test_detail_of_checked_in_employee(self):
        detail = EmployeeService.get_employee_detail(self.operation.id, self.ana.id, now=self.at(10, 30))

        self.assertEqual(detail.status, "Online")
        self.assertEqual(detail.current_activity, "Picking")
        self.assertEqual(detail.today_work_time, "02h 30m")
        self.assertEqual(detail.today_tasks_completed, 150)
        self.assertEqual(detail.overall_productivity, 100.0)

        rows = {row.name: row for row in detail.productivity_by_activity}
        self.assertEqual(rows["Picking"].employee_productivity, 100.0)
        # Ana and Bruno: 3 standard hours over 3.5 actual hours
        self.assertEqual(rows["Picking"].team_productivity, 85.7)
        self.assertEqual(rows["Packing"].employee_productivity, 0.0)
        self.assertEqual(rows["Packing"].team_productivity, 100.0)
        self.assertAlmostEqual(detail.team_average_productivity, 92.85)

    def test_detail_of_checked_out_employee(self):
        detail = EmployeeService.get_employee_detail(self.operation.id, self.bruno.id, now=self.at(15))

        self.assertEqual(detail.status, "Offline")
        self.assertIsNone(detail.current_activity)
        self.assertEqual(detail.today_work_time, "00h 00m")
        self.assertEqual(detail.today_tasks_completed, 0)
        self.assertEqual(detail.overall_productivity, 50.0)

    def test_detail_without_activities_uses_full_team_average(self):
        idle = self._create_employee("Gabi Reis", [], self.operation)
        detail = EmployeeService.get_employee_detail(self.operation.id, idle.id, now=self.at(15))

        self.assertEqual(detail.productivity_by_activity, [])
        self.assertEqual(detail.team_average_productivity, 100.0)

    def test_detail_endpoint_scoped_to_operation(self):
        url = f"/api/operations/{self.operation.id}/employees"

        self.assertEqual(self.client.get(f"{url}/{self.ana.id}").status_code, 200)
        self.assertEqual(self.client.get(f"{url}/{self.diego.id}").status_code, 404)

    def test_history(self):
        data = self.client.get(f"/api/operations/{self.operation.id}/employees/{self.bruno.id}/history").json()

        self.assertEqual([entry["type"] for entry in data["logs"]], ["Check-out", "Check-in"])
        self.assertEqual([entry["execution_date"] for entry in data["tasks"]], ["14/01/2025"])


class TimeClockAPITest(WorkforceAPITestBase):

    def test_list_and_filter_logs(self):
        url = f"/api/operations/{self.operation.id}/time-logs"

        self.assertEqual(len(self.client.get(url).json()), 4)
        check_outs = self.client.get(url, {"type": "Check-out"}).json()
        self.assertEqual(len(check_outs), 1)
        self.assertEqual(check_outs[0]["employee_name"], "Bruno Lima")
        self.assertEqual(check_outs[0]["timestamp"], "13/01/2025, 12:00:00")
        self.assertEqual(len(self.client.get(url, {"employee_name": "carla"}).json()), 1)

    def test_check_in_updates_status(self):
        response = self.post_json(f"/api/operations/{self.operation.id}/time-logs", {
            "employee_id": self.bruno.id, "type": "Check-in", "activity": "Packing",
        })
        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()["employee_name"], "Bruno Lima")

        statuses = self.client.get(f"/api/operations/{self.operation.id}/employee-statuses").json()
        bruno = next(s for s in statuses if s["employee_id"] == self.bruno.id)
        self.assertEqual((bruno["status"], bruno["activity"]), ("Online", "Packing"))

    def test_employee_of_another_operation(self):
        response = self.post_json(f"/api/operations/{self.operation.id}/time-logs", {
            "employee_id": self.diego.id, "type": "Check-in", "activity": "Receiving",
        })
        self.assertEqual(response.status_code, 404)


class TaskExecutionAPITest(WorkforceAPITestBase):

    def url(self, suffix=""):
        return f"/api/operations/{self.operation.id}/task-executions{suffix}"

    def test_checked_in_employee_can_report(self):
        response = self.post_json(self.url(), {
            "employee_id": self.ana.id, "activity": "Picking", "quantity": 90,
            "execution_hours": 1.5, "execution_date": "13/01/2025",
        })

        self.assertEqual(response.status_code, 201)
        data = response.json()
        self.assertEqual(data["employee_name"], "Ana Souza")
        self.assertEqual(data["execution_date"], "13/01/2025")
        self.assertEqual(data["driver"], "Lines")

    def test_report_requires_matching_check_in(self):
        other_activity = self.post_json(self.url(), {
            "employee_id": self.ana.id, "activity": "Packing", "quantity": 10, "execution_hours": 1,
        })
        checked_out = self.post_json(self.url(), {
            "employee_id": self.bruno.id, "activity": "Picking", "quantity": 10, "execution_hours": 1,
        })

        self.assertEqual(other_activity.status_code, 409)
        self.assertIn("no active check-in", other_activity.json()["detail"])
        self.assertEqual(checked_out.status_code, 409)

    def test_validation(self):
        bad_date = self.post_json(self.url(), {
            "employee_id": self.ana.id, "activity": "Picking", "quantity": 10, "execution_date": "2025-13-01",
        })
        negative = self.post_json(self.url(), {
            "employee_id": self.ana.id, "activity": "Picking", "quantity": -1,
        })

        self.assertEqual(bad_date.status_code, 422)
        self.assertEqual(negative.status_code, 422)

    def test_list_update_delete(self):
        self.assertEqual(len(self.client.get(self.url(), {"activity": "Picking"}).json()), 2)

        task = TaskExecution.objects.get(employee=self.ana)
        response = self.client.put(self.url(f"/{task.id}"), {"quantity": 200}, content_type="application/json")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["quantity"], 200)
        self.assertEqual(response.json()["execution_hours"], 2.5)

        self.assertEqual(self.client.delete(self.url(f"/{task.id}")).status_code, 204)
        self.assertFalse(TaskExecution.objects.filter(pk=task.id).exists())


class EngineeringStandardAPITest(WorkforceAPITestBase):

    def test_create_derives_fields(self):
        response = self.post_json("/api/standards", {
            "activity": "Receiving", "driver": "Volume", "cycle_time": 120,
            "daily_demand": 400, "execution_date": "20/01/2025",
        })

        self.assertEqual(response.status_code, 201)
        data = response.json()
        self.assertEqual(data["hourly_productivity"], 30.0)
        self.assertEqual(data["headcounts"], 2)
        self.assertEqual(data["execution_date"], "20/01/2025")
        self.assertEqual(data["process_type"], "Systemic")

    def test_create_from_productivity(self):
        data = self.post_json("/api/standards", {
            "activity": "Packing", "hourly_productivity": 120, "daily_demand": 1500,
        }).json()

        self.assertEqual(data["cycle_time"], 30.0)
        self.assertEqual(data["headcounts"], 2)

    def test_recompute_unsaved_record(self):
        response = self.post_json("/api/standards/recompute", {
            "record": {"activity": "Picking", "cycle_time": 60, "hourly_productivity": 60, "daily_demand": 1500},
            "changed_field": "hourly_productivity",
            "new_value": "120",
        })

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["cycle_time"], 30.0)
        self.assertEqual(response.json()["headcounts"], 2)
        self.assertEqual(EngineeringStandard.objects.count(), 2)

    def test_cell_edit_recomputes_derived_fields(self):
        url = f"/api/standards/{self.picking.id}"

        data = self.client.patch(url, {"field": "daily_demand", "value": 2000}, content_type="application/json").json()
        self.assertEqual(data["headcounts"], 5)

        data = self.client.patch(url, {"field": "cycle_time", "value": 0}, content_type="application/json").json()
        self.assertEqual(data["hourly_productivity"], 0.0)
        self.assertEqual(data["headcounts"], 0)

        self.picking.refresh_from_db()
        self.assertEqual(self.picking.headcounts, 0)

    def test_cell_edit_rejects_unknown_choices(self):
        url = f"/api/standards/{self.picking.id}"

        for field in ("activity", "process_type", "driver"):
            with self.subTest(field=field):
                response = self.client.patch(url, {"field": field, "value": "Sorting"}, content_type="application/json")
                self.assertEqual(response.status_code, 422)

        self.picking.refresh_from_db()
        self.assertEqual(
            (self.picking.activity, self.picking.process_type, self.picking.driver),
            ("Picking", "Systemic", "Lines"),
        )

        response = self.client.patch(url, {"field": "activity", "value": "Packing"}, content_type="application/json")
        self.assertEqual(response.json()["activity"], "Packing")
        self.assertEqual(response.json()["headcounts"], 3)

    def test_recompute_rejects_unknown_choice(self):
        response = self.post_json("/api/standards/recompute", {
            "record": {"activity": "Picking", "cycle_time": 60, "hourly_productivity": 60},
            "changed_field": "driver",
            "new_value": "Pallets",
        })

        self.assertEqual(response.status_code, 422)

    def test_update_keeps_date(self):
        response = self.client.put(
            f"/api/standards/{self.picking.id}",
            {"activity": "Picking", "cycle_time": 45, "daily_demand": 1000},
            content_type="application/json",
        )

        data = response.json()
        self.assertEqual(data["hourly_productivity"], 80.0)
        self.assertEqual(data["headcounts"], 2)
        self.assertEqual(data["execution_date"], "13/01/2025")

    def test_replicate(self):
        response = self.post_json("/api/standards/replicate", {
            "standard_ids": [self.picking.id, self.packing.id],
            "dates": ["20/01/2025", "21/01/2025"],
        })

        self.assertEqual(response.status_code, 201)
        data = response.json()
        self.assertEqual(len(data), 4)
        self.assertEqual(
            sorted({(row["activity"], row["execution_date"]) for row in data}),
            [("Packing", "20/01/2025"), ("Packing", "21/01/2025"),
             ("Picking", "20/01/2025"), ("Picking", "21/01/2025")],
        )
        self.assertEqual(EngineeringStandard.objects.count(), 6)
        self.assertTrue(all(row["headcounts"] in (2, 3) for row in data))

    def test_replicate_requires_selection(self):
        empty = self.post_json("/api/standards/replicate", {"standard_ids": [self.picking.id], "dates": []})
        bad_date = self.post_json("/api/standards/replicate", {"standard_ids": [self.picking.id], "dates": ["2025-01-20"]})

        self.assertEqual(empty.status_code, 400)
        self.assertEqual(bad_date.status_code, 422)

    def test_list_by_period(self):
        def activities(**params):
            return [row["activity"] for row in self.client.get("/api/standards", params).json()]

        self.assertEqual(activities(reference_date="2025-01-15"), ["Picking", "Packing"])
        self.assertEqual(activities(reference_date="2025-01-15", activity="Packing"), ["Packing"])
        self.assertEqual(activities(reference_date="2025-01-14", period="day"), [])

    def test_delete(self):
        self.assertEqual(self.client.delete(f"/api/standards/{self.packing.id}").status_code, 204)
        self.assertEqual(self.client.delete(f"/api/standards/{self.packing.id}").status_code, 404)


class ShiftPlanAPITest(WorkforceAPITestBase):
    """Weekly shift plans built from the standards' headcounts."""

    def generate(self, method, operation_id=None):
        operation_id = operation_id or self.operation.id
        return self.client.post(f"/api/operations/{operation_id}/shift-plan?method={method}")

    def test_demand_exceeds_staff(self):
        for method in ("lp", "greedy"):
            with self.subTest(method=method):
                response = self.generate(method)
                self.assertEqual(response.status_code, 200)
                data = response.json()

                self.assertEqual(data["method"], method)
                self.assertEqual(data["days"], ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday"])
                self.assertEqual(data["daily_demand"], {"Picking": 3, "Packing": 2})

                kpi = data["kpi_metrics"]
                self.assertEqual(kpi["demanded_slots"], 25)
                self.assertEqual(kpi["filled_slots"], 15)
                self.assertEqual(kpi["unfilled_slots"], 10)
                self.assertEqual(kpi["coverage_rate"], 0.6)
                self.assertEqual(kpi["reallocations"], 0)
                self.assertEqual(kpi["gini_coefficient"], 0.0)
                self.assertEqual(kpi["total_employees"], 3)

                carla = next(s for s in data["schedules"] if s["employee_id"] == self.carla.id)
                self.assertEqual(set(carla["schedule"].values()), {"Packing"})

    def test_staff_exceeds_demand(self):
        self.packing.delete()
        self.picking.headcounts = 1
        self.picking.save()

        greedy = self.generate("greedy").json()
        days_worked = {
            s["employee_id"]: sum(1 for a in s["schedule"].values() if a != "Off") for s in greedy["schedules"]
        }
        self.assertEqual(days_worked, {self.ana.id: 3, self.bruno.id: 2, self.carla.id: 0})
        self.assertEqual(greedy["kpi_metrics"]["coverage_rate"], 1.0)
        self.assertEqual(greedy["kpi_metrics"]["gini_coefficient"], 0.4)

        lp = self.generate("lp").json()
        self.assertEqual(lp["kpi_metrics"]["filled_slots"], 5)
        self.assertEqual(lp["kpi_metrics"]["reallocations"], 1)
        for schedule in lp["schedules"]:
            self.assertGreaterEqual(sum(1 for a in schedule["schedule"].values() if a != "Off"), 1)
        for day in lp["days"]:
            self.assertEqual(sum(1 for s in lp["schedules"] if s["schedule"][day] == "Picking"), 1)

    def test_without_standards_everyone_is_off(self):
        EngineeringStandard.objects.all().delete()

        data = self.generate("lp").json()

        self.assertEqual(data["daily_demand"], {})
        self.assertEqual(data["kpi_metrics"]["coverage_rate"], 0.0)
        self.assertTrue(all(set(s["schedule"].values()) == {"Off"} for s in data["schedules"]))

    def test_operation_without_employees(self):
        empty = Operation.objects.create(name="CD Vazio")

        response = self.generate("lp", empty.id)

        self.assertEqual(response.status_code, 400)
        self.assertIn("no employees", response.json()["detail"])

    def test_gini_coefficient(self):
        self.assertEqual(ShiftPlanningService._calculate_gini_coefficient([]), 0.0)
        self.assertEqual(ShiftPlanningService._calculate_gini_coefficient([4]), 0.0)
        self.assertEqual(ShiftPlanningService._calculate_gini_coefficient([0, 0]), 0.0)
        self.assertAlmostEqual(ShiftPlanningService._calculate_gini_coefficient([5, 5, 5]), 0.0)
        self.assertAlmostEqual(ShiftPlanningService._calculate_gini_coefficient([3, 2, 0]), 0.4)


class IntegrationAPITest(WorkforceAPITestBase):

    def ingest(self, key=None):
        headers = {"HTTP_X_API_KEY": key} if key else {}
        return self.client.post(
            f"/api/integration/operations/{self.operation.id}/task-executions",
            {"employee_id": self.ana.id, "activity": "Picking", "quantity": 12, "execution_hours": 0.2},
            content_type="application/json",
            **headers,
        )

    def test_key_lifecycle(self):
        self.assertIsNone(self.client.get("/api/api-key").json()["key"])

        response = self.client.post("/api/api-key")
        self.assertEqual(response.status_code, 201)
        key = response.json()["key"]
        self.assertTrue(key.startswith("ls_key_"))
        self.assertEqual(len(key), 39)
        self.assertEqual(self.client.get("/api/api-key").json()["key"], key)

        rotated = self.client.post("/api/api-key").json()["key"]
        self.assertNotEqual(rotated, key)
        self.assertEqual(ApiKey.objects.count(), 1)

        self.assertEqual(self.client.delete("/api/api-key").status_code, 204)
        self.assertIsNone(self.client.get("/api/api-key").json()["key"])

    def test_ingest_requires_valid_key(self):
        key = ApiKeyService.generate_key()

        self.assertEqual(self.ingest().status_code, 401)
        self.assertEqual(self.ingest("ls_key_wrong").status_code, 401)

        response = self.ingest(key)
        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()["quantity"], 12)


class LoadSeedDataTest(TestCase):

    def test_loads_seed_files(self):
        call_command("load_seed_data", dir=str(SEED_DIR), stdout=StringIO())

        self.assertEqual(Operation.objects.count(), 2)
        self.assertEqual(Employee.objects.count(), 5)
        self.assertEqual(User.objects.get(username="viewer").accessible_operations.count(), 1)

        picking = EngineeringStandard.objects.get(activity="Picking")
        self.assertEqual(picking.hourly_productivity, 60.0)
        self.assertEqual(picking.headcounts, 3)
        self.assertEqual(EngineeringStandard.objects.get(activity="Dispatch").headcounts, 3)

    def test_truncate_reloads(self):
        call_command("load_seed_data", dir=str(SEED_DIR), stdout=StringIO())
        call_command("load_seed_data", dir=str(SEED_DIR), truncate=True, stdout=StringIO())

        self.assertEqual(EngineeringStandard.objects.count(), 4)
