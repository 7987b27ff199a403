import logging
import secrets
import string
from collections import defaultdict
from datetime import date, datetime
from typing import Iterable

import numpy as np
from django.conf import settings
from django.db import transaction
from django.db.models import Q, QuerySet
from django.utils import timezone
from inequality import gini  # type: ignore
from pulp import (  # type: ignore
    LpBinary, LpMaximize, LpProblem, LpStatus, LpVariable, PulpSolverError, lpSum
)

from . import calculations
from .exceptions import ShiftPlanningError, TaskExecutionRejected, UsernameTaken, WorkforceError
from .models import (
    Activity, ApiKey, EngineeringStandard, Employee, Operation, Role, TaskExecution, TimeLog, User
)
from .schemas import (
    ActivityProductivitySchema, DashboardSnapshotSchema, EmployeeDetailSchema, EmployeeHistorySchema,
    EmployeeInSchema, EmployeeScheduleSchema, EmployeeStatusSchema, EngineeringStandardInSchema,
    OperationInSchema, ShiftPlanKPISchema, ShiftPlanResponseSchema, StandardFormSchema,
    TaskExecutionInSchema, TaskExecutionUpdateSchema, TimeLogInSchema, UserInSchema
)

logger = logging.getLogger(__name__)


def get_operation(operation_id: int) -> Operation:
    """Raises ``Operation.DoesNotExist`` when the operation is unknown."""
    return Operation.objects.select_related("manager").get(pk=operation_id)


def list_employees(operation: Operation) -> list[Employee]:
    return list(Employee.objects.filter(operations=operation).prefetch_related("operations").order_by("id"))


def list_time_logs(operation: Operation) -> QuerySet:
    """Logs of the operation's employees, most recent first (newest insert wins ties)."""
    return TimeLog.objects.filter(employee__operations=operation).order_by("-timestamp", "-id")


def list_task_executions(operation: Operation) -> QuerySet:
    return TaskExecution.objects.filter(employee__operations=operation).order_by("-execution_date", "-id")


def list_engineering_standards() -> QuerySet:
    # Insertion order matters: productivity uses the first matching standard.
    return EngineeringStandard.objects.order_by("id")


def get_operation_employee(operation: Operation, employee_id: int) -> Employee:
    return Employee.objects.filter(operations=operation).get(pk=employee_id)


class OperationService:
    """Service class for operation registry operations."""

    @staticmethod
    def list_operations():
        return Operation.objects.select_related("manager").order_by("id")

    @staticmethod
    def accessible_operations(user: User):
        """Admins see every operation, managers the ones they run, viewers the ones granted to them."""
        operations = Operation.objects.select_related("manager").order_by("id")
        if user.role == Role.ADMIN:
            return operations
        if user.role == Role.MANAGER:
            return operations.filter(manager=user)
        return operations.filter(viewers=user)

    @staticmethod
    def create_operation(payload: OperationInSchema) -> Operation:
        operation = Operation.objects.create(**payload.model_dump())
        logger.info("Created operation %s (%s)", operation.id, operation.name)
        return operation

    @staticmethod
    def update_operation(operation_id: int, payload: OperationInSchema) -> Operation:
        operation = get_operation(operation_id)
        for name, value in payload.model_dump().items():
            setattr(operation, name, value)
        operation.save()
        return operation

    @staticmethod
    def delete_operation(operation_id: int) -> None:
        get_operation(operation_id).delete()
        logger.info("Deleted operation %s", operation_id)


class UserService:
    """Service class for the user registry."""

    @staticmethod
    def list_users(manager_id: int | None = None):
        """Every user, or only a manager and the viewers they manage."""
        users = User.objects.prefetch_related("accessible_operations").order_by("id")
        if manager_id is not None:
            users = users.filter(Q(id=manager_id) | Q(manager_id=manager_id))
        return users

    @staticmethod
    def _save_user(user: User, payload: UserInSchema) -> User:
        if User.objects.filter(username=payload.username).exclude(pk=user.pk).exists():
            raise UsernameTaken(f"Username {payload.username} is already taken.")
        if payload.manager_id is not None:
            User.objects.get(pk=payload.manager_id)

        user.username = payload.username
        user.role = payload.role
        user.manager_id = payload.manager_id
        user.save()

        # Admins reach every operation and managers reach the ones they run,
        # so only viewers keep an explicit grant list.
        if user.role == Role.ADMIN:
            user.accessible_operations.set(Operation.objects.all())
        elif user.role == Role.MANAGER:
            user.accessible_operations.clear()
        else:
            user.accessible_operations.set(Operation.objects.filter(id__in=payload.accessible_operation_ids))
        return user

    @classmethod
    @transaction.atomic
    def create_user(cls, payload: UserInSchema) -> User:
        user = cls._save_user(User(), payload)
        logger.info("Created %s user %s (%s)", user.role, user.id, user.username)
        return user

    @classmethod
    @transaction.atomic
    def update_user(cls, user_id: int, payload: UserInSchema) -> User:
        return cls._save_user(User.objects.get(pk=user_id), payload)

    @staticmethod
    def delete_user(user_id: int) -> None:
        user = User.objects.get(pk=user_id)
        if user.role == Role.ADMIN:
            raise WorkforceError("Admin users cannot be deleted.")
        user.delete()
        logger.info("Deleted user %s", user_id)


class DashboardService:
    """Service class for the operation dashboard."""

    @staticmethod
    def get_dashboard_snapshot(operation_id: int, start_date: date, end_date: date,
                               activity_filter: Iterable[str] | None = None) -> DashboardSnapshotSchema:
        """Load the operation's collections and summarise them over the date window."""
        operation = get_operation(operation_id)
        logger.debug(
            "Dashboard for operation %s from %s to %s (activities: %s)",
            operation_id, start_date, end_date, list(activity_filter or []) or "all"
        )

        snapshot = calculations.build_dashboard_snapshot(
            operation,
            start_date,
            end_date,
            activity_filter,
            time_logs=list(list_time_logs(operation)),
            tasks=list(list_task_executions(operation)),
            standards=list(list_engineering_standards()),
            employees=list_employees(operation),
            trend_days=settings.WORKFORCE_TREND_DAYS,
        )
        return DashboardSnapshotSchema(**snapshot)


class EmployeeService:
    """Service class for the employee registry and per-employee analysis."""

    @staticmethod
    def list_employees(operation_id: int, name: str = "", activity: str | None = None) -> list[Employee]:
        employees = list_employees(get_operation(operation_id))
        if name:
            employees = [e for e in employees if name.lower() in e.name.lower()]
        if activity:
            employees = [e for e in employees if activity in e.activities]
        return employees

    @staticmethod
    @transaction.atomic
    def create_employee(payload: EmployeeInSchema) -> Employee:
        employee = Employee.objects.create(
            name=payload.name,
            activities=[str(activity) for activity in payload.activities],
            photo=payload.photo,
        )
        employee.operations.set(Operation.objects.filter(id__in=payload.operation_ids))
        logger.info("Registered employee %s (%s)", employee.id, employee.name)
        return employee

    @staticmethod
    @transaction.atomic
    def update_employee(employee_id: int, payload: EmployeeInSchema) -> Employee:
        employee = Employee.objects.get(pk=employee_id)
        employee.name = payload.name
        employee.activities = [str(activity) for activity in payload.activities]
        employee.photo = payload.photo
        employee.save()
        employee.operations.set(Operation.objects.filter(id__in=payload.operation_ids))
        return employee

    @staticmethod
    def delete_employee(employee_id: int) -> None:
        Employee.objects.get(pk=employee_id).delete()
        logger.info("Deleted employee %s", employee_id)

    @staticmethod
    def get_employee_history(operation_id: int, employee_id: int) -> EmployeeHistorySchema:
        employee = get_operation_employee(get_operation(operation_id), employee_id)
        return EmployeeHistorySchema(
            logs=list(employee.time_logs.order_by("-timestamp", "-id")),
            tasks=list(employee.task_executions.order_by("-execution_date", "-id")),
        )

    @staticmethod
    def get_employee_detail(operation_id: int, employee_id: int, now: datetime | None = None) -> EmployeeDetailSchema:
        """
        Current status, today's figures and productivity of one employee.

        Individual productivity falls back to 0 when no hours were logged.
        The team average is the mean of the per-activity team figures, or 100
        for an employee without activities.
        """
        operation = get_operation(operation_id)
        employee = get_operation_employee(operation, employee_id)
        employees = list_employees(operation)
        logs = list(list_time_logs(operation))
        tasks = list(list_task_executions(operation))
        standards = list(list_engineering_standards())

        now = now or timezone.now()
        today = timezone.localtime(now).date() if timezone.is_aware(now) else now.date()

        latest_log = calculations.latest_logs_by_employee(logs).get(employee.id)
        status, current_activity = calculations.employee_status(latest_log)
        worked_minutes = 0
        if status == calculations.ONLINE:
            worked_minutes = int((now - latest_log.timestamp).total_seconds() // 60)

        employee_tasks = [t for t in tasks if t.employee_id == employee.id]
        by_activity = calculations.productivity_by_activity(employee, employees, tasks, standards)
        team_average = (
            sum(row["team_productivity"] for row in by_activity) / len(by_activity) if by_activity else 100.0
        )

        return EmployeeDetailSchema(
            id=employee.id,
            name=employee.name,
            activities=employee.activities,
            status=status,
            current_activity=current_activity,
            today_work_time=calculations.format_duration(worked_minutes),
            today_tasks_completed=sum(t.quantity for t in employee_tasks if t.execution_date == today),
            overall_productivity=calculations.compute_productivity(employee_tasks, standards),
            team_average_productivity=team_average,
            productivity_by_activity=[ActivityProductivitySchema(**row) for row in by_activity],
        )


class TimeClockService:
    """Service class for check-in / check-out logging."""

    @staticmethod
    def list_logs(operation_id: int, employee_name: str = "", log_type: str | None = None) -> list[TimeLog]:
        logs = list_time_logs(get_operation(operation_id))
        if employee_name:
            logs = logs.filter(employee_name__icontains=employee_name)
        if log_type:
            logs = logs.filter(type=log_type)
        return list(logs)

    @staticmethod
    def employee_statuses(operation_id: int) -> list[EmployeeStatusSchema]:
        operation = get_operation(operation_id)
        latest = calculations.latest_logs_by_employee(list_time_logs(operation))

        statuses = []
        for employee in list_employees(operation):
            status, activity = calculations.employee_status(latest.get(employee.id))
            statuses.append(EmployeeStatusSchema(
                employee_id=employee.id,
                employee_name=employee.name,
                status=status,
                activity=activity
            ))
        return statuses

    @staticmethod
    def record_log(operation_id: int, payload: TimeLogInSchema) -> TimeLog:
        employee = get_operation_employee(get_operation(operation_id), payload.employee_id)
        log = TimeLog.objects.create(
            employee=employee,
            employee_name=employee.name,
            type=payload.type,
            activity=payload.activity,
            timestamp=payload.timestamp or timezone.now(),
        )
        logger.info("%s recorded for employee %s (%s)", log.type, employee.id, log.activity)
        return log


class TaskExecutionService:
    """Service class for task execution logging."""

    @staticmethod
    def list_tasks(operation_id: int, employee_name: str = "", activity: str | None = None) -> list[TaskExecution]:
        tasks = list_task_executions(get_operation(operation_id))
        if employee_name:
            tasks = tasks.filter(employee_name__icontains=employee_name)
        if activity:
            tasks = tasks.filter(activity=activity)
        return list(tasks)

    @staticmethod
    def ensure_checked_in(employee: Employee, activity: str) -> None:
        """Work can only be reported by an employee currently checked in for that activity."""
        latest_log = employee.time_logs.order_by("-timestamp", "-id").first()
        status, current_activity = calculations.employee_status(latest_log)
        if status != calculations.ONLINE or current_activity != activity:
            logger.warning("Rejected %s task for employee %s: no active check-in", activity, employee.id)
            raise TaskExecutionRejected(
                f"Employee {employee.name} has no active check-in for the {activity} activity."
            )

    @classmethod
    def create_task(cls, operation_id: int, payload: TaskExecutionInSchema) -> TaskExecution:
        employee = get_operation_employee(get_operation(operation_id), payload.employee_id)
        cls.ensure_checked_in(employee, payload.activity)

        task = TaskExecution.objects.create(
            employee=employee,
            employee_name=employee.name,
            activity=payload.activity,
            quantity=payload.quantity,
            driver=payload.driver,
            execution_hours=payload.execution_hours,
            execution_date=payload.execution_date or timezone.localdate(),
        )
        logger.info("Logged %s %s for employee %s", task.quantity, task.activity, employee.id)
        return task

    @staticmethod
    def update_task(operation_id: int, task_id: int, payload: TaskExecutionUpdateSchema) -> TaskExecution:
        task = list_task_executions(get_operation(operation_id)).get(pk=task_id)
        for name, value in payload.model_dump(exclude_unset=True).items():
            if value is not None:
                setattr(task, name, value)
        task.save()
        return task

    @staticmethod
    def delete_task(operation_id: int, task_id: int) -> None:
        list_task_executions(get_operation(operation_id)).get(pk=task_id).delete()


class EngineeringStandardService:
    """Service class for engineering standards and their derived headcounts."""

    @staticmethod
    def list_standards(start_date: date, end_date: date, activity: str | None = None,
                       process_type: str | None = None) -> list[EngineeringStandard]:
        standards = calculations.filter_by_date_range(list_engineering_standards(), start_date, end_date)
        if activity:
            standards = [s for s in standards if s.activity == activity]
        if process_type:
            standards = [s for s in standards if s.process_type == process_type]
        return standards

    @staticmethod
    def recompute(record: StandardFormSchema, changed_field: str, new_value) -> StandardFormSchema:
        return StandardFormSchema(**calculations.recompute_standard_field(record.model_dump(), changed_field, new_value))

    @staticmethod
    def create_standard(payload: EngineeringStandardInSchema) -> EngineeringStandard:
        values = calculations.normalize_standard(payload.model_dump(exclude={"execution_date"}))
        standard = EngineeringStandard.objects.create(
            **values,
            execution_date=payload.execution_date or timezone.localdate(),
        )
        logger.info("Created %s standard %s: %s headcounts", standard.activity, standard.id, standard.headcounts)
        return standard

    @staticmethod
    def update_standard(standard_id: int, payload: EngineeringStandardInSchema) -> EngineeringStandard:
        standard = EngineeringStandard.objects.get(pk=standard_id)
        values = calculations.normalize_standard(payload.model_dump(exclude={"execution_date"}))
        for name, value in values.items():
            setattr(standard, name, value)
        if payload.execution_date:
            standard.execution_date = payload.execution_date
        standard.save()
        return standard

    @staticmethod
    def edit_standard_field(standard_id: int, field: str, value) -> EngineeringStandard:
        """Single-cell edit: runs the same reducer as the form so no derived field goes stale."""
        standard = EngineeringStandard.objects.get(pk=standard_id)
        record = {name: getattr(standard, name) for name in StandardFormSchema.model_fields}
        for name, new_value in calculations.recompute_standard_field(record, field, value).items():
            setattr(standard, name, new_value)
        standard.save()
        return standard

    @staticmethod
    def delete_standard(standard_id: int) -> None:
        EngineeringStandard.objects.get(pk=standard_id).delete()

    @staticmethod
    @transaction.atomic
    def replicate_standards(standard_ids: list[int], dates: list[date]) -> list[EngineeringStandard]:
        """Copy the selected standards onto every selected date."""
        standards = list(EngineeringStandard.objects.filter(id__in=standard_ids).order_by("id"))
        if not standards or not dates:
            raise WorkforceError("Select at least one standard and one date to replicate.")

        copied_fields = [f.name for f in EngineeringStandard._meta.concrete_fields if not f.primary_key]
        created = []
        for execution_date in sorted(set(dates)):
            for standard in standards:
                values = {name: getattr(standard, name) for name in copied_fields}
                values["execution_date"] = execution_date
                created.append(EngineeringStandard.objects.create(**values))
        logger.info("Replicated %d standards onto %d dates", len(standards), len(set(dates)))
        return created


WEEKDAYS = ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday"]
DAY_OFF = "Off"

# Objective weights: covering a slot with a specialist beats reallocating someone.
SPECIALIST_WEIGHT = 10
REALLOCATION_WEIGHT = 1


class ShiftPlanningService:
    """Service class for weekly shift planning."""

    @staticmethod
    def headcount_demand(standards) -> dict[str, int]:
        """Daily headcount required per activity, summed over the engineering standards."""
        demand: defaultdict[str, int] = defaultdict(int)
        for standard in standards:
            demand[standard.activity] += standard.headcounts
        return {activity: demand[activity] for activity in Activity.values if demand[activity] > 0}

    @staticmethod
    def _fair_share(employees, demand, days, max_days_per_employee) -> int:
        if not employees:
            return 0
        total_slots = min(
            len(days) * min(sum(demand.values()), len(employees)),
            len(employees) * max_days_per_employee
        )
        return total_slots // len(employees)

    @staticmethod
    def assign_shifts_using_greedy(employees, demand, days=WEEKDAYS, max_days_per_employee=5):
        """
        Fill each day's demand in two passes: specialists only, then anyone
        still free (reallocation). Scarce activities (fewest specialists) go
        first and each slot goes to whoever has worked the fewest days.
        """
        schedules = {employee.id: {day: DAY_OFF for day in days} for employee in employees}
        days_worked: defaultdict[int, int] = defaultdict(int)
        activities = sorted(demand, key=lambda a: sum(1 for e in employees if a in e.activities))

        for day in days:
            available = [e for e in employees if days_worked[e.id] < max_days_per_employee]
            remaining = dict(demand)
            for specialists_only in (True, False):
                for activity in activities:
                    while remaining[activity] > 0:
                        candidates = [e for e in available if not specialists_only or activity in e.activities]
                        if not candidates:
                            break
                        worker = min(candidates, key=lambda e: (days_worked[e.id], e.id))
                        schedules[worker.id][day] = activity
                        days_worked[worker.id] += 1
                        available.remove(worker)
                        remaining[activity] -= 1

        return schedules

    @classmethod
    def assign_shifts_using_lp(cls, employees, demand, days=WEEKDAYS, max_days_per_employee=5):
        """Assign shifts using Linear Programming optimization via pulp."""

        employee_lookup = {employee.id: employee for employee in employees}
        schedules = {employee.id: {day: DAY_OFF for day in days} for employee in employees}
        if not demand:
            return schedules

        # Define LP problem
        problem = LpProblem("Shift_Planning", LpMaximize)

        # Create variables: x[employee_id, activity, day] = 1 if assigned
        x = {}
        for employee in employees:
            for activity in demand:
                for day_index in range(len(days)):
                    var_name = f"x_{employee.id}_{activity}_{day_index}"
                    x[(employee.id, activity, day_index)] = LpVariable(var_name, cat=LpBinary)

        # Objective: Maximize weighted coverage, specialists first
        problem += lpSum(
            var * (SPECIALIST_WEIGHT if activity in employee_lookup[e].activities else REALLOCATION_WEIGHT)
            for (e, activity, _), var in x.items()
        )

        # Constraint: Each employee holds at most one activity per day
        for employee in employees:
            for day_index in range(len(days)):
                problem += lpSum(x[(employee.id, a, day_index)] for a in demand) <= 1

        # Constraint: Never staff an activity beyond its demand
        for activity, required in demand.items():
            for day_index in range(len(days)):
                problem += lpSum(x[(e.id, activity, day_index)] for e in employees) <= required

        # Constraint: Days worked stay between the fair share and the weekly maximum
        fair_share = cls._fair_share(employees, demand, days, max_days_per_employee)
        for employee in employees:
            worked = lpSum(x[(employee.id, a, d)] for a in demand for d in range(len(days)))
            problem += worked <= max_days_per_employee
            problem += worked >= fair_share

        try:
            problem.solve()
        except PulpSolverError as e:
            raise RuntimeError("Failed to solve LP problem") from e

        if LpStatus[problem.status] != "Optimal":
            raise ShiftPlanningError(f"Shift plan could not be solved ({LpStatus[problem.status]}).")

        # Parse result
        for (e_id, activity, day_index), var in x.items():
            if round(var.value() or 0) == 1:
                schedules[e_id][days[day_index]] = activity
        return schedules

    @staticmethod
    def calculate_kpi_metrics(schedules, employees, demand, days=WEEKDAYS) -> ShiftPlanKPISchema:
        """Calculate coverage and fairness KPIs for a shift plan."""
        demanded_slots = sum(demand.values()) * len(days)
        filled_slots = 0
        reallocations = 0
        days_worked = []
        for employee in employees:
            worked = 0
            for activity in schedules[employee.id].values():
                if activity == DAY_OFF:
                    continue
                worked += 1
                if activity not in employee.activities:
                    reallocations += 1
            filled_slots += worked
            days_worked.append(worked)

        return ShiftPlanKPISchema(
            coverage_rate=round(filled_slots / (demanded_slots or 1), 3),
            demanded_slots=demanded_slots,
            filled_slots=filled_slots,
            unfilled_slots=demanded_slots - filled_slots,
            reallocations=reallocations,
            gini_coefficient=round(ShiftPlanningService._calculate_gini_coefficient(days_worked), 3),
            total_employees=len(employees),
        )

    @staticmethod
    def _calculate_gini_coefficient(values):
        """Calculate Gini coefficient for a list of values."""
        if not values or len(values) == 1 or sum(values) == 0:
            return 0.0
        return float(gini.Gini(np.asarray(values, dtype=float)).g)

    @classmethod
    def generate_shift_plan(cls, operation_id: int, method: str | None = None) -> ShiftPlanResponseSchema:
        """
        Main service method to build the weekly shift plan of an operation.
        Demand comes from the engineering standards; employees from the operation.
        """
        method = method or settings.WORKFORCE_SHIFT_PLAN_METHOD
        max_days = settings.WORKFORCE_MAX_SHIFT_DAYS

        employees = list_employees(get_operation(operation_id))
        if not employees:
            raise ShiftPlanningError("There are no employees in this operation to plan shifts for.")
        demand = cls.headcount_demand(list_engineering_standards())

        if method == "greedy":
            schedules = cls.assign_shifts_using_greedy(employees, demand, WEEKDAYS, max_days)
        else:
            # Default to LP method
            schedules = cls.assign_shifts_using_lp(employees, demand, WEEKDAYS, max_days)

        kpi_metrics = cls.calculate_kpi_metrics(schedules, employees, demand, WEEKDAYS)
        logger.info(
            "Generated %s shift plan for operation %s: %d/%d slots filled",
            method, operation_id, kpi_metrics.filled_slots, kpi_metrics.demanded_slots
        )

        return ShiftPlanResponseSchema(
            method=method,
            days=WEEKDAYS,
            daily_demand=demand,
            schedules=[
                EmployeeScheduleSchema(
                    employee_id=employee.id,
                    employee_name=employee.name,
                    schedule=schedules[employee.id]
                )
                for employee in employees
            ],
            kpi_metrics=kpi_metrics,
        )


API_KEY_PREFIX = "ls_key_"
API_KEY_ALPHABET = string.ascii_lowercase + string.digits


class ApiKeyService:
    """Service class for the integration API key."""

    @staticmethod
    def get_key() -> str | None:
        api_key = ApiKey.objects.order_by("-created_at").first()
        return api_key.key if api_key else None

    @staticmethod
    @transaction.atomic
    def generate_key() -> str:
        """Replace the current key with a fresh one."""
        ApiKey.objects.all().delete()
        key = API_KEY_PREFIX + "".join(secrets.choice(API_KEY_ALPHABET) for _ in range(32))
        ApiKey.objects.create(key=key)
        logger.info("Generated a new integration API key")
        return key

    @staticmethod
    def delete_key() -> None:
        ApiKey.objects.all().delete()
        logger.info("Deleted the integration API key")

    @staticmethod
    def is_valid(key: str | None) -> bool:
        return bool(key) and ApiKey.objects.filter(key=key).exists()
