from datetime import date
from typing import Literal

from django.core.exceptions import ObjectDoesNotExist
from django.http import HttpRequest
from django.utils import timezone
from ninja import NinjaAPI, Query, Swagger
from ninja.errors import HttpError
from ninja.security import APIKeyHeader

from .calculations import period_bounds
from .exceptions import WorkforceError
from .models import Activity, LogType, ProcessType, User
from .schemas import (
    ApiKeySchema, DashboardSnapshotSchema, EmployeeDetailSchema, EmployeeHistorySchema, EmployeeInSchema,
    EmployeeSchema, ErrorSchema, EmployeeStatusSchema, EngineeringStandardInSchema, EngineeringStandardSchema,
    OperationInSchema, OperationSchema, ReplicateStandardsSchema, ShiftPlanResponseSchema,
    StandardFieldEditSchema, StandardFormSchema, StandardRecomputeSchema, TaskExecutionInSchema,
    TaskExecutionSchema, TaskExecutionUpdateSchema, TimeLogInSchema, TimeLogSchema, UserInSchema, UserSchema
)
from .services import (
    ApiKeyService, DashboardService, EmployeeService, EngineeringStandardService, OperationService,
    ShiftPlanningService, TaskExecutionService, TimeClockService, UserService
)

api = NinjaAPI(title="LaborSync", docs=Swagger(settings={"persistAuthorization": True}))


class IntegrationKey(APIKeyHeader):
    param_name = "X-API-Key"

    def authenticate(self, request, key):
        if ApiKeyService.is_valid(key):
            return key


@api.exception_handler(ObjectDoesNotExist)
def not_found(request: HttpRequest, exc: ObjectDoesNotExist):
    return api.create_response(request, {"detail": "Not found"}, status=404)


@api.exception_handler(WorkforceError)
def workforce_error(request: HttpRequest, exc: WorkforceError):
    return api.create_response(request, {"detail": str(exc)}, status=exc.status_code)


def resolve_window(start_date: date | None, end_date: date | None, reference_date: date | None,
                   period: str) -> tuple[date, date]:
    """Explicit dates win; otherwise the period around the reference date (today by default)."""
    if start_date is None:
        return period_bounds(reference_date or timezone.localdate(), period)
    if end_date is None:
        end_date = start_date
    if start_date > end_date:
        raise HttpError(400, "start_date must not be after end_date")
    return start_date, end_date


@api.get("/operations", response=list[OperationSchema])
def list_operations(request: HttpRequest):
    return OperationService.list_operations()


@api.post("/operations", response={201: OperationSchema})
def create_operation(request: HttpRequest, payload: OperationInSchema):
    return 201, OperationService.create_operation(payload)


@api.put("/operations/{operation_id}", response=OperationSchema)
def update_operation(request: HttpRequest, operation_id: int, payload: OperationInSchema):
    return OperationService.update_operation(operation_id, payload)


@api.delete("/operations/{operation_id}", response={204: None})
def delete_operation(request: HttpRequest, operation_id: int):
    OperationService.delete_operation(operation_id)
    return 204, None


@api.get("/users", response=list[UserSchema])
def list_users(request: HttpRequest, manager_id: int | None = None):
    """All users, or a manager together with the viewers they manage."""
    return UserService.list_users(manager_id)


@api.post("/users", response={201: UserSchema, 409: ErrorSchema})
def create_user(request: HttpRequest, payload: UserInSchema):
    """
    Register a user. Admins are granted every operation, managers reach the
    operations they manage, viewers get the listed accessible_operation_ids.
    """
    return 201, UserService.create_user(payload)


@api.put("/users/{user_id}", response={200: UserSchema, 409: ErrorSchema})
def update_user(request: HttpRequest, user_id: int, payload: UserInSchema):
    return UserService.update_user(user_id, payload)


@api.delete("/users/{user_id}", response={204: None, 400: ErrorSchema})
def delete_user(request: HttpRequest, user_id: int):
    UserService.delete_user(user_id)
    return 204, None


@api.get("/users/{user_id}/operations", response=list[OperationSchema])
def list_user_operations(request: HttpRequest, user_id: int):
    """Operations the user may switch to, according to their role."""
    return OperationService.accessible_operations(User.objects.get(pk=user_id))


@api.get("/operations/{operation_id}/dashboard", response=DashboardSnapshotSchema)
def get_dashboard(request: HttpRequest, operation_id: int,
                  start_date: date | None = None, end_date: date | None = None,
                  reference_date: date | None = None,
                  period: Literal["day", "week", "month"] = "day",
                  activities: list[Activity] | None = Query(None)) -> DashboardSnapshotSchema:
    """
    Summary metrics of an operation over a date window.

    Pass start_date/end_date for an explicit window, or a period ('day',
    'week' Monday-Sunday, 'month') around reference_date (defaults to today).
    Figures always cover every activity; repeated `activities` values are
    echoed back as the display filter.
    """
    start_date, end_date = resolve_window(start_date, end_date, reference_date, period)
    return DashboardService.get_dashboard_snapshot(operation_id, start_date, end_date, activities or [])


@api.get("/operations/{operation_id}/employees", response=list[EmployeeSchema])
def list_employees(request: HttpRequest, operation_id: int, name: str = "", activity: Activity | None = None):
    return EmployeeService.list_employees(operation_id, name, activity)


@api.post("/employees", response={201: EmployeeSchema})
def create_employee(request: HttpRequest, payload: EmployeeInSchema):
    return 201, EmployeeService.create_employee(payload)


@api.put("/employees/{employee_id}", response=EmployeeSchema)
def update_employee(request: HttpRequest, employee_id: int, payload: EmployeeInSchema):
    return EmployeeService.update_employee(employee_id, payload)


@api.delete("/employees/{employee_id}", response={204: None})
def delete_employee(request: HttpRequest, employee_id: int):
    EmployeeService.delete_employee(employee_id)
    return 204, None


@api.get("/operations/{operation_id}/employees/{employee_id}", response=EmployeeDetailSchema)
def get_employee_detail(request: HttpRequest, operation_id: int, employee_id: int):
    """Status, today's work and productivity of one employee against the team."""
    return EmployeeService.get_employee_detail(operation_id, employee_id)


@api.get("/operations/{operation_id}/employees/{employee_id}/history", response=EmployeeHistorySchema)
def get_employee_history(request: HttpRequest, operation_id: int, employee_id: int):
    return EmployeeService.get_employee_history(operation_id, employee_id)


@api.get("/operations/{operation_id}/time-logs", response=list[TimeLogSchema])
def list_time_logs(request: HttpRequest, operation_id: int, employee_name: str = "", type: LogType | None = None):
    return TimeClockService.list_logs(operation_id, employee_name, type)


@api.post("/operations/{operation_id}/time-logs", response={201: TimeLogSchema})
def record_time_log(request: HttpRequest, operation_id: int, payload: TimeLogInSchema):
    """Check an employee of the operation in or out of an activity."""
    return 201, TimeClockService.record_log(operation_id, payload)


@api.get("/operations/{operation_id}/employee-statuses", response=list[EmployeeStatusSchema])
def list_employee_statuses(request: HttpRequest, operation_id: int):
    return TimeClockService.employee_statuses(operation_id)


@api.get("/operations/{operation_id}/task-executions", response=list[TaskExecutionSchema])
def list_task_executions(request: HttpRequest, operation_id: int, employee_name: str = "",
                         activity: Activity | None = None):
    return TaskExecutionService.list_tasks(operation_id, employee_name, activity)


@api.post("/operations/{operation_id}/task-executions", response={201: TaskExecutionSchema, 409: ErrorSchema})
def create_task_execution(request: HttpRequest, operation_id: int, payload: TaskExecutionInSchema):
    """Report work done. The employee must be checked in for the same activity."""
    return 201, TaskExecutionService.create_task(operation_id, payload)


@api.put("/operations/{operation_id}/task-executions/{task_id}", response=TaskExecutionSchema)
def update_task_execution(request: HttpRequest, operation_id: int, task_id: int,
                          payload: TaskExecutionUpdateSchema):
    return TaskExecutionService.update_task(operation_id, task_id, payload)


@api.delete("/operations/{operation_id}/task-executions/{task_id}", response={204: None})
def delete_task_execution(request: HttpRequest, operation_id: int, task_id: int):
    TaskExecutionService.delete_task(operation_id, task_id)
    return 204, None


@api.get("/standards", response=list[EngineeringStandardSchema])
def list_standards(request: HttpRequest, start_date: date | None = None, end_date: date | None = None,
                   reference_date: date | None = None,
                   period: Literal["day", "week", "month"] = "week",
                   activity: Activity | None = None, process_type: ProcessType | None = None):
    start_date, end_date = resolve_window(start_date, end_date, reference_date, period)
    return EngineeringStandardService.list_standards(start_date, end_date, activity, process_type)


@api.post("/standards", response={201: EngineeringStandardSchema})
def create_standard(request: HttpRequest, payload: EngineeringStandardInSchema):
    """Create a standard; productivity/cycle time and headcounts are derived before saving."""
    return 201, EngineeringStandardService.create_standard(payload)


@api.post("/standards/recompute", response=StandardFormSchema)
def recompute_standard(request: HttpRequest, payload: StandardRecomputeSchema):
    """
    Apply one field edit to an unsaved standard and return it with cycle time,
    hourly productivity and headcounts brought back in line.
    """
    return EngineeringStandardService.recompute(payload.record, payload.changed_field, payload.new_value)


@api.post("/standards/replicate", response={201: list[EngineeringStandardSchema], 400: ErrorSchema})
def replicate_standards(request: HttpRequest, payload: ReplicateStandardsSchema):
    return 201, EngineeringStandardService.replicate_standards(payload.standard_ids, payload.dates)


@api.put("/standards/{standard_id}", response=EngineeringStandardSchema)
def update_standard(request: HttpRequest, standard_id: int, payload: EngineeringStandardInSchema):
    return EngineeringStandardService.update_standard(standard_id, payload)


@api.patch("/standards/{standard_id}", response=EngineeringStandardSchema)
def edit_standard_field(request: HttpRequest, standard_id: int, payload: StandardFieldEditSchema):
    return EngineeringStandardService.edit_standard_field(standard_id, payload.field, payload.value)


@api.delete("/standards/{standard_id}", response={204: None})
def delete_standard(request: HttpRequest, standard_id: int):
    EngineeringStandardService.delete_standard(standard_id)
    return 204, None


@api.post("/operations/{operation_id}/shift-plan", response={200: ShiftPlanResponseSchema, 400: ErrorSchema})
def generate_shift_plan(request: HttpRequest, operation_id: int,
                        method: Literal["lp", "greedy"] | None = None) -> ShiftPlanResponseSchema:
    """
    Build a Monday-Friday shift plan for the operation's employees.

    Daily headcount demand per activity is the sum of the engineering
    standards' headcounts. Employees hold at most one activity per day and
    are otherwise off; staffing never exceeds demand.

    LP Strategy:
    - Binary variable per (employee, activity, day)
    - Objective: maximise covered slots, weighting specialists over reallocated staff
    - Constraints: one activity per day, demand cap, fair share of working days

    Greedy Strategy:
    - Day by day, scarcest activity first
    - Each slot goes to a free specialist with the fewest days worked, else anyone free

    KPIs returned:
    - coverage_rate: filled slots / demanded slots
    - unfilled_slots, reallocations (shifts outside an employee's activities)
    - gini_coefficient: spread of working days (0 = perfectly equal)
    """
    return ShiftPlanningService.generate_shift_plan(operation_id, method)


@api.get("/api-key", response=ApiKeySchema)
def get_api_key(request: HttpRequest):
    return {"key": ApiKeyService.get_key()}


@api.post("/api-key", response={201: ApiKeySchema})
def generate_api_key(request: HttpRequest):
    return 201, {"key": ApiKeyService.generate_key()}


@api.delete("/api-key", response={204: None})
def delete_api_key(request: HttpRequest):
    ApiKeyService.delete_key()
    return 204, None


@api.post("/integration/operations/{operation_id}/task-executions", response={201: TaskExecutionSchema, 409: ErrorSchema},
          auth=IntegrationKey())
def ingest_task_execution(request: HttpRequest, operation_id: int, payload: TaskExecutionInSchema):
    """Task executions pushed by external systems, authenticated with the X-API-Key header."""
    return 201, TaskExecutionService.create_task(operation_id, payload)
