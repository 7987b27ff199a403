from datetime import date, datetime
from typing import Annotated, Any, Literal

from ninja import Field, Schema
from pydantic import BeforeValidator, model_validator

from .calculations import format_execution_date, format_timestamp, parse_execution_date
from .models import Activity, Driver, LogType, ProcessType, Role

StandardField = Literal[
    "activity", "process_type", "driver",
    "cycle_time", "hourly_productivity", "daily_demand", "work_time", "break_time",
]


def _parse_record_date(value: Any) -> Any:
    """Accept DD/MM/YYYY at the boundary; leave dates and None for pydantic."""
    if value is None or isinstance(value, date):
        return value
    parsed = parse_execution_date(value)
    if parsed is None:
        raise ValueError("expected a date formatted as DD/MM/YYYY")
    return parsed


RecordDate = Annotated[date, BeforeValidator(_parse_record_date)]

CHOICE_FIELDS = {"activity": Activity, "process_type": ProcessType, "driver": Driver}


def _check_choice(field: str, value: Any) -> None:
    choices = CHOICE_FIELDS.get(field)
    if choices is not None and value not in choices.values:
        raise ValueError(f"{field} must be one of: {', '.join(choices.values)}")


class ErrorSchema(Schema):
    detail: str


class UserInSchema(Schema):
    username: str = Field(..., min_length=1)
    role: Role = Role.VIEWER
    manager_id: int | None = None
    accessible_operation_ids: list[int] = []


class UserSchema(Schema):
    id: int
    username: str
    role: Role
    manager_id: int | None = None
    accessible_operation_ids: list[int]

    @staticmethod
    def resolve_accessible_operation_ids(obj) -> list[int]:
        return [operation.id for operation in obj.accessible_operations.order_by("id")]


class OperationInSchema(Schema):
    name: str
    location: str = ""
    latitude: float | None = None
    longitude: float | None = None
    manager_id: int | None = None
    total_headcount: int = Field(0, ge=0)
    employees_on_vacation: int = Field(0, ge=0)


class OperationSchema(Schema):
    id: int
    name: str
    location: str
    latitude: float | None = None
    longitude: float | None = None
    manager_id: int | None = None
    manager: str
    total_headcount: int
    employees_on_vacation: int

    @staticmethod
    def resolve_manager(obj) -> str:
        return obj.manager.username if obj.manager else "N/A"


class EmployeeInSchema(Schema):
    name: str
    activities: list[Activity] = []
    photo: str = ""
    operation_ids: list[int] = []


class EmployeeSchema(Schema):
    id: int
    name: str
    activities: list[str]
    registration_date: str
    photo: str
    operation_ids: list[int]

    @staticmethod
    def resolve_registration_date(obj) -> str:
        return format_execution_date(obj.registration_date)

    @staticmethod
    def resolve_operation_ids(obj) -> list[int]:
        return [operation.id for operation in obj.operations.all()]


class EmployeeStatusSchema(Schema):
    employee_id: int
    employee_name: str
    status: Literal["Online", "Offline"]
    activity: str | None = None


class ActivityProductivitySchema(Schema):
    """Employee productivity against the team average for one activity."""
    name: str
    employee_productivity: float
    team_productivity: float


class EmployeeDetailSchema(Schema):
    id: int
    name: str
    activities: list[str]
    status: Literal["Online", "Offline"]
    current_activity: str | None = None
    today_work_time: str
    today_tasks_completed: float
    overall_productivity: float
    team_average_productivity: float
    productivity_by_activity: list[ActivityProductivitySchema]


class TimeLogInSchema(Schema):
    employee_id: int
    type: LogType
    activity: Activity
    timestamp: datetime | None = None


class TimeLogSchema(Schema):
    id: int
    employee_id: int
    employee_name: str
    type: str
    timestamp: str
    activity: str

    @staticmethod
    def resolve_timestamp(obj) -> str:
        return format_timestamp(obj.timestamp)


class TaskExecutionInSchema(Schema):
    employee_id: int
    activity: Activity
    quantity: float = Field(0, ge=0)
    driver: Driver = Driver.LINES
    execution_hours: float = Field(0, ge=0)
    execution_date: RecordDate | None = None


class TaskExecutionUpdateSchema(Schema):
    activity: Activity | None = None
    quantity: float | None = Field(None, ge=0)
    driver: Driver | None = None
    execution_hours: float | None = Field(None, ge=0)
    execution_date: RecordDate | None = None


class TaskExecutionSchema(Schema):
    id: int
    employee_id: int
    employee_name: str
    activity: str
    quantity: float
    driver: str
    execution_hours: float
    execution_date: str

    @staticmethod
    def resolve_execution_date(obj) -> str:
        return format_execution_date(obj.execution_date)


class EmployeeHistorySchema(Schema):
    logs: list[TimeLogSchema]
    tasks: list[TaskExecutionSchema]


class StandardFormSchema(Schema):
    """Editable engineering standard fields, as held by the standard form."""
    activity: Activity = Activity.PICKING
    process_type: ProcessType = ProcessType.SYSTEMIC
    driver: Driver = Driver.LINES
    cycle_time: float = 0
    hourly_productivity: float = 0
    daily_demand: float = 0
    work_time: float = 8
    break_time: float = 1
    headcounts: int = 0


class EngineeringStandardInSchema(StandardFormSchema):
    execution_date: RecordDate | None = None


class StandardRecomputeSchema(Schema):
    record: StandardFormSchema
    changed_field: StandardField
    new_value: Any = None

    @model_validator(mode="after")
    def check_choice(self):
        _check_choice(self.changed_field, self.new_value)
        return self


class StandardFieldEditSchema(Schema):
    field: StandardField
    value: Any = None

    @model_validator(mode="after")
    def check_choice(self):
        _check_choice(self.field, self.value)
        return self


class ReplicateStandardsSchema(Schema):
    standard_ids: list[int]
    dates: list[RecordDate]


class EngineeringStandardSchema(Schema):
    id: int
    activity: str
    process_type: str
    driver: str
    cycle_time: float
    hourly_productivity: float
    daily_demand: float
    work_time: float
    break_time: float
    headcounts: int
    execution_date: str

    @staticmethod
    def resolve_execution_date(obj) -> str:
        return format_execution_date(obj.execution_date)


class OperationSummarySchema(Schema):
    id: int
    name: str
    total_headcount: int
    employees_on_vacation: int


class DemandVsExecutionSchema(Schema):
    """Planned demand and executed quantity for one activity."""
    name: str
    planned: float
    actual: float
    driver: str


class HeadcountTrendSchema(Schema):
    day: str
    date: str
    headcount: int
    demand: int


class AbsenteeismSchema(Schema):
    planned: int
    on_vacation: int
    active: int
    absent: int
    rate: float


class DashboardSnapshotSchema(Schema):
    """Complete response schema for the operation dashboard endpoint."""
    operation: OperationSummarySchema
    start_date: date
    end_date: date
    activity_filter: list[str]
    active_employees: int
    tasks_progress: float
    total_tasks_today: float
    planned_tasks_today: float
    overall_productivity: int
    demand_vs_execution_by_activity: list[DemandVsExecutionSchema]
    employee_distribution: dict[str, int]
    headcount_vs_demand: list[HeadcountTrendSchema]
    absenteeism: AbsenteeismSchema | None = None


class EmployeeScheduleSchema(Schema):
    """Weekly schedule of one employee: weekday -> activity or 'Off'."""
    employee_id: int
    employee_name: str
    schedule: dict[str, str]


class ShiftPlanKPISchema(Schema):
    coverage_rate: float
    demanded_slots: int
    filled_slots: int
    unfilled_slots: int
    reallocations: int
    gini_coefficient: float
    total_employees: int


class ShiftPlanResponseSchema(Schema):
    method: str
    days: list[str]
    daily_demand: dict[str, int]
    schedules: list[EmployeeScheduleSchema]
    kpi_metrics: ShiftPlanKPISchema


class ApiKeySchema(Schema):
    key: str | None = None
