class WorkforceError(Exception):
    """Base class for domain rejections raised by the workforce services."""
    status_code = 400


class TaskExecutionRejected(WorkforceError):
    """The employee is not checked in for the activity being reported."""
    status_code = 409


class ShiftPlanningError(WorkforceError):
    status_code = 400


class UsernameTaken(WorkforceError):
    status_code = 409
