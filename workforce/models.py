from datetime import date

from django.db import models


class Activity(models.TextChoices):
    RECEIVING  = "Receiving"
    PUTAWAY    = "Putaway"
    PICKING    = "Picking"
    PACKING    = "Packing"
    DISPATCH   = "Dispatch"
    REALLOCATE = "Reallocate"

class Driver(models.TextChoices):
    LINES  = "Lines"
    EACH   = "Each"
    VOLUME = "Volume"

class ProcessType(models.TextChoices):
    SYSTEMIC = "Systemic"
    MANUAL   = "Manual"

class Role(models.TextChoices):
    ADMIN   = "Admin"
    MANAGER = "Manager"
    VIEWER  = "Viewer"

class LogType(models.TextChoices):
    CHECK_IN  = "Check-in"
    CHECK_OUT = "Check-out"


class User(models.Model):
    id       = models.BigAutoField(primary_key=True)
    username = models.CharField(max_length=150, unique=True)
    role     = models.CharField(max_length=16, choices=Role.choices, default=Role.VIEWER)
    manager  = models.ForeignKey(
        "self",
        null=True, blank=True,
        on_delete=models.SET_NULL,
        related_name="managed_users"
    )
    accessible_operations = models.ManyToManyField(
        "Operation",
        blank=True,
        related_name="viewers"
    )

class Operation(models.Model):
    id                    = models.BigAutoField(primary_key=True)
    name                  = models.CharField(max_length=150)
    location              = models.CharField(max_length=150, blank=True)
    latitude              = models.FloatField(null=True, blank=True)
    longitude             = models.FloatField(null=True, blank=True)
    manager               = models.ForeignKey(
        User,
        null=True, blank=True,
        on_delete=models.SET_NULL,
        related_name="managed_operations"
    )
    total_headcount       = models.PositiveIntegerField(default=0)
    employees_on_vacation = models.PositiveIntegerField(default=0)

class Employee(models.Model):
    id                = models.BigAutoField(primary_key=True)
    name              = models.CharField(max_length=150)
    activities        = models.JSONField(default=list, blank=True)
    registration_date = models.DateField(default=date.today)
    photo             = models.TextField(blank=True)
    operations        = models.ManyToManyField(
        Operation,
        blank=True,
        related_name="employees"
    )

class TimeLog(models.Model):
    id            = models.BigAutoField(primary_key=True)
    employee      = models.ForeignKey(
        Employee,
        on_delete=models.CASCADE,
        related_name="time_logs"
    )
    employee_name = models.CharField(max_length=150)
    type          = models.CharField(max_length=16, choices=LogType.choices)
    timestamp     = models.DateTimeField(db_index=True)
    activity      = models.CharField(max_length=16, choices=Activity.choices)

    class Meta:
        indexes = [
            models.Index(fields=["employee", "timestamp"]),
        ]

class TaskExecution(models.Model):
    id              = models.BigAutoField(primary_key=True)
    employee        = models.ForeignKey(
        Employee,
        on_delete=models.CASCADE,
        related_name="task_executions"
    )
    employee_name   = models.CharField(max_length=150, blank=True)
    activity        = models.CharField(max_length=16, choices=Activity.choices)
    quantity        = models.FloatField(default=0)
    driver          = models.CharField(max_length=16, choices=Driver.choices, default=Driver.LINES)
    execution_hours = models.FloatField(default=0)
    execution_date  = models.DateField(default=date.today)

    class Meta:
        indexes = [
            models.Index(fields=["execution_date"]),
            models.Index(fields=["employee", "execution_date"]),
        ]

class EngineeringStandard(models.Model):
    id                  = models.BigAutoField(primary_key=True)
    activity            = models.CharField(max_length=16, choices=Activity.choices)
    process_type        = models.CharField(max_length=16, choices=ProcessType.choices, default=ProcessType.SYSTEMIC)
    driver              = models.CharField(max_length=16, choices=Driver.choices, default=Driver.LINES)
    cycle_time          = models.FloatField(default=0)
    hourly_productivity = models.FloatField(default=0)
    daily_demand        = models.FloatField(default=0)
    work_time           = models.FloatField(default=8)
    break_time          = models.FloatField(default=1)
    headcounts          = models.PositiveIntegerField(default=0)
    execution_date      = models.DateField(default=date.today, db_index=True)

class ApiKey(models.Model):
    id         = models.BigAutoField(primary_key=True)
    key        = models.CharField(max_length=64, unique=True)
    created_at = models.DateTimeField(auto_now_add=True)
