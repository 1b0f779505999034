"""Known domain events and the default trigger catalogue."""

from typing import Any

from pestops.workflows.models import TriggerSpec

TRIGGER_EVENTS: dict[str, str] = {
    "job_form_submit": "Job form submitted",
    "material_form_submit": "Material form submitted",
    "time_entry_submit": "Time entry submitted",
    "clock_in": "Employee clocked in",
    "clock_out": "Employee clocked out",
    "material_approved": "Material request approved",
    "time_entry_approved": "Time entry approved",
    "invoice_created": "Invoice created",
    "schedule_created": "Schedule created",
    "task_assigned": "Task assigned",
    "task_completed": "Task completed",
    "quickbooks_sync": "QuickBooks sync completed",
    "google_calendar_sync": "Google Calendar sync completed",
}

MANAGER_EMAIL = "manager@marinpestcontrol.com"

_DEFAULT_TRIGGER_DEFINITIONS: list[dict[str, Any]] = [
    {
        "name": "Job Form Auto-Processing",
        "description": "Log submitted job forms and tell the office",
        "trigger_event": "job_form_submit",
        "priority": 10,
        "actions": [
            {
                "type": "log_activity",
                "config": {
                    "type": "job_form",
                    "description": "Job form submitted for {customerName}",
                },
            },
            {
                "type": "send_notification",
                "config": {
                    "message": "New job form from {employeeName}",
                    "type": "info",
                    "recipients": ["manager"],
                },
            },
        ],
    },
    {
        "name": "Material Approval Workflow",
        "description": "Auto-approve material requests under $100",
        "trigger_event": "material_form_submit",
        "priority": 20,
        "conditions": {
            "field_conditions": [
                {"field": "totalCost", "operator": "lessThan", "value": 100}
            ]
        },
        "actions": [
            {
                "type": "update_status",
                "config": {"entity": "material", "status": "approved"},
            },
            {
                "type": "log_activity",
                "config": {
                    "type": "material_approval",
                    "description": "Material request auto-approved (${totalCost})",
                },
            },
        ],
    },
    {
        "name": "Large Material Expense Alert",
        "description": "Flag material requests of $100 or more for the manager",
        "trigger_event": "material_form_submit",
        "priority": 15,
        "conditions": {
            "field_conditions": [
                {"field": "totalCost", "operator": "greaterThanOrEqual", "value": 100}
            ]
        },
        "actions": [
            {
                "type": "send_notification",
                "config": {
                    "message": "Material request of ${totalCost} needs approval",
                    "type": "warning",
                    "recipients": ["manager"],
                },
            },
            {
                "type": "send_email",
                "retry_on_fail": True,
                "config": {
                    "to": MANAGER_EMAIL,
                    "subject": "Large material expense: ${totalCost}",
                    "body": (
                        "<p>{employeeName} submitted a material request for "
                        "${totalCost}. Please review it.</p>"
                    ),
                },
            },
        ],
    },
    {
        "name": "Clock In Notification",
        "description": "Record clock-ins and mark today's calendar event in progress",
        "trigger_event": "clock_in",
        "priority": 30,
        "actions": [
            {
                "type": "log_activity",
                "config": {
                    "type": "clock_in",
                    "description": "{employeeName} clocked in",
                },
            },
            {
                "type": "sync_google_calendar",
                "config": {
                    "operation": "update_event",
                    "update_status": "in_progress",
                },
            },
            {
                "type": "update_metric",
                "config": {"metric": "daily_clock_ins", "operation": "increment"},
            },
        ],
    },
    {
        "name": "End of Day Processing",
        "description": "Push the day's timesheet to QuickBooks on late clock-outs",
        "trigger_event": "clock_out",
        "priority": 25,
        "conditions": {"time_window": {"start": 16, "end": 23}},
        "actions": [
            {
                "type": "log_activity",
                "config": {
                    "type": "clock_out",
                    "description": "{employeeName} clocked out",
                },
            },
            {
                "type": "sync_quickbooks",
                "retry_on_fail": True,
                "config": {"sync_type": "daily_timesheet"},
            },
            {
                "type": "update_metric",
                "config": {
                    "metric": "daily_hours_worked",
                    "operation": "add",
                    "value_field": "hours",
                },
            },
        ],
    },
    {
        "name": "Schedule Creation Automation",
        "description": "Create calendar events for new schedules",
        "trigger_event": "schedule_created",
        "priority": 40,
        "actions": [
            {
                "type": "sync_google_calendar",
                "retry_on_fail": True,
                "config": {"operation": "create_event", "send_invites": True},
            },
            {
                "type": "send_notification",
                "config": {
                    "message": "New appointment scheduled: {title}",
                    "type": "info",
                },
            },
            {
                "type": "log_activity",
                "config": {
                    "type": "schedule",
                    "description": "Schedule created: {title}",
                },
            },
        ],
    },
    {
        "name": "Invoice Creation Workflow",
        "description": "Push new invoices to QuickBooks",
        "trigger_event": "invoice_created",
        "priority": 50,
        "actions": [
            {
                "type": "sync_quickbooks",
                "retry_on_fail": True,
                "config": {"sync_type": "invoice"},
            },
            {
                "type": "send_notification",
                "config": {
                    "message": "Invoice {invoiceNumber} created and synced",
                    "type": "success",
                },
            },
            {
                "type": "update_metric",
                "config": {
                    "metric": "monthly_invoices",
                    "operation": "increment",
                    "period": "month",
                },
            },
        ],
    },
]


def default_trigger_specs(created_by: str = "system") -> list[TriggerSpec]:
    """Validated copies of the default catalogue."""
    return [
        TriggerSpec.model_validate({**definition, "created_by": created_by})
        for definition in _DEFAULT_TRIGGER_DEFINITIONS
    ]
