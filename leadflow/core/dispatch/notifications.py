# leadflow/core/dispatch/notifications.py
"""
Push payload builders for closer/setter notifications.

Pure functions: they shape a ``PushNotification`` and never send it.
Delivery goes through a ``Notifier`` (see ``leadflow.infra.notification_channels``).
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from leadflow.core.domain import Lead, LeadStatus

DASHBOARD_URL = "/dashboard"


@dataclass
class PushNotification:
    title: str
    body: str
    tag: str
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def kind(self) -> str:
        return self.data.get("type", "generic")

    def to_dict(self) -> dict[str, Any]:
        return {"title": self.title, "body": self.body, "tag": self.tag, "data": self.data}


def _data(kind: str, lead: Lead, **extra: Any) -> dict[str, Any]:
    return {"type": kind, "lead_id": lead.id, "action_url": DASHBOARD_URL, **extra}


def lead_assigned(lead: Lead) -> PushNotification:
    return PushNotification(
        title="Lead Assigned to You",
        body=f"{lead.customer_name} has been assigned to you",
        tag=f"assigned-{lead.id}",
        data=_data("lead_assigned", lead),
    )


def job_accepted(lead: Lead, closer_name: str) -> PushNotification:
    return PushNotification(
        title="Job Accepted",
        body=f"{closer_name} has accepted the job for {lead.customer_name}",
        tag=f"accepted-{lead.id}",
        data=_data("job_accepted", lead, closer_name=closer_name),
    )


def lead_updated(lead: Lead, new_status: LeadStatus) -> PushNotification:
    label = new_status.value.replace("_", " ")
    return PushNotification(
        title="Lead Updated",
        body=f"{lead.customer_name} - Status changed to {label}",
        tag=f"updated-{lead.id}",
        data=_data("lead_updated", lead, status=new_status.value),
    )


def appointment_reminder(lead_id: str, customer_name: str, appointment_time: datetime) -> PushNotification:
    # Clock time in UTC; the client app localizes from data.appointment_time
    time_str = appointment_time.strftime("%H:%M UTC")
    return PushNotification(
        title="Appointment Reminder",
        body=f"Appointment with {customer_name} at {time_str}",
        tag=f"reminder-{lead_id}",
        data={
            "type": "appointment_reminder",
            "lead_id": lead_id,
            "appointment_time": appointment_time.isoformat(),
            "action_url": DASHBOARD_URL,
        },
    )
