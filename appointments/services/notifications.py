"""
Notification and audit emitter.

Clinic notifications and AppointmentLog rows are written inside the
caller's transaction so they commit (or roll back) with the event. Audit
entries are a write-only sink: they go to the ``clinic_booking.audit``
logger once the transaction has committed.
"""

import json
import logging

from django.db import transaction

from appointments.models import AppointmentLog, ClinicNotification

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("clinic_booking.audit")


def notify_clinic(*, clinic_id, notification_type, entity_id, message,
                  priority=ClinicNotification.Priority.NORMAL):
    notification = ClinicNotification.objects.create(
        clinic_id=clinic_id,
        notification_type=notification_type,
        entity_id=entity_id,
        message=message,
        priority=priority,
    )
    logger.info(
        "[NOTIFICATION] %s clinic=%s entity=%s priority=%s",
        notification_type, clinic_id, entity_id, priority,
    )
    return notification


def record_log(appointment, *, action, old_slot, new_slot=None, changed_by=None, reason="", metadata=None):
    return AppointmentLog.objects.create(
        appointment=appointment,
        action=action,
        old_date=old_slot.date,
        old_time=old_slot.time,
        new_date=new_slot.date if new_slot else None,
        new_time=new_slot.time if new_slot else None,
        changed_by=changed_by,
        reason=reason or "",
        metadata=metadata or {},
    )


def audit(action, *, actor_id=None, clinic_id=None, entity="Appointment", entity_id=None, **details):
    """Emit an audit entry after the current transaction commits."""
    entry = {
        "action": action,
        "actor_id": actor_id,
        "clinic_id": clinic_id,
        "entity": entity,
        "entity_id": entity_id,
        "details": details,
    }

    def _emit():
        audit_logger.info("[AUDIT] %s", json.dumps(entry, default=str, sort_keys=True))

    transaction.on_commit(_emit)
