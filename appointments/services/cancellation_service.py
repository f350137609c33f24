"""
Patient cancellation and staff resolution.

Two paths, chosen by how the appointment was paid:

- Refundable (a gateway payment is held for it, including the first part
  of a reschedule whose difference is still outstanding): the patient
  files a CancellationRequest and the appointment waits in
  CANCEL_REQUESTED, still holding its slot, until clinic staff approve or
  reject it.
- Everything else (pay-at-clinic, free, or an unpaid first-time hold): the
  appointment is cancelled immediately and the slot released. Pay-at-clinic
  and free bookings must respect the cancellation notice window.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from django.db import transaction
from django.utils import timezone

from appointments.exceptions import (
    CancellationAlreadyResolvedError,
    CancellationNoticeError,
    DuplicateCancellationRequestError,
    NotFoundError,
    PolicyViolationError,
)
from appointments.models import Appointment, AppointmentLog, CancellationRequest, ClinicNotification
from appointments.policy import cancellation_notice_hours
from payments.models import Payment
from slots.services import local_now, release_slot

from .lifecycle import lock_appointment, mark_cancelled, schedule_refund, transition
from .notifications import audit, notify_clinic, record_log

logger = logging.getLogger(__name__)


@dataclass
class CancellationOutcome:
    appointment: Appointment
    request: Optional[CancellationRequest] = None

    @property
    def cancelled(self):
        return self.appointment.status == Appointment.Status.CANCELLED


def is_refundable(appointment):
    """True while a gateway payment for the appointment is held and not refunded."""
    return Payment.objects.filter(
        appointment=appointment,
        status=Payment.Status.PAID,
        captures__status=Payment.Status.PAID,
    ).exists()


def hours_until_start(slot, now=None):
    return (slot.start_datetime - local_now(now)).total_seconds() / 3600


@transaction.atomic
def request_cancellation(appointment_id, *, patient, reason="", now=None) -> CancellationOutcome:
    """
    Cancel, or ask the clinic to cancel, a patient's appointment.

    Raises:
        NotFoundError: Unknown appointment for this patient.
        PolicyViolationError: Terminal appointment, or notice window missed.
        DuplicateCancellationRequestError: A request is already pending or approved.
    """
    now = now or timezone.now()
    appointment = lock_appointment(appointment_id, patient=patient)

    if appointment.is_terminal:
        raise PolicyViolationError(
            f"A {appointment.status.lower()} appointment cannot be cancelled.",
            code="not_cancellable",
        )

    if is_refundable(appointment):
        return _file_request(appointment, patient=patient, reason=reason)
    return _cancel_now(appointment, patient=patient, reason=reason, now=now)


def _cancel_now(appointment, *, patient, reason, now):
    slot = appointment.slot
    notice = cancellation_notice_hours()
    if not slot.is_online and hours_until_start(slot, now) < notice:
        raise CancellationNoticeError(notice)

    previous_status = appointment.status
    mark_cancelled(appointment, cancelled_by=Appointment.Actor.USER, reason=reason, now=now)
    appointment.save()
    release_slot(slot)

    record_log(
        appointment,
        action=AppointmentLog.Action.CANCEL,
        old_slot=slot,
        changed_by=patient,
        reason=reason,
        metadata={
            "payment_mode": slot.payment_mode,
            "previous_status": previous_status,
            "cancelled_by": Appointment.Actor.USER,
        },
    )
    notify_clinic(
        clinic_id=appointment.clinic_id,
        notification_type=ClinicNotification.Type.CANCELLATION,
        entity_id=appointment.pk,
        message=(
            f"{patient.name} cancelled appointment #{appointment.pk} on "
            f"{slot.date} at {slot.time:%H:%M}."
        ),
    )
    audit(
        "CANCEL_APPOINTMENT",
        actor_id=patient.pk,
        clinic_id=appointment.clinic_id,
        entity_id=appointment.pk,
        reason=reason,
        payment_mode=slot.payment_mode,
    )
    logger.info("[CANCEL] Cancelled appointment=%s by patient=%s", appointment.pk, patient.pk)
    return CancellationOutcome(appointment=appointment)


def _file_request(appointment, *, patient, reason):
    existing = (
        CancellationRequest.objects.select_for_update()
        .filter(appointment=appointment)
        .first()
    )
    if existing is not None and existing.status != CancellationRequest.Status.REJECTED:
        raise DuplicateCancellationRequestError()

    previous_status = appointment.status
    transition(appointment, Appointment.Status.CANCEL_REQUESTED)
    appointment.save()

    if existing is None:
        request = CancellationRequest.objects.create(
            appointment=appointment,
            reason=reason or "",
            previous_status=previous_status,
            requested_by=patient,
        )
    else:
        # A rejected request is reopened in place.
        request = existing
        request.status = CancellationRequest.Status.PENDING
        request.reason = reason or ""
        request.previous_status = previous_status
        request.requested_by = patient
        request.processed_by = None
        request.processed_at = None
        request.resolution_note = ""
        request.save()

    record_log(
        appointment,
        action=AppointmentLog.Action.CANCEL_REQUEST,
        old_slot=appointment.slot,
        changed_by=patient,
        reason=reason,
        metadata={"request_id": request.pk, "previous_status": previous_status},
    )
    notify_clinic(
        clinic_id=appointment.clinic_id,
        notification_type=ClinicNotification.Type.CANCEL_REQUEST,
        entity_id=appointment.pk,
        message=(
            f"{patient.name} requested cancellation of paid appointment #{appointment.pk} on "
            f"{appointment.slot.date} at {appointment.slot.time:%H:%M}."
        ),
        priority=ClinicNotification.Priority.HIGH,
    )
    audit(
        "REQUEST_CANCELLATION",
        actor_id=patient.pk,
        clinic_id=appointment.clinic_id,
        entity_id=appointment.pk,
        request_id=request.pk,
        reason=reason,
    )
    logger.info("[CANCEL] Request filed appointment=%s request=%s", appointment.pk, request.pk)
    return CancellationOutcome(appointment=appointment, request=request)


@transaction.atomic
def resolve_cancellation(request_id, *, approve, clinic, actor, reason=""):
    """
    Approve or reject a pending cancellation request (staff only).

    Approval cancels the appointment, frees its slot and refunds the online
    payment after commit. Rejection restores the status the appointment had
    before the request.

    Raises:
        NotFoundError: Unknown request, or it belongs to another clinic.
        CancellationAlreadyResolvedError: The request was already resolved.
    """
    try:
        request = (
            CancellationRequest.objects.select_for_update()
            .get(id=request_id, appointment__clinic=clinic)
        )
    except CancellationRequest.DoesNotExist:
        raise NotFoundError("Cancellation request not found.", code="cancellation_request_not_found")

    if request.status != CancellationRequest.Status.PENDING:
        raise CancellationAlreadyResolvedError()

    appointment = lock_appointment(request.appointment_id)
    now = timezone.now()

    if approve:
        mark_cancelled(
            appointment,
            cancelled_by=Appointment.Actor.CLINIC,
            reason=request.reason or reason,
            now=now,
        )
        schedule_refund(appointment)
        appointment.save()
        release_slot(appointment.slot)
        request.status = CancellationRequest.Status.APPROVED

        record_log(
            appointment,
            action=AppointmentLog.Action.CANCEL,
            old_slot=appointment.slot,
            changed_by=actor,
            reason=reason or request.reason,
            metadata={"request_id": request.pk, "approved": True},
        )
        notify_clinic(
            clinic_id=appointment.clinic_id,
            notification_type=ClinicNotification.Type.CANCELLATION,
            entity_id=appointment.pk,
            message=f"Cancellation of appointment #{appointment.pk} approved by {actor.name}.",
        )
    else:
        transition(appointment, request.previous_status or Appointment.Status.CONFIRMED)
        appointment.save()
        request.status = CancellationRequest.Status.REJECTED

    request.processed_by = actor
    request.processed_at = now
    request.resolution_note = reason or ""
    request.save()

    audit(
        "RESOLVE_CANCELLATION",
        actor_id=actor.pk,
        clinic_id=clinic.pk,
        entity="CancellationRequest",
        entity_id=request.pk,
        appointment_id=appointment.pk,
        approved=approve,
        reason=reason,
    )
    logger.info(
        "[CANCEL] Request %s %s by user=%s",
        request.pk, "approved" if approve else "rejected", actor.pk,
    )
    return request
