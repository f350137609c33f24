"""
Appointment lifecycle engine.

Every change to ``Appointment.status`` goes through ``transition()``, which
checks the move against ALLOWED_TRANSITIONS. The booking, payment,
reschedule and cancellation services call into this module; nothing else
assigns the status field.

    PENDING ──► PENDING_PAYMENT ──► CONFIRMED ──► COMPLETED / NO_SHOW
       │              │                 │
       └──► CANCEL_REQUESTED ◄──────────┘
                  │
   any non-terminal ──► CANCELLED

A lapsed payment hold that is paid late is the one way out of CANCELLED
(see ``revive_lapsed_hold``).
"""

import logging

from django.db import IntegrityError, transaction
from django.utils import timezone

from appointments.exceptions import (
    InvalidStatusTransitionError,
    NotFoundError,
    SlotUnavailableError,
)
from appointments.models import Appointment, AppointmentLog, CancellationRequest, ClinicNotification
from payments.models import Payment, PaymentCapture
from payments.services import refundable_captures, request_refund
from slots.models import Slot
from slots.services import live_holder, release_slot

from .notifications import audit, notify_clinic, record_log

logger = logging.getLogger(__name__)

Status = Appointment.Status

ALLOWED_TRANSITIONS = {
    Status.PENDING: {Status.PENDING_PAYMENT, Status.CONFIRMED, Status.CANCEL_REQUESTED, Status.CANCELLED},
    Status.PENDING_PAYMENT: {
        Status.PENDING_PAYMENT,
        Status.CONFIRMED,
        Status.CANCEL_REQUESTED,
        Status.CANCELLED,
    },
    Status.CONFIRMED: {
        Status.CONFIRMED,
        Status.PENDING_PAYMENT,
        Status.CANCEL_REQUESTED,
        Status.COMPLETED,
        Status.NO_SHOW,
        Status.CANCELLED,
    },
    Status.CANCEL_REQUESTED: {Status.PENDING, Status.PENDING_PAYMENT, Status.CONFIRMED, Status.CANCELLED},
    Status.COMPLETED: set(),
    Status.NO_SHOW: set(),
    Status.CANCELLED: set(),
}

# Moves clinic staff may request directly through update_status().
STAFF_TRANSITIONS = {
    Status.PENDING: {Status.CONFIRMED, Status.CANCELLED},
    Status.PENDING_PAYMENT: {Status.CANCELLED},
    Status.CONFIRMED: {Status.COMPLETED, Status.NO_SHOW, Status.CANCELLED},
    Status.CANCEL_REQUESTED: {Status.CANCELLED},
}


def transition(appointment, new_status):
    """Set ``appointment.status`` if the move is allowed. Does not save."""
    if new_status not in ALLOWED_TRANSITIONS.get(appointment.status, set()):
        raise InvalidStatusTransitionError(appointment.status, new_status)
    appointment.status = new_status
    return appointment


def mark_cancelled(appointment, *, cancelled_by, reason="", now=None):
    transition(appointment, Status.CANCELLED)
    appointment.cancelled_by = cancelled_by
    appointment.cancel_reason = reason or ""
    appointment.cancelled_at = now or timezone.now()
    appointment.payment_expires_at = None
    return appointment


def lock_appointment(appointment_id, **filters):
    """Lock a live appointment row. Must run inside transaction.atomic()."""
    try:
        return (
            Appointment.objects.live()
            .select_for_update()
            .select_related("slot", "clinic")
            .get(id=appointment_id, **filters)
        )
    except Appointment.DoesNotExist:
        raise NotFoundError("Appointment not found.", code="appointment_not_found")


def save_claiming(appointment, **save_kwargs):
    """
    Save an appointment that takes hold of a slot.

    The write runs in a savepoint so that losing the per-slot uniqueness
    race leaves the outer transaction usable; the loser gets
    SlotUnavailableError.
    """
    try:
        with transaction.atomic():
            appointment.save(**save_kwargs)
    except IntegrityError:
        logger.info("[BOOKING] Slot race lost slot_id=%s", appointment.slot_id)
        raise SlotUnavailableError()
    return appointment


def schedule_refund(appointment):
    """
    Mark every paid gateway capture refunded and ask the gateway after commit.

    Each capture is refunded for the amount it captured, so a booking paid
    in two parts (price, then a reschedule difference) gets two refunds.
    Returns False when nothing was paid through a gateway.
    """
    captures = refundable_captures(appointment)
    if not captures:
        return False

    stamp = timezone.now()
    PaymentCapture.objects.filter(pk__in=[c.pk for c in captures]).update(
        status=Payment.Status.REFUNDED, updated_at=stamp
    )
    Payment.objects.filter(appointment=appointment).update(status=Payment.Status.REFUNDED, updated_at=stamp)
    appointment.payment_status = Appointment.PaymentStatus.REFUNDED

    clinic = appointment.clinic
    provider = captures[0].payment.provider
    refunds = [(c.gateway_ref, c.amount) for c in captures]

    def _send():
        for payment_ref, amount in refunds:
            request_refund(clinic=clinic, provider=provider, payment_ref=payment_ref, amount=amount)

    transaction.on_commit(_send)
    logger.info(
        "[PAYMENT] Refund scheduled appointment=%s captures=%s",
        appointment.pk, ", ".join(f"{ref}:{amount}" for ref, amount in refunds),
    )
    return True


# ── Payment holds ────────────────────────────────────────────────────────────


def lapse_hold(appointment, *, now=None):
    """
    Cancel an appointment whose payment hold lapsed and free its slot.

    Gateway payments already captured for it are refunded after commit.
    Caller holds the row lock.
    """
    now = now or timezone.now()
    mark_cancelled(
        appointment,
        cancelled_by=Appointment.Actor.SYSTEM,
        reason="Payment window expired.",
        now=now,
    )
    # A reschedule hold still carries the earlier gateway payment.
    if not schedule_refund(appointment) and not appointment.is_paid:
        appointment.payment_status = Appointment.PaymentStatus.FAILED
    appointment.save()

    release_slot(appointment.slot)
    record_log(
        appointment,
        action=AppointmentLog.Action.EXPIRE,
        old_slot=appointment.slot,
        reason="Payment window expired.",
        metadata={
            "order_ref": appointment.order_ref,
            "reschedule_hold": appointment.awaiting_reschedule_payment,
        },
    )
    logger.info("[BOOKING] Hold lapsed appointment=%s slot=%s", appointment.pk, appointment.slot_id)
    return appointment


def take_over_lapsed_holder(slot_id, *, now=None):
    """
    Make sure nobody holds the slot, lapsing an expired payment hold if needed.

    Raises:
        SlotUnavailableError: A live appointment holds the slot.
    """
    holder = live_holder(slot_id, for_update=True)
    if holder is None:
        return None
    if not holder.hold_expired(now):
        raise SlotUnavailableError()
    return lapse_hold(holder, now=now)


def revive_lapsed_hold(appointment):
    """
    Bring a system-cancelled hold back to CONFIRMED after a late payment.

    The only exit from CANCELLED. The caller has checked under lock that
    the slot is free and saves through ``save_claiming``.
    """
    if appointment.status != Status.CANCELLED or appointment.cancelled_by != Appointment.Actor.SYSTEM:
        raise InvalidStatusTransitionError(appointment.status, Status.CONFIRMED)
    appointment.status = Status.CONFIRMED
    appointment.cancelled_by = ""
    appointment.cancel_reason = ""
    appointment.cancelled_at = None
    return appointment


def expire_lapsed_holds(now=None):
    """
    Lapse every payment hold whose window has passed.

    Returns the number of appointments cancelled.
    """
    now = now or timezone.now()
    candidate_ids = list(
        Appointment.objects.live()
        .filter(
            status__in=Appointment.HOLD_STATUSES,
            payment_expires_at__isnull=False,
            payment_expires_at__lte=now,
        )
        .exclude(payment_status=Appointment.PaymentStatus.PAID)
        .values_list("id", flat=True)
    )

    expired = 0
    for appointment_id in candidate_ids:
        with transaction.atomic():
            try:
                appointment = lock_appointment(appointment_id)
            except NotFoundError:
                continue
            # Re-checked under the lock: a confirmation may have landed meanwhile.
            if not appointment.hold_expired(now):
                continue
            lapse_hold(appointment, now=now)
            audit(
                "EXPIRE_HOLDS",
                clinic_id=appointment.clinic_id,
                entity_id=appointment.pk,
                slot_id=appointment.slot_id,
            )
            expired += 1

    if expired:
        logger.info("[BOOKING] Expired %d lapsed payment hold(s)", expired)
    return expired


# ── Staff status updates ─────────────────────────────────────────────────────


@transaction.atomic
def update_status(appointment_id, new_status, *, clinic, actor, reason=""):
    """
    Apply a staff-requested status change.

    Allowed: CONFIRMED -> COMPLETED / NO_SHOW, PENDING -> CONFIRMED for
    bookings that need no online payment, and any non-terminal status ->
    CANCELLED. Cancelling records the reason, frees the slot, resolves a
    pending cancellation request as approved, and refunds online payments.
    """
    appointment = lock_appointment(appointment_id, clinic=clinic)
    current = appointment.status

    if new_status not in STAFF_TRANSITIONS.get(current, set()):
        raise InvalidStatusTransitionError(current, new_status)

    if new_status == Status.CONFIRMED and appointment.slot.is_online and not appointment.is_paid:
        raise InvalidStatusTransitionError(current, new_status)

    if new_status == Status.CANCELLED:
        mark_cancelled(appointment, cancelled_by=Appointment.Actor.CLINIC, reason=reason)
        schedule_refund(appointment)
        appointment.save()

        release_slot(appointment.slot)
        pending_request = (
            CancellationRequest.objects.select_for_update()
            .filter(appointment=appointment, status=CancellationRequest.Status.PENDING)
            .first()
        )
        if pending_request is not None:
            pending_request.status = CancellationRequest.Status.APPROVED
            pending_request.processed_by = actor
            pending_request.processed_at = timezone.now()
            pending_request.resolution_note = reason or ""
            pending_request.save()

        record_log(
            appointment,
            action=AppointmentLog.Action.CANCEL,
            old_slot=appointment.slot,
            changed_by=actor,
            reason=reason,
            metadata={"cancelled_by": Appointment.Actor.CLINIC, "previous_status": current},
        )
        notify_clinic(
            clinic_id=appointment.clinic_id,
            notification_type=ClinicNotification.Type.CANCELLATION,
            entity_id=appointment.pk,
            message=(
                f"Appointment #{appointment.pk} on {appointment.slot.date} at "
                f"{appointment.slot.time:%H:%M} was cancelled by the clinic."
            ),
        )
    else:
        transition(appointment, new_status)
        appointment.save()
        if new_status == Status.CONFIRMED:
            slot = appointment.slot
            slot.status = Slot.Status.CONFIRMED
            slot.save(update_fields=["status", "updated_at"])

    audit(
        "UPDATE_STATUS",
        actor_id=actor.pk,
        clinic_id=appointment.clinic_id,
        entity_id=appointment.pk,
        old_status=current,
        new_status=new_status,
        reason=reason,
    )
    logger.info(
        "[BOOKING] Status update appointment=%s %s -> %s by user=%s",
        appointment.pk, current, new_status, actor.pk,
    )
    return appointment
