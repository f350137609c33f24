"""
Appointment booking service.

Handles the booking flow against pre-created slots:
1. Validate the slot exists, belongs to the clinic/doctor and is open
2. Consult the clinic's online-payment capability for ONLINE slots
3. Optimistic pre-check: is the slot already held?
4. Lock the slot, lapse an expired payment hold if one is in the way
5. Create the appointment; the per-slot unique constraint decides races

Payment for ONLINE slots is started separately with ``start_payment``,
which creates the gateway order before touching local state.
"""

import logging

from django.db import transaction
from django.utils import timezone

from appointments.exceptions import (
    BookingError,
    ConflictError,
    NotFoundError,
    OnlinePaymentsDisabledError,
    PolicyViolationError,
    SlotUnavailableError,
)
from appointments.models import Appointment
from appointments.policy import payment_hold
from payments.services import create_gateway_order, default_provider
from slots.models import Slot
from slots.services import claim_slot, live_holder, local_now, lock_slot

from .lifecycle import lock_appointment, save_claiming, take_over_lapsed_holder, transition
from .notifications import audit

logger = logging.getLogger(__name__)


def get_bookable_slot(slot_id, *, clinic_id=None, doctor_id=None, now=None) -> Slot:
    """
    Load a slot a patient may book.

    Raises:
        NotFoundError: Missing, deleted, or not matching clinic/doctor.
        SlotUnavailableError: Blocked or a break.
        BookingError: The slot already started (code ``past_slot``).
    """
    filters = {"id": slot_id, "deleted_at__isnull": True}
    if clinic_id is not None:
        filters["clinic_id"] = clinic_id
    if doctor_id is not None:
        filters["doctor_id"] = doctor_id
    try:
        slot = Slot.objects.select_related("clinic").get(**filters)
    except Slot.DoesNotExist:
        raise NotFoundError("Slot not found.", code="slot_not_found")

    if slot.is_blocked or slot.kind == Slot.Kind.BREAK:
        raise SlotUnavailableError("This slot is not open for booking.")
    if slot.start_datetime <= local_now(now):
        raise BookingError("Cannot book a slot that has already started.", code="past_slot")
    return slot


def book_appointment(
    *,
    patient,
    slot_id: int,
    doctor_id: int,
    clinic_id: int,
    reason: str = "",
    online_payments_enabled: bool = True,
    now=None,
) -> Appointment:
    """
    Book a slot for a patient.

    Args:
        patient: The User instance booking the appointment.
        slot_id: The Slot to claim.
        doctor_id: Must match the slot's doctor.
        clinic_id: Must match the slot's clinic.
        reason: Optional reason for visit.
        online_payments_enabled: The clinic's plan capability, looked up
            by the caller.

    Returns:
        The created Appointment in PENDING. ONLINE bookings carry a payment
        hold until ``payment_expires_at``.

    Raises:
        NotFoundError: If the slot does not exist or is deleted.
        SlotUnavailableError: If another live appointment holds the slot.
        OnlinePaymentsDisabledError: ONLINE slot while the plan forbids it.
    """
    now = now or timezone.now()

    # ── 1. Validate the slot ──────────────────────────────────────────
    slot = get_bookable_slot(slot_id, clinic_id=clinic_id, doctor_id=doctor_id, now=now)

    # ── 2. Capability check ───────────────────────────────────────────
    if slot.is_online and not online_payments_enabled:
        raise OnlinePaymentsDisabledError()

    # ── 3. Optimistic pre-check (no lock) ─────────────────────────────
    holder = live_holder(slot.pk)
    if holder is not None and not holder.hold_expired(now):
        raise SlotUnavailableError()

    # ── 4. Claim under lock and create ────────────────────────────────
    with transaction.atomic():
        lock_slot(slot.pk)
        take_over_lapsed_holder(slot.pk, now=now)
        slot = claim_slot(slot.pk, status=Slot.Status.PENDING)

        appointment = Appointment(
            patient=patient,
            doctor_id=slot.doctor_id,
            clinic_id=slot.clinic_id,
            slot=slot,
            status=Appointment.Status.PENDING,
            amount=slot.price,
            reason=reason,
            created_by=patient,
        )
        if slot.payment_mode == Slot.PaymentMode.FREE:
            appointment.payment_status = Appointment.PaymentStatus.PAID
        elif slot.is_online:
            appointment.payment_expires_at = now + payment_hold()

        save_claiming(appointment)

        audit(
            "BOOK_APPOINTMENT",
            actor_id=patient.pk,
            clinic_id=slot.clinic_id,
            entity_id=appointment.pk,
            slot_id=slot.pk,
            payment_mode=slot.payment_mode,
            amount=str(slot.price),
        )

    logger.info(
        "[BOOKING] Booked appointment=%s slot=%s patient=%s mode=%s",
        appointment.pk, slot.pk, patient.pk, slot.payment_mode,
    )
    return appointment


def start_payment(appointment_id, *, patient, provider=None, now=None):
    """
    Open (or re-open) online payment for a booked appointment.

    The gateway order is created first; local state changes only after the
    provider answered. Calling again while the hold is still running keeps
    the original window and issues a fresh order.

    Returns:
        (appointment, GatewayOrder)

    Raises:
        NotFoundError: Unknown appointment for this patient.
        PolicyViolationError: The slot is not paid online.
        ConflictError: Already paid, or the appointment moved on meanwhile.
        GatewayUnavailableError: The provider call failed; nothing changed.
    """
    now = now or timezone.now()
    try:
        appointment = Appointment.objects.live().select_related("slot", "clinic").get(
            id=appointment_id, patient=patient
        )
    except Appointment.DoesNotExist:
        raise NotFoundError("Appointment not found.", code="appointment_not_found")

    _check_payable(appointment)
    provider = (provider or appointment.payment_provider or default_provider()).upper()
    amount_due = appointment.amount_due

    order = create_gateway_order(
        clinic=appointment.clinic,
        provider=provider,
        amount=amount_due,
        metadata={
            "appointment_id": appointment.pk,
            "slot_id": appointment.slot_id,
            "clinic_id": appointment.clinic_id,
            "purpose": "RESCHEDULE" if appointment.awaiting_reschedule_payment else "BOOKING",
            "receipt": f"appt_{appointment.pk}",
        },
    )

    with transaction.atomic():
        appointment = lock_appointment(appointment.pk, patient=patient)
        _check_payable(appointment)

        transition(appointment, Appointment.Status.PENDING_PAYMENT)
        appointment.order_ref = order.order_ref
        appointment.payment_provider = provider
        if appointment.payment_expires_at is None or appointment.payment_expires_at <= now:
            appointment.payment_expires_at = now + payment_hold()
        appointment.save()

        slot = appointment.slot
        slot.status = Slot.Status.PENDING_PAYMENT
        slot.save(update_fields=["status", "updated_at"])

    logger.info(
        "[PAYMENT] Payment started appointment=%s provider=%s order_ref=%s amount=%s",
        appointment.pk, provider, order.order_ref, amount_due,
    )
    return appointment, order


def _check_payable(appointment):
    if not appointment.slot.is_online:
        raise PolicyViolationError(
            "This appointment is not paid online.", code="payment_not_required"
        )
    if appointment.is_paid:
        raise ConflictError("This appointment is already paid.", code="already_paid")
    if appointment.status not in Appointment.HOLD_STATUSES:
        raise ConflictError(
            f"Cannot start payment for an appointment in status {appointment.status}.",
            code="not_payable",
        )
