"""
Reschedule reconciler.

Moving an appointment to another slot can change what the patient owes.
``compute_reschedule_delta`` classifies the move from the amount already
paid (P) and the target slot's price (N):

    OFFLINE/FREE -> ONLINE, nothing paid, same nominal price
                      OFFLINE_TO_ONLINE   diff = N   payment required
    N > P             PAY_DIFFERENCE      diff = N-P payment required
    N < P             REFUND_AT_CLINIC    diff = P-N refunded at the desk
    N == P            NO_CHANGE           diff = 0

``reschedule_appointment`` applies it: when the target is paid online and
money is owed, a gateway order is created first and the appointment waits
in PENDING_PAYMENT; otherwise the move is confirmed straight away.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from django.db import transaction
from django.utils import timezone

from appointments.exceptions import (
    BookingError,
    ConflictError,
    NotFoundError,
    OnlinePaymentsDisabledError,
    PolicyViolationError,
    RescheduleLimitError,
    SlotUnavailableError,
)
from appointments.models import Appointment, AppointmentLog, ClinicNotification
from appointments.policy import max_reschedules, payment_hold
from payments.gateways import GatewayOrder
from payments.services import create_gateway_order, default_provider
from slots.models import Slot
from slots.services import claim_slot, live_holder, local_now, lock_slot, release_slot

from .lifecycle import lock_appointment, save_claiming, take_over_lapsed_holder, transition
from .notifications import audit, notify_clinic, record_log

logger = logging.getLogger(__name__)

FinancialStatus = Appointment.FinancialStatus
ZERO = Decimal("0.00")


@dataclass(frozen=True)
class RescheduleQuote:
    financial_status: str
    diff: Decimal
    old_paid: Decimal
    new_price: Decimal

    @property
    def requires_payment(self):
        return self.financial_status in (
            FinancialStatus.PAY_DIFFERENCE,
            FinancialStatus.OFFLINE_TO_ONLINE,
        )


@dataclass
class RescheduleResult:
    appointment: Appointment
    quote: RescheduleQuote
    order: Optional[GatewayOrder] = None


def compute_reschedule_delta(*, current_amount, payment_status, old_mode, new_price, new_mode):
    """Pure classification of a reschedule's money movement."""
    current_amount = Decimal(current_amount or 0)
    new_price = Decimal(new_price or 0)
    old_paid = current_amount if payment_status == Appointment.PaymentStatus.PAID else ZERO

    if (
        old_mode in (Slot.PaymentMode.OFFLINE, Slot.PaymentMode.FREE)
        and new_mode == Slot.PaymentMode.ONLINE
        and old_paid == 0
        and new_price > 0
        and new_price == current_amount
    ):
        return RescheduleQuote(FinancialStatus.OFFLINE_TO_ONLINE, new_price, old_paid, new_price)

    if new_price > old_paid:
        return RescheduleQuote(FinancialStatus.PAY_DIFFERENCE, new_price - old_paid, old_paid, new_price)
    if new_price < old_paid:
        return RescheduleQuote(FinancialStatus.REFUND_AT_CLINIC, old_paid - new_price, old_paid, new_price)
    return RescheduleQuote(FinancialStatus.NO_CHANGE, ZERO, old_paid, new_price)


def quote_for(appointment, target):
    return compute_reschedule_delta(
        current_amount=appointment.amount,
        payment_status=appointment.payment_status,
        old_mode=appointment.slot.payment_mode,
        new_price=target.price,
        new_mode=target.payment_mode,
    )


def _check_reschedulable(appointment):
    if appointment.is_terminal:
        raise PolicyViolationError(
            f"A {appointment.status.lower()} appointment cannot be rescheduled.",
            code="not_reschedulable",
        )
    limit = max_reschedules()
    if appointment.reschedule_count >= limit:
        raise RescheduleLimitError(limit)
    if appointment.status == Appointment.Status.CANCEL_REQUESTED:
        raise PolicyViolationError(
            "A cancellation request is pending for this appointment.", code="reschedule_blocked"
        )
    if appointment.awaiting_reschedule_payment:
        raise PolicyViolationError(
            "Complete the payment for the previous reschedule first.", code="reschedule_blocked"
        )


def _check_target(appointment, target, now):
    if target.clinic_id != appointment.clinic_id:
        raise NotFoundError("Slot not found.", code="slot_not_found")
    if target.pk == appointment.slot_id:
        raise BookingError("The appointment is already in this slot.", code="same_slot")
    if target.is_blocked or target.kind == Slot.Kind.BREAK:
        raise SlotUnavailableError("This slot is not open for booking.")
    if target.start_datetime <= local_now(now):
        raise BookingError("Cannot move to a slot that has already started.", code="past_slot")


def reschedule_appointment(
    appointment_id,
    target_slot_id,
    *,
    patient,
    provider=None,
    reason="",
    online_payments_enabled=True,
    now=None,
) -> RescheduleResult:
    """
    Move a patient's appointment to ``target_slot_id``.

    Raises:
        NotFoundError: Unknown appointment or target slot.
        PolicyViolationError: Limit reached, terminal or blocked appointment,
            or online payments disabled for an ONLINE target.
        SlotUnavailableError: Target is held by another appointment.
        ConflictError: Price or payment state changed between quote and commit.
        GatewayUnavailableError: Order creation failed; nothing changed.
    """
    now = now or timezone.now()

    # ── 1. Load and validate (no locks) ───────────────────────────────
    try:
        appointment = Appointment.objects.live().select_related("slot", "clinic").get(
            id=appointment_id, patient=patient
        )
    except Appointment.DoesNotExist:
        raise NotFoundError("Appointment not found.", code="appointment_not_found")
    _check_reschedulable(appointment)

    try:
        target = Slot.objects.get(id=target_slot_id, deleted_at__isnull=True)
    except Slot.DoesNotExist:
        raise NotFoundError("Slot not found.", code="slot_not_found")
    _check_target(appointment, target, now)

    if target.is_online and not online_payments_enabled:
        raise OnlinePaymentsDisabledError()

    holder = live_holder(target.pk)
    if holder is not None and not holder.hold_expired(now):
        raise SlotUnavailableError()

    quote = quote_for(appointment, target)
    needs_gateway = quote.requires_payment and target.is_online

    # ── 2. Remote call before any local write ─────────────────────────
    order = None
    if needs_gateway:
        provider = (provider or default_provider()).upper()
        order = create_gateway_order(
            clinic=appointment.clinic,
            provider=provider,
            amount=quote.diff,
            metadata={
                "appointment_id": appointment.pk,
                "slot_id": target.pk,
                "clinic_id": appointment.clinic_id,
                "purpose": "RESCHEDULE",
                "receipt": f"resched_{appointment.pk}",
            },
        )

    # ── 3. Swap slots atomically ──────────────────────────────────────
    with transaction.atomic():
        appointment = lock_appointment(appointment.pk, patient=patient)
        _check_reschedulable(appointment)

        lock_slot(target.pk)
        take_over_lapsed_holder(target.pk, now=now)
        target = claim_slot(
            target.pk,
            status=Slot.Status.PENDING_PAYMENT if needs_gateway else Slot.Status.CONFIRMED,
        )

        fresh_quote = quote_for(appointment, target)
        if fresh_quote != quote:
            raise ConflictError(
                "The price of this change moved while you were rescheduling. Please try again.",
                code="reschedule_quote_changed",
            )

        old_slot = appointment.slot
        release_slot(old_slot)

        appointment.slot = target
        appointment.doctor_id = target.doctor_id
        appointment.amount = quote.new_price
        appointment.diff_amount = quote.diff
        appointment.financial_status = quote.financial_status

        if needs_gateway:
            transition(appointment, Appointment.Status.PENDING_PAYMENT)
            appointment.payment_status = Appointment.PaymentStatus.PENDING
            appointment.awaiting_reschedule_payment = True
            appointment.order_ref = order.order_ref
            appointment.payment_provider = provider
            appointment.payment_expires_at = now + payment_hold()
        else:
            transition(appointment, Appointment.Status.CONFIRMED)
            if quote.financial_status == FinancialStatus.PAY_DIFFERENCE:
                # Difference is settled at the clinic desk.
                appointment.payment_status = Appointment.PaymentStatus.PENDING
            elif target.payment_mode == Slot.PaymentMode.FREE and quote.old_paid == 0:
                appointment.payment_status = Appointment.PaymentStatus.PAID
            appointment.reschedule_count += 1
            appointment.payment_expires_at = None

        save_claiming(appointment)

        record_log(
            appointment,
            action=AppointmentLog.Action.RESCHEDULE,
            old_slot=old_slot,
            new_slot=target,
            changed_by=patient,
            reason=reason,
            metadata={
                "old_slot_id": old_slot.pk,
                "new_slot_id": target.pk,
                "old_price": str(old_slot.price),
                "new_price": str(target.price),
                "old_paid": str(quote.old_paid),
                "diff": str(quote.diff),
                "financial_status": quote.financial_status,
            },
        )
        notify_clinic(
            clinic_id=appointment.clinic_id,
            notification_type=ClinicNotification.Type.RESCHEDULE,
            entity_id=appointment.pk,
            message=(
                f"Appointment #{appointment.pk} moved from {old_slot.date} {old_slot.time:%H:%M} "
                f"to {target.date} {target.time:%H:%M} ({quote.financial_status}, diff {quote.diff})."
            ),
        )
        audit(
            "RESCHEDULE_APPOINTMENT",
            actor_id=patient.pk,
            clinic_id=appointment.clinic_id,
            entity_id=appointment.pk,
            old_slot_id=old_slot.pk,
            new_slot_id=target.pk,
            financial_status=quote.financial_status,
            diff=str(quote.diff),
        )

    logger.info(
        "[RESCHEDULE] appointment=%s slot %s -> %s status=%s diff=%s order=%s",
        appointment.pk, old_slot.pk, target.pk, quote.financial_status, quote.diff,
        order.order_ref if order else None,
    )
    return RescheduleResult(appointment=appointment, quote=quote, order=order)
