"""
Payment confirmation (verify callback / webhook).

Order of operations:
1. Find the appointment that owns the order reference (read only)
2. Verify the gateway signature; a bad signature changes nothing
3. In one transaction: confirm the appointment and its slot, and record
   the capture on the Payment row keyed by appointment

Each capture is recorded with the amount the order actually charged: the
full price for a booking, the difference for a reschedule. Replays for an
appointment that is already paid are treated as success: the capture is
refreshed and nothing else moves. A payment that lands after a first-time
hold lapsed revives the booking if the slot is still free; otherwise it is
recorded as refunded, the captured amount is refunded through the gateway
and StalePaymentError is raised.
"""

import logging

from django.db import transaction
from django.utils import timezone

from appointments.exceptions import (
    ConflictError,
    InvalidStatusTransitionError,
    NotFoundError,
    SlotUnavailableError,
    StalePaymentError,
)
from appointments.models import Appointment, CancellationRequest
from payments.models import Payment, PaymentCapture
from payments.services import default_provider, record_payment, request_refund, verify_signature
from slots.models import Slot
from slots.services import claim_slot, live_holder, lock_slot

from .lifecycle import lock_appointment, revive_lapsed_hold, save_claiming, transition
from .notifications import audit

logger = logging.getLogger(__name__)

ALREADY_SETTLED = (
    Appointment.Status.CONFIRMED,
    Appointment.Status.CANCEL_REQUESTED,
    Appointment.Status.COMPLETED,
    Appointment.Status.NO_SHOW,
)


def confirm_payment(*, payment_ref, order_ref, signature, now=None):
    """
    Confirm a gateway payment for the appointment that owns ``order_ref``.

    Returns:
        The confirmed Appointment.

    Raises:
        NotFoundError: No appointment carries this order reference.
        SignatureInvalidError: Verification failed; nothing was written.
        StalePaymentError: The hold lapsed and the slot was reassigned.
    """
    now = now or timezone.now()
    if not order_ref:
        raise NotFoundError("Unknown payment order.", code="order_not_found")

    appointment = (
        Appointment.objects.live()
        .select_related("clinic")
        .filter(order_ref=order_ref)
        .first()
    )
    if appointment is None:
        raise NotFoundError("Unknown payment order.", code="order_not_found")

    provider = appointment.payment_provider or default_provider()
    verify_signature(
        clinic=appointment.clinic,
        provider=provider,
        order_ref=order_ref,
        payment_ref=payment_ref,
        signature=signature,
    )

    stale = False
    with transaction.atomic():
        appointment = lock_appointment(appointment.pk)
        if appointment.order_ref != order_ref:
            raise ConflictError(
                "This payment order was superseded by a newer one.", code="order_superseded"
            )

        captured = appointment.amount_due
        purpose = (
            PaymentCapture.Purpose.RESCHEDULE
            if appointment.awaiting_reschedule_payment
            else PaymentCapture.Purpose.BOOKING
        )

        if appointment.status in ALREADY_SETTLED and appointment.is_paid:
            record_payment(appointment, provider=provider, payment_ref=payment_ref, order_ref=order_ref)
            logger.info("[PAYMENT] Replay for confirmed appointment=%s ignored", appointment.pk)
            return appointment

        if (
            appointment.status == Appointment.Status.CANCELLED
            and PaymentCapture.objects.filter(
                payment__appointment=appointment, gateway_ref=payment_ref
            ).exists()
        ):
            # Replay of a payment already turned away and refunded.
            raise StalePaymentError()

        if appointment.status in Appointment.HOLD_STATUSES:
            _finalize(appointment)
        elif (
            appointment.status == Appointment.Status.CANCEL_REQUESTED
            and appointment.awaiting_reschedule_payment
        ):
            _settle_difference_under_request(appointment)
        elif (
            appointment.status == Appointment.Status.CANCELLED
            and appointment.cancelled_by == Appointment.Actor.SYSTEM
            and appointment.payment_status == Appointment.PaymentStatus.FAILED
        ):
            stale = not _try_revive(appointment)
        elif appointment.status == Appointment.Status.CANCELLED:
            stale = True
        else:
            raise InvalidStatusTransitionError(appointment.status, Appointment.Status.CONFIRMED)

        if stale:
            appointment.payment_status = Appointment.PaymentStatus.REFUNDED
            appointment.save(update_fields=["payment_status", "updated_at"])
        record_payment(
            appointment,
            provider=provider,
            payment_ref=payment_ref,
            order_ref=order_ref,
            amount=captured,
            purpose=purpose,
            status=Payment.Status.REFUNDED if stale else Payment.Status.PAID,
        )

        audit(
            "CONFIRM_PAYMENT",
            clinic_id=appointment.clinic_id,
            entity_id=appointment.pk,
            payment_ref=payment_ref,
            order_ref=order_ref,
            provider=provider,
            amount=str(captured),
            stale=stale,
        )

    if stale:
        logger.warning(
            "[PAYMENT] Stale payment appointment=%s payment_ref=%s; refunding %s",
            appointment.pk, payment_ref, captured,
        )
        request_refund(
            clinic=appointment.clinic,
            provider=provider,
            payment_ref=payment_ref,
            amount=captured,
        )
        raise StalePaymentError()

    logger.info(
        "[PAYMENT] Confirmed appointment=%s payment_ref=%s provider=%s amount=%s",
        appointment.pk, payment_ref, provider, captured,
    )
    return appointment


def _mark_settled(appointment):
    appointment.payment_status = Appointment.PaymentStatus.PAID
    appointment.payment_expires_at = None
    if appointment.awaiting_reschedule_payment:
        appointment.reschedule_count += 1
        appointment.awaiting_reschedule_payment = False


def _confirm_slot(appointment):
    slot = lock_slot(appointment.slot_id)
    slot.status = Slot.Status.CONFIRMED
    slot.save(update_fields=["status", "updated_at"])


def _finalize(appointment):
    """Move a held appointment and its slot to CONFIRMED/PAID."""
    transition(appointment, Appointment.Status.CONFIRMED)
    _mark_settled(appointment)
    appointment.save()
    _confirm_slot(appointment)


def _settle_difference_under_request(appointment):
    """
    Record a reschedule difference paid while a cancellation request waits.

    The appointment stays in CANCEL_REQUESTED; a rejected request now
    returns it to CONFIRMED instead of the lapsed payment hold.
    """
    _mark_settled(appointment)
    appointment.save()
    _confirm_slot(appointment)
    CancellationRequest.objects.filter(
        appointment=appointment, status=CancellationRequest.Status.PENDING
    ).update(previous_status=Appointment.Status.CONFIRMED)


def _try_revive(appointment):
    """
    Revive a lapsed hold if its slot is still free. Returns False when stale.
    """
    lock_slot(appointment.slot_id)
    if live_holder(appointment.slot_id, for_update=True) is not None:
        return False

    try:
        with transaction.atomic():
            claim_slot(appointment.slot_id, status=Slot.Status.CONFIRMED)
            revive_lapsed_hold(appointment)
            _mark_settled(appointment)
            save_claiming(appointment)
    except SlotUnavailableError:
        # Blocked meanwhile, or lost the uniqueness race.
        return False

    logger.info("[PAYMENT] Late payment revived appointment=%s", appointment.pk)
    return True
