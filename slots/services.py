"""
Slot store service.

Slots are pre-created by clinic staff, either one at a time or generated in
bulk over a date range. This module is the only place that changes slot
rows:

- create_slot / create_bulk_slots     staff authoring
- find_available_slots                 patient-facing availability
- claim_slot / release_slot            called by the appointment services
                                       inside their own transaction
- block_slot / unblock_slot            administrative holds
- soft_delete_slot                     retire a slot without losing history

A slot is "held" by an appointment while any live, non-cancelled
appointment references it. The database enforces that at most one such
appointment exists per slot; see ``appointments.models.Appointment``.
"""

import logging
from datetime import datetime, timedelta

from django.contrib.auth import get_user_model
from django.core.exceptions import ValidationError
from django.db import IntegrityError, transaction
from django.db.models import Exists, OuterRef, Q
from django.utils import timezone

from appointments.exceptions import (
    BookingError,
    NotFoundError,
    SlotInUseError,
    SlotUnavailableError,
)
from appointments.models import Appointment

from .models import Slot

logger = logging.getLogger(__name__)


def local_now(now=None):
    """Naive wall-clock time in the project timezone, comparable to Slot.start_datetime."""
    return timezone.localtime(now or timezone.now()).replace(tzinfo=None)


def _validation_message(exc):
    if hasattr(exc, "message_dict"):
        return "; ".join(
            f"{field}: {' '.join(messages)}" if field != "__all__" else " ".join(messages)
            for field, messages in exc.message_dict.items()
        )
    return " ".join(exc.messages)


def ensure_doctor_in_clinic(doctor_id, clinic):
    """Raise NotFoundError unless the doctor practises at the clinic."""
    if not clinic.has_doctor(doctor_id):
        raise NotFoundError("Doctor not found in this clinic.", code="doctor_not_found")


def lock_doctor_schedule(doctor_id):
    """
    Serialize slot authoring for one doctor by locking the doctor's user row.

    The overlap check in ``Slot.clean`` reads the doctor's existing slots,
    so two concurrent creates must not both pass it. Must run inside
    transaction.atomic().
    """
    return get_user_model().objects.select_for_update().only("pk").get(pk=doctor_id)


def live_holder(slot_id, *, for_update=False):
    """Return the appointment currently holding the slot, or None."""
    qs = Appointment.objects.holding_slots().filter(slot_id=slot_id)
    if for_update:
        qs = qs.select_for_update()
    return qs.first()


def has_active_appointment(slot_id):
    """True while an appointment in a non-terminal status references the slot."""
    return Appointment.objects.non_terminal().filter(slot_id=slot_id).exists()


# ── Authoring ────────────────────────────────────────────────────────────────


def create_slot(
    *,
    clinic,
    doctor_id: int,
    date,
    time,
    duration_minutes: int = 30,
    price=0,
    payment_mode: str = Slot.PaymentMode.ONLINE,
    kind: str = Slot.Kind.APPOINTMENT,
) -> Slot:
    """
    Create one slot for a doctor of ``clinic``.

    Raises:
        NotFoundError: If the doctor does not practise at the clinic.
        BookingError: If the slot is invalid or overlaps an existing slot
            of the same doctor (code ``invalid_slot``).
    """
    ensure_doctor_in_clinic(doctor_id, clinic)

    slot = Slot(
        clinic=clinic,
        doctor_id=doctor_id,
        date=date,
        time=time,
        duration_minutes=duration_minutes,
        price=price,
        payment_mode=payment_mode,
        kind=kind,
    )
    try:
        with transaction.atomic():
            lock_doctor_schedule(doctor_id)
            slot.save()
    except ValidationError as exc:
        raise BookingError(_validation_message(exc), code="invalid_slot")
    except IntegrityError:
        # A concurrent create won the (doctor, date, time) race.
        raise BookingError("A slot already starts at this time for this doctor.", code="invalid_slot")

    logger.info(
        "[SLOT] Created slot_id=%s clinic=%s doctor=%s %s %s",
        slot.pk, clinic.pk, doctor_id, slot.date, slot.time,
    )
    return slot


def create_bulk_slots(
    *,
    clinic,
    doctor_id: int,
    start_date,
    end_date,
    start_time,
    end_time,
    duration_minutes: int,
    weekdays=None,
    price=0,
    payment_mode: str = Slot.PaymentMode.ONLINE,
    kind: str = Slot.Kind.APPOINTMENT,
):
    """
    Generate consecutive slots over a date range.

    On every date from ``start_date`` to ``end_date`` (inclusive) whose
    weekday (Monday=0) is in ``weekdays`` (all days when empty), slots of
    ``duration_minutes`` are laid end to end from ``start_time`` until the
    next one would run past ``end_time``. Candidates that overlap an
    existing slot are skipped, not raised.

    Returns:
        (created, skipped): list of created Slot instances and the number
        of skipped candidates.
    """
    if duration_minutes <= 0:
        raise BookingError("Duration must be at least one minute.", code="invalid_slot")
    if end_date < start_date:
        raise BookingError("End date must be on or after start date.", code="invalid_slot")
    if end_time <= start_time:
        raise BookingError("End time must be after start time.", code="invalid_slot")

    ensure_doctor_in_clinic(doctor_id, clinic)
    weekdays = set(weekdays or range(7))
    step = timedelta(minutes=duration_minutes)

    created = []
    skipped = 0

    with transaction.atomic():
        lock_doctor_schedule(doctor_id)
        current_date = start_date
        while current_date <= end_date:
            if current_date.weekday() in weekdays:
                cursor = datetime.combine(current_date, start_time)
                day_end = datetime.combine(current_date, end_time)
                while cursor + step <= day_end:
                    slot = Slot(
                        clinic=clinic,
                        doctor_id=doctor_id,
                        date=current_date,
                        time=cursor.time(),
                        duration_minutes=duration_minutes,
                        price=price,
                        payment_mode=payment_mode,
                        kind=kind,
                    )
                    try:
                        with transaction.atomic():
                            slot.save()
                        created.append(slot)
                    except (ValidationError, IntegrityError):
                        skipped += 1
                    cursor += step
            current_date += timedelta(days=1)

    logger.info(
        "[SLOT] Bulk create clinic=%s doctor=%s created=%d skipped=%d",
        clinic.pk, doctor_id, len(created), skipped,
    )
    return created, skipped


# ── Availability ─────────────────────────────────────────────────────────────


def find_available_slots(*, clinic_id: int, doctor_id=None, date_from, date_to, now=None):
    """
    Return bookable slots for a clinic (optionally one doctor) in a date window.

    Excluded: deleted, blocked and BREAK slots, slots that already started,
    and slots held by a live appointment. A slot whose only holder is a
    lapsed payment hold counts as available; the next booking lapses it.
    """
    now = now or timezone.now()
    wall_clock = local_now(now)

    lapsed_hold = (
        Q(status__in=Appointment.HOLD_STATUSES)
        & ~Q(payment_status=Appointment.PaymentStatus.PAID)
        & Q(payment_expires_at__isnull=False)
        & Q(payment_expires_at__lte=now)
    )
    live_holders = (
        Appointment.objects.holding_slots()
        .filter(slot=OuterRef("pk"))
        .exclude(lapsed_hold)
    )

    qs = Slot.objects.filter(
        clinic_id=clinic_id,
        date__gte=date_from,
        date__lte=date_to,
        deleted_at__isnull=True,
        is_blocked=False,
        kind=Slot.Kind.APPOINTMENT,
    ).filter(
        Q(date__gt=wall_clock.date())
        | Q(date=wall_clock.date(), time__gt=wall_clock.time())
    )
    if doctor_id:
        qs = qs.filter(doctor_id=doctor_id)

    return (
        qs.annotate(is_held=Exists(live_holders))
        .filter(is_held=False)
        .select_related("doctor")
        .order_by("date", "time")
    )


# ── Claim / release (called inside the caller's transaction) ─────────────────


def lock_slot(slot_id) -> Slot:
    """Lock a live slot row. Must run inside transaction.atomic()."""
    try:
        return Slot.objects.select_for_update().get(id=slot_id, deleted_at__isnull=True)
    except Slot.DoesNotExist:
        raise NotFoundError("Slot not found.", code="slot_not_found")


def claim_slot(slot_id, *, status=Slot.Status.PENDING) -> Slot:
    """
    Lock the slot and mark it as claimed with ``status``.

    The claim itself is only a status flag for display. Exclusivity comes
    from the appointment write that follows in the same transaction: a
    concurrent claimant fails there with an IntegrityError, which the
    appointment services turn into SlotUnavailableError.

    Raises:
        NotFoundError: If the slot does not exist or is deleted.
        SlotUnavailableError: If the slot is blocked or is a break.
    """
    slot = lock_slot(slot_id)
    if slot.is_blocked or slot.kind == Slot.Kind.BREAK:
        raise SlotUnavailableError("This slot is not open for booking.")

    slot.status = status
    slot.save(update_fields=["status", "updated_at"])
    return slot


def release_slot(slot: Slot) -> Slot:
    """Return a slot to availability. Must run inside the caller's transaction."""
    slot.status = Slot.Status.AVAILABLE
    slot.is_blocked = False
    slot.blocked_reason = ""
    slot.blocked_by = None
    slot.blocked_at = None
    slot.save(
        update_fields=[
            "status", "is_blocked", "blocked_reason", "blocked_by", "blocked_at", "updated_at",
        ]
    )
    logger.info("[SLOT] Released slot_id=%s", slot.pk)
    return slot


# ── Administrative actions ───────────────────────────────────────────────────


def _get_clinic_slot_for_update(slot_id, clinic) -> Slot:
    try:
        return Slot.objects.select_for_update().get(
            id=slot_id, clinic=clinic, deleted_at__isnull=True
        )
    except Slot.DoesNotExist:
        raise NotFoundError("Slot not found.", code="slot_not_found")


@transaction.atomic
def block_slot(slot_id, *, clinic, actor, reason="", force=False) -> Slot:
    """
    Block a slot so nobody can book it.

    Refused with SlotInUseError while an appointment in a non-terminal
    status references the slot, unless ``force`` is set. Forcing leaves the
    existing appointment untouched.
    """
    slot = _get_clinic_slot_for_update(slot_id, clinic)

    if not force and has_active_appointment(slot.pk):
        raise SlotInUseError(
            "An active appointment references this slot. Cancel it first or block with force."
        )

    slot.is_blocked = True
    slot.blocked_reason = reason or ""
    slot.blocked_by = actor
    slot.blocked_at = timezone.now()
    slot.save(update_fields=["is_blocked", "blocked_reason", "blocked_by", "blocked_at", "updated_at"])

    logger.info(
        "[SLOT] Blocked slot_id=%s by user=%s force=%s reason=%r",
        slot.pk, getattr(actor, "pk", None), force, reason,
    )
    return slot


@transaction.atomic
def unblock_slot(slot_id, *, clinic) -> Slot:
    slot = _get_clinic_slot_for_update(slot_id, clinic)
    slot.is_blocked = False
    slot.blocked_reason = ""
    slot.blocked_by = None
    slot.blocked_at = None
    slot.save(update_fields=["is_blocked", "blocked_reason", "blocked_by", "blocked_at", "updated_at"])
    logger.info("[SLOT] Unblocked slot_id=%s", slot.pk)
    return slot


@transaction.atomic
def soft_delete_slot(slot_id, *, clinic) -> Slot:
    """Stamp ``deleted_at``. Refused while a non-terminal appointment references the slot."""
    slot = _get_clinic_slot_for_update(slot_id, clinic)

    if has_active_appointment(slot.pk):
        raise SlotInUseError("Cannot delete a slot with an active appointment.")

    slot.deleted_at = timezone.now()
    slot.save(update_fields=["deleted_at", "updated_at"])
    logger.info("[SLOT] Soft-deleted slot_id=%s", slot.pk)
    return slot
