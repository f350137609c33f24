"""
Tests for the slot store.

Covers:
- Slot model validation (overlap, free pricing)
- create_slot / create_bulk_slots
- find_available_slots (holders, lapsed holds, blocks, breaks)
- block / unblock / soft delete guards
- Staff API endpoints and tenant isolation
"""

from datetime import time, timedelta
from decimal import Decimal
from unittest.mock import patch

from django.core.exceptions import ValidationError
from django.test import TestCase
from django.urls import reverse
from django.utils import timezone
from rest_framework import status
from rest_framework.test import APIClient

from appointments.exceptions import BookingError, NotFoundError, SlotInUseError, SlotUnavailableError
from appointments.models import Appointment
from clinic_booking.testing import BookingFixturesMixin, User
from clinics.models import Clinic
from slots import services
from slots.models import Slot


def hold(slot, patient, status=Appointment.Status.PENDING, **kwargs):
    return Appointment.objects.create(
        patient=patient,
        doctor=slot.doctor,
        clinic=slot.clinic,
        slot=slot,
        status=status,
        amount=slot.price,
        **kwargs,
    )


class SlotModelTests(BookingFixturesMixin, TestCase):
    def test_overlapping_slot_rejected(self):
        self.make_slot(at=time(9, 0))
        with self.assertRaises(ValidationError):
            self.make_slot(at=time(9, 15))

    def test_adjacent_slots_allowed(self):
        """Half-open intervals: 09:00-09:30 and 09:30-10:00 do not overlap."""
        self.make_slot(at=time(9, 0))
        second = self.make_slot(at=time(9, 30))
        self.assertIsNotNone(second.pk)

    def test_other_doctor_same_time_allowed(self):
        self.make_slot(at=time(9, 0))
        other = self.make_slot(at=time(9, 0), doctor=self.main_doctor)
        self.assertIsNotNone(other.pk)

    def test_deleted_slot_does_not_block_new_slot(self):
        first = self.make_slot(at=time(9, 0))
        first.deleted_at = timezone.now()
        first.save(update_fields=["deleted_at"])
        replacement = self.make_slot(at=time(9, 0))
        self.assertIsNotNone(replacement.pk)

    def test_free_slot_price_forced_to_zero(self):
        slot = self.make_slot(price="250.00", mode=Slot.PaymentMode.FREE)
        self.assertEqual(slot.price, Decimal("0.00"))

    def test_overlaps_helper(self):
        a = Slot(date=self.slot_date, time=time(10, 0), duration_minutes=60)
        b = Slot(date=self.slot_date, time=time(10, 59), duration_minutes=10)
        c = Slot(date=self.slot_date, time=time(11, 0), duration_minutes=10)
        self.assertTrue(a.overlaps(b))
        self.assertFalse(a.overlaps(c))


class CreateSlotServiceTests(BookingFixturesMixin, TestCase):
    def test_create_slot(self):
        slot = services.create_slot(
            clinic=self.clinic,
            doctor_id=self.doctor.id,
            date=self.slot_date,
            time=time(14, 0),
            duration_minutes=20,
            price=Decimal("400.00"),
            payment_mode=Slot.PaymentMode.OFFLINE,
        )
        self.assertEqual(slot.status, Slot.Status.AVAILABLE)
        self.assertEqual(slot.end_time, time(14, 20))

    def test_overlap_raises_booking_error(self):
        self.make_slot(at=time(9, 0))
        with self.assertRaises(BookingError) as ctx:
            services.create_slot(
                clinic=self.clinic, doctor_id=self.doctor.id, date=self.slot_date, time=time(9, 10)
            )
        self.assertEqual(ctx.exception.code, "invalid_slot")

    def test_doctor_outside_clinic_rejected(self):
        outsider = User.objects.create_user(phone="0599999999", password="x", name="Dr. Other", role="DOCTOR")
        with self.assertRaises(NotFoundError):
            services.create_slot(
                clinic=self.clinic, doctor_id=outsider.id, date=self.slot_date, time=time(9, 0)
            )

    def test_main_doctor_can_have_slots(self):
        slot = services.create_slot(
            clinic=self.clinic, doctor_id=self.main_doctor.id, date=self.slot_date, time=time(9, 0)
        )
        self.assertEqual(slot.doctor, self.main_doctor)

    def test_create_locks_doctor_schedule_before_overlap_check(self):
        with patch.object(services, "lock_doctor_schedule", wraps=services.lock_doctor_schedule) as lock:
            services.create_slot(
                clinic=self.clinic, doctor_id=self.doctor.id, date=self.slot_date, time=time(9, 0)
            )
        lock.assert_called_once_with(self.doctor.id)

    def test_lock_failure_writes_nothing(self):
        with patch.object(services, "lock_doctor_schedule", side_effect=User.DoesNotExist):
            with self.assertRaises(User.DoesNotExist):
                services.create_slot(
                    clinic=self.clinic, doctor_id=self.doctor.id, date=self.slot_date, time=time(9, 0)
                )
        self.assertFalse(Slot.objects.filter(doctor=self.doctor).exists())


class BulkCreateSlotsTests(BookingFixturesMixin, TestCase):
    def test_generates_consecutive_slots(self):
        created, skipped = services.create_bulk_slots(
            clinic=self.clinic,
            doctor_id=self.doctor.id,
            start_date=self.slot_date,
            end_date=self.slot_date,
            start_time=time(9, 0),
            end_time=time(11, 0),
            duration_minutes=30,
            price=Decimal("300.00"),
        )
        self.assertEqual(len(created), 4)
        self.assertEqual(skipped, 0)
        self.assertEqual([s.time for s in created], [time(9, 0), time(9, 30), time(10, 0), time(10, 30)])

    def test_partial_trailing_slot_not_created(self):
        created, _ = services.create_bulk_slots(
            clinic=self.clinic,
            doctor_id=self.doctor.id,
            start_date=self.slot_date,
            end_date=self.slot_date,
            start_time=time(9, 0),
            end_time=time(9, 50),
            duration_minutes=30,
        )
        self.assertEqual(len(created), 1)

    def test_overlaps_are_skipped_not_raised(self):
        self.make_slot(at=time(9, 15))
        created, skipped = services.create_bulk_slots(
            clinic=self.clinic,
            doctor_id=self.doctor.id,
            start_date=self.slot_date,
            end_date=self.slot_date,
            start_time=time(9, 0),
            end_time=time(10, 30),
            duration_minutes=30,
        )
        # 09:00 and 09:30 collide with 09:15-09:45.
        self.assertEqual(skipped, 2)
        self.assertEqual([s.time for s in created], [time(10, 0)])

    def test_bulk_create_locks_doctor_schedule_once(self):
        with patch.object(services, "lock_doctor_schedule", wraps=services.lock_doctor_schedule) as lock:
            created, _ = services.create_bulk_slots(
                clinic=self.clinic,
                doctor_id=self.doctor.id,
                start_date=self.slot_date,
                end_date=self.slot_date + timedelta(days=1),
                start_time=time(9, 0),
                end_time=time(10, 0),
                duration_minutes=30,
            )
        lock.assert_called_once_with(self.doctor.id)
        self.assertEqual(len(created), 4)

    def test_weekday_filter(self):
        start = self.slot_date
        created, _ = services.create_bulk_slots(
            clinic=self.clinic,
            doctor_id=self.doctor.id,
            start_date=start,
            end_date=start + timedelta(days=6),
            start_time=time(9, 0),
            end_time=time(9, 30),
            duration_minutes=30,
            weekdays=[start.weekday()],
        )
        self.assertEqual(len(created), 1)
        self.assertEqual(created[0].date, start)

    def test_invalid_range_raises(self):
        with self.assertRaises(BookingError):
            services.create_bulk_slots(
                clinic=self.clinic,
                doctor_id=self.doctor.id,
                start_date=self.slot_date,
                end_date=self.slot_date - timedelta(days=1),
                start_time=time(9, 0),
                end_time=time(10, 0),
                duration_minutes=30,
            )


class FindAvailableSlotsTests(BookingFixturesMixin, TestCase):
    def _available(self, **kwargs):
        return list(
            services.find_available_slots(
                clinic_id=self.clinic.id,
                doctor_id=self.doctor.id,
                date_from=self.slot_date,
                date_to=self.slot_date,
                **kwargs,
            )
        )

    def test_lists_free_slots_in_order(self):
        later = self.make_slot(at=time(10, 0))
        earlier = self.make_slot(at=time(9, 0))
        self.assertEqual(self._available(), [earlier, later])

    def test_held_slot_excluded(self):
        slot = self.make_slot()
        hold(slot, self.patient)
        self.assertEqual(self._available(), [])

    def test_cancelled_holder_does_not_hide_slot(self):
        slot = self.make_slot()
        hold(slot, self.patient, status=Appointment.Status.CANCELLED)
        self.assertEqual(self._available(), [slot])

    def test_lapsed_hold_counts_as_available(self):
        slot = self.make_slot()
        hold(
            slot,
            self.patient,
            status=Appointment.Status.PENDING_PAYMENT,
            payment_expires_at=timezone.now() - timedelta(minutes=1),
        )
        self.assertEqual(self._available(), [slot])

    def test_running_hold_hides_slot(self):
        slot = self.make_slot()
        hold(
            slot,
            self.patient,
            status=Appointment.Status.PENDING_PAYMENT,
            payment_expires_at=timezone.now() + timedelta(minutes=5),
        )
        self.assertEqual(self._available(), [])

    def test_blocked_break_and_deleted_excluded(self):
        blocked = self.make_slot(at=time(9, 0))
        blocked.is_blocked = True
        blocked.save(update_fields=["is_blocked"])
        self.make_slot(at=time(10, 0), kind=Slot.Kind.BREAK)
        deleted = self.make_slot(at=time(11, 0))
        deleted.deleted_at = timezone.now()
        deleted.save(update_fields=["deleted_at"])
        self.assertEqual(self._available(), [])

    def test_past_slots_excluded(self):
        past = self.slot_starting_in(hours=-2)
        result = services.find_available_slots(
            clinic_id=self.clinic.id, date_from=past.date, date_to=past.date
        )
        self.assertNotIn(past, list(result))


class ClaimAndReleaseTests(BookingFixturesMixin, TestCase):
    def test_claim_blocked_slot_raises(self):
        slot = self.make_slot()
        slot.is_blocked = True
        slot.save(update_fields=["is_blocked"])
        with self.assertRaises(SlotUnavailableError):
            services.claim_slot(slot.pk)

    def test_claim_missing_slot_raises_not_found(self):
        with self.assertRaises(NotFoundError):
            services.claim_slot(999999)

    def test_release_resets_status_and_block(self):
        slot = self.make_slot()
        slot = services.claim_slot(slot.pk, status=Slot.Status.CONFIRMED)
        slot.is_blocked = True
        services.release_slot(slot)
        slot.refresh_from_db()
        self.assertEqual(slot.status, Slot.Status.AVAILABLE)
        self.assertFalse(slot.is_blocked)


class BlockAndDeleteTests(BookingFixturesMixin, TestCase):
    def test_block_free_slot(self):
        slot = self.make_slot()
        services.block_slot(slot.pk, clinic=self.clinic, actor=self.secretary, reason="Doctor away")
        slot.refresh_from_db()
        self.assertTrue(slot.is_blocked)
        self.assertEqual(slot.blocked_reason, "Doctor away")
        self.assertEqual(slot.blocked_by, self.secretary)

    def test_block_refused_with_active_appointment(self):
        slot = self.make_slot()
        hold(slot, self.patient, status=Appointment.Status.CONFIRMED)
        with self.assertRaises(SlotInUseError):
            services.block_slot(slot.pk, clinic=self.clinic, actor=self.secretary)

    def test_block_forced_with_active_appointment(self):
        slot = self.make_slot()
        appointment = hold(slot, self.patient, status=Appointment.Status.CONFIRMED)
        services.block_slot(slot.pk, clinic=self.clinic, actor=self.secretary, force=True)
        slot.refresh_from_db()
        appointment.refresh_from_db()
        self.assertTrue(slot.is_blocked)
        self.assertEqual(appointment.status, Appointment.Status.CONFIRMED)

    def test_completed_appointment_does_not_prevent_block(self):
        slot = self.make_slot()
        hold(slot, self.patient, status=Appointment.Status.COMPLETED)
        services.block_slot(slot.pk, clinic=self.clinic, actor=self.secretary)
        slot.refresh_from_db()
        self.assertTrue(slot.is_blocked)

    def test_unblock(self):
        slot = self.make_slot()
        services.block_slot(slot.pk, clinic=self.clinic, actor=self.secretary)
        services.unblock_slot(slot.pk, clinic=self.clinic)
        slot.refresh_from_db()
        self.assertFalse(slot.is_blocked)
        self.assertIsNone(slot.blocked_by)

    def test_soft_delete(self):
        slot = self.make_slot()
        services.soft_delete_slot(slot.pk, clinic=self.clinic)
        slot.refresh_from_db()
        self.assertIsNotNone(slot.deleted_at)

    def test_soft_delete_refused_with_active_appointment(self):
        slot = self.make_slot()
        hold(slot, self.patient)
        with self.assertRaises(SlotInUseError):
            services.soft_delete_slot(slot.pk, clinic=self.clinic)

    def test_other_clinic_cannot_touch_slot(self):
        other_owner = User.objects.create_user(phone="0598888888", password="x", name="Dr. B", role="MAIN_DOCTOR")
        other_clinic = Clinic.objects.create(
            name="Other", address="x", phone="1", email="o@x.com", main_doctor=other_owner
        )
        slot = self.make_slot()
        with self.assertRaises(NotFoundError):
            services.block_slot(slot.pk, clinic=other_clinic, actor=other_owner)


class SlotAPITests(BookingFixturesMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.client = APIClient()

    def test_staff_creates_slot(self):
        self.client.force_authenticate(user=self.secretary)
        response = self.client.post(
            reverse("slots:api_create_slot"),
            {
                "doctor_id": self.doctor.id,
                "date": self.slot_date.isoformat(),
                "time": "15:00",
                "duration_minutes": 30,
                "price": "450.00",
                "payment_mode": "OFFLINE",
            },
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(response.data["clinic"], self.clinic.id)
        self.assertEqual(response.data["end_time"], "15:30:00")

    def test_patient_cannot_create_slot(self):
        self.client.force_authenticate(user=self.patient)
        response = self.client.post(reverse("slots:api_create_slot"), {}, format="json")
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

    def test_bulk_create_reports_skipped(self):
        self.make_slot(at=time(9, 0))
        self.client.force_authenticate(user=self.main_doctor)
        response = self.client.post(
            reverse("slots:api_bulk_create_slots"),
            {
                "doctor_id": self.doctor.id,
                "start_date": self.slot_date.isoformat(),
                "end_date": self.slot_date.isoformat(),
                "start_time": "09:00",
                "end_time": "10:00",
                "duration_minutes": 30,
            },
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(response.data["created"], 1)
        self.assertEqual(response.data["skipped"], 1)

    def test_available_slots_listing(self):
        slot = self.make_slot()
        self.client.force_authenticate(user=self.patient)
        response = self.client.get(
            reverse("slots:api_available_slots"),
            {
                "clinic_id": self.clinic.id,
                "doctor_id": self.doctor.id,
                "date_from": self.slot_date.isoformat(),
                "date_to": self.slot_date.isoformat(),
            },
        )
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual([row["id"] for row in response.data], [slot.id])

    def test_block_in_use_returns_409(self):
        slot = self.make_slot()
        hold(slot, self.patient, status=Appointment.Status.CONFIRMED)
        self.client.force_authenticate(user=self.secretary)
        response = self.client.post(reverse("slots:api_block_slot", args=[slot.id]), {}, format="json")
        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)
        self.assertEqual(response.data["code"], "slot_in_use")

    def test_delete_slot(self):
        slot = self.make_slot()
        self.client.force_authenticate(user=self.secretary)
        response = self.client.delete(reverse("slots:api_delete_slot", args=[slot.id]))
        self.assertEqual(response.status_code, status.HTTP_204_NO_CONTENT)
