from django.test import RequestFactory, TestCase

from clinic_booking.testing import BookingFixturesMixin
from clinics.capabilities import online_payments_enabled
from clinics.models import ClinicStaff
from clinics.permissions import IsClinicStaff, IsPatient
from clinics.utils import get_staff_clinic


class GetStaffClinicTests(BookingFixturesMixin, TestCase):
    def test_main_doctor_gets_owned_clinic(self):
        self.assertEqual(get_staff_clinic(self.main_doctor), self.clinic)

    def test_staff_gets_employing_clinic(self):
        self.assertEqual(get_staff_clinic(self.doctor), self.clinic)
        self.assertEqual(get_staff_clinic(self.secretary), self.clinic)

    def test_inactive_employment_ignored(self):
        ClinicStaff.objects.filter(user=self.secretary).update(is_active=False)
        self.assertIsNone(get_staff_clinic(self.secretary))

    def test_inactive_clinic_ignored(self):
        self.clinic.is_active = False
        self.clinic.save()
        self.assertIsNone(get_staff_clinic(self.main_doctor))
        self.assertIsNone(get_staff_clinic(self.doctor))

    def test_patient_has_no_clinic(self):
        self.assertIsNone(get_staff_clinic(self.patient))


class PermissionTests(BookingFixturesMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.factory = RequestFactory()

    def request_as(self, user):
        request = self.factory.get("/")
        request.user = user
        return request

    def test_is_patient(self):
        self.assertTrue(IsPatient().has_permission(self.request_as(self.patient), None))
        self.assertFalse(IsPatient().has_permission(self.request_as(self.secretary), None))

    def test_is_clinic_staff_attaches_clinic(self):
        request = self.request_as(self.secretary)
        self.assertTrue(IsClinicStaff().has_permission(request, None))
        self.assertEqual(request.clinic, self.clinic)

    def test_patient_is_not_clinic_staff(self):
        request = self.request_as(self.patient)
        self.assertFalse(IsClinicStaff().has_permission(request, None))
        self.assertIsNone(request.clinic)


class CapabilityTests(BookingFixturesMixin, TestCase):
    def test_online_payments_follow_plan_flag(self):
        self.assertTrue(online_payments_enabled(self.clinic))
        self.clinic.allow_online_payments = False
        self.assertFalse(online_payments_enabled(self.clinic))

    def test_missing_clinic(self):
        self.assertFalse(online_payments_enabled(None))
