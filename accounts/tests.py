from django.test import TestCase
from django.urls import reverse
from rest_framework import status
from rest_framework.test import APIClient
from rest_framework_simplejwt.tokens import AccessToken

from accounts.models import CustomUser


class CustomUserTests(TestCase):
    def test_create_user_requires_phone(self):
        with self.assertRaises(ValueError):
            CustomUser.objects.create_user(phone="", password="x")

    def test_superuser_defaults_to_main_doctor(self):
        admin = CustomUser.objects.create_superuser(phone="0590000000", password="x", name="Admin")
        self.assertTrue(admin.is_staff)
        self.assertEqual(admin.role, "MAIN_DOCTOR")
        self.assertTrue(admin.is_clinic_staff)

    def test_role_helpers(self):
        patient = CustomUser.objects.create_user(phone="0590000001", password="x", name="P")
        secretary = CustomUser.objects.create_user(phone="0590000002", password="x", name="S", role="SECRETARY")
        self.assertTrue(patient.is_patient)
        self.assertFalse(patient.is_clinic_staff)
        self.assertFalse(secretary.is_patient)
        self.assertTrue(secretary.is_clinic_staff)


class TokenAPITests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user = CustomUser.objects.create_user(
            phone="0591234567",
            password="testpass123",
            name="Patient Ali",
            role="PATIENT",
        )

    def test_login_returns_tokens_with_role(self):
        response = self.client.post(
            reverse("accounts:token_obtain"),
            {"phone": "0591234567", "password": "testpass123"},
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["role"], "PATIENT")
        self.assertEqual(response.data["name"], "Patient Ali")

        token = AccessToken(response.data["access"])
        self.assertEqual(token["role"], "PATIENT")
        self.assertEqual(str(token["user_id"]), str(self.user.id))

    def test_wrong_password_rejected(self):
        response = self.client.post(
            reverse("accounts:token_obtain"),
            {"phone": "0591234567", "password": "wrong"},
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_401_UNAUTHORIZED)

    def test_refresh(self):
        login = self.client.post(
            reverse("accounts:token_obtain"),
            {"phone": "0591234567", "password": "testpass123"},
            format="json",
        )
        response = self.client.post(
            reverse("accounts:token_refresh"), {"refresh": login.data["refresh"]}, format="json"
        )
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertIn("access", response.data)

    def test_token_authenticates_booking_api(self):
        login = self.client.post(
            reverse("accounts:token_obtain"),
            {"phone": "0591234567", "password": "testpass123"},
            format="json",
        )
        self.client.credentials(HTTP_AUTHORIZATION=f"Bearer {login.data['access']}")
        response = self.client.post(reverse("appointments:api_book_appointment"), {}, format="json")
        # Authenticated patient: validation fails on the empty body, not on auth.
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
