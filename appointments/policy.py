"""Clinic policy constants, read from settings so deployments and tests can tune them."""

from datetime import timedelta

from django.conf import settings


def payment_hold():
    return timedelta(minutes=getattr(settings, "BOOKING_PAYMENT_HOLD_MINUTES", 10))


def cancellation_notice_hours():
    return getattr(settings, "BOOKING_CANCELLATION_NOTICE_HOURS", 24)


def max_reschedules():
    return getattr(settings, "BOOKING_MAX_RESCHEDULES", 1)
