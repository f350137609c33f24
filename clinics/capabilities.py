"""
Plan capability lookups.

Subscription/plan management lives outside the booking core. The core
only ever asks yes/no questions, and it receives the answers as explicit
arguments: API views call these helpers and pass the result down.
"""


def online_payments_enabled(clinic):
    """Return True if the clinic's plan lets patients pay online."""
    return bool(clinic and clinic.is_active and clinic.allow_online_payments)
