"""
Domain errors raised by the booking services.

Every error carries a human-readable ``message``, a stable machine ``code``
that API clients can switch on, and the HTTP status the API answers with.
Views catch ``BookingError`` and return ``{"detail": ..., "code": ...}``.
"""


class BookingError(Exception):
    """Base exception for booking failures."""

    http_status = 400

    def __init__(self, message, code="booking_error"):
        self.message = message
        self.code = code
        super().__init__(self.message)


# ── Not found ────────────────────────────────────────────────────────────────


class NotFoundError(BookingError):
    """Slot, appointment or request is missing or soft-deleted."""

    http_status = 404

    def __init__(self, message="Not found.", code="not_found"):
        super().__init__(message, code=code)


# ── Conflicts ────────────────────────────────────────────────────────────────


class ConflictError(BookingError):
    """The request lost against concurrent or earlier state."""

    http_status = 409

    def __init__(self, message="Conflict.", code="conflict"):
        super().__init__(message, code=code)


class SlotUnavailableError(ConflictError):
    """Raised when the requested slot is already held by another appointment."""

    def __init__(self, message="This slot is already booked. Please choose another slot."):
        super().__init__(message, code="slot_unavailable")


class SlotInUseError(ConflictError):
    """Raised when an administrative slot action would orphan a live appointment."""

    def __init__(self, message="An active appointment references this slot."):
        super().__init__(message, code="slot_in_use")


class DuplicateCancellationRequestError(ConflictError):
    def __init__(self, message="A cancellation request already exists for this appointment."):
        super().__init__(message, code="duplicate_cancellation_request")


class CancellationAlreadyResolvedError(ConflictError):
    def __init__(self, message="This cancellation request has already been resolved."):
        super().__init__(message, code="cancellation_already_resolved")


class StalePaymentError(ConflictError):
    """A payment arrived after its hold lapsed and the slot went to someone else."""

    def __init__(self, message="Payment arrived after the booking hold expired and the slot was reassigned."):
        super().__init__(message, code="stale_payment")


# ── Policy ───────────────────────────────────────────────────────────────────


class PolicyViolationError(BookingError):
    """A clinic or platform policy forbids the action."""

    def __init__(self, message="This action is not allowed by clinic policy.", code="policy_violation"):
        super().__init__(message, code=code)


class RescheduleLimitError(PolicyViolationError):
    def __init__(self, limit=1):
        super().__init__(
            f"Cannot reschedule more than {limit} time(s) per appointment.",
            code="reschedule_limit",
        )


class CancellationNoticeError(PolicyViolationError):
    def __init__(self, notice_hours):
        self.notice_hours = notice_hours
        super().__init__(
            f"Too late. Cancellations are allowed up to {notice_hours} hours in advance. "
            f"Please call the clinic.",
            code="cancellation_notice",
        )


class OnlinePaymentsDisabledError(PolicyViolationError):
    http_status = 403

    def __init__(self, message="Online payments are disabled for this clinic. Use FREE or OFFLINE slots."):
        super().__init__(message, code="online_payments_disabled")


# ── Lifecycle / payments ─────────────────────────────────────────────────────


class InvalidStatusTransitionError(BookingError):
    def __init__(self, current, requested):
        self.current = current
        self.requested = requested
        super().__init__(
            f"Cannot change appointment status from {current} to {requested}.",
            code="invalid_transition",
        )


class SignatureInvalidError(BookingError):
    def __init__(self, message="Invalid payment signature."):
        super().__init__(message, code="signature_invalid")


class GatewayUnavailableError(BookingError):
    """The payment provider could not be reached or refused the call."""

    http_status = 502

    def __init__(self, message="Payment gateway is unavailable. Please try again."):
        super().__init__(message, code="gateway_unavailable")
