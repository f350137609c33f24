# appointments/services package
#
# The lifecycle engine and the workflows built on it. Public names are
# re-exported here so callers import from one place:
#
#   from appointments.services import book_appointment, confirm_payment
#   from appointments.services import reschedule_appointment, request_cancellation

from appointments.exceptions import BookingError  # noqa: F401

from appointments.services.booking_service import (  # noqa: F401
    book_appointment,
    get_bookable_slot,
    start_payment,
)

from appointments.services.cancellation_service import (  # noqa: F401
    CancellationOutcome,
    request_cancellation,
    resolve_cancellation,
)

from appointments.services.lifecycle import (  # noqa: F401
    ALLOWED_TRANSITIONS,
    STAFF_TRANSITIONS,
    expire_lapsed_holds,
    transition,
    update_status,
)

from appointments.services.payment_confirmation_service import (  # noqa: F401
    confirm_payment,
)

from appointments.services.reschedule_service import (  # noqa: F401
    RescheduleQuote,
    RescheduleResult,
    compute_reschedule_delta,
    reschedule_appointment,
)
