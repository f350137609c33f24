from .models import Clinic, ClinicStaff


def get_staff_clinic(user):
    """
    Resolve the clinic a staff user acts for.

    - MAIN_DOCTOR: the clinic they own.
    - DOCTOR / SECRETARY: their first active ClinicStaff employment.

    Returns None for patients or staff without an active clinic.
    """
    if not user or not user.is_authenticated or not user.is_clinic_staff:
        return None

    if user.role == "MAIN_DOCTOR":
        return Clinic.objects.filter(main_doctor=user, is_active=True).first()

    employment = ClinicStaff.objects.active().filter(user=user).select_related("clinic").first()
    return employment.clinic if employment else None
