from rest_framework import permissions

from .utils import get_staff_clinic


class IsPatient(permissions.BasePermission):
    """
    Allows access only to authenticated users with the 'PATIENT' role.
    """

    message = "Only patients can perform this action."

    def has_permission(self, request, view):
        return bool(
            request.user
            and request.user.is_authenticated
            and request.user.role == "PATIENT"
        )


class IsClinicStaff(permissions.BasePermission):
    """
    Allows access to staff (main doctor, doctor, secretary) assigned to an
    active clinic. Attaches that clinic to the request as ``request.clinic``
    so views can enforce tenant isolation on every object they touch.
    """

    message = "Access Denied: You are not assigned to any active clinic."

    def has_permission(self, request, view):
        request.clinic = None
        if not (request.user and request.user.is_authenticated):
            return False

        clinic = get_staff_clinic(request.user)
        if clinic is None:
            return False

        request.clinic = clinic
        return True
