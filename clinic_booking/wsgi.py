"""
WSGI config for clinic_booking project.
"""

import os

from django.core.wsgi import get_wsgi_application

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "clinic_booking.settings")

application = get_wsgi_application()
