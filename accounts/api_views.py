from rest_framework_simplejwt.views import TokenObtainPairView

from .serializers import LoginSerializer


class LoginAPIView(TokenObtainPairView):
    """
    POST /api/token/

    Request body:
        {"phone": "0591000001", "password": "..."}

    Returns an access/refresh token pair plus the user's role and name.
    """

    serializer_class = LoginSerializer
