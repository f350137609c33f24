from rest_framework_simplejwt.serializers import TokenObtainPairSerializer


class LoginSerializer(TokenObtainPairSerializer):
    """
    JWT login with phone + password.

    The frontend sends the phone number in the ``phone`` field (the
    model's USERNAME_FIELD). Role and name travel as token claims so
    clients can route patients and clinic staff without an extra call.
    """

    @classmethod
    def get_token(cls, user):
        token = super().get_token(user)
        token["role"] = user.role
        token["name"] = user.name
        return token

    def validate(self, attrs):
        data = super().validate(attrs)
        data["role"] = self.user.role
        data["name"] = self.user.name
        return data
