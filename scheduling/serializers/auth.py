from rest_framework import serializers


class LoginSerializer(serializers.Serializer):
    """Username and password; any ``role`` sent by the client is ignored."""
    username = serializers.CharField(max_length=150)
    password = serializers.CharField(max_length=128, trim_whitespace=False)

    def validate_username(self, v):
        v = v.strip()
        if not v:
            raise serializers.ValidationError('Username is required')
        return v
