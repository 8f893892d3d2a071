from rest_framework import serializers
from django.contrib.auth import authenticate
from .models import User


class UserSerializer(serializers.ModelSerializer):
    """
    Signed-in user with the stores they own and their driver record, so the
    app knows which screens to open.
    """
    company_ids = serializers.SerializerMethodField()
    driver_id = serializers.SerializerMethodField()

    class Meta:
        model = User
        fields = [
            "id",
            "username",
            "email",
            "role",
            "phone_number",
            "company_ids",
            "driver_id",
        ]
        read_only_fields = ["id", "company_ids", "driver_id"]

    def get_company_ids(self, obj):
        return list(obj.companies.filter(is_active=True).values_list("id", flat=True))

    def get_driver_id(self, obj):
        driver = getattr(obj, "driver", None)
        return driver.id if driver is not None and driver.is_active else None


class LoginSerializer(serializers.Serializer):
    username = serializers.CharField()
    password = serializers.CharField(write_only=True)

    def validate(self, data):
        # authenticate() already refuses users with is_active=False
        user = authenticate(username=data["username"], password=data["password"])
        if not user:
            raise serializers.ValidationError("Invalid username or password")
        return user
