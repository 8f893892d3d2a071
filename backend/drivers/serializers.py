from rest_framework import serializers
from drivers.models import Driver


class DriverSerializer(serializers.ModelSerializer):
    """
    Driver record with availability state
    """
    company_name = serializers.CharField(source="company.name", read_only=True)

    class Meta:
        model = Driver
        fields = [
            "id",
            "company",
            "company_name",
            "name",
            "phone_number",
            "status",
            "is_available",
            "is_active",
            "updated_at",
        ]
        read_only_fields = fields


class QueueAdvanceSerializer(serializers.Serializer):
    # Only used when a store owner advances one of their drivers' queue
    driverId = serializers.IntegerField(required=False)
