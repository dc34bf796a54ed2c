from rest_framework import serializers
from .models import Appointment


class AppointmentReminderSerializer(serializers.ModelSerializer):
    customer_name = serializers.CharField(source="customer.name", read_only=True)
    service_name = serializers.CharField(source="service.name", read_only=True)
    reminders_sent = serializers.SerializerMethodField()

    class Meta:
        model = Appointment
        fields = (
            "id",
            "scheduled_at",
            "status",
            "customer_name",
            "service_name",
            "preferred_channel",
            "send_24h_reminder",
            "send_2h_reminder",
            "send_same_day_reminder",
            "reminders_sent",
        )

    def get_reminders_sent(self, obj):
        return sorted(obj.reminders_sent)
