import logging

from rest_framework import status
from rest_framework.exceptions import NotFound
from rest_framework.permissions import IsAdminUser
from rest_framework.generics import ListAPIView
from rest_framework.response import Response
from rest_framework.views import APIView

from .serializers import AppointmentReminderSerializer
from .models import Appointment
from .filters import AppointmentListFilter
from .pagination import DefaultLimitOffsetPagination
from .reminders import NotFoundError
from .services import build_scheduler


logger = logging.getLogger(__name__)


class AppointmentListView(ListAPIView):

    serializer_class = AppointmentReminderSerializer
    pagination_class = DefaultLimitOffsetPagination
    filterset_class = AppointmentListFilter
    queryset = (
        Appointment.objects.select_related("customer", "service")
        .prefetch_related("reminder_deliveries")
        .order_by("scheduled_at", "id")
    )


class AppointmentConfirmationView(APIView):
    """Send (or re-send) the confirmation for one appointment."""

    def post(self, request, pk):
        try:
            outcome = build_scheduler().send_appointment_confirmation(pk)
        except NotFoundError:
            raise NotFound(f"Appointment {pk} not found")

        code = status.HTTP_200_OK if outcome.success else status.HTTP_502_BAD_GATEWAY
        return Response(outcome.to_dict(), status=code)


class ReminderRunView(APIView):
    permission_classes = [IsAdminUser]

    def post(self, request):
        report = build_scheduler().generate_due_reminders()
        logger.info("Reminder run triggered by %s: %s", request.user, report.summary())
        return Response(report.to_dict())
