from django.urls import path
from .api_views import AppointmentConfirmationView, AppointmentListView, ReminderRunView

app_name = "scheduling"
urlpatterns = [
    path("appointments/", AppointmentListView.as_view(), name="appointments-list"),
    path(
        "appointments/<int:pk>/confirmation/",
        AppointmentConfirmationView.as_view(),
        name="appointment-confirmation",
    ),
    path("reminders/run/", ReminderRunView.as_view(), name="reminders-run"),
]
