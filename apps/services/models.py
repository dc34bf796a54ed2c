from django.core.validators import MinValueValidator
from django.db import models


class ServiceCatalog(models.Model):
    class Category(models.TextChoices):
        MAINTENANCE = "maintenance", "Maintenance"
        REPAIR = "repair", "Repair"
        DIAGNOSTIC = "diagnostic", "Diagnostic"
        INSPECTION = "inspection", "Inspection"

    name = models.CharField(max_length=200)
    category = models.CharField(
        max_length=20,
        choices=Category.choices,
        default=Category.MAINTENANCE,
    )
    description = models.TextField(blank=True)
    estimated_duration_minutes = models.PositiveIntegerField(
        default=60,
        validators=[MinValueValidator(15)],
    )
    base_price = models.DecimalField(max_digits=10, decimal_places=2)
    is_active = models.BooleanField(default=True)

    def __str__(self):
        return self.name
