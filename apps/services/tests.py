import pytest
from django.core.exceptions import ValidationError
from apps.services.models import ServiceCatalog


@pytest.mark.django_db
def test_new_service_gets_defaults():
    s = ServiceCatalog.objects.create(
        name="Tire Rotation",
        description="Rotate all four tires",
        base_price=40.00,
    )
    assert s.category == "maintenance"
    assert s.estimated_duration_minutes == 60
    assert s.is_active


@pytest.mark.django_db
def test_minimum_duration_enforced():
    s = ServiceCatalog.objects.create(
        name="Wiper Replacement",
        base_price=20.00,
        estimated_duration_minutes=15,
    )
    s.estimated_duration_minutes = 10
    with pytest.raises(ValidationError):
        s.full_clean()
