"""
Tests for feed record ingestion and field merging.
"""

import pytest
from pydantic import ValidationError

from app.services.feed_client import FeedPage, RemoteVehicle
from app.services.reconciliation import build_vehicle_values


class TestRemoteVehicle:
    """Tests for RemoteVehicle parsing."""

    def test_vin_is_trimmed_and_uppercased(self):
        vehicle = RemoteVehicle.model_validate({"vin": "  1ftfw1e50mfa00001 "})
        assert vehicle.vin == "1FTFW1E50MFA00001"

    def test_numeric_strings_are_accepted(self):
        vehicle = RemoteVehicle.model_validate(
            {"id": 42, "vin": "X1", "year": "2020", "price": "25999.50", "mileage": "12000"}
        )
        assert vehicle.id == "42"
        assert vehicle.year == 2020
        assert vehicle.price == 25999.5
        assert vehicle.mileage == 12000

    def test_fractional_mileage_is_rounded(self):
        vehicle = RemoteVehicle.model_validate({"vin": "X1", "year": 2021.0, "mileage": 24000.6})
        assert vehicle.year == 2021
        assert vehicle.mileage == 24001

    def test_unknown_fields_are_ignored(self):
        vehicle = RemoteVehicle.model_validate({"vin": "X1", "dealer_secret_margin": 1200})
        assert not hasattr(vehicle, "dealer_secret_margin")

    def test_non_numeric_price_is_rejected(self):
        with pytest.raises(ValidationError):
            RemoteVehicle.model_validate({"vin": "X1", "price": "call for price"})

    def test_flat_feature_list_becomes_confirmed(self):
        vehicle = RemoteVehicle.model_validate(
            {"vin": "X1", "ai_detected_features": ["Sunroof", "", "Tow Package"]}
        )
        assert vehicle.ai_detected_features.confirmed == ["Sunroof", "Tow Package"]
        assert vehicle.ai_detected_features.suggested == []

    def test_structured_features_are_kept(self):
        vehicle = RemoteVehicle.model_validate(
            {"vin": "X1", "ai_detected_features": {"confirmed": ["Sunroof"], "suggested": ["Heated Seats"]}}
        )
        assert vehicle.ai_detected_features.confirmed == ["Sunroof"]
        assert vehicle.ai_detected_features.suggested == ["Heated Seats"]

    def test_photo_list_falls_back_to_primary_photo(self):
        vehicle = RemoteVehicle.model_validate(
            {"vin": "X1", "photo_urls": [], "primary_photo_url": "https://p/x.jpg"}
        )
        assert vehicle.photo_list() == ["https://p/x.jpg"]

    def test_photo_list_drops_empty_entries(self):
        vehicle = RemoteVehicle.model_validate(
            {"vin": "X1", "photo_urls": ["https://p/1.jpg", None, "", "https://p/2.jpg"]}
        )
        assert vehicle.photo_list() == ["https://p/1.jpg", "https://p/2.jpg"]


class TestFeedPage:
    def test_null_vehicles_is_empty_list(self):
        page = FeedPage.model_validate(
            {"vehicles": None, "pagination": {"page": 1, "limit": 100, "total": 0, "total_pages": 0}}
        )
        assert page.vehicles == []

    def test_negative_total_is_rejected(self):
        with pytest.raises(ValidationError):
            FeedPage.model_validate(
                {"vehicles": [], "pagination": {"page": 1, "limit": 100, "total": -1, "total_pages": 0}}
            )


class TestBuildVehicleValues:
    """Tests for merge defaults."""

    def test_defaults_fill_missing_fields(self):
        vehicle = RemoteVehicle.model_validate(
            {"id": "ext-9", "vin": "X1", "price": 20000, "color": "Red"}
        )
        values = build_vehicle_values(vehicle, ["memory://storage/vehicles/X1/0.jpg"])

        assert values["stock_number"] == "ext-9"
        assert values["asking_price"] == 20000
        assert values["exterior_color"] == "Red"
        assert values["transmission"] == "Automatic"
        assert values["fuel_type"] == "Gasoline"
        assert values["trim"] == ""
        assert values["images"] == ["memory://storage/vehicles/X1/0.jpg"]
        assert values["ai_detected_features"] is None

    def test_feed_values_win_over_defaults(self):
        vehicle = RemoteVehicle.model_validate(
            {
                "id": "ext-9",
                "vin": "X1",
                "stock_number": "STK9",
                "price": 20000,
                "asking_price": 18500,
                "color": "Red",
                "exterior_color": "Ruby Red",
                "transmission": "Manual",
                "fuel_type": "Diesel",
            }
        )
        values = build_vehicle_values(vehicle, [])

        assert values["stock_number"] == "STK9"
        assert values["asking_price"] == 18500
        assert values["exterior_color"] == "Ruby Red"
        assert values["transmission"] == "Manual"
        assert values["fuel_type"] == "Diesel"
