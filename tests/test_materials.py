from datetime import datetime, timezone

import pytest

import materials
from errors import Conflict, NotFound, ValidationFailed


def test_seed_is_idempotent(db):
    assert materials.seed_materials(db) == 11
    assert materials.seed_materials(db) == 0
    types = [m["type"] for m in materials.list_materials(db)]
    assert len(types) == len(set(types)) == 11


def test_type_is_unique(db):
    materials.create_material(db, {"type": "paper"})
    with pytest.raises(Conflict):
        materials.create_material(db, {"type": "paper", "averagePricePerKg": 9})


@pytest.mark.parametrize("payload", [
    {"type": "glass"},
    {"type": "paper", "averagePricePerKg": -1},
    {},
])
def test_invalid_materials(db, payload):
    with pytest.raises(ValidationFailed):
        materials.create_material(db, payload)


def test_record_price_averages_full_history(db):
    m = materials.create_material(db, {"type": "aluminum_cans", "averagePricePerKg": 50})
    materials.record_price(db, m["materialID"], 40, datetime(2026, 1, 1, tzinfo=timezone.utc))
    materials.record_price(db, m["materialID"], 60, datetime(2026, 2, 1, tzinfo=timezone.utc))
    updated = materials.record_price(db, m["materialID"], 80)
    assert "_id" not in updated
    assert updated == materials.get_material(db, m["materialID"])

    assert [h["price"] for h in updated["pricingHistory"]] == [40.0, 60.0, 80.0]
    assert updated["averagePricePerKg"] == pytest.approx(60.0)
    assert materials.price_trend(updated) == "increasing"


def test_record_price_rejects_negative_and_unknown(db):
    m = materials.create_material(db, {"type": "pet_bottles"})
    with pytest.raises(ValidationFailed):
        materials.record_price(db, m["materialID"], -3)
    with pytest.raises(NotFound):
        materials.record_price(db, "missing", 3)
    assert materials.get_material(db, m["materialID"])["pricingHistory"] == []


def test_price_trend():
    assert materials.price_trend({"pricingHistory": []}) == "insufficient_data"
    assert materials.price_trend({"pricingHistory": [{"price": 5}, {"price": 3}]}) == "decreasing"
    assert materials.price_trend({"pricingHistory": [{"price": 5}, {"price": 5}]}) == "stable"
