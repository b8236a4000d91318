"""
Material catalog: recyclable material types and their prices per kg.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import ValidationError
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from database import create_document, get_document, get_documents, utcnow
from errors import Conflict, NotFound, ValidationFailed, describe_validation_error
from schemas import MATERIAL_TYPES, Material

logger = logging.getLogger(__name__)

# Starting prices (PHP per kg) for a fresh catalog
DEFAULT_PRICES = {
    "pet_bottles": 15.0,
    "plastic_bottle_caps": 10.0,
    "hdpe_containers": 12.0,
    "plastic_bags_sachets": 3.0,
    "courier_bags": 4.0,
    "plastic_cups": 5.0,
    "microwavable_containers": 6.0,
    "used_beverage_cartons": 2.5,
    "aluminum_cans": 50.0,
    "boxes_cartons": 4.5,
    "paper": 6.0,
}


def create_material(db, payload) -> Dict[str, Any]:
    try:
        material = payload if isinstance(payload, Material) else Material.model_validate(payload)
    except ValidationError as e:
        raise ValidationFailed(describe_validation_error(e))
    if db["material"].find_one({"type": material.type}, {"_id": 1}):
        raise Conflict(f"Material type already exists: {material.type}")
    try:
        return create_document(db, "material", "materialID", material)
    except DuplicateKeyError:
        raise Conflict(f"Material type already exists: {material.type}")


def get_material(db, material_id: str) -> Dict[str, Any]:
    material = get_document(db, "material", material_id)
    if not material:
        raise NotFound("Material not found")
    return material


def list_materials(db, category: Optional[str] = None) -> List[Dict[str, Any]]:
    return get_documents(db, "material", {"category": category} if category else {}, sort=[("type", 1)])


def record_price(db, material_id: str, price: float, date: Optional[datetime] = None) -> Dict[str, Any]:
    """Append a price and recompute the average as the mean of the whole history."""
    if isinstance(price, bool) or not isinstance(price, (int, float)) or price < 0:
        raise ValidationFailed("Price must be a non-negative number")
    entry = {"price": float(price), "date": date or utcnow()}

    material = get_material(db, material_id)
    history = material.get("pricingHistory") or []
    prices = [h["price"] for h in history] + [entry["price"]]
    average = round(sum(prices) / len(prices), 4)

    # Guard on the history length so a concurrent append is not averaged away
    updated = db["material"].find_one_and_update(
        {"_id": material_id, "pricingHistory": {"$size": len(history)}},
        {
            "$push": {"pricingHistory": entry},
            "$set": {"averagePricePerKg": average, "updatedAt": utcnow()},
        },
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise Conflict("Material pricing changed concurrently, retry with fresh state")
    updated.pop("_id", None)
    logger.info("Recorded price %.2f for material %s", entry["price"], material_id)
    return updated


def price_trend(material: Dict[str, Any]) -> str:
    history = material.get("pricingHistory") or []
    if len(history) < 2:
        return "insufficient_data"
    previous, latest = history[-2]["price"], history[-1]["price"]
    if latest > previous:
        return "increasing"
    if latest < previous:
        return "decreasing"
    return "stable"


def seed_materials(db) -> int:
    """Insert any default material missing from the catalog."""
    created = 0
    for material_type in MATERIAL_TYPES:
        if db["material"].find_one({"type": material_type}, {"_id": 1}):
            continue
        create_material(db, {"type": material_type, "averagePricePerKg": DEFAULT_PRICES.get(material_type, 0)})
        created += 1
    if created:
        logger.info("Seeded %d materials", created)
    return created
