"""
Initiative support offers.

A giver offers one or more materials to an Initiative post. The initiative
owner accepts or declines each material (or the whole offer at once). Once
every material is decided and at least one was accepted the offer is
Accepted and a pickup can be scheduled for it; completing that pickup
completes the support and awards ``Initiative_Support`` points.

    Pending -> PartiallyAccepted -> Accepted -> PickupScheduled -> Completed
    Pending | PartiallyAccepted -> Declined
    Pending | PartiallyAccepted | Accepted -> Cancelled

Like pickups, every write is a compare-and-swap on what was read.
"""
import logging
from typing import Any, Dict, List, Optional

from pydantic import ValidationError
from pymongo import ReturnDocument

import points
from database import create_document, get_document, get_documents, utcnow
from errors import Conflict, Forbidden, InvalidTransition, NotFound, ValidationFailed, describe_validation_error
from notifications import dispatch
from posts import get_post
from schemas import AuthedUser, Support

logger = logging.getLogger(__name__)

INITIATIVE_SUPPORT_POINTS = 5

UNDECIDED_STATUSES = ("Pending", "PartiallyAccepted")
CANCELLABLE_STATUSES = ("Pending", "PartiallyAccepted", "Accepted")


def overall_status(materials: List[Dict[str, Any]]) -> str:
    decided = [m["status"] for m in materials if m["status"] != "Pending"]
    if not decided:
        return "Pending"
    if len(decided) < len(materials):
        return "PartiallyAccepted"
    if "Accepted" in decided:
        return "Accepted"
    return "Declined"


def get_support(db, support_id: str) -> Dict[str, Any]:
    support = get_document(db, "support", support_id)
    if not support:
        raise NotFound("Support offer not found")
    return support


def get_support_for(db, actor: AuthedUser, support_id: str) -> Dict[str, Any]:
    support = get_support(db, support_id)
    if actor.id not in (support["giverID"], support["collectorID"]) and actor.role != "admin":
        raise Forbidden("Not a party to this support offer")
    return support


def list_for_initiative(db, initiative_id: str, status: Optional[str] = None) -> List[Dict[str, Any]]:
    filt: Dict[str, Any] = {"initiativeID": initiative_id}
    if status:
        filt["status"] = status
    return get_documents(db, "support", filt, sort=[("createdAt", -1)])


def list_supports(db, user_id: str, role: str = "both") -> List[Dict[str, Any]]:
    if role == "giver":
        filt: Dict[str, Any] = {"giverID": user_id}
    elif role == "collector":
        filt = {"collectorID": user_id}
    elif role == "both":
        filt = {"$or": [{"giverID": user_id}, {"collectorID": user_id}]}
    else:
        raise ValidationFailed("role must be one of giver, collector, both")
    return get_documents(db, "support", filt, sort=[("createdAt", -1)])


def offer_support(db, actor: AuthedUser, initiative_id: str, offered_materials, notes: Optional[str] = None) -> Dict[str, Any]:
    post = get_post(db, initiative_id)
    if post["postType"] != "Initiative":
        raise ValidationFailed("Support can only be offered to Initiative posts")
    if post["userID"] == actor.id:
        raise ValidationFailed("You cannot support your own initiative")

    try:
        support = Support(
            initiativeID=initiative_id,
            giverID=actor.id,
            collectorID=post["userID"],
            offeredMaterials=offered_materials,
            notes=notes.strip() if notes else None,
        )
    except ValidationError as e:
        raise ValidationFailed(describe_validation_error(e))
    material_ids = [m.materialID for m in support.offeredMaterials]
    if len(set(material_ids)) != len(material_ids):
        raise ValidationFailed("Each material can only be offered once")
    # offers always start undecided
    for m in support.offeredMaterials:
        m.status = "Pending"
        m.rejectionReason = None

    doc = create_document(db, "support", "supportID", support)
    logger.info("Support %s offered to initiative %s by %s", doc["supportID"], initiative_id, actor.id)
    dispatch(
        db, post["userID"], "Application", "New Support Offer",
        f'{actor.name or "Someone"} offered materials for "{post["title"]}"',
        doc["supportID"],
    )
    return doc


def _swap(db, support: Dict[str, Any], expected: Dict[str, Any], changes: Dict[str, Any], retry_statuses=()) -> Dict[str, Any]:
    """Apply ``changes`` only if the stored offer still matches ``expected``.

    A lost swap is a Conflict while the fresh status still permits the
    operation (``retry_statuses`` or the status we read), else InvalidTransition.
    """
    support_id = support["supportID"]
    updated = db["support"].find_one_and_update(
        {"_id": support_id, **expected},
        {"$set": {**changes, "updatedAt": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        fresh = get_support(db, support_id)
        if fresh["status"] == support["status"] or fresh["status"] in retry_statuses:
            raise Conflict("Support offer changed concurrently, retry with fresh state")
        raise InvalidTransition(f"Support offer is now {fresh['status']}")
    updated.pop("_id", None)
    return updated


def _require_owner(actor: AuthedUser, support: Dict[str, Any]) -> None:
    if actor.id != support["collectorID"]:
        raise Forbidden("Only the initiative owner can review support offers")


def _decide_material(db, actor: AuthedUser, support_id: str, material_id: str, decision: str, reason: Optional[str] = None) -> Dict[str, Any]:
    support = get_support(db, support_id)
    _require_owner(actor, support)
    if support["status"] not in UNDECIDED_STATUSES:
        raise InvalidTransition(f"Cannot review materials of a {support['status']} offer")

    materials = [dict(m) for m in support["offeredMaterials"]]
    for m in materials:
        if m["materialID"] == material_id:
            m["status"] = decision
            m["rejectionReason"] = reason if decision == "Declined" else None
            break
    else:
        raise NotFound("Material not found in support offer")

    status = overall_status(materials)
    changes: Dict[str, Any] = {"offeredMaterials": materials, "status": status}
    if decision == "Accepted" and not support.get("acceptedAt"):
        changes["acceptedAt"] = utcnow()
    if status == "Declined":
        changes["declinedAt"] = utcnow()
    updated = _swap(
        db, support,
        {"status": support["status"], "offeredMaterials": support["offeredMaterials"]},
        changes,
        retry_statuses=UNDECIDED_STATUSES,
    )
    _notify_decision(db, updated)
    return updated


def accept_material(db, actor: AuthedUser, support_id: str, material_id: str) -> Dict[str, Any]:
    return _decide_material(db, actor, support_id, material_id, "Accepted")


def decline_material(db, actor: AuthedUser, support_id: str, material_id: str, reason: Optional[str] = None) -> Dict[str, Any]:
    return _decide_material(db, actor, support_id, material_id, "Declined", reason)


def accept_support(db, actor: AuthedUser, support_id: str) -> Dict[str, Any]:
    support = get_support(db, support_id)
    _require_owner(actor, support)
    if support["status"] != "Pending":
        raise InvalidTransition("Only pending support offers can be accepted")
    materials = [{**m, "status": "Accepted", "rejectionReason": None} for m in support["offeredMaterials"]]
    updated = _swap(
        db, support, {"status": "Pending"},
        {"offeredMaterials": materials, "status": "Accepted", "acceptedAt": utcnow()},
    )
    _notify_decision(db, updated)
    return updated


def decline_support(db, actor: AuthedUser, support_id: str, reason: Optional[str] = None) -> Dict[str, Any]:
    support = get_support(db, support_id)
    _require_owner(actor, support)
    if support["status"] != "Pending":
        raise InvalidTransition("Only pending support offers can be declined")
    reason = reason.strip() if reason else None
    materials = [{**m, "status": "Declined", "rejectionReason": reason} for m in support["offeredMaterials"]]
    updated = _swap(
        db, support, {"status": "Pending"},
        {"offeredMaterials": materials, "status": "Declined", "declinedAt": utcnow(), "rejectionReason": reason},
    )
    _notify_decision(db, updated)
    return updated


def _notify_decision(db, support: Dict[str, Any]) -> None:
    status = support["status"]
    if status == "Accepted":
        accepted = ", ".join(
            f'{m["materialName"]}: {m["quantity"]:g} {m.get("unit") or "kg"}'
            for m in support["offeredMaterials"] if m["status"] == "Accepted"
        )
        title, message = "Support Accepted", f"Your support offer has been accepted! Materials: {accepted}"
    elif status == "Declined":
        reason = support.get("rejectionReason")
        title, message = "Support Declined", "Your support offer was declined" + (f" - Reason: {reason}" if reason else "")
    else:
        return
    dispatch(db, support["giverID"], "Application", title, message, support["supportID"])


def cancel_support(db, actor: AuthedUser, support_id: str, reason: Optional[str] = None) -> Dict[str, Any]:
    support = get_support(db, support_id)
    if actor.id not in (support["giverID"], support["collectorID"]):
        raise Forbidden("Only the giver or the initiative owner can cancel this offer")
    if support["status"] == "PickupScheduled":
        raise InvalidTransition("Cancel the scheduled pickup before cancelling the offer")
    if support["status"] not in CANCELLABLE_STATUSES:
        raise InvalidTransition(f"Cannot cancel a {support['status']} support offer")

    updated = _swap(
        db, support, {"status": support["status"]},
        {
            "status": "Cancelled",
            "cancelledAt": utcnow(),
            "cancellationReason": reason.strip() if reason and reason.strip() else None,
            "cancellationBy": actor.id,
        },
    )
    by_giver = actor.id == support["giverID"]
    other = support["collectorID"] if by_giver else support["giverID"]
    dispatch(
        db, other, "Application", "Support Cancelled",
        f'Support offer cancelled by {"giver" if by_giver else "initiative owner"}',
        support_id,
    )
    return updated


# Called by the pickup lifecycle

def link_pickup(db, support_id: str, pickup_id: str) -> Dict[str, Any]:
    support = get_support(db, support_id)
    if support["status"] != "Accepted":
        raise InvalidTransition("Only accepted support offers can be scheduled for pickup")
    return _swap(db, support, {"status": "Accepted"}, {"status": "PickupScheduled", "pickupID": pickup_id})


def release_pickup(db, support_id: str) -> Dict[str, Any]:
    """Unlink a cancelled pickup so the offer can be scheduled again."""
    support = get_support(db, support_id)
    if support["status"] != "PickupScheduled":
        return support
    return _swap(db, support, {"status": "PickupScheduled"}, {"status": "Accepted", "pickupID": None})


def complete_support(db, support_id: str) -> Dict[str, Any]:
    support = get_support(db, support_id)
    if support["status"] != "PickupScheduled":
        raise InvalidTransition(f"Cannot complete a {support['status']} support offer")
    updated = _swap(db, support, {"status": "PickupScheduled"}, {"status": "Completed", "completedAt": utcnow()})
    points.award(db, support["giverID"], INITIATIVE_SUPPORT_POINTS, "Initiative_Support")
    dispatch(
        db, support["giverID"], "Application", "Support Completed",
        "Thank you! Your materials were delivered to the initiative",
        support_id,
    )
    logger.info("Support %s completed", support_id)
    return updated
