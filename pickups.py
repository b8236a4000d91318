"""
Pickup lifecycle.

    Proposed -> Confirmed -> Completed
    Proposed | Confirmed -> Cancelled

Completed and Cancelled are terminal. Every transition is written as a
compare-and-swap on the stored ``status`` so two racing requests cannot
both move the same pickup, which is what keeps completion points from
being awarded twice.
"""
import logging
from typing import Any, Dict, List, Optional

from pydantic import ValidationError
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

import points
import supports
from database import create_document, get_document, get_documents, new_id, utcnow
from errors import Conflict, Forbidden, InvalidTransition, NotFound, ValidationFailed, describe_validation_error
from notifications import dispatch
from posts import get_post, set_post_status
from schemas import AuthedUser, FinalWaste, Pickup, PickupUpdate

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = ("Proposed", "Confirmed")

# target -> statuses it may be reached from
TRANSITIONS = {
    "Confirmed": ("Proposed",),
    "Completed": ("Confirmed",),
    "Cancelled": ("Proposed", "Confirmed"),
}

TIMESTAMP_FIELDS = {
    "Confirmed": "confirmedAt",
    "Completed": "completedAt",
    "Cancelled": "cancelledAt",
}

# Post status that mirrors the pickup state (Waste posts only)
POST_STATUS_FOR = {
    "Proposed": "Waiting",
    "Confirmed": "Scheduled",
    "Completed": "Collected",
    "Cancelled": "Active",
}


def can_transition(current: str, target: str) -> bool:
    return current in TRANSITIONS.get(target, ())


def _location_label(pickup: Dict[str, Any]) -> str:
    loc = pickup.get("pickupLocation")
    if isinstance(loc, dict):
        return loc.get("address") or loc.get("name") or "the agreed location"
    return loc or "the agreed location"


def _sync_post_status(db, pickup: Dict[str, Any]) -> None:
    if pickup.get("postType") == "Waste":
        set_post_status(db, pickup["postID"], POST_STATUS_FOR[pickup["status"]])


def get_pickup(db, pickup_id: str) -> Dict[str, Any]:
    pickup = get_document(db, "pickup", pickup_id)
    if not pickup:
        raise NotFound("Pickup not found")
    return pickup


def get_pickup_for(db, actor: AuthedUser, pickup_id: str) -> Dict[str, Any]:
    pickup = get_pickup(db, pickup_id)
    if actor.id not in (pickup["giverID"], pickup["collectorID"]) and actor.role != "admin":
        raise Forbidden("Not a party to this pickup")
    return pickup


def list_pickups(db, user_id: str, role: str = "both", status: Optional[str] = None) -> List[Dict[str, Any]]:
    if role == "giver":
        filt: Dict[str, Any] = {"giverID": user_id}
    elif role == "collector":
        filt = {"collectorID": user_id}
    elif role == "both":
        filt = {"$or": [{"giverID": user_id}, {"collectorID": user_id}]}
    else:
        raise ValidationFailed("role must be one of giver, collector, both")
    if status:
        filt["status"] = status
    return get_documents(db, "pickup", filt, sort=[("proposedAt", -1)])


def get_active_pickup(db, post_id: str) -> Optional[Dict[str, Any]]:
    """The newest Proposed or Confirmed pickup on a post, if any."""
    active = get_documents(
        db, "pickup", {"postID": post_id, "status": {"$in": list(ACTIVE_STATUSES)}},
        limit=1, sort=[("proposedAt", -1)],
    )
    return active[0] if active else None


def _create_pickup(db, post: Dict[str, Any], giver_id: str, collector_id: str, proposer_id: str,
                   pickup_location, pickup_time=None, support_id: Optional[str] = None,
                   pickup_id: Optional[str] = None) -> Dict[str, Any]:
    if giver_id == collector_id:
        raise ValidationFailed("Giver and collector must be different users")
    if not pickup_location:
        raise ValidationFailed("Pickup location is required")

    # one active pickup per giver and post; the partial unique index backs this up
    active = {"postID": post["postID"], "giverID": giver_id, "status": {"$in": list(ACTIVE_STATUSES)}}
    if db["pickup"].find_one(active, {"_id": 1}):
        raise Conflict("An active pickup already exists for this post")

    try:
        pickup = Pickup(
            postID=post["postID"],
            postType=post["postType"],
            giverID=giver_id,
            collectorID=collector_id,
            proposedBy=proposer_id,
            supportID=support_id,
            pickupTime=pickup_time,
            pickupLocation=pickup_location,
            status="Proposed",
            proposedAt=utcnow(),
        )
    except ValidationError as e:
        raise ValidationFailed(describe_validation_error(e))

    doc = pickup.model_dump(mode="python")
    if pickup_id:
        doc["pickupID"] = pickup_id
    try:
        doc = create_document(db, "pickup", "pickupID", doc, timestamps=False)
    except DuplicateKeyError:
        raise Conflict("An active pickup already exists for this post")
    logger.info("Pickup %s proposed for post %s", doc["pickupID"], post["postID"])

    _sync_post_status(db, doc)
    other = giver_id if proposer_id == collector_id else collector_id
    dispatch(
        db, other, "Pickup", "New Pickup Schedule Proposed",
        f'A pickup has been proposed for "{post["title"]}"',
        doc["pickupID"],
    )
    return doc


def propose_pickup(db, actor: AuthedUser, post_id: str, pickup_location, pickup_time=None) -> Dict[str, Any]:
    post = get_post(db, post_id)

    if post["postType"] == "Waste":
        if actor.role not in ("collector", "admin"):
            raise Forbidden("Only collectors can schedule pickups for waste posts")
        giver_id, collector_id = post["userID"], actor.id
    elif post["postType"] == "Initiative":
        giver_id, collector_id = actor.id, post["userID"]
    else:
        raise ValidationFailed("Pickups can only be scheduled for Waste or Initiative posts")

    return _create_pickup(db, post, giver_id, collector_id, actor.id, pickup_location, pickup_time)


def schedule_support_pickup(db, actor: AuthedUser, support_id: str, pickup_location, pickup_time=None) -> Dict[str, Any]:
    """Propose the pickup that delivers an accepted support offer."""
    support = supports.get_support(db, support_id)
    if actor.id not in (support["giverID"], support["collectorID"]):
        raise Forbidden("Only the giver or the initiative owner can schedule this pickup")
    if support["status"] != "Accepted":
        raise InvalidTransition(f"Cannot schedule a pickup for a {support['status']} support offer")
    post = get_post(db, support["initiativeID"])

    pickup_id = new_id()
    supports.link_pickup(db, support_id, pickup_id)
    try:
        return _create_pickup(
            db, post, support["giverID"], support["collectorID"], actor.id,
            pickup_location, pickup_time, support_id=support_id, pickup_id=pickup_id,
        )
    except (Conflict, ValidationFailed):
        supports.release_pickup(db, support_id)
        raise


def update_pickup(db, actor: AuthedUser, pickup_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
    """Reschedule a pickup that has not been confirmed yet. Only its proposer may."""
    pickup = get_pickup(db, pickup_id)
    if actor.id != pickup.get("proposedBy"):
        raise Forbidden("Only the person who proposed the pickup can update it")
    if pickup["status"] != "Proposed":
        raise InvalidTransition("Only proposed pickups can be updated")
    try:
        update = PickupUpdate.model_validate(changes).model_dump(exclude_unset=True)
    except ValidationError as e:
        raise ValidationFailed(describe_validation_error(e))
    if "pickupLocation" in update and not update["pickupLocation"]:
        raise ValidationFailed("Pickup location is required")
    if not update:
        return pickup

    update["updatedAt"] = utcnow()
    updated = db["pickup"].find_one_and_update(
        {"_id": pickup_id, "status": "Proposed"},
        {"$set": update},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise InvalidTransition("Only proposed pickups can be updated")
    updated.pop("_id", None)

    other = pickup["collectorID"] if actor.id == pickup["giverID"] else pickup["giverID"]
    dispatch(db, other, "Pickup", "Pickup Updated", "Pickup schedule has been updated", pickup_id)
    return updated


def _transition(db, actor: AuthedUser, pickup_id: str, target: str, extra: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    pickup = get_pickup(db, pickup_id)
    if actor.id not in (pickup["giverID"], pickup["collectorID"]):
        raise Forbidden("Only the giver or the collector can change this pickup")
    current = pickup["status"]
    if not can_transition(current, target):
        raise InvalidTransition(f"Cannot move pickup from {current} to {target}")

    now = utcnow()
    update = {"status": target, TIMESTAMP_FIELDS[target]: now, "updatedAt": now}
    update.update(extra or {})

    updated = db["pickup"].find_one_and_update(
        {"_id": pickup_id, "status": current},
        {"$set": update},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        fresh = get_pickup(db, pickup_id)
        if can_transition(fresh["status"], target):
            raise Conflict("Pickup changed concurrently, retry with fresh state")
        raise InvalidTransition(f"Cannot move pickup from {fresh['status']} to {target}")

    updated.pop("_id", None)
    logger.info("Pickup %s: %s -> %s by %s", pickup_id, current, target, actor.id)
    _sync_post_status(db, updated)
    return updated


def confirm_pickup(db, actor: AuthedUser, pickup_id: str) -> Dict[str, Any]:
    pickup = _transition(db, actor, pickup_id, "Confirmed")
    other = pickup["collectorID"] if actor.id == pickup["giverID"] else pickup["giverID"]
    dispatch(
        db, other, "Pickup", "Pickup Confirmed",
        f"Your pickup at {_location_label(pickup)} has been confirmed",
        pickup_id,
    )
    return pickup


def complete_pickup(db, actor: AuthedUser, pickup_id: str, final_waste, proof_of_pickup: Optional[str] = None) -> Dict[str, Any]:
    # Checked up front so a malformed payload never reaches the write
    pickup = get_pickup(db, pickup_id)
    if actor.id not in (pickup["giverID"], pickup["collectorID"]):
        raise Forbidden("Only the giver or the collector can change this pickup")
    if not can_transition(pickup["status"], "Completed"):
        raise InvalidTransition(f"Cannot move pickup from {pickup['status']} to Completed")
    try:
        waste = final_waste if isinstance(final_waste, FinalWaste) else FinalWaste.model_validate(final_waste)
    except ValidationError as e:
        raise ValidationFailed(describe_validation_error(e))

    extra: Dict[str, Any] = {"finalWaste": waste.model_dump()}
    if proof_of_pickup:
        extra["proofOfPickup"] = proof_of_pickup
    pickup = _transition(db, actor, pickup_id, "Completed", extra)

    # Only the request that won the swap gets here, so the pair is awarded once
    points.award(db, pickup["giverID"], points.GIVER_COMPLETION_POINTS, "Pickup_Completion")
    points.award(db, pickup["collectorID"], points.COLLECTOR_COMPLETION_POINTS, "Pickup_Completion")
    if pickup.get("supportID"):
        supports.complete_support(db, pickup["supportID"])

    where = _location_label(pickup)
    dispatch(db, pickup["giverID"], "Pickup", "Pickup Completed",
             f"Your waste pickup at {where} has been completed", pickup_id)
    dispatch(db, pickup["collectorID"], "Pickup", "Pickup Completed",
             f"You successfully completed the pickup at {where}", pickup_id)
    return pickup


def cancel_pickup(db, actor: AuthedUser, pickup_id: str, reason: Optional[str] = None) -> Dict[str, Any]:
    extra = {"cancellationReason": reason.strip()} if reason and reason.strip() else None
    pickup = _transition(db, actor, pickup_id, "Cancelled", extra)
    if pickup.get("supportID"):
        supports.release_pickup(db, pickup["supportID"])
    other = pickup["collectorID"] if actor.id == pickup["giverID"] else pickup["giverID"]
    dispatch(
        db, other, "Pickup", "Pickup Cancelled",
        f"The pickup at {_location_label(pickup)} has been cancelled",
        pickup_id,
    )
    return pickup
