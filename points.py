"""
Points ledger and badges.

The ledger is append-only: ``award`` inserts a row and nothing ever updates
or deletes one. A user's balance is always recomputed from the rows, there
is no stored counter to drift.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError
from pymongo.errors import DuplicateKeyError

from database import create_document, get_document, get_documents, utcnow
from errors import Conflict, InvalidAmount, NotFound, UnknownTransactionKind, ValidationFailed, describe_validation_error
from notifications import dispatch
from schemas import TRANSACTION_KINDS, Badge, Point

logger = logging.getLogger(__name__)

POST_CREATION_POINTS = 10
COMMENT_POINTS = 2
LIKE_POINTS = 1
GIVER_COMPLETION_POINTS = 10
COLLECTOR_COMPLETION_POINTS = 15


def _as_utc(dt: datetime) -> datetime:
    # naive datetimes are taken as UTC
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def award(db, user_id: str, amount, transaction: str) -> Dict[str, Any]:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidAmount(f"Points must be a positive integer, got {amount!r}")
    if transaction not in TRANSACTION_KINDS:
        raise UnknownTransactionKind(f"Unknown transaction kind: {transaction!r}")
    if not user_id:
        raise ValidationFailed("User ID is required")
    row = Point(userID=user_id, pointsEarned=amount, transaction=transaction, receivedAt=utcnow())
    row = create_document(db, "point", "pointID", row, timestamps=False)
    logger.info("Awarded %d points to %s for %s", amount, user_id, transaction)
    return row


def balance(db, user_id: str) -> int:
    pipeline = [
        {"$match": {"userID": user_id}},
        {"$group": {"_id": "$userID", "total": {"$sum": "$pointsEarned"}}},
    ]
    for row in db["point"].aggregate(pipeline):
        return int(row["total"])
    return 0


def history(db, user_id: str, limit: int = 100) -> List[Dict[str, Any]]:
    return get_documents(db, "point", {"userID": user_id}, limit=limit, sort=[("receivedAt", -1)])


def by_transaction(db, user_id: str, transaction: str) -> List[Dict[str, Any]]:
    return get_documents(db, "point", {"userID": user_id, "transaction": transaction})


def points_in_period(db, user_id: str, start: datetime, end: datetime) -> Dict[str, Any]:
    """Rows received in the half-open window [start, end)."""
    filt = {"userID": user_id, "receivedAt": {"$gte": _as_utc(start), "$lt": _as_utc(end)}}
    rows = get_documents(db, "point", filt, sort=[("receivedAt", 1)])
    return {"points": rows, "total": sum(r["pointsEarned"] for r in rows)}


def monthly_summary(db, user_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    now = _as_utc(now or utcnow())
    start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    if start.month == 12:
        end = start.replace(year=start.year + 1, month=1)
    else:
        end = start.replace(month=start.month + 1)
    period = points_in_period(db, user_id, start, end)

    by_kind: Dict[str, Dict[str, int]] = {}
    for row in period["points"]:
        entry = by_kind.setdefault(row["transaction"], {"count": 0, "totalPoints": 0})
        entry["count"] += 1
        entry["totalPoints"] += row["pointsEarned"]

    return {
        "month": start.strftime("%Y-%m"),
        "totalPoints": period["total"],
        "byTransaction": by_kind,
        "pointsHistory": period["points"],
    }


def leaderboard(db, limit: int = 10) -> List[Dict[str, Any]]:
    pipeline = [
        {"$group": {"_id": "$userID", "totalPoints": {"$sum": "$pointsEarned"}}},
        {"$sort": {"totalPoints": -1}},
        {"$limit": limit},
    ]
    board = []
    for row in db["point"].aggregate(pipeline):
        user = db["user"].find_one({"_id": row["_id"]}, {"name": 1})
        board.append({
            "userID": row["_id"],
            "name": user.get("name") if user else None,
            "totalPoints": int(row["totalPoints"]),
        })
    return board


# ----------------------
# Badges
# ----------------------

def create_badge(db, payload) -> Dict[str, Any]:
    try:
        badge = payload if isinstance(payload, Badge) else Badge.model_validate(payload)
    except ValidationError as e:
        raise ValidationFailed(describe_validation_error(e))
    if not badge.requirements.model_dump(exclude_none=True):
        raise ValidationFailed("Badge requirements are required")
    doc = badge.model_dump()
    doc["badgeName"] = doc["badgeName"].strip()
    doc["description"] = doc["description"].strip()
    try:
        return create_document(db, "badge", "badgeID", doc)
    except DuplicateKeyError:
        raise Conflict(f"Badge already exists: {doc['badgeName']}")


def list_badges(db, active_only: bool = True) -> List[Dict[str, Any]]:
    return get_documents(db, "badge", {"isActive": True} if active_only else {})


def check_qualification(db, user_id: str, badge_id: str) -> Tuple[bool, str]:
    badge = get_document(db, "badge", badge_id)
    if not badge or not badge.get("isActive"):
        raise NotFound("Badge not found or inactive")
    user = get_document(db, "user", user_id)
    if not user:
        raise NotFound("User not found")
    if any(b.get("badgeID") == badge_id for b in user.get("badges", [])):
        return False, "User already has this badge"

    req = badge.get("requirements") or {}

    if req.get("minPoints"):
        total = balance(db, user_id)
        if total < req["minPoints"]:
            return False, f"Requires {req['minPoints']} points, user has {total}"

    if req.get("minPostsCreated"):
        posts = db["post"].count_documents({"userID": user_id})
        if posts < req["minPostsCreated"]:
            return False, f"Requires {req['minPostsCreated']} posts, user has {posts}"

    if req.get("minPickupsCompleted"):
        done = db["pickup"].count_documents({"collectorID": user_id, "status": "Completed"})
        if done < req["minPickupsCompleted"]:
            return False, f"Requires {req['minPickupsCompleted']} completed pickups, user has {done}"

    for transaction, minimum in (req.get("minTransactionPoints") or {}).items():
        earned = sum(r["pointsEarned"] for r in by_transaction(db, user_id, transaction))
        if earned < minimum:
            return False, f"Requires {minimum} points from {transaction}, user has {earned}"

    return True, ""


def award_badge(db, user_id: str, badge_id: str) -> Dict[str, Any]:
    qualifies, reason = check_qualification(db, user_id, badge_id)
    if not qualifies:
        raise ValidationFailed(f"User does not qualify for badge: {reason}")
    badge = get_document(db, "badge", badge_id)
    earned = {"badgeID": badge_id, "earnedAt": utcnow()}
    # the filter keeps a badge from being pushed twice under concurrent claims
    res = db["user"].update_one(
        {"_id": user_id, "badges.badgeID": {"$ne": badge_id}},
        {"$push": {"badges": earned}},
    )
    if res.modified_count == 0:
        raise Conflict("Badge already awarded")
    dispatch(
        db, user_id, "Badge", "Badge Earned!",
        f'Congratulations! You\'ve earned the "{badge["badgeName"]}" badge',
        badge_id,
    )
    logger.info("Badge %s awarded to %s", badge_id, user_id)
    return {"badge": badge, **earned}
