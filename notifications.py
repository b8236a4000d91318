"""
User-facing notification records.

Notifications reference their origin loosely through ``referenceID``.
Once written only the ``isRead`` flag ever changes.
"""
import logging
from typing import Optional

from pydantic import ValidationError
from pymongo.errors import PyMongoError

from database import create_document, get_documents, utcnow
from errors import Forbidden, NotFound, ValidationFailed, describe_validation_error
from schemas import Notification

logger = logging.getLogger(__name__)


def create_notification(db, user_id: str, kind: str, title: str, message: str, reference_id: Optional[str] = None):
    try:
        notification = Notification(
            userID=user_id,
            type=kind,
            title=title.strip(),
            message=message.strip(),
            referenceID=reference_id,
        )
    except ValidationError as e:
        raise ValidationFailed(describe_validation_error(e))
    doc = notification.model_dump()
    doc["createdAt"] = utcnow()
    return create_document(db, "notification", "notificationID", doc, timestamps=False)


def dispatch(db, user_id: str, kind: str, title: str, message: str, reference_id: Optional[str] = None):
    """Fire-and-forget: a failed notification never undoes the caller's write."""
    try:
        return create_notification(db, user_id, kind, title, message, reference_id)
    except (PyMongoError, ValidationFailed) as e:
        logger.warning("Dropped %s notification for user %s: %s", kind, user_id, e)
        return None


def list_notifications(db, user_id: str, unread_only: bool = False, limit: int = 50):
    filt = {"userID": user_id}
    if unread_only:
        filt["isRead"] = False
    return get_documents(db, "notification", filt, limit=limit, sort=[("createdAt", -1)])


def unread_count(db, user_id: str) -> int:
    return db["notification"].count_documents({"userID": user_id, "isRead": False})


def mark_read(db, user_id: str, notification_id: str):
    doc = db["notification"].find_one({"_id": notification_id})
    if not doc:
        raise NotFound("Notification not found")
    if doc["userID"] != user_id:
        raise Forbidden("Not your notification")
    db["notification"].update_one({"_id": notification_id}, {"$set": {"isRead": True}})
    doc.pop("_id", None)
    doc["isRead"] = True
    return doc


def mark_all_read(db, user_id: str) -> int:
    res = db["notification"].update_many({"userID": user_id, "isRead": False}, {"$set": {"isRead": True}})
    return res.modified_count
