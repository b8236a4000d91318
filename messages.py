"""
Post-scoped conversations between two users.
"""
import logging
from typing import Any, Dict, List

from pydantic import ValidationError

from database import create_document, get_documents, utcnow
from errors import NotFound, ValidationFailed, describe_validation_error
from notifications import dispatch
from posts import get_post
from schemas import AuthedUser, Message

logger = logging.getLogger(__name__)


def send_message(db, actor: AuthedUser, receiver_id: str, post_id: str, text: str) -> Dict[str, Any]:
    if receiver_id == actor.id:
        raise ValidationFailed("Sender and receiver cannot be the same")
    try:
        msg = Message(senderID=actor.id, receiverID=receiver_id, postID=post_id, message=(text or "").strip())
    except ValidationError as e:
        raise ValidationFailed(describe_validation_error(e))
    post = get_post(db, post_id)
    if not db["user"].find_one({"_id": receiver_id}, {"_id": 1}):
        raise NotFound("Receiver not found")

    doc = msg.model_dump()
    doc["sentAt"] = utcnow()
    doc = create_document(db, "message", "messageID", doc, timestamps=False)

    preview = doc["message"] if len(doc["message"]) <= 80 else doc["message"][:77] + "..."
    dispatch(db, receiver_id, "Message", f'New message about "{post["title"]}"', preview, doc["messageID"])
    return doc


def conversation(db, user_id: str, other_id: str, post_id: str) -> List[Dict[str, Any]]:
    filt = {
        "postID": post_id,
        "$or": [
            {"senderID": user_id, "receiverID": other_id},
            {"senderID": other_id, "receiverID": user_id},
        ],
    }
    return get_documents(db, "message", filt, sort=[("sentAt", 1)])


def list_conversations(db, user_id: str) -> List[Dict[str, Any]]:
    msgs = get_documents(
        db, "message",
        {"$or": [{"senderID": user_id}, {"receiverID": user_id}]},
        sort=[("sentAt", -1)],
    )
    conversations: Dict[tuple, Dict[str, Any]] = {}
    for m in msgs:
        other = m["receiverID"] if m["senderID"] == user_id else m["senderID"]
        key = (m["postID"], other)
        conv = conversations.get(key)
        if conv is None:
            # newest first, so the first message seen is the latest one
            conv = conversations[key] = {
                "postID": m["postID"],
                "otherUserID": other,
                "lastMessage": m,
                "unreadCount": 0,
            }
        if m["receiverID"] == user_id and not m.get("isRead"):
            conv["unreadCount"] += 1
    return list(conversations.values())


def mark_read(db, user_id: str, message_ids: List[str]) -> int:
    if not message_ids:
        return 0
    res = db["message"].update_many(
        {"_id": {"$in": list(message_ids)}, "receiverID": user_id, "isRead": False},
        {"$set": {"isRead": True}},
    )
    return res.modified_count
