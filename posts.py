"""
Post variant resolver.

A post is one document: the common fields plus exactly one variant payload
chosen by ``postType`` (Waste items, Initiative items + deadline, or Forum
category). ``postType`` never changes after creation and updates may only
touch the common fields or the fields of the post's own variant.
"""
import logging
from typing import Any, Dict, List, Optional

from pydantic import ValidationError
from pymongo.errors import DuplicateKeyError

from database import create_document, get_document, get_documents, utcnow
from errors import Conflict, Forbidden, NotFound, ValidationFailed, describe_validation_error
from schemas import COMMON_POST_FIELDS, POST_STATUSES, POST_VARIANTS, AuthedUser, Comment, Like, PostStatus, post_create_adapter

logger = logging.getLogger(__name__)


def _variant_fields(post_type: str) -> set:
    model = POST_VARIANTS[post_type]
    return set(model.model_fields) - set(COMMON_POST_FIELDS) - {"postType"}


def validate_post_payload(payload):
    """Resolve the payload to its variant model or raise ValidationFailed."""
    if isinstance(payload, tuple(POST_VARIANTS.values())):
        return payload
    if not isinstance(payload, dict):
        raise ValidationFailed("Post payload must be an object")
    if payload.get("postType") not in POST_VARIANTS:
        raise ValidationFailed(f"Valid post type is required, got {payload.get('postType')!r}")
    try:
        return post_create_adapter.validate_python(payload)
    except ValidationError as e:
        raise ValidationFailed(describe_validation_error(e))


def create_post(db, actor: AuthedUser, payload) -> Dict[str, Any]:
    post = validate_post_payload(payload)
    doc = post.model_dump(mode="python")
    doc.update({"userID": actor.id, "status": "Active"})
    created = create_document(db, "post", "postID", doc)
    logger.info("Created %s post %s for %s", created["postType"], created["postID"], actor.id)
    return created


def get_post(db, post_id: str) -> Dict[str, Any]:
    post = get_document(db, "post", post_id)
    if not post:
        raise NotFound("Post not found")
    return post


def list_posts(db, post_type: Optional[str] = None, status: Optional[str] = None, user_id: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
    filt: Dict[str, Any] = {}
    if post_type:
        filt["postType"] = post_type
    if status:
        filt["status"] = status
    if user_id:
        filt["userID"] = user_id
    return get_documents(db, "post", filt, limit=limit, sort=[("createdAt", -1)])


def update_post(db, actor: AuthedUser, post_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
    post = get_post(db, post_id)
    if post["userID"] != actor.id and actor.role != "admin":
        raise Forbidden("Only the owner can update this post")

    post_type = post["postType"]
    changes = dict(changes)
    if "postType" in changes:
        if changes.pop("postType") != post_type:
            raise ValidationFailed("postType cannot be changed after creation")

    allowed = set(COMMON_POST_FIELDS) | _variant_fields(post_type)
    unknown = sorted(set(changes) - allowed)
    if unknown:
        raise ValidationFailed(f"Fields not allowed on a {post_type} post: {', '.join(unknown)}")
    if not changes:
        return post

    # Re-validate the merged document against the variant schema
    merged = {k: post.get(k) for k in allowed if k in post}
    merged.update(changes)
    merged["postType"] = post_type
    variant = validate_post_payload(merged)
    validated = variant.model_dump(mode="python")
    update = {k: validated[k] for k in changes}
    update["updatedAt"] = utcnow()

    db["post"].update_one({"_id": post_id}, {"$set": update})
    post.update(update)
    return post


def set_post_status(db, post_id: str, status: PostStatus) -> None:
    if status not in POST_STATUSES:
        raise ValidationFailed(f"Invalid post status: {status!r}")
    db["post"].update_one({"_id": post_id}, {"$set": {"status": status, "updatedAt": utcnow()}})


# ----------------------
# Comments & likes
# ----------------------

def add_comment(db, actor: AuthedUser, post_id: str, content: str) -> Dict[str, Any]:
    get_post(db, post_id)
    try:
        comment = Comment(postID=post_id, userID=actor.id, content=(content or "").strip())
    except ValidationError as e:
        raise ValidationFailed(describe_validation_error(e))
    return create_document(db, "comment", "commentID", comment)


def list_comments(db, post_id: str) -> List[Dict[str, Any]]:
    return get_documents(db, "comment", {"postID": post_id}, sort=[("createdAt", 1)])


def like_post(db, actor: AuthedUser, post_id: str) -> Dict[str, Any]:
    get_post(db, post_id)
    if db["like"].find_one({"postID": post_id, "userID": actor.id}, {"_id": 1}):
        raise Conflict("User has already liked this post")
    try:
        return create_document(db, "like", "likeID", Like(postID=post_id, userID=actor.id))
    except DuplicateKeyError:
        raise Conflict("User has already liked this post")
