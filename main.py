import os
import hashlib
import logging
import secrets
from datetime import datetime
from typing import List, Optional, Dict, Any, Union
from typing_extensions import Annotated
from fastapi import FastAPI, HTTPException, Depends, Header, Query, Request, Body
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr, Field
from pymongo.errors import DuplicateKeyError

import database
import materials
import messages
import notifications
import pickups
import points
import posts
import supports
from database import create_document, serialize_doc
from errors import DomainError
from schemas import (
    AuthedUser,
    Badge as BadgeSchema,
    FinalWaste,
    Location,
    Material as MaterialSchema,
    OfferedMaterial,
    Pickup as PickupSchema,
    PickupUpdate,
    Point as PointSchema,
    Support as SupportSchema,
    User as UserSchema,
    WastePostCreate,
    InitiativePostCreate,
    ForumPostCreate,
)

logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())
logger = logging.getLogger("recyclehub")

app = FastAPI(title="RecycleHub API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ----------------------
# Helpers
# ----------------------

def get_db():
    return database.db

def hash_password(pw: str) -> str:
    return hashlib.sha256(pw.encode()).hexdigest()

@app.exception_handler(DomainError)
async def domain_error_handler(request: Request, exc: DomainError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

@app.on_event("startup")
def prepare_database():
    db = database.db
    database.ensure_indexes(db)
    materials.seed_materials(db)

# ----------------------
# Auth dependency
# ----------------------

async def get_current_user(authorization: Optional[str] = Header(None), db=Depends(get_db)) -> AuthedUser:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=401, detail="Unauthorized")
    token = authorization.split(" ", 1)[1].strip()
    user = db["user"].find_one({"token": token}) if token else None
    if not user:
        raise HTTPException(status_code=401, detail="Invalid token")
    return AuthedUser(id=user["userID"], role=user.get("role", "user"), name=user.get("name"))

def require_admin(current: AuthedUser = Depends(get_current_user)) -> AuthedUser:
    if current.role != "admin":
        raise HTTPException(status_code=403, detail="Admin only")
    return current

# ----------------------
# Schema endpoint for tooling
# ----------------------
@app.get("/schema")
def get_schema():
    # Return model field info for tooling
    def model_fields(model: BaseModel) -> Dict[str, Any]:
        return {name: str(field.annotation) for name, field in model.model_fields.items()}

    return {
        "user": model_fields(UserSchema),
        "post": {
            "Waste": model_fields(WastePostCreate),
            "Initiative": model_fields(InitiativePostCreate),
            "Forum": model_fields(ForumPostCreate),
        },
        "pickup": model_fields(PickupSchema),
        "support": model_fields(SupportSchema),
        "point": model_fields(PointSchema),
        "badge": model_fields(BadgeSchema),
        "material": model_fields(MaterialSchema),
    }

# ----------------------
# Health & test
# ----------------------
@app.get("/")
def read_root():
    return {"message": "RecycleHub API running"}

@app.get("/test")
def test_database(db=Depends(get_db)):
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set",
        "connection_status": "Not Connected",
        "collections": []
    }
    try:
        if db is not None:
            response["database"] = "✅ Connected & Working"
            response["connection_status"] = "Connected"
            response["collections"] = db.list_collection_names()[:10]
    except Exception as e:
        response["database"] = f"⚠️ Connected but error: {str(e)[:80]}"
    return response

# ----------------------
# Auth routes
# ----------------------
class SignUpBody(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=6)
    role: str = Field("user", pattern="^(user|collector)$")

@app.post("/auth/signup")
def signup(body: SignUpBody, db=Depends(get_db)):
    existing = db["user"].find_one({"email": body.email})
    if existing:
        raise HTTPException(status_code=400, detail="Email already registered")
    token = secrets.token_hex(32)
    user = UserSchema(
        name=body.name,
        email=body.email,
        passwordHash=hash_password(body.password),
        role=body.role,
        token=token,
    )
    try:
        doc = create_document(db, "user", "userID", user)
    except DuplicateKeyError:
        raise HTTPException(status_code=400, detail="Email already registered")
    return {"id": doc["userID"], "token": token, "role": body.role, "name": body.name}

class LoginBody(BaseModel):
    email: EmailStr
    password: str

@app.post("/auth/login")
def login(body: LoginBody, db=Depends(get_db)):
    user = db["user"].find_one({"email": body.email})
    if not user or user.get("passwordHash") != hash_password(body.password):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    if not user.get("token"):
        token = secrets.token_hex(32)
        db["user"].update_one({"_id": user["_id"]}, {"$set": {"token": token}})
        user["token"] = token
    return {"id": user["userID"], "token": user["token"], "role": user.get("role", "user"), "name": user.get("name")}

@app.get("/me")
def me(current: AuthedUser = Depends(get_current_user), db=Depends(get_db)):
    return {**current.model_dump(), "points": points.balance(db, current.id)}

# ----------------------
# Posts
# ----------------------
@app.post("/posts", status_code=201)
def create_post(body: Annotated[Union[WastePostCreate, InitiativePostCreate, ForumPostCreate], Body(discriminator="postType")], current: AuthedUser = Depends(get_current_user), db=Depends(get_db)):
    post = posts.create_post(db, current, body)
    points.award(db, current.id, points.POST_CREATION_POINTS, "Post_Creation")
    return serialize_doc(post)

@app.get("/posts")
def list_posts(
    postType: Optional[str] = Query(None, pattern="^(Waste|Initiative|Forum)$"),
    status: Optional[str] = Query(None),
    userID: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    db=Depends(get_db),
):
    return [serialize_doc(p) for p in posts.list_posts(db, postType, status, userID, limit)]

@app.get("/posts/{post_id}")
def get_post(post_id: str, db=Depends(get_db)):
    return serialize_doc(posts.get_post(db, post_id))

@app.patch("/posts/{post_id}")
def update_post(post_id: str, changes: Dict[str, Any], current: AuthedUser = Depends(get_current_user), db=Depends(get_db)):
    return serialize_doc(posts.update_post(db, current, post_id, changes))

class CommentBody(BaseModel):
    content: str = Field(..., min_length=1, max_length=1000)

@app.post("/posts/{post_id}/comments", status_code=201)
def add_comment(post_id: str, body: CommentBody, current: AuthedUser = Depends(get_current_user), db=Depends(get_db)):
    comment = posts.add_comment(db, current, post_id, body.content)
    points.award(db, current.id, points.COMMENT_POINTS, "Post_Interaction")
    post = posts.get_post(db, post_id)
    if post["userID"] != current.id:
        notifications.dispatch(
            db, post["userID"], "Comment", "New comment",
            f'{current.name or "Someone"} commented on "{post["title"]}"',
            comment["commentID"],
        )
    return serialize_doc(comment)

@app.get("/posts/{post_id}/comments")
def list_comments(post_id: str, db=Depends(get_db)):
    return [serialize_doc(c) for c in posts.list_comments(db, post_id)]

@app.post("/posts/{post_id}/like", status_code=201)
def like_post(post_id: str, current: AuthedUser = Depends(get_current_user), db=Depends(get_db)):
    like = posts.like_post(db, current, post_id)
    points.award(db, current.id, points.LIKE_POINTS, "Post_Interaction")
    return serialize_doc(like)

# ----------------------
# Pickups
# ----------------------
class ProposePickupBody(BaseModel):
    postID: str
    pickupLocation: Location
    pickupTime: Optional[datetime] = None

class CompletePickupBody(BaseModel):
    finalWaste: FinalWaste
    proofOfPickup: Optional[str] = None

class CancelPickupBody(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)

@app.post("/pickups", status_code=201)
def propose_pickup(body: ProposePickupBody, current: AuthedUser = Depends(get_current_user), db=Depends(get_db)):
    return serialize_doc(pickups.propose_pickup(db, current, body.postID, body.pickupLocation, body.pickupTime))

@app.get("/pickups")
def my_pickups(
    role: str = Query("both", pattern="^(giver|collector|both)$"),
    status: Optional[str] = Query(None, pattern="^(Proposed|Confirmed|Completed|Cancelled)$"),
    current: AuthedUser = Depends(get_current_user),
    db=Depends(get_db),
):
    return [serialize_doc(p) for p in pickups.list_pickups(db, current.id, role, status)]

@app.get("/pickups/{pickup_id}")
def get_pickup(pickup_id: str, current: AuthedUser = Depends(get_current_user), db=Depends(get_db)):
    return serialize_doc(pickups.get_pickup_for(db, current, pickup_id))

@app.patch("/pickups/{pickup_id}")
def update_pickup(pickup_id: str, body: PickupUpdate, current: AuthedUser = Depends(get_current_user), db=Depends(get_db)):
    return serialize_doc(pickups.update_pickup(db, current, pickup_id, body.model_dump(exclude_unset=True)))

@app.get("/posts/{post_id}/active-pickup")
def active_pickup(post_id: str, current: AuthedUser = Depends(get_current_user), db=Depends(get_db)):
    posts.get_post(db, post_id)
    pickup = pickups.get_active_pickup(db, post_id)
    return {"hasActive": pickup is not None, "pickup": serialize_doc(pickup)}

@app.post("/pickups/{pickup_id}/confirm")
def confirm_pickup(pickup_id: str, current: AuthedUser = Depends(get_current_user), db=Depends(get_db)):
    return serialize_doc(pickups.confirm_pickup(db, current, pickup_id))

@app.post("/pickups/{pickup_id}/complete")
def complete_pickup(pickup_id: str, body: CompletePickupBody, current: AuthedUser = Depends(get_current_user), db=Depends(get_db)):
    return serialize_doc(pickups.complete_pickup(db, current, pickup_id, body.finalWaste, body.proofOfPickup))

@app.post("/pickups/{pickup_id}/cancel")
def cancel_pickup(pickup_id: str, body: Optional[CancelPickupBody] = None, current: AuthedUser = Depends(get_current_user), db=Depends(get_db)):
    return serialize_doc(pickups.cancel_pickup(db, current, pickup_id, body.reason if body else None))

# ----------------------
# Initiative support
# ----------------------
class SupportOfferBody(BaseModel):
    initiativeID: str
    offeredMaterials: List[OfferedMaterial] = Field(..., min_length=1)
    notes: Optional[str] = Field(None, max_length=500)

class ReasonBody(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)

class SchedulePickupBody(BaseModel):
    pickupLocation: Location
    pickupTime: Optional[datetime] = None

@app.post("/supports", status_code=201)
def offer_support(body: SupportOfferBody, current: AuthedUser = Depends(get_current_user), db=Depends(get_db)):
    return serialize_doc(supports.offer_support(db, current, body.initiativeID, body.offeredMaterials, body.notes))

@app.get("/supports")
def my_supports(
    role: str = Query("both", pattern="^(giver|collector|both)$"),
    current: AuthedUser = Depends(get_current_user),
    db=Depends(get_db),
):
    return [serialize_doc(s) for s in supports.list_supports(db, current.id, role)]

@app.get("/posts/{post_id}/supports")
def initiative_supports(post_id: str, status: Optional[str] = Query(None), db=Depends(get_db)):
    return [serialize_doc(s) for s in supports.list_for_initiative(db, post_id, status)]

@app.get("/supports/{support_id}")
def get_support(support_id: str, current: AuthedUser = Depends(get_current_user), db=Depends(get_db)):
    return serialize_doc(supports.get_support_for(db, current, support_id))

@app.post("/supports/{support_id}/accept")
def accept_support(support_id: str, current: AuthedUser = Depends(get_current_user), db=Depends(get_db)):
    return serialize_doc(supports.accept_support(db, current, support_id))

@app.post("/supports/{support_id}/decline")
def decline_support(support_id: str, body: Optional[ReasonBody] = None, current: AuthedUser = Depends(get_current_user), db=Depends(get_db)):
    return serialize_doc(supports.decline_support(db, current, support_id, body.reason if body else None))

@app.post("/supports/{support_id}/materials/{material_id}/accept")
def accept_support_material(support_id: str, material_id: str, current: AuthedUser = Depends(get_current_user), db=Depends(get_db)):
    return serialize_doc(supports.accept_material(db, current, support_id, material_id))

@app.post("/supports/{support_id}/materials/{material_id}/decline")
def decline_support_material(support_id: str, material_id: str, body: Optional[ReasonBody] = None, current: AuthedUser = Depends(get_current_user), db=Depends(get_db)):
    return serialize_doc(supports.decline_material(db, current, support_id, material_id, body.reason if body else None))

@app.post("/supports/{support_id}/schedule", status_code=201)
def schedule_support(support_id: str, body: SchedulePickupBody, current: AuthedUser = Depends(get_current_user), db=Depends(get_db)):
    return serialize_doc(pickups.schedule_support_pickup(db, current, support_id, body.pickupLocation, body.pickupTime))

@app.post("/supports/{support_id}/cancel")
def cancel_support(support_id: str, body: Optional[ReasonBody] = None, current: AuthedUser = Depends(get_current_user), db=Depends(get_db)):
    return serialize_doc(supports.cancel_support(db, current, support_id, body.reason if body else None))

# ----------------------
# Points & badges
# ----------------------
@app.get("/points/me")
def my_points(current: AuthedUser = Depends(get_current_user), db=Depends(get_db)):
    return {"userID": current.id, "totalPoints": points.balance(db, current.id)}

@app.get("/points/me/history")
def my_points_history(limit: int = Query(100, ge=1, le=500), current: AuthedUser = Depends(get_current_user), db=Depends(get_db)):
    rows = points.history(db, current.id, limit)
    return {"points": [serialize_doc(r) for r in rows], "totalPoints": points.balance(db, current.id)}

@app.get("/points/me/monthly")
def my_monthly_points(current: AuthedUser = Depends(get_current_user), db=Depends(get_db)):
    summary = points.monthly_summary(db, current.id)
    summary["pointsHistory"] = [serialize_doc(r) for r in summary["pointsHistory"]]
    return summary

@app.get("/points/leaderboard")
def leaderboard(limit: int = Query(10, ge=1, le=100), db=Depends(get_db)):
    return points.leaderboard(db, limit)

@app.post("/badges", status_code=201)
def create_badge(body: BadgeSchema, current: AuthedUser = Depends(require_admin), db=Depends(get_db)):
    return serialize_doc(points.create_badge(db, body))

@app.get("/badges")
def list_badges(db=Depends(get_db)):
    return [serialize_doc(b) for b in points.list_badges(db)]

@app.post("/badges/{badge_id}/claim")
def claim_badge(badge_id: str, current: AuthedUser = Depends(get_current_user), db=Depends(get_db)):
    result = points.award_badge(db, current.id, badge_id)
    return {"badge": serialize_doc(result["badge"]), "earnedAt": result["earnedAt"].isoformat()}

# ----------------------
# Materials
# ----------------------
class PriceBody(BaseModel):
    price: float = Field(..., ge=0)
    date: Optional[datetime] = None

@app.get("/materials")
def list_materials(category: Optional[str] = Query(None), db=Depends(get_db)):
    out = []
    for m in materials.list_materials(db, category):
        d = serialize_doc(m)
        d["trend"] = materials.price_trend(m)
        out.append(d)
    return out

@app.get("/materials/{material_id}")
def get_material(material_id: str, db=Depends(get_db)):
    m = materials.get_material(db, material_id)
    return {**serialize_doc(m), "trend": materials.price_trend(m)}

@app.post("/materials", status_code=201)
def create_material(body: MaterialSchema, current: AuthedUser = Depends(require_admin), db=Depends(get_db)):
    return serialize_doc(materials.create_material(db, body))

@app.post("/materials/{material_id}/prices")
def record_price(material_id: str, body: PriceBody, current: AuthedUser = Depends(require_admin), db=Depends(get_db)):
    return serialize_doc(materials.record_price(db, material_id, body.price, body.date))

# ----------------------
# Messages
# ----------------------
class MessageBody(BaseModel):
    receiverID: str
    postID: str
    message: str = Field(..., min_length=1, max_length=2000)

class MarkReadBody(BaseModel):
    messageIDs: List[str]

@app.post("/messages", status_code=201)
def send_message(body: MessageBody, current: AuthedUser = Depends(get_current_user), db=Depends(get_db)):
    return serialize_doc(messages.send_message(db, current, body.receiverID, body.postID, body.message))

@app.get("/messages/conversations")
def conversations(current: AuthedUser = Depends(get_current_user), db=Depends(get_db)):
    out = []
    for conv in messages.list_conversations(db, current.id):
        out.append({**conv, "lastMessage": serialize_doc(conv["lastMessage"])})
    return out

@app.get("/messages/{post_id}/{other_id}")
def conversation(post_id: str, other_id: str, current: AuthedUser = Depends(get_current_user), db=Depends(get_db)):
    return [serialize_doc(m) for m in messages.conversation(db, current.id, other_id, post_id)]

@app.post("/messages/read")
def mark_messages_read(body: MarkReadBody, current: AuthedUser = Depends(get_current_user), db=Depends(get_db)):
    return {"updated": messages.mark_read(db, current.id, body.messageIDs)}

# ----------------------
# Notifications
# ----------------------
@app.get("/notifications")
def my_notifications(unread: bool = Query(False), current: AuthedUser = Depends(get_current_user), db=Depends(get_db)):
    return [serialize_doc(n) for n in notifications.list_notifications(db, current.id, unread)]

@app.get("/notifications/unread-count")
def unread_notifications(current: AuthedUser = Depends(get_current_user), db=Depends(get_db)):
    return {"count": notifications.unread_count(db, current.id)}

@app.post("/notifications/read-all")
def read_all_notifications(current: AuthedUser = Depends(get_current_user), db=Depends(get_db)):
    return {"updated": notifications.mark_all_read(db, current.id)}

@app.post("/notifications/{notification_id}/read")
def read_notification(notification_id: str, current: AuthedUser = Depends(get_current_user), db=Depends(get_db)):
    return serialize_doc(notifications.mark_read(db, current.id, notification_id))

if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
