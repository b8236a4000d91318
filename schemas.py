"""
Database Schemas for RecycleHub

Each Pydantic model represents a document in a MongoDB collection.
Collection name is the lowercase of the entity name.

Example: class Pickup -> collection "pickup"

Field names and enum strings are part of the wire format and are kept
exactly as clients send them (camelCase, "Pickup_Completion", ...).
"""
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Union, get_args

from pydantic import BaseModel, ConfigDict, EmailStr, Field, TypeAdapter
from typing_extensions import Annotated

PostType = Literal["Waste", "Initiative", "Forum"]
PostStatus = Literal["Active", "Waiting", "Scheduled", "Collected", "Inactive"]
ForumCategory = Literal["General", "Tips", "News", "Questions"]
PickupStatus = Literal["Proposed", "Confirmed", "Completed", "Cancelled"]
TransactionKind = Literal["Post_Creation", "Post_Interaction", "Pickup_Completion", "Initiative_Support"]
SupportStatus = Literal["Pending", "PartiallyAccepted", "Accepted", "PickupScheduled", "Completed", "Declined", "Cancelled"]
OfferStatus = Literal["Pending", "Accepted", "Declined"]
NotificationType = Literal["Pickup", "Application", "Message", "Comment", "Badge", "Alert"]
UserRole = Literal["user", "collector", "admin"]
MaterialType = Literal[
    "pet_bottles",
    "plastic_bottle_caps",
    "hdpe_containers",
    "plastic_bags_sachets",
    "courier_bags",
    "plastic_cups",
    "microwavable_containers",
    "used_beverage_cartons",
    "aluminum_cans",
    "boxes_cartons",
    "paper",
]

POST_STATUSES = get_args(PostStatus)
TRANSACTION_KINDS = get_args(TransactionKind)
MATERIAL_TYPES = get_args(MaterialType)

Location = Union[str, Dict[str, Any]]


# Users (auth layer)
class User(BaseModel):
    name: str = Field(..., description="Full name")
    email: EmailStr = Field(..., description="Email address")
    passwordHash: str = Field(..., description="Password hash (server-side)")
    role: UserRole = Field("user", description="user | collector | admin")
    token: Optional[str] = Field(None, description="Simple auth token for sessions")
    badges: List[Dict[str, Any]] = Field(default_factory=list, description="Earned badges {badgeID, earnedAt}")


class AuthedUser(BaseModel):
    id: str
    role: str
    name: Optional[str] = None


# ----------------------
# Posts
# ----------------------

class WasteItem(BaseModel):
    model_config = ConfigDict(extra="forbid")

    itemName: str = Field(..., min_length=1)
    materialID: str = Field(..., min_length=1)
    sellingPrice: float = Field(..., ge=0)
    kg: float = Field(..., ge=0)


class InitiativeItem(BaseModel):
    model_config = ConfigDict(extra="forbid")

    itemName: str = Field(..., min_length=1)
    materialID: str = Field(..., min_length=1)
    kg: float = Field(..., ge=0)


class PostBase(BaseModel):
    model_config = ConfigDict(extra="forbid")

    title: str = Field(..., min_length=1, max_length=200)
    description: str = Field(..., min_length=1, max_length=5000)
    location: Optional[Location] = None


class WastePostCreate(PostBase):
    postType: Literal["Waste"]
    items: List[WasteItem] = Field(..., min_length=1)


class InitiativePostCreate(PostBase):
    postType: Literal["Initiative"]
    items: List[InitiativeItem] = Field(..., min_length=1)
    projectDeadline: Optional[datetime] = None


class ForumPostCreate(PostBase):
    postType: Literal["Forum"]
    category: ForumCategory = "General"


# Discriminated on postType: exactly one variant payload validates
PostCreate = Annotated[
    Union[WastePostCreate, InitiativePostCreate, ForumPostCreate],
    Field(discriminator="postType"),
]
post_create_adapter = TypeAdapter(PostCreate)

POST_VARIANTS = {
    "Waste": WastePostCreate,
    "Initiative": InitiativePostCreate,
    "Forum": ForumPostCreate,
}
COMMON_POST_FIELDS = ("title", "description", "location")


class Comment(BaseModel):
    postID: str
    userID: str
    content: str = Field(..., min_length=1, max_length=1000)


class Like(BaseModel):
    postID: str
    userID: str


# ----------------------
# Pickups
# ----------------------

class FinalWaste(BaseModel):
    model_config = ConfigDict(extra="forbid")

    itemName: str = Field(..., min_length=1)
    materialIDs: List[Annotated[str, Field(min_length=1)]] = Field(..., min_length=1)
    price: float = Field(..., ge=0)
    kg: float = Field(..., ge=0)


class Pickup(BaseModel):
    postID: str
    postType: PostType
    giverID: str
    collectorID: str
    proposedBy: Optional[str] = None
    supportID: Optional[str] = None
    pickupTime: Optional[datetime] = None
    pickupLocation: Location
    status: PickupStatus = "Proposed"
    finalWaste: Optional[FinalWaste] = None
    proofOfPickup: Optional[str] = None
    cancellationReason: Optional[str] = None
    proposedAt: Optional[datetime] = None
    confirmedAt: Optional[datetime] = None
    completedAt: Optional[datetime] = None
    cancelledAt: Optional[datetime] = None


class PickupUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    pickupTime: Optional[datetime] = None
    pickupLocation: Optional[Location] = None


# ----------------------
# Initiative support
# ----------------------

class OfferedMaterial(BaseModel):
    model_config = ConfigDict(extra="forbid")

    materialID: str = Field(..., min_length=1)
    materialName: str = Field(..., min_length=1)
    quantity: float = Field(..., gt=0)
    unit: str = "kg"
    status: OfferStatus = "Pending"
    rejectionReason: Optional[str] = None


class Support(BaseModel):
    initiativeID: str
    giverID: str
    collectorID: str
    offeredMaterials: List[OfferedMaterial] = Field(..., min_length=1)
    notes: Optional[str] = Field(None, max_length=500)
    status: SupportStatus = "Pending"
    pickupID: Optional[str] = None
    rejectionReason: Optional[str] = None
    cancellationReason: Optional[str] = None
    cancellationBy: Optional[str] = None
    acceptedAt: Optional[datetime] = None
    declinedAt: Optional[datetime] = None
    completedAt: Optional[datetime] = None
    cancelledAt: Optional[datetime] = None


# ----------------------
# Points & badges)
# ----------------------

class Point(BaseModel):
    userID: str
    pointsEarned: int = Field(..., gt=0)
    transaction: TransactionKind
    receivedAt: Optional[datetime] = None


class BadgeRequirements(BaseModel):
    model_config = ConfigDict(extra="forbid")

    minPoints: Optional[int] = Field(None, ge=1)
    minPostsCreated: Optional[int] = Field(None, ge=1)
    minPickupsCompleted: Optional[int] = Field(None, ge=1)
    minTransactionPoints: Optional[Dict[TransactionKind, int]] = None


class Badge(BaseModel):
    badgeName: str = Field(..., min_length=1, max_length=100)
    description: str = Field(..., min_length=1)
    icon: str = Field(..., min_length=1)
    requirements: BadgeRequirements
    isActive: bool = True


# ----------------------
# Materials
# ----------------------

class PriceEntry(BaseModel):
    price: float = Field(..., ge=0)
    date: datetime


class Material(BaseModel):
    type: MaterialType
    category: str = Field("Recyclable")
    averagePricePerKg: float = Field(0, ge=0)
    pricingHistory: List[PriceEntry] = Field(default_factory=list)


# ----------------------
# Messaging & notifications
# ----------------------

class Message(BaseModel):
    senderID: str
    receiverID: str
    postID: str
    message: str = Field(..., min_length=1, max_length=2000)
    isRead: bool = False


class Notification(BaseModel):
    userID: str = Field(..., min_length=1)
    type: NotificationType
    title: str = Field(..., min_length=1)
    message: str = Field(..., min_length=1)
    referenceID: Optional[str] = None
    isRead: bool = False
