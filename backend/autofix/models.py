from datetime import datetime, timezone
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


RequestStatus = Literal["pending", "accepted", "rejected", "completed", "in_progress", "cancelled"]
NotificationType = Literal[
    "request-received",
    "acceptance",
    "rejection",
    "arrival",
    "completion",
    "message",
    "system",
]


class Location(BaseModel):
    latitude: float
    longitude: float
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None


class PaymentMethod(BaseModel):
    id: str
    type: Literal["card", "paypal", "apple_pay"]
    last_four: Optional[str] = None
    is_default: bool = False


class Customer(BaseModel):
    id: str = ""
    user_type: Literal["customer"] = "customer"
    full_name: str
    phone: str = ""
    email: str = ""
    profile_picture: Optional[str] = None
    created_at: str = Field(default_factory=utc_now_iso)
    car_type: str = ""
    car_photo: Optional[str] = None
    license_plate: Optional[str] = None
    location: Optional[Location] = None
    payment_methods: list[PaymentMethod] = Field(default_factory=list)


class Mechanic(BaseModel):
    id: str = ""
    user_type: Literal["mechanic"] = "mechanic"
    full_name: str
    phone: str = ""
    email: str = ""
    profile_picture: Optional[str] = None
    created_at: str = Field(default_factory=utc_now_iso)
    services: list[str] = Field(default_factory=list)
    location: Optional[Location] = None
    is_available: bool = True
    rating: float = 0.0
    experience: int = 0
    hourly_rate: float = 0.0
    total_jobs: int = 0
    specialization: list[str] = Field(default_factory=list)
    verification_status: Literal["pending", "verified", "rejected"] = "pending"
    description: Optional[str] = None


User = Annotated[Union[Customer, Mechanic], Field(discriminator="user_type")]
_user_adapter: TypeAdapter = TypeAdapter(User)


def parse_user(raw: Any) -> Union[Customer, Mechanic]:
    return _user_adapter.validate_python(raw)


class PublicProfile(BaseModel):
    id: str
    user_type: Literal["customer", "mechanic"]
    full_name: str = ""
    phone: str = ""
    profile_picture: Optional[str] = None
    car_type: Optional[str] = None
    location: Optional[Location] = None


class ServiceRequest(BaseModel):
    id: str = ""
    customer_id: str
    mechanic_id: str
    car_type: str = ""
    description: str = ""
    service_type: str = ""
    status: RequestStatus = "pending"
    urgency: Literal["low", "medium", "high"] = "medium"
    payment_status: Literal["pending", "paid", "refunded"] = "pending"
    location: Optional[Location] = None
    created_at: str = Field(default_factory=utc_now_iso)
    accepted_at: Optional[str] = None
    completed_at: Optional[str] = None
    estimated_cost: Optional[float] = None
    final_cost: Optional[float] = None
    customer_notes: Optional[str] = None
    mechanic_notes: Optional[str] = None
    mechanic_arrived: bool = False
    service_completed: bool = False
    # Joined counterpart views; local only.
    customer: Optional[PublicProfile] = None
    mechanic: Optional[PublicProfile] = None

    def to_remote_row(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude={"customer", "mechanic"})


class Message(BaseModel):
    id: str = ""
    request_id: str
    sender_id: Optional[str] = None
    text: str
    timestamp: str = Field(default_factory=utc_now_iso)
    type: Literal["text", "image", "location", "system"] = "text"
    image_url: Optional[str] = None
    read: bool = False

    @property
    def is_system(self) -> bool:
        return self.sender_id is None


class Review(BaseModel):
    id: str = ""
    mechanic_id: str
    customer_id: str
    request_id: str
    rating: int = Field(ge=1, le=5)
    comment: str = ""
    created_at: str = Field(default_factory=utc_now_iso)
    customer_name: str = ""


class NotificationRecord(BaseModel):
    id: str
    user_id: str
    title: str
    body: str
    type: NotificationType = "system"
    request_id: Optional[str] = None
    read: bool = False
    created_at: str = Field(default_factory=utc_now_iso)
    deep_link: Optional[str] = None


class ChangeEvent(BaseModel):
    collection: str
    event_type: Literal["INSERT", "UPDATE"]
    new: Dict[str, Any] = Field(default_factory=dict)
    old: Dict[str, Any] = Field(default_factory=dict)
    commit_timestamp: str = Field(default_factory=utc_now_iso)
