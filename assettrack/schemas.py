from typing import Annotated, Optional
from enum import Enum
from datetime import datetime, timezone

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


def _as_utc(v: datetime) -> datetime:
    # 后端 TIMESTAMP(3) 不带时区，统一按 UTC
    if v.tzinfo is None:
        return v.replace(tzinfo=timezone.utc)
    return v.astimezone(timezone.utc)


Timestamp = Annotated[datetime, AfterValidator(_as_utc)]


class CamelModel(BaseModel):
    # 库里的列是 camelCase（updatedAt / companyId），Python 侧用 snake_case
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        str_strip_whitespace=True,
    )

    def to_row(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")

    def to_patch(self) -> dict:
        return self.model_dump(by_alias=True, mode="json", exclude_unset=True)


class AssetStatus(str, Enum):
    available = "available"
    checked_out = "checked_out"
    maintenance = "maintenance"
    retired = "retired"


class AssetCondition(str, Enum):
    excellent = "excellent"
    good = "good"
    fair = "fair"
    poor = "poor"
    needs_repair = "needs_repair"


def _normalize_enum(v):
    # 老数据里有 "Available" / "Checked Out" / "Needs Repair"
    if isinstance(v, str):
        return v.strip().lower().replace(" ", "_").replace("-", "_")
    return v


class Asset(CamelModel):
    id: str
    name: str
    category: str
    serial: Optional[str] = None
    condition: Optional[AssetCondition] = None
    status: AssetStatus = AssetStatus.available
    purchase_date: Optional[Timestamp] = None
    inspection_date: Optional[Timestamp] = None
    warranties_date: Optional[Timestamp] = None
    qr: Optional[str] = None
    photos: list[str] = Field(default_factory=list)
    documents: list[str] = Field(default_factory=list)
    lat: Optional[float] = None
    lng: Optional[float] = None
    company_id: Optional[str] = None
    created_at: Optional[Timestamp] = None
    updated_at: Optional[Timestamp] = None

    @field_validator("status", "condition", mode="before")
    @classmethod
    def _legacy_enum(cls, v):
        return _normalize_enum(v)

    @field_validator("photos", "documents", mode="before")
    @classmethod
    def _none_as_empty(cls, v):
        return v or []


class AssetCreate(CamelModel):
    name: str = Field(..., min_length=1)
    category: str = Field(..., min_length=1)
    serial: Optional[str] = None
    condition: Optional[AssetCondition] = None
    status: AssetStatus = AssetStatus.available
    purchase_date: Optional[Timestamp] = None
    inspection_date: Optional[Timestamp] = None
    warranties_date: Optional[Timestamp] = None
    qr: Optional[str] = None
    photos: list[str] = Field(default_factory=list)
    documents: list[str] = Field(default_factory=list)
    lat: Optional[float] = None
    lng: Optional[float] = None
    company_id: Optional[str] = None

    model_config = {
        "json_schema_extra": {
            "examples": [
                {"name": "Laptop", "category": "Electronics", "serial": "ABC123", "status": "available"},
            ]
        }
    }

    @field_validator("status", "condition", mode="before")
    @classmethod
    def _legacy_enum(cls, v):
        return _normalize_enum(v)


class AssetUpdate(CamelModel):
    name: Optional[str] = Field(None, min_length=1)
    category: Optional[str] = Field(None, min_length=1)
    serial: Optional[str] = None
    condition: Optional[AssetCondition] = None
    status: Optional[AssetStatus] = None
    purchase_date: Optional[Timestamp] = None
    inspection_date: Optional[Timestamp] = None
    warranties_date: Optional[Timestamp] = None
    qr: Optional[str] = None
    photos: Optional[list[str]] = None
    documents: Optional[list[str]] = None
    lat: Optional[float] = None
    lng: Optional[float] = None

    @field_validator("status", "condition", mode="before")
    @classmethod
    def _legacy_enum(cls, v):
        return _normalize_enum(v)


class AssetListResponse(BaseModel):
    items: list[Asset]
    total: int


class Assignment(CamelModel):
    id: str
    asset_id: str
    assigned_to: str
    site: Optional[str] = None
    vehicle: Optional[str] = None
    out_at: Timestamp
    due_at: Optional[Timestamp] = None
    in_at: Optional[Timestamp] = None
    created_at: Optional[Timestamp] = None
    updated_at: Optional[Timestamp] = None

    @property
    def is_open(self) -> bool:
        return self.in_at is None


class AssignmentCreate(CamelModel):
    assigned_to: str = Field(..., min_length=1, description="借用人（用户 ID / 姓名）")
    site: Optional[str] = None
    vehicle: Optional[str] = None
    due_at: Optional[Timestamp] = None
    out_at: Optional[Timestamp] = None


class AssignmentUpdate(CamelModel):
    site: Optional[str] = None
    vehicle: Optional[str] = None
    due_at: Optional[Timestamp] = None
    in_at: Optional[Timestamp] = None


class AssignmentListResponse(BaseModel):
    items: list[Assignment]
    total: int


class Inspection(CamelModel):
    id: str
    asset_id: str
    checklist: str
    result: str
    signed_by: Optional[str] = None
    next_due: Optional[Timestamp] = None
    created_at: Optional[Timestamp] = None
    updated_at: Optional[Timestamp] = None


class InspectionCreate(CamelModel):
    asset_id: str = Field(..., min_length=1)
    checklist: str = Field(..., min_length=1)
    result: str = Field(..., min_length=1)
    signed_by: Optional[str] = None
    next_due: Optional[Timestamp] = None


class InspectionUpdate(CamelModel):
    checklist: Optional[str] = Field(None, min_length=1)
    result: Optional[str] = Field(None, min_length=1)
    signed_by: Optional[str] = None
    next_due: Optional[Timestamp] = None


class InspectionBuckets(BaseModel):
    overdue: list[Inspection]
    upcoming: list[Inspection]
    completed: list[Inspection]


class AuditLog(CamelModel):
    id: str
    action: str
    user_id: Optional[str] = None
    asset_id: Optional[str] = None
    details: Optional[str] = None
    timestamp: Timestamp


class LogLevel(str, Enum):
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"


class AuditLogView(CamelModel):
    id: str
    timestamp: Timestamp
    level: LogLevel
    message: str
    user: str
    action: str
    asset_id: Optional[str] = None
    details: Optional[str] = None


class User(CamelModel):
    id: str
    email: str
    name: Optional[str] = None
    avatar: Optional[str] = None
    role: str = "Worker"
    company_id: Optional[str] = None
    created_at: Optional[Timestamp] = None
    updated_at: Optional[Timestamp] = None


class UserCreate(CamelModel):
    email: str = Field(..., min_length=3, pattern=r"^[^@\s]+@[^@\s]+$")
    name: Optional[str] = None
    avatar: Optional[str] = None
    role: str = "Worker"
    company_id: Optional[str] = None


class UserUpdate(CamelModel):
    name: Optional[str] = None
    avatar: Optional[str] = None
    role: Optional[str] = Field(None, min_length=1)


class Company(CamelModel):
    id: str
    name: str
    slug: str
    logo: Optional[str] = None
    theme: Optional[str] = None
    created_at: Optional[Timestamp] = None
    updated_at: Optional[Timestamp] = None


class CompanyCreate(CamelModel):
    name: str = Field(..., min_length=1)
    slug: str = Field(..., min_length=1, pattern=r"^[a-z0-9-]+$")
    logo: Optional[str] = None
    theme: Optional[str] = None


class CompanyUpdate(CamelModel):
    name: Optional[str] = Field(None, min_length=1)
    logo: Optional[str] = None
    theme: Optional[str] = None
