"""
Pydantic schemas for the asset-management API.
"""

from __future__ import annotations

from typing import ClassVar, Optional

from pydantic import BaseModel, Field, model_validator


class PatchModel(BaseModel):
    """
    Partial update body. Fields named in `non_nullable` may be omitted but
    not sent as null.
    """

    non_nullable: ClassVar[tuple[str, ...]] = ()

    @model_validator(mode="after")
    def _reject_nulls(self):
        nulls = [
            name
            for name in self.non_nullable
            if name in self.model_fields_set and getattr(self, name) is None
        ]
        if nulls:
            raise ValueError(f"{', '.join(nulls)} may not be null")
        return self


class LoginRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=64)
    password: str = Field(..., min_length=1, max_length=72)


class UserCreate(BaseModel):
    username: str = Field(..., min_length=1, max_length=64)
    password: str = Field(..., min_length=1, max_length=72)
    first_name: str = ""
    last_name: str = ""
    email: Optional[str] = None
    department: Optional[str] = None
    is_admin: bool = False
    permissions: Optional[dict] = None


class UserUpdate(PatchModel):
    non_nullable = (
        "username",
        "password",
        "first_name",
        "last_name",
        "is_admin",
        "permissions",
    )

    username: Optional[str] = Field(None, min_length=1, max_length=64)
    password: Optional[str] = Field(None, min_length=1, max_length=72)
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    department: Optional[str] = None
    is_admin: Optional[bool] = None
    permissions: Optional[dict] = None


class UserResponse(BaseModel):
    id: int
    username: str
    first_name: str
    last_name: str
    email: Optional[str] = None
    department: Optional[str] = None
    is_admin: bool
    permissions: dict
    created_at: float
    updated_at: float


class AssetCreate(BaseModel):
    asset_tag: str = Field(..., min_length=1, max_length=64)
    name: str = Field(..., min_length=1)
    category: str = "other"
    status: str = "available"
    serial_number: Optional[str] = None
    manufacturer: Optional[str] = None
    model: Optional[str] = None
    location: Optional[str] = None
    assigned_to: Optional[int] = None
    purchase_date: Optional[str] = None
    purchase_cost: Optional[float] = Field(None, ge=0)
    notes: Optional[str] = None


class AssetUpdate(PatchModel):
    non_nullable = ("asset_tag", "name", "category", "status")

    asset_tag: Optional[str] = Field(None, min_length=1, max_length=64)
    name: Optional[str] = Field(None, min_length=1)
    category: Optional[str] = None
    status: Optional[str] = None
    serial_number: Optional[str] = None
    manufacturer: Optional[str] = None
    model: Optional[str] = None
    location: Optional[str] = None
    assigned_to: Optional[int] = None
    purchase_date: Optional[str] = None
    purchase_cost: Optional[float] = Field(None, ge=0)
    notes: Optional[str] = None


class AssetResponse(AssetCreate):
    id: int
    created_at: float
    updated_at: float


class LicenseCreate(BaseModel):
    name: str = Field(..., min_length=1)
    license_key: Optional[str] = None
    seats: int = Field(1, ge=0)
    assigned_seats: int = Field(0, ge=0)
    company: Optional[str] = None
    manufacturer: Optional[str] = None
    expiration_date: Optional[str] = None
    status: str = "active"
    notes: Optional[str] = None


class LicenseUpdate(PatchModel):
    non_nullable = ("name", "seats", "assigned_seats", "status")

    name: Optional[str] = Field(None, min_length=1)
    license_key: Optional[str] = None
    seats: Optional[int] = Field(None, ge=0)
    assigned_seats: Optional[int] = Field(None, ge=0)
    company: Optional[str] = None
    manufacturer: Optional[str] = None
    expiration_date: Optional[str] = None
    status: Optional[str] = None
    notes: Optional[str] = None


class LicenseResponse(LicenseCreate):
    id: int
    created_at: float
    updated_at: float


class AccessoryCreate(BaseModel):
    name: str = Field(..., min_length=1)
    category: str = "other"
    quantity: int = Field(0, ge=0)
    status: str = "available"
    manufacturer: Optional[str] = None
    model: Optional[str] = None
    location: Optional[str] = None
    assigned_to: Optional[int] = None
    notes: Optional[str] = None


class AccessoryUpdate(PatchModel):
    non_nullable = ("name", "category", "quantity", "status")

    name: Optional[str] = Field(None, min_length=1)
    category: Optional[str] = None
    quantity: Optional[int] = Field(None, ge=0)
    status: Optional[str] = None
    manufacturer: Optional[str] = None
    model: Optional[str] = None
    location: Optional[str] = None
    assigned_to: Optional[int] = None
    notes: Optional[str] = None


class AccessoryResponse(AccessoryCreate):
    id: int
    created_at: float
    updated_at: float


class ConsumableCreate(BaseModel):
    name: str = Field(..., min_length=1)
    category: str = "other"
    quantity: int = Field(0, ge=0)
    min_quantity: int = Field(0, ge=0)
    status: str = "available"
    manufacturer: Optional[str] = None
    location: Optional[str] = None
    notes: Optional[str] = None


class ConsumableUpdate(PatchModel):
    non_nullable = ("name", "category", "quantity", "min_quantity", "status")

    name: Optional[str] = Field(None, min_length=1)
    category: Optional[str] = None
    quantity: Optional[int] = Field(None, ge=0)
    min_quantity: Optional[int] = Field(None, ge=0)
    status: Optional[str] = None
    manufacturer: Optional[str] = None
    location: Optional[str] = None
    notes: Optional[str] = None


class ConsumableResponse(ConsumableCreate):
    id: int
    created_at: float
    updated_at: float
