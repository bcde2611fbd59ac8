"""
HTTP routes for authentication and the managed inventory resources.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel

from itam.dependencies import get_storage
from itam.errors import DuplicateRecordError, InvalidRecordError, RecordNotFoundError
from itam.schemas import (
    AccessoryCreate,
    AccessoryResponse,
    AccessoryUpdate,
    AssetCreate,
    AssetResponse,
    AssetUpdate,
    ConsumableCreate,
    ConsumableResponse,
    ConsumableUpdate,
    LicenseCreate,
    LicenseResponse,
    LicenseUpdate,
    LoginRequest,
    UserCreate,
    UserResponse,
    UserUpdate,
)
from itam.security import hash_password, verify_password
from itam.storage import StorageHandle, empty_permissions

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/login", response_model=UserResponse)
def login(
    payload: LoginRequest,
    request: Request,
    storage: StorageHandle = Depends(get_storage),
):
    user = storage.get_user_by_username(payload.username)
    if user is None or not verify_password(payload.password, user.password):
        raise HTTPException(status_code=401, detail="Invalid username or password")
    # Picked up by the request logging middleware as the actor.
    request.state.user = user
    return user.as_dict()


@router.get("/users", response_model=list[UserResponse])
def list_users(storage: StorageHandle = Depends(get_storage)):
    return [user.as_dict() for user in storage.list_users()]


@router.get("/users/{user_id}", response_model=UserResponse)
def get_user(user_id: int, storage: StorageHandle = Depends(get_storage)):
    user = storage.get_user(user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return user.as_dict()


@router.post("/users", response_model=UserResponse, status_code=201)
def create_user(payload: UserCreate, storage: StorageHandle = Depends(get_storage)):
    fields = payload.model_dump()
    fields["password"] = hash_password(payload.password)
    if fields["permissions"] is None:
        fields["permissions"] = empty_permissions()
    try:
        user = storage.create_user(fields)
    except DuplicateRecordError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    except InvalidRecordError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    return user.as_dict()


@router.patch("/users/{user_id}", response_model=UserResponse)
def update_user(
    user_id: int, payload: UserUpdate, storage: StorageHandle = Depends(get_storage)
):
    fields = payload.model_dump(exclude_unset=True)
    if fields.get("password"):
        fields["password"] = hash_password(fields["password"])
    else:
        fields.pop("password", None)
    try:
        user = storage.update_user(user_id, fields)
    except RecordNotFoundError:
        raise HTTPException(status_code=404, detail="User not found")
    except DuplicateRecordError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    except InvalidRecordError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    return user.as_dict()


@router.delete("/users/{user_id}", status_code=204)
def delete_user(user_id: int, storage: StorageHandle = Depends(get_storage)):
    try:
        storage.delete_user(user_id)
    except RecordNotFoundError:
        raise HTTPException(status_code=404, detail="User not found")


def _register_crud(
    path: str,
    singular: str,
    plural: str,
    create_model: type[BaseModel],
    update_model: type[BaseModel],
    response_model: type[BaseModel],
) -> None:
    """Mount list/get/create/update/delete routes for one resource."""
    label = singular.capitalize()

    @router.get(f"/{path}", response_model=list[response_model], name=f"list_{plural}")
    def list_items(storage: StorageHandle = Depends(get_storage)):
        return [item.as_dict() for item in getattr(storage, f"list_{plural}")()]

    @router.get(f"/{path}/{{item_id}}", response_model=response_model, name=f"get_{singular}")
    def get_item(item_id: int, storage: StorageHandle = Depends(get_storage)):
        item = getattr(storage, f"get_{singular}")(item_id)
        if not item:
            raise HTTPException(status_code=404, detail=f"{label} not found")
        return item.as_dict()

    @router.post(
        f"/{path}", response_model=response_model, status_code=201, name=f"create_{singular}"
    )
    def create_item(payload: create_model, storage: StorageHandle = Depends(get_storage)):
        try:
            item = getattr(storage, f"create_{singular}")(payload.model_dump())
        except DuplicateRecordError as exc:
            raise HTTPException(status_code=409, detail=str(exc))
        except InvalidRecordError as exc:
            raise HTTPException(status_code=422, detail=str(exc))
        return item.as_dict()

    @router.patch(
        f"/{path}/{{item_id}}", response_model=response_model, name=f"update_{singular}"
    )
    def update_item(
        item_id: int,
        payload: update_model,
        storage: StorageHandle = Depends(get_storage),
    ):
        try:
            item = getattr(storage, f"update_{singular}")(
                item_id, payload.model_dump(exclude_unset=True)
            )
        except RecordNotFoundError:
            raise HTTPException(status_code=404, detail=f"{label} not found")
        except DuplicateRecordError as exc:
            raise HTTPException(status_code=409, detail=str(exc))
        except InvalidRecordError as exc:
            raise HTTPException(status_code=422, detail=str(exc))
        return item.as_dict()

    @router.delete(f"/{path}/{{item_id}}", status_code=204, name=f"delete_{singular}")
    def delete_item(item_id: int, storage: StorageHandle = Depends(get_storage)):
        try:
            getattr(storage, f"delete_{singular}")(item_id)
        except RecordNotFoundError:
            raise HTTPException(status_code=404, detail=f"{label} not found")


_register_crud("assets", "asset", "assets", AssetCreate, AssetUpdate, AssetResponse)
_register_crud(
    "licenses", "license", "licenses", LicenseCreate, LicenseUpdate, LicenseResponse
)
_register_crud(
    "accessories",
    "accessory",
    "accessories",
    AccessoryCreate,
    AccessoryUpdate,
    AccessoryResponse,
)
_register_crud(
    "consumables",
    "consumable",
    "consumables",
    ConsumableCreate,
    ConsumableUpdate,
    ConsumableResponse,
)
