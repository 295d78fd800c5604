from datetime import datetime
from typing import Optional, Any, Dict, List
from pydantic import BaseModel, ConfigDict, field_validator, model_validator

from .rbac import COLLECTION_PERMISSION_GROUPS


def _check_permission_groups(value: List[str]) -> List[str]:
    unknown = [name for name in value if name not in COLLECTION_PERMISSION_GROUPS]
    if unknown:
        raise ValueError(f"Unknown permission groups: {', '.join(unknown)}")
    return sorted(set(value))


class CollectionCreate(BaseModel):
    name: str
    description: str = ""
    icon: Optional[str] = None
    default_permissions: List[str] = []

    @field_validator("default_permissions")
    @classmethod
    def known_groups(cls, value: List[str]) -> List[str]:
        return _check_permission_groups(value)


class CollectionOut(BaseModel):
    id: str
    organization_id: Optional[str] = None
    name: str
    description: str
    icon: Optional[str] = None
    default_permissions: List[str] = []
    created_at: datetime


class CollectionPermissionsOut(BaseModel):
    collection_id: str
    permissions: List[str]


class CollectionAclUpdate(BaseModel):
    user_id: Optional[str] = None
    user_group_id: Optional[str] = None
    permissions: List[str]

    @field_validator("permissions")
    @classmethod
    def known_groups(cls, value: List[str]) -> List[str]:
        return _check_permission_groups(value)

    @model_validator(mode="after")
    def one_grantee(self):
        if (self.user_id is None) == (self.user_group_id is None):
            raise ValueError("Exactly one of user_id or user_group_id is required")
        return self


class CollectionAclOut(BaseModel):
    id: int
    user_id: Optional[str] = None
    user_group_id: Optional[str] = None
    permissions: List[str]
    created_at: datetime


class AuditLogOut(BaseModel):
    id: int
    user_id: int
    action: str
    target_type: str | None = None
    target_id: int | None = None
    details: Dict[str, Any] = {}
    created_at: datetime
    model_config = ConfigDict(from_attributes=True)


class AuditReportItem(BaseModel):
    action: str
    count: int
