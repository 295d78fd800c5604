from dataclasses import fields
from typing import List, Optional

import strawberry
from strawberry.scalars import JSON

from .types import BranchTypeEnum


def input_to_dict(data) -> dict:
    """Keys the client actually sent; an explicit null stays as ``None``."""

    return {
        field.name: getattr(data, field.name)
        for field in fields(data)
        if getattr(data, field.name) is not strawberry.UNSET
    }


@strawberry.input
class ToolCreateInput:
    collection_id: str
    name: str
    description: str
    component: str
    configuration: JSON
    inputs: List[JSON]
    keywords: List[str]
    branch_type: Optional[BranchTypeEnum] = strawberry.UNSET
    icon: Optional[str] = strawberry.UNSET
    major_change_description: Optional[JSON] = strawberry.UNSET


@strawberry.input
class ToolUpdateInput:
    collection_id: Optional[str] = strawberry.UNSET
    branch_type: Optional[BranchTypeEnum] = strawberry.UNSET
    name: Optional[str] = strawberry.UNSET
    description: Optional[str] = strawberry.UNSET
    component: Optional[str] = strawberry.UNSET
    configuration: Optional[JSON] = strawberry.UNSET
    inputs: Optional[List[JSON]] = strawberry.UNSET
    keywords: Optional[List[str]] = strawberry.UNSET
    icon: Optional[str] = strawberry.UNSET
    major_change_description: Optional[JSON] = strawberry.UNSET


@strawberry.input
class WorkflowCreateInput:
    collection_id: str
    name: str
    description: str
    contents: JSON
    keywords: List[str]
    branch_type: Optional[BranchTypeEnum] = strawberry.UNSET
    icon: Optional[str] = strawberry.UNSET
    major_change_description: Optional[JSON] = strawberry.UNSET


@strawberry.input
class WorkflowUpdateInput:
    collection_id: Optional[str] = strawberry.UNSET
    branch_type: Optional[BranchTypeEnum] = strawberry.UNSET
    name: Optional[str] = strawberry.UNSET
    description: Optional[str] = strawberry.UNSET
    contents: Optional[JSON] = strawberry.UNSET
    keywords: Optional[List[str]] = strawberry.UNSET
    icon: Optional[str] = strawberry.UNSET
    major_change_description: Optional[JSON] = strawberry.UNSET


@strawberry.input
class SpaceCreateInput:
    name: str
    widgets: List[JSON]
    visible_to_org: bool
    visible_to_group_ids: List[str]
    icon: Optional[str] = None


@strawberry.input
class SpaceUpdateInput:
    name: Optional[str] = None
    widgets: Optional[List[JSON]] = None
    visible_to_org: Optional[bool] = None
    visible_to_group_ids: Optional[List[str]] = None
    icon: Optional[str] = None


@strawberry.input
class WidgetCreateInput:
    contents: JSON
    inputs: Optional[List[JSON]] = None


@strawberry.input
class WidgetUpdateInput:
    contents: Optional[JSON] = None
    inputs: Optional[List[JSON]] = None
