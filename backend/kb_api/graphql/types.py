"""GraphQL object types and the row -> type converters."""

import asyncio
from datetime import datetime
from typing import Annotated, Callable, List, Optional, Union

import strawberry
from strawberry.scalars import JSON
from strawberry.types import Info
from sqlalchemy.orm import Session

from .. import models
from ..errors import KBError
from ..ids import InvalidIdError, encode_id
from ..models import BranchType
from ..services import visibility
from ..services.org_nodes import space_acl
from ..services.versioned_store import SPACES, TOOLS, WIDGETS, WORKFLOWS, VersionedStore, get_metadata
from .context import context_db, context_viewer

BranchTypeEnum = strawberry.enum(BranchType, name="BranchTypeEnum")


@strawberry.type(name="KBError")
class KBErrorType:
    type: str
    code: str
    message: str
    param: Optional[str] = None

    @classmethod
    def from_error(cls, error: KBError) -> "KBErrorType":
        return cls(type=error.type, code=error.code, message=error.message, param=error.param)


@strawberry.type
class Viewer:
    id: strawberry.ID
    email: Optional[str]
    name: Optional[str]
    organization_id: Optional[str]
    is_organization_admin: bool


async def _related_rows(info: Info, convert: Callable, finder: Callable, *args):
    """Run a visibility finder off the event loop and convert what it returns."""

    db, vc = context_db(info), context_viewer(info)

    def load():
        rows = finder(db, vc, *args)
        return None if rows is None else [convert(row) for row in rows]

    return await asyncio.to_thread(load)


async def _revision(info: Info, store: VersionedStore, convert: Callable, opaque_id: Optional[str]):
    if not opaque_id:
        return None
    try:
        row_id = store.decode_row_id(opaque_id)
    except InvalidIdError:
        return None
    db, vc = context_db(info), context_viewer(info)

    def load():
        row = visibility.find_by_id(db, vc, store, row_id)
        return convert(row) if row else None

    return await asyncio.to_thread(load)


@strawberry.type
class Tool:
    id: strawberry.ID
    static_id: str
    branch_id: Optional[str]
    branch_type: BranchTypeEnum
    is_latest: bool
    is_archived: bool
    is_first: bool
    archive_reason: Optional[str]
    metadata: JSON
    major_change_description: Optional[JSON]
    created_at: datetime
    created_by_user_id: str
    previous_version_id: Optional[str]
    branched_from_id: Optional[str]
    collection_id: str
    name: str
    description: str
    icon: Optional[str]
    component: str
    inputs: JSON
    configuration: JSON
    keywords: List[str]

    @strawberry.field
    async def previous_version(self, info: Info) -> Optional["Tool"]:
        return await _revision(info, TOOLS, tool_from_row, self.previous_version_id)

    @strawberry.field
    async def branched_from(self, info: Info) -> Optional["Tool"]:
        return await _revision(info, TOOLS, tool_from_row, self.branched_from_id)

    @strawberry.field
    async def branches(
        self, info: Info, created_by_me: Optional[bool] = None, branch_type: Optional[BranchTypeEnum] = None
    ) -> List["Tool"]:
        return await _related_rows(
            info, tool_from_row, visibility.find_branches, TOOLS, self.static_id, created_by_me, branch_type
        )

    @strawberry.field
    async def published_versions(self, info: Info, only_major: Optional[bool] = None) -> List["Tool"]:
        return await _related_rows(
            info, tool_from_row, visibility.find_published_versions, TOOLS, self.static_id, only_major
        )

    @strawberry.field
    async def branch_versions(self, info: Info, only_major: Optional[bool] = None) -> Optional[List["Tool"]]:
        return await _related_rows(
            info, tool_from_row, visibility.find_branch_versions, TOOLS, self.branch_id, only_major
        )


@strawberry.type
class Workflow:
    id: strawberry.ID
    static_id: str
    branch_id: Optional[str]
    branch_type: BranchTypeEnum
    is_latest: bool
    is_archived: bool
    is_first: bool
    archive_reason: Optional[str]
    metadata: JSON
    major_change_description: Optional[JSON]
    created_at: datetime
    created_by_user_id: str
    previous_version_id: Optional[str]
    branched_from_id: Optional[str]
    collection_id: str
    name: str
    description: str
    icon: Optional[str]
    contents: JSON
    keywords: List[str]

    @strawberry.field
    async def previous_version(self, info: Info) -> Optional["Workflow"]:
        return await _revision(info, WORKFLOWS, workflow_from_row, self.previous_version_id)

    @strawberry.field
    async def branched_from(self, info: Info) -> Optional["Workflow"]:
        return await _revision(info, WORKFLOWS, workflow_from_row, self.branched_from_id)

    @strawberry.field
    async def branches(
        self, info: Info, created_by_me: Optional[bool] = None, branch_type: Optional[BranchTypeEnum] = None
    ) -> List["Workflow"]:
        return await _related_rows(
            info, workflow_from_row, visibility.find_branches, WORKFLOWS, self.static_id, created_by_me, branch_type
        )

    @strawberry.field
    async def published_versions(self, info: Info, only_major: Optional[bool] = None) -> List["Workflow"]:
        return await _related_rows(
            info, workflow_from_row, visibility.find_published_versions, WORKFLOWS, self.static_id, only_major
        )

    @strawberry.field
    async def branch_versions(self, info: Info, only_major: Optional[bool] = None) -> Optional[List["Workflow"]]:
        return await _related_rows(
            info, workflow_from_row, visibility.find_branch_versions, WORKFLOWS, self.branch_id, only_major
        )


@strawberry.type
class SpaceAclEntry:
    id: strawberry.ID
    static_id: str
    user_id: Optional[str]
    user_group_id: Optional[str]


@strawberry.type
class Space:
    id: strawberry.ID
    static_id: str
    branch_type: BranchTypeEnum
    is_latest: bool
    is_archived: bool
    created_at: datetime
    created_by_user_id: str
    organization_id: str
    name: str
    icon: Optional[str]
    widgets: JSON
    visible_to_org: bool
    acl: List[SpaceAclEntry]


@strawberry.type
class Widget:
    id: strawberry.ID
    static_id: str
    branch_type: BranchTypeEnum
    is_latest: bool
    is_archived: bool
    created_at: datetime
    created_by_user_id: str
    organization_id: str
    contents: JSON
    inputs: JSON


VersionedNode = Annotated[Union[Tool, Workflow, Space, Widget], strawberry.union("VersionedNode")]


@strawberry.type
class ToolOutput:
    error: Optional[KBErrorType] = None
    tool: Optional[Tool] = None


@strawberry.type
class WorkflowOutput:
    error: Optional[KBErrorType] = None
    workflow: Optional[Workflow] = None


@strawberry.type
class SpaceOutput:
    error: Optional[KBErrorType] = None
    space: Optional[Space] = None


@strawberry.type
class WidgetOutput:
    error: Optional[KBErrorType] = None
    widget: Optional[Widget] = None


def _optional_id(store: VersionedStore, row_id: Optional[int]) -> Optional[str]:
    return encode_id(store.revision_id_prefix, row_id) if row_id else None


def _lineage_fields(store: VersionedStore, row: models.VersionedNodeMixin) -> dict:
    meta = get_metadata(row)
    return {
        "id": strawberry.ID(store.encode_row_id(row)),
        "static_id": row.static_id,
        "branch_id": row.branch_id,
        "branch_type": row.branch_type,
        "is_latest": row.is_latest,
        "is_archived": row.is_archived,
        "is_first": row.previous_version_id is None,
        "archive_reason": meta.get("archiveReason"),
        "metadata": meta,
        "major_change_description": row.major_change_description,
        "created_at": row.created_at,
        "created_by_user_id": encode_id("user", row.created_by_user_id),
        "previous_version_id": _optional_id(store, row.previous_version_id),
        "branched_from_id": _optional_id(store, row.branched_from_id),
    }


def tool_from_row(row: models.Tool) -> Tool:
    return Tool(
        **_lineage_fields(TOOLS, row),
        collection_id=encode_id("coll", row.collection_id),
        name=row.name,
        description=row.description,
        icon=row.icon,
        component=row.component,
        inputs=row.inputs,
        configuration=row.configuration,
        keywords=row.keywords,
    )


def workflow_from_row(row: models.Workflow) -> Workflow:
    return Workflow(
        **_lineage_fields(WORKFLOWS, row),
        collection_id=encode_id("coll", row.collection_id),
        name=row.name,
        description=row.description,
        icon=row.icon,
        contents=row.contents,
        keywords=row.keywords,
    )


def space_from_row(db: Session, row: models.Space) -> Space:
    return Space(
        id=strawberry.ID(SPACES.encode_row_id(row)),
        static_id=row.static_id,
        branch_type=row.branch_type,
        is_latest=row.is_latest,
        is_archived=row.is_archived,
        created_at=row.created_at,
        created_by_user_id=encode_id("user", row.created_by_user_id),
        organization_id=encode_id("org", row.organization_id),
        name=row.name,
        icon=row.icon,
        widgets=row.widgets,
        visible_to_org=row.visible_to_org,
        acl=[
            SpaceAclEntry(
                id=strawberry.ID(encode_id("sacl", acl.id)),
                static_id=acl.static_id,
                user_id=encode_id("user", acl.user_id) if acl.user_id else None,
                user_group_id=encode_id("ugrp", acl.user_group_id) if acl.user_group_id else None,
            )
            for acl in space_acl(db, row)
        ],
    )


def widget_from_row(row: models.Widget) -> Widget:
    return Widget(
        id=strawberry.ID(WIDGETS.encode_row_id(row)),
        static_id=row.static_id,
        branch_type=row.branch_type,
        is_latest=row.is_latest,
        is_archived=row.is_archived,
        created_at=row.created_at,
        created_by_user_id=encode_id("user", row.created_by_user_id),
        organization_id=encode_id("org", row.organization_id),
        contents=row.contents,
        inputs=row.inputs,
    )


def node_from_row(db: Session, row: models.VersionedNodeMixin) -> VersionedNode:
    if isinstance(row, models.Tool):
        return tool_from_row(row)
    if isinstance(row, models.Workflow):
        return workflow_from_row(row)
    if isinstance(row, models.Space):
        return space_from_row(db, row)
    return widget_from_row(row)
