"""GraphQL schema: thin resolvers over the versioning services.

Service calls use a synchronous SQLAlchemy session, so every resolver that
touches the database hands the work to a worker thread.
"""

import asyncio
from typing import Callable, List, Optional

import sentry_sdk
import strawberry
from sqlalchemy.orm import Session
from strawberry.fastapi import GraphQLRouter
from strawberry.types import Info

from .. import pubsub
from ..auth import ViewerContext
from ..errors import Err, Result
from ..ids import InvalidIdError, encode_id
from ..models import BranchType
from ..rbac import COLLECTION_PERMISSIONS, has_collection_permission
from ..services import org_nodes, versioning, visibility
from ..services.versioned_store import SPACES, TOOLS, WIDGETS, WORKFLOWS, VersionedStore
from .context import context_db, context_viewer, get_context
from .inputs import (
    SpaceCreateInput,
    SpaceUpdateInput,
    ToolCreateInput,
    ToolUpdateInput,
    WidgetCreateInput,
    WidgetUpdateInput,
    WorkflowCreateInput,
    WorkflowUpdateInput,
    input_to_dict,
)
from .types import (
    KBErrorType,
    Space,
    SpaceOutput,
    Tool,
    ToolOutput,
    VersionedNode,
    Viewer,
    Widget,
    WidgetOutput,
    Workflow,
    WorkflowOutput,
    node_from_row,
    tool_from_row,
    workflow_from_row,
)


async def _read(info: Info, load: Callable[[Session, Optional[ViewerContext]], object]):
    return await asyncio.to_thread(load, context_db(info), context_viewer(info))


def _visible_node(db: Session, vc: Optional[ViewerContext], store: VersionedStore, opaque_id: str):
    try:
        row_id = store.decode_row_id(opaque_id)
    except InvalidIdError:
        return None
    row = visibility.find_by_id(db, vc, store, row_id)
    return node_from_row(db, row) if row else None


async def _publish(store: VersionedStore, row, action: str) -> None:
    # the row is already committed; a lost event must not fail the mutation
    try:
        await pubsub.publish_node_event(store.kind, store.encode_row_id(row), row.static_id, action)
    except Exception:
        sentry_sdk.capture_exception()


async def _mutate(
    info: Info,
    store: VersionedStore,
    action: str,
    operation: Callable[[Session, Optional[ViewerContext]], Result],
):
    """Run ``operation`` in a worker thread and split it into (error, node)."""

    db, vc = context_db(info), context_viewer(info)

    def run():
        result = operation(db, vc)
        if isinstance(result, Err):
            return KBErrorType.from_error(result.error), None, None
        return None, result.value, node_from_row(db, result.value)

    error, row, node = await asyncio.to_thread(run)
    if row is not None:
        await _publish(store, row, action)
    return error, node


async def _tool_output(info: Info, action: str, operation) -> ToolOutput:
    error, tool = await _mutate(info, TOOLS, action, operation)
    return ToolOutput(error=error, tool=tool)


async def _workflow_output(info: Info, action: str, operation) -> WorkflowOutput:
    error, workflow = await _mutate(info, WORKFLOWS, action, operation)
    return WorkflowOutput(error=error, workflow=workflow)


async def _space_output(info: Info, action: str, operation) -> SpaceOutput:
    error, space = await _mutate(info, SPACES, action, operation)
    return SpaceOutput(error=error, space=space)


async def _widget_output(info: Info, action: str, operation) -> WidgetOutput:
    error, widget = await _mutate(info, WIDGETS, action, operation)
    return WidgetOutput(error=error, widget=widget)


def _published_heads(db: Session, vc: Optional[ViewerContext], store: VersionedStore, collection_id: str) -> list:
    decoded = versioning.resolve_collection_id(db, vc, collection_id) if vc else None
    if decoded is None:
        return []
    return visibility.find_many_visible(
        db, vc, store,
        collection_id=decoded, branch_type=BranchType.published, is_latest=True, is_archived=False,
    )


@strawberry.type
class Query:
    @strawberry.field
    def viewer(self, info: Info) -> Optional[Viewer]:
        vc = context_viewer(info)
        if vc is None:
            return None
        user = vc.user
        return Viewer(
            id=strawberry.ID(encode_id("user", user.id)),
            email=user.email,
            name=user.name,
            organization_id=encode_id("org", user.organization_id) if user.organization_id else None,
            is_organization_admin=user.is_organization_admin,
        )

    @strawberry.field
    async def tool(self, info: Info, id: strawberry.ID) -> Optional[Tool]:
        return await _read(info, lambda db, vc: _visible_node(db, vc, TOOLS, id))

    @strawberry.field
    async def workflow(self, info: Info, id: strawberry.ID) -> Optional[Workflow]:
        return await _read(info, lambda db, vc: _visible_node(db, vc, WORKFLOWS, id))

    @strawberry.field
    async def space(self, info: Info, id: strawberry.ID) -> Optional[Space]:
        return await _read(info, lambda db, vc: _visible_node(db, vc, SPACES, id))

    @strawberry.field
    async def widget(self, info: Info, id: strawberry.ID) -> Optional[Widget]:
        return await _read(info, lambda db, vc: _visible_node(db, vc, WIDGETS, id))

    @strawberry.field
    async def versioned_node(self, info: Info, static_or_branch_id: str) -> Optional[VersionedNode]:
        def load(db, vc):
            row = visibility.get_versioned_node(db, vc, static_or_branch_id)
            return node_from_row(db, row) if row else None

        return await _read(info, load)

    @strawberry.field
    async def collection_tools(self, info: Info, collection_id: strawberry.ID) -> List[Tool]:
        return await _read(
            info, lambda db, vc: [tool_from_row(row) for row in _published_heads(db, vc, TOOLS, collection_id)]
        )

    @strawberry.field
    async def collection_workflows(self, info: Info, collection_id: strawberry.ID) -> List[Workflow]:
        return await _read(
            info,
            lambda db, vc: [workflow_from_row(row) for row in _published_heads(db, vc, WORKFLOWS, collection_id)],
        )

    @strawberry.field
    async def collection_permissions(self, info: Info, collection_id: strawberry.ID) -> List[str]:
        def load(db, vc):
            decoded = versioning.resolve_collection_id(db, vc, collection_id) if vc else None
            if decoded is None:
                return []
            return sorted(
                permission
                for permission in COLLECTION_PERMISSIONS
                if has_collection_permission(db, vc, decoded, permission)
            )

        return await _read(info, load)


@strawberry.type
class Mutation:
    @strawberry.mutation
    async def create_tool(self, info: Info, tool_data: ToolCreateInput) -> ToolOutput:
        data = input_to_dict(tool_data)
        return await _tool_output(info, "create", lambda db, vc: versioning.execute_create(db, vc, TOOLS, data))

    @strawberry.mutation
    async def update_tool(self, info: Info, id: strawberry.ID, tool_data: ToolUpdateInput) -> ToolOutput:
        data = input_to_dict(tool_data)
        return await _tool_output(
            info, "update", lambda db, vc: versioning.execute_update(db, vc, TOOLS, id, data)
        )

    @strawberry.mutation
    async def merge_tool(
        self,
        info: Info,
        from_id: strawberry.ID,
        to_id: Optional[strawberry.ID] = None,
        tool_data: Optional[ToolUpdateInput] = None,
    ) -> ToolOutput:
        data = input_to_dict(tool_data) if tool_data else {}
        return await _tool_output(
            info, "merge", lambda db, vc: versioning.execute_merge(db, vc, TOOLS, from_id, to_id, data)
        )

    @strawberry.mutation
    async def delete_tool(self, info: Info, id: strawberry.ID) -> ToolOutput:
        return await _tool_output(info, "delete", lambda db, vc: versioning.execute_delete(db, vc, TOOLS, id))

    @strawberry.mutation
    async def restore_tool(self, info: Info, id: strawberry.ID) -> ToolOutput:
        return await _tool_output(info, "restore", lambda db, vc: versioning.execute_restore(db, vc, TOOLS, id))

    @strawberry.mutation
    async def create_workflow(self, info: Info, workflow_data: WorkflowCreateInput) -> WorkflowOutput:
        data = input_to_dict(workflow_data)
        return await _workflow_output(
            info, "create", lambda db, vc: versioning.execute_create(db, vc, WORKFLOWS, data)
        )

    @strawberry.mutation
    async def update_workflow(
        self, info: Info, id: strawberry.ID, workflow_data: WorkflowUpdateInput
    ) -> WorkflowOutput:
        data = input_to_dict(workflow_data)
        return await _workflow_output(
            info, "update", lambda db, vc: versioning.execute_update(db, vc, WORKFLOWS, id, data)
        )

    @strawberry.mutation
    async def merge_workflow(
        self,
        info: Info,
        from_id: strawberry.ID,
        to_id: Optional[strawberry.ID] = None,
        workflow_data: Optional[WorkflowUpdateInput] = None,
    ) -> WorkflowOutput:
        data = input_to_dict(workflow_data) if workflow_data else {}
        return await _workflow_output(
            info, "merge", lambda db, vc: versioning.execute_merge(db, vc, WORKFLOWS, from_id, to_id, data)
        )

    @strawberry.mutation
    async def delete_workflow(self, info: Info, id: strawberry.ID) -> WorkflowOutput:
        return await _workflow_output(
            info, "delete", lambda db, vc: versioning.execute_delete(db, vc, WORKFLOWS, id)
        )

    @strawberry.mutation
    async def restore_workflow(self, info: Info, id: strawberry.ID) -> WorkflowOutput:
        return await _workflow_output(
            info, "restore", lambda db, vc: versioning.execute_restore(db, vc, WORKFLOWS, id)
        )

    @strawberry.mutation
    async def create_space(self, info: Info, space_data: SpaceCreateInput) -> SpaceOutput:
        return await _space_output(
            info,
            "create",
            lambda db, vc: org_nodes.create_space(
                db,
                vc,
                name=space_data.name,
                widgets=space_data.widgets,
                visible_to_org=space_data.visible_to_org,
                visible_to_group_ids=space_data.visible_to_group_ids,
                icon=space_data.icon,
            ),
        )

    @strawberry.mutation
    async def update_space(self, info: Info, id: strawberry.ID, space_data: SpaceUpdateInput) -> SpaceOutput:
        return await _space_output(
            info,
            "update",
            lambda db, vc: org_nodes.update_space(
                db,
                vc,
                id,
                name=space_data.name,
                widgets=space_data.widgets,
                visible_to_org=space_data.visible_to_org,
                visible_to_group_ids=space_data.visible_to_group_ids,
                icon=space_data.icon,
            ),
        )

    @strawberry.mutation
    async def create_widget(self, info: Info, data: WidgetCreateInput) -> WidgetOutput:
        return await _widget_output(
            info,
            "create",
            lambda db, vc: org_nodes.create_widget(db, vc, contents=data.contents, inputs=data.inputs),
        )

    @strawberry.mutation
    async def update_widget(self, info: Info, id: strawberry.ID, data: WidgetUpdateInput) -> WidgetOutput:
        return await _widget_output(
            info,
            "update",
            lambda db, vc: org_nodes.update_widget(db, vc, id, contents=data.contents, inputs=data.inputs),
        )

    @strawberry.mutation
    async def archive_widget(self, info: Info, id: strawberry.ID) -> WidgetOutput:
        return await _widget_output(info, "archive", lambda db, vc: org_nodes.archive_widget(db, vc, id))


schema = strawberry.Schema(query=Query, mutation=Mutation)

graphql_router = GraphQLRouter(schema, context_getter=get_context)
