from __future__ import annotations

from typing import Any

import sentry_sdk
from sqlalchemy.orm import Session

from .. import models
from ..auth import ViewerContext
from ..ids import id_prefix
from ..models import BranchType
from ..rbac import has_collection_permission
from .versioned_store import VersionedStore, store_for_model, store_for_prefix

# purpose: decide whether a viewer may see one physical version row and wrap
#   the store readers so hidden rows never leave this module
# status: stable


def collection_id_for_permissions(db: Session, store: VersionedStore, row: models.VersionedNodeMixin) -> int:
    """Pick the collection whose ACL governs ``row``.

    Historical versions and branches follow the entity's current published
    home so that moving a tool between collections moves its history too.
    """

    if row.is_latest and row.branch_type == BranchType.published:
        return row.collection_id
    latest_published = store.find_first(
        db, static_id=row.static_id, branch_type=BranchType.published, is_latest=True
    )
    if latest_published is not None:
        return latest_published.collection_id
    if not row.is_latest:
        latest_in_branch = store.find_first(
            db, static_id=row.static_id, branch_id=row.branch_id, is_latest=True
        )
        if latest_in_branch is not None:
            return latest_in_branch.collection_id
    return row.collection_id


def can_view(
    db: Session,
    vc: ViewerContext | None,
    row: models.VersionedNodeMixin,
    store: VersionedStore | None = None,
) -> bool:
    if vc is None:
        return False
    user = vc.user
    if user.is_admin:
        return True
    store = store or store_for_model(row)

    if not store.has_collection:
        return user.organization_id is not None and row.organization_id == user.organization_id

    if row.branch_type in (BranchType.draft, BranchType.remix):
        return row.created_by_user_id == user.id
    if row.branch_type == BranchType.suggestion:
        if user.id in (row.created_by_user_id, row.suggested_by_user_id):
            return True
        return has_collection_permission(
            db, vc, collection_id_for_permissions(db, store, row), "review_suggestions"
        )
    return has_collection_permission(db, vc, collection_id_for_permissions(db, store, row), "see_collection")


def _report_hidden(store: VersionedStore, row: models.VersionedNodeMixin) -> None:
    sentry_sdk.capture_message(
        "Tried to load unpermitted object",
        level="debug",
        extras={"kind": store.kind, "id": store.encode_row_id(row)},
    )


def find_by_id(db: Session, vc: ViewerContext | None, store: VersionedStore, row_id: int):
    row = store.find_unique(db, row_id)
    if row is None:
        return None
    if not can_view(db, vc, row, store):
        _report_hidden(store, row)
        return None
    return row


def find_first_visible(db: Session, vc: ViewerContext | None, store: VersionedStore, **filters: Any):
    row = store.find_first(db, **filters)
    if row is None:
        return None
    if not can_view(db, vc, row, store):
        _report_hidden(store, row)
        return None
    return row


def _only_visible(db: Session, vc: ViewerContext | None, store: VersionedStore, rows: list) -> list:
    visible = []
    for row in rows:
        if can_view(db, vc, row, store):
            visible.append(row)
        else:
            _report_hidden(store, row)
    return visible


def find_many_visible(db: Session, vc: ViewerContext | None, store: VersionedStore, **filters: Any) -> list:
    return _only_visible(db, vc, store, store.find_many(db, **filters))


def _major_only(store: VersionedStore, only_major: bool | None) -> list:
    if only_major:
        return [store.model.major_change_description.isnot(None)]
    return []


def find_branches(
    db: Session,
    vc: ViewerContext | None,
    store: VersionedStore,
    static_id: str,
    created_by_me: bool | None = None,
    branch_type: BranchType | None = None,
) -> list:
    """Open branch heads of an entity, newest first.

    ``created_by_me`` narrows to the viewer's own branches when true and to
    everybody else's when false.
    """

    if vc is None:
        return []
    model = store.model
    criteria = []
    if branch_type is None:
        criteria.append(model.branch_type != BranchType.published)
    else:
        criteria.append(model.branch_type == branch_type)
    if created_by_me:
        criteria.append(model.created_by_user_id == vc.user.id)
    elif created_by_me is False:
        criteria.append(model.created_by_user_id != vc.user.id)
    rows = store.find_history(db, *criteria, static_id=static_id, is_latest=True, is_archived=False)
    return _only_visible(db, vc, store, rows)


def find_published_versions(
    db: Session, vc: ViewerContext | None, store: VersionedStore, static_id: str, only_major: bool | None = None
) -> list:
    rows = store.find_history(
        db, *_major_only(store, only_major), static_id=static_id, branch_type=BranchType.published
    )
    return _only_visible(db, vc, store, rows)


def find_branch_versions(
    db: Session, vc: ViewerContext | None, store: VersionedStore, branch_id: str | None, only_major: bool | None = None
) -> list | None:
    """Every version recorded on ``branch_id``; ``None`` for rows outside a branch."""

    if not branch_id:
        return None
    rows = store.find_history(db, *_major_only(store, only_major), branch_id=branch_id)
    return _only_visible(db, vc, store, rows)


def get_versioned_node(db: Session, vc: ViewerContext | None, static_or_branch_id: str):
    """Resolve a static id to its published head, or a branch id to its branch head."""

    prefix = id_prefix(static_or_branch_id)
    store = store_for_prefix(prefix)
    if store is None:
        sentry_sdk.capture_message(
            "Invalid id passed to get_versioned_node", extras={"id": static_or_branch_id}
        )
        return None
    if prefix == store.static_id_prefix:
        return find_first_visible(
            db, vc, store, static_id=static_or_branch_id, branch_type=BranchType.published, is_latest=True
        )
    return find_first_visible(db, vc, store, branch_id=static_or_branch_id, is_latest=True)
