"""Spaces and widgets: versioned nodes owned by an organization, not a collection."""

from __future__ import annotations

from typing import Any

import sentry_sdk
from sqlalchemy.orm import Session

from .. import models
from ..auth import ViewerContext
from ..errors import (
    Err,
    Result,
    invalid_value_error,
    not_found_error,
    permission_error,
    unauthenticated_error,
)
from ..ids import InvalidIdError, decode_id_for_kind
from ..models import BranchType
from ..rbac import has_org_permission
from .versioned_store import SPACES, WIDGETS, PayloadValidationError, VersionedStore
from .versioning import generated_fields, load_for_update, record_mutation, write


def has_space_modify_permission(db: Session, vc: ViewerContext | None, space: models.Space) -> bool:
    """Space admins of the org, users on the space ACL, or managers of a listed group."""

    if vc is None:
        return False
    user = vc.user
    if space.organization_id and has_org_permission(user, "manage_spaces", space.organization_id):
        return True
    acl_entries = db.query(models.SpaceAcl).filter(models.SpaceAcl.static_id == space.static_id).all()
    for acl in acl_entries:
        if acl.user_id == user.id:
            return True
        if acl.user_group_id is not None:
            manages_group = (
                db.query(models.UserGroupMember)
                .filter_by(user_group_id=acl.user_group_id, user_id=user.id, manager=True)
                .first()
            )
            if manages_group is not None:
                return True
    return False


def space_acl(db: Session, space: models.Space) -> list[models.SpaceAcl]:
    return (
        db.query(models.SpaceAcl)
        .filter(models.SpaceAcl.static_id == space.static_id)
        .order_by(models.SpaceAcl.id)
        .all()
    )


def _group_ids(db: Session, user: models.User, encoded_group_ids: list[str]) -> list[int] | None:
    """Decode group ids; ``None`` if any is malformed or from another org."""

    group_ids = []
    for encoded_group_id in encoded_group_ids:
        try:
            group_id = decode_id_for_kind(encoded_group_id, "ugrp")
        except InvalidIdError:
            return None
        group = db.get(models.UserGroup, group_id)
        if group is None or group.organization_id != user.organization_id:
            return None
        group_ids.append(group_id)
    return group_ids


def _validated(store: VersionedStore, data: dict[str, Any]) -> Err | None:
    try:
        store.validate_payload(data)
    except PayloadValidationError as exc:
        return Err(invalid_value_error(str(exc), exc.param))
    return None


def _apply(existing_data: dict[str, Any], **changes: Any) -> dict[str, Any]:
    # a null change leaves the preserved value alone
    return {**existing_data, **{key: value for key, value in changes.items() if value is not None}}


def create_space(
    db: Session,
    vc: ViewerContext | None,
    *,
    name: str,
    widgets: list,
    visible_to_org: bool,
    visible_to_group_ids: list[str],
    icon: str | None = None,
) -> Result:
    if vc is None:
        return Err(unauthenticated_error())
    user = vc.user
    if not has_org_permission(user, "manage_spaces", user.organization_id):
        return Err(permission_error())

    group_ids = _group_ids(db, user, visible_to_group_ids)
    if group_ids is None:
        return Err(not_found_error("visibleToGroupIds"))

    row_data = {
        **generated_fields(user, static_id_prefix=SPACES.static_id_prefix),
        "branch_type": BranchType.published,
        "is_archived": False,
        "name": name,
        "icon": icon,
        "widgets": widgets,
        "visible_to_org": visible_to_org,
        "organization_id": user.organization_id,
    }
    invalid = _validated(SPACES, row_data)
    if invalid:
        return invalid

    def create():
        space = SPACES.create(db, row_data)
        db.add_all(models.SpaceAcl(static_id=space.static_id, user_group_id=group_id) for group_id in group_ids)
        record_mutation(db, user, SPACES, "create", space)
        return space

    return write(db, create)


def update_space(
    db: Session,
    vc: ViewerContext | None,
    opaque_id: str,
    *,
    name: str | None = None,
    widgets: list | None = None,
    visible_to_org: bool | None = None,
    visible_to_group_ids: list[str] | None = None,
    icon: str | None = None,
) -> Result:
    if vc is None:
        return Err(unauthenticated_error())
    user = vc.user

    loaded = load_for_update(db, SPACES, opaque_id, lambda row: has_space_modify_permission(db, vc, row))
    if isinstance(loaded, Err):
        return loaded
    existing = loaded.value

    group_ids = None
    if visible_to_group_ids is not None:
        group_ids = _group_ids(db, user, visible_to_group_ids)
        if group_ids is None:
            return Err(not_found_error("visibleToGroupIds"))

    row_data = {
        **generated_fields(user, existing),
        **_apply(
            SPACES.preservable_fields(existing),
            name=name,
            widgets=widgets,
            visible_to_org=visible_to_org,
            icon=icon,
        ),
    }
    invalid = _validated(SPACES, row_data)
    if invalid:
        return invalid

    def update():
        SPACES.retire(db, existing)
        space = SPACES.create(db, row_data)
        if group_ids is not None:
            current = {
                acl.user_group_id: acl
                for acl in space_acl(db, existing)
                if acl.user_group_id is not None
            }
            for group_id, acl in current.items():
                if group_id not in group_ids:
                    db.delete(acl)
            db.add_all(
                models.SpaceAcl(static_id=existing.static_id, user_group_id=group_id)
                for group_id in group_ids
                if group_id not in current
            )
            db.flush()
        record_mutation(db, user, SPACES, "update", space)
        return space

    return write(db, update)


def _can_manage_widget(vc: ViewerContext, widget: models.Widget) -> bool:
    return has_org_permission(vc.user, "manage_widgets", widget.organization_id)


def create_widget(
    db: Session,
    vc: ViewerContext | None,
    *,
    contents: list,
    inputs: list | None = None,
) -> Result:
    if vc is None:
        return Err(unauthenticated_error())
    user = vc.user
    if not has_org_permission(user, "manage_widgets", user.organization_id):
        return Err(permission_error())

    row_data = {
        **generated_fields(user, static_id_prefix=WIDGETS.static_id_prefix),
        "branch_type": BranchType.published,
        "is_archived": False,
        "contents": contents,
        "inputs": inputs if inputs is not None else [],
        "organization_id": user.organization_id,
    }
    invalid = _validated(WIDGETS, row_data)
    if invalid:
        return invalid

    def create():
        widget = WIDGETS.create(db, row_data)
        record_mutation(db, user, WIDGETS, "create", widget)
        return widget

    return write(db, create)


def update_widget(
    db: Session,
    vc: ViewerContext | None,
    opaque_id: str,
    *,
    contents: list | None = None,
    inputs: list | None = None,
) -> Result:
    if vc is None:
        return Err(unauthenticated_error())
    user = vc.user

    loaded = load_for_update(db, WIDGETS, opaque_id, lambda row: _can_manage_widget(vc, row))
    if isinstance(loaded, Err):
        return loaded
    existing = loaded.value

    row_data = {
        **generated_fields(user, existing),
        **_apply(WIDGETS.preservable_fields(existing), contents=contents, inputs=inputs),
    }
    invalid = _validated(WIDGETS, row_data)
    if invalid:
        return invalid

    def update():
        WIDGETS.retire(db, existing)
        widget = WIDGETS.create(db, row_data)
        record_mutation(db, user, WIDGETS, "update", widget)
        return widget

    return write(db, update)


def archive_widget(db: Session, vc: ViewerContext | None, opaque_id: str) -> Result:
    """Archive by appending an archived version; the old row only loses ``is_latest``."""

    if vc is None:
        return Err(unauthenticated_error())
    user = vc.user
    if not has_org_permission(user, "manage_widgets", user.organization_id):
        return Err(permission_error())

    loaded = load_for_update(db, WIDGETS, opaque_id, lambda row: _can_manage_widget(vc, row))
    if isinstance(loaded, Err):
        return loaded
    existing = loaded.value
    if existing.is_archived:
        sentry_sdk.capture_message("Widget archived twice", level="info", extras={"id": opaque_id})
        return Err(invalid_value_error("This has already been archived"))

    row_data = {
        **generated_fields(user, existing),
        **WIDGETS.preservable_fields(existing),
        "is_archived": True,
    }

    def archive():
        WIDGETS.retire(db, existing)
        widget = WIDGETS.create(db, row_data)
        record_mutation(db, user, WIDGETS, "archive", widget)
        return widget

    return write(db, archive)
