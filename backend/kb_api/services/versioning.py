"""Append-only mutations of versioned nodes.

Every write here retires at most a couple of rows (``is_latest`` flipped off)
and inserts new ones inside a single transaction; no other column of an
existing version is ever changed. Expected failures come back as ``Err``
values, programming mistakes raise.
"""

from __future__ import annotations

from typing import Any, Callable, Literal

import sentry_sdk
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .. import audit, models
from ..auth import ViewerContext
from ..errors import (
    DisallowedInputKeysError,
    Err,
    Ok,
    Result,
    already_modified_error,
    invalid_value_error,
    not_found_error,
    permission_error,
    unauthenticated_error,
)
from ..ids import InvalidIdError, decode_id_for_kind, generate_static_id
from ..models import BranchType
from ..rbac import has_collection_permission
from .versioned_store import PayloadValidationError, VersionedStore

# Fields callers may never set; they are derived from the lineage.
SYSTEM_MANAGED_KEYS = frozenset(
    {
        "id",
        "created_at",
        "is_latest",
        "is_archived",
        "static_id",
        "branch_id",
        "branched_from_id",
        "branched_from",
        "branches",
        "previous_version_id",
        "previous_version",
        "next_versions",
        "created_by_user_id",
        "created_by_user",
        "suggested_by_user_id",
        "suggested_by_user",
        "collection",
        "meta",
        "metadata",
    }
)


def check_input_keys(data: dict[str, Any]) -> None:
    bad_keys = SYSTEM_MANAGED_KEYS.intersection(data)
    if bad_keys:
        raise DisallowedInputKeysError(list(bad_keys))


def generated_fields(
    user: models.User,
    existing: models.VersionedNodeMixin | None = None,
    static_id_prefix: str | None = None,
) -> dict[str, Any]:
    """Lineage columns for the next version of ``existing`` (or a brand new entity)."""

    if existing is None:
        if not static_id_prefix:
            raise ValueError("A static id prefix is required for new entities")
        return {
            "is_latest": True,
            "static_id": generate_static_id(static_id_prefix),
            "previous_version_id": None,
            "created_by_user_id": user.id,
            "suggested_by_user_id": None,
            "branched_from_id": None,
            "branch_id": None,
        }
    return {
        "is_latest": True,
        "static_id": existing.static_id,
        "previous_version_id": existing.id,
        "created_by_user_id": user.id,
        "suggested_by_user_id": existing.suggested_by_user_id,
        "branched_from_id": existing.branched_from_id,
        "branch_id": existing.branch_id,
    }


def load_for_update(
    db: Session,
    store: VersionedStore,
    opaque_id: str,
    permission_check: Callable[[models.VersionedNodeMixin], bool],
) -> Result:
    try:
        row_id = store.decode_row_id(opaque_id)
    except InvalidIdError:
        return Err(not_found_error())
    row = store.find_unique(db, row_id)
    if row is None:
        return Err(not_found_error())
    if not permission_check(row):
        sentry_sdk.capture_message(
            "Attempt to update object with insufficient permissions",
            extras={"kind": store.kind, "id": opaque_id},
        )
        return Err(not_found_error())
    if not row.is_latest:
        return Err(already_modified_error())
    return Ok(row)


def resolve_collection_id(db: Session, vc: ViewerContext, encoded_collection_id: str) -> int | None:
    """Decode a caller-supplied collection id; ``None`` if it is bad or unseen."""

    try:
        collection_id = decode_id_for_kind(encoded_collection_id, "coll")
    except InvalidIdError:
        return None
    if not has_collection_permission(db, vc, collection_id, "see_collection"):
        return None
    return collection_id


def overrides(store: VersionedStore, data: dict[str, Any]) -> dict[str, Any]:
    """Caller changes to apply on top of the preserved fields.

    An explicit null clears a nullable column but leaves a required one alone.
    """

    unknown = set(data) - store.payload_fields - {"major_change_description"}
    if unknown:
        raise ValueError(f"Unknown {store.kind} fields: {', '.join(sorted(unknown))}")
    return {
        key: value
        for key, value in data.items()
        if not (value is None and key in store.required_fields)
    }


def record_mutation(
    db: Session,
    user: models.User,
    store: VersionedStore,
    action: str,
    row: models.VersionedNodeMixin,
) -> None:
    audit.log_action(
        db,
        user.id,
        f"{store.kind}.{action}",
        target_type=store.kind,
        target_id=row.id,
        details={"static_id": row.static_id, "branch_type": row.branch_type.value},
        commit=False,
    )


def write(db: Session, operation: Callable[[], models.VersionedNodeMixin]) -> Result:
    """Run ``operation`` and commit; a unique-index race becomes ``alreadyModified``."""

    try:
        row = operation()
        db.commit()
    except IntegrityError:
        db.rollback()
        sentry_sdk.capture_message("Versioned node write lost a race", level="info")
        return Err(already_modified_error())
    db.refresh(row)
    return Ok(row)


def _validated(store: VersionedStore, data: dict[str, Any]) -> Err | None:
    try:
        store.validate_payload(data)
    except PayloadValidationError as exc:
        return Err(invalid_value_error(str(exc), exc.param))
    return None


def _require_collection_store(store: VersionedStore) -> None:
    if not store.publish_permission:
        raise ValueError(f"{store.kind} is not a collection-scoped kind")


def _branch_type(value: Any, default: BranchType) -> BranchType:
    branch_type = BranchType(value) if value is not None else default
    if branch_type == BranchType.remix:
        raise NotImplementedError("Remix branches are not supported")
    return branch_type


def execute_create(
    db: Session,
    vc: ViewerContext | None,
    store: VersionedStore,
    data: dict[str, Any],
) -> Result:
    _require_collection_store(store)
    if vc is None:
        return Err(unauthenticated_error())
    user = vc.user
    check_input_keys(data)
    data = dict(data)

    encoded_collection_id = data.pop("collection_id", None)
    collection_id = resolve_collection_id(db, vc, encoded_collection_id) if encoded_collection_id else None
    if collection_id is None:
        return Err(not_found_error("collectionId"))

    branch_type = _branch_type(data.pop("branch_type", None), BranchType.published)
    if branch_type == BranchType.published and not has_collection_permission(
        db, vc, collection_id, store.publish_permission
    ):
        return Err(permission_error())

    payload = overrides(store, data)
    invalid = _validated(store, payload)
    if invalid:
        return invalid

    row_data = {
        **generated_fields(user, static_id_prefix=store.static_id_prefix),
        **payload,
        "collection_id": collection_id,
        "branch_type": branch_type,
        "is_archived": False,
    }
    if branch_type != BranchType.published:
        row_data["branch_id"] = generate_static_id(store.branch_id_prefix)
        row_data["suggested_by_user_id"] = user.id

    def create():
        row = store.create(db, row_data)
        record_mutation(db, user, store, "create", row)
        return row

    return write(db, create)


def execute_update(
    db: Session,
    vc: ViewerContext | None,
    store: VersionedStore,
    opaque_id: str,
    data: dict[str, Any],
) -> Result:
    """Produce the next version of the row ``opaque_id``.

    Editing a published row into a draft or suggestion branches off without
    retiring the published head; every other transition retires the old row.
    """

    _require_collection_store(store)
    if vc is None:
        return Err(unauthenticated_error())
    user = vc.user
    check_input_keys(data)

    loaded = load_for_update(
        db, store, opaque_id, lambda row: has_collection_permission(db, vc, row.collection_id, "see_collection")
    )
    if isinstance(loaded, Err):
        return loaded
    existing = loaded.value
    data = dict(data)

    collection_id = None
    encoded_collection_id = data.pop("collection_id", None)
    if encoded_collection_id:
        collection_id = resolve_collection_id(db, vc, encoded_collection_id)
        if collection_id is None:
            return Err(not_found_error("collectionId"))

    branch_type = _branch_type(data.pop("branch_type", None), existing.branch_type)
    if branch_type == BranchType.published:
        if collection_id and not has_collection_permission(db, vc, collection_id, store.publish_permission):
            return Err(permission_error())
        if not has_collection_permission(db, vc, existing.collection_id, store.publish_permission):
            return Err(permission_error())
    elif existing.branch_type == BranchType.published:
        open_branch = store.find_first(
            db,
            static_id=existing.static_id,
            branch_type=branch_type,
            created_by_user_id=user.id,
            is_latest=True,
            is_archived=False,
        )
        if open_branch is not None:
            return Err(
                invalid_value_error(
                    f"You already have an open {branch_type.value} for this item", "branchType"
                )
            )
    elif existing.created_by_user_id != user.id:
        sentry_sdk.capture_message(
            "Attempt to update another user's branch", extras={"kind": store.kind, "id": opaque_id}
        )
        return Err(not_found_error())

    if existing.branch_type != BranchType.published and branch_type == BranchType.published:
        return Err(
            invalid_value_error(
                "Drafts and suggestions become published through a merge", "branchType"
            )
        )

    payload = overrides(store, data)
    row_data = {
        **generated_fields(user, existing),
        **store.preservable_fields(existing),
        **payload,
        "branch_type": branch_type,
    }
    if collection_id:
        row_data["collection_id"] = collection_id
    invalid = _validated(store, row_data)
    if invalid:
        return invalid

    branching_off = existing.branch_type == BranchType.published and branch_type != BranchType.published
    if branching_off:
        row_data.update(
            branched_from_id=existing.id,
            branch_id=generate_static_id(store.branch_id_prefix),
            suggested_by_user_id=user.id,
        )

    def update():
        if not branching_off:
            store.retire(db, existing)
        row = store.create(db, row_data)
        record_mutation(db, user, store, "branch" if branching_off else "update", row)
        return row

    return write(db, update)


def _load_merge_rows(
    db: Session,
    vc: ViewerContext,
    store: VersionedStore,
    from_id: str,
    to_id: str | None,
) -> Result:
    def can_see(row):
        return has_collection_permission(db, vc, row.collection_id, "see_collection")

    loaded_from = load_for_update(db, store, from_id, can_see)
    if isinstance(loaded_from, Err):
        return loaded_from
    from_row = loaded_from.value

    to_row = None
    if to_id:
        loaded_to = load_for_update(db, store, to_id, can_see)
        if isinstance(loaded_to, Err):
            return loaded_to
        to_row = loaded_to.value
        if to_row.id == from_row.id:
            return Err(invalid_value_error("Cannot merge an item into itself", "toId"))
        if to_row.static_id != from_row.static_id:
            return Err(invalid_value_error("Can only merge versions of the same item", "toId"))
        if to_row.branch_type != BranchType.published:
            return Err(invalid_value_error("Can only merge into published items", "toId"))
    elif store.find_first(
        db, static_id=from_row.static_id, branch_type=BranchType.published, is_latest=True
    ):
        return Err(already_modified_error())
    return Ok((from_row, to_row))


def execute_merge(
    db: Session,
    vc: ViewerContext | None,
    store: VersionedStore,
    from_id: str,
    to_id: str | None,
    data: dict[str, Any],
) -> Result:
    """Publish the branch head ``from_id`` as the next version of ``to_id``.

    Without ``to_id`` the branch becomes the entity's first published version.
    The branch is closed by an archived head that points at the new
    published row, and the published row points back at it.
    """

    _require_collection_store(store)
    if vc is None:
        return Err(unauthenticated_error())
    user = vc.user
    check_input_keys(data)

    loaded = _load_merge_rows(db, vc, store, from_id, to_id)
    if isinstance(loaded, Err):
        return loaded
    from_row, to_row = loaded.value
    data = dict(data)

    permission = store.publish_permission
    if from_row.branch_type == BranchType.suggestion:
        permission = "review_suggestions"

    collection_id = None
    encoded_collection_id = data.pop("collection_id", None)
    if encoded_collection_id:
        collection_id = resolve_collection_id(db, vc, encoded_collection_id)
        if collection_id is None:
            return Err(not_found_error("collectionId"))
        if not has_collection_permission(db, vc, collection_id, permission):
            return Err(permission_error())

    requested_branch_type = data.pop("branch_type", None)
    default_branch_type = to_row.branch_type if to_row else BranchType.published
    if _branch_type(requested_branch_type, default_branch_type) != BranchType.published:
        return Err(invalid_value_error("Can only merge into published items", "branchType"))

    if not has_collection_permission(db, vc, from_row.collection_id, permission):
        return Err(permission_error())
    if to_row and not has_collection_permission(db, vc, to_row.collection_id, permission):
        return Err(permission_error())

    major_change_description = data.pop("major_change_description", from_row.major_change_description)
    payload = overrides(store, data)
    merged_data = {
        **generated_fields(user, from_row),
        **store.preservable_fields(from_row),
        **payload,
        "major_change_description": major_change_description,
    }
    if collection_id:
        merged_data["collection_id"] = collection_id
    invalid = _validated(store, merged_data)
    if invalid:
        return invalid

    def merge():
        if to_row is not None:
            store.retire(db, to_row)
        published = store.create(
            db,
            {
                **merged_data,
                "branch_type": BranchType.published,
                "is_archived": False,
                "branch_id": None,
                "branched_from_id": None,
                "previous_version_id": to_row.id if to_row else None,
            },
        )
        store.retire(db, from_row)
        archived = store.create(
            db,
            {
                **merged_data,
                "branch_type": from_row.branch_type,
                "is_archived": True,
            },
        )
        published.meta = {"mergedFromId": store.encode_row_id(archived)}
        archived.meta = {"archiveReason": "approved", "mergedToId": store.encode_row_id(published)}
        db.flush()
        record_mutation(db, user, store, "merge", published)
        return published

    return write(db, merge)


def _execute_archive_toggle(
    db: Session,
    vc: ViewerContext | None,
    store: VersionedStore,
    opaque_id: str,
    operation: Literal["delete", "restore"],
) -> Result:
    _require_collection_store(store)
    if vc is None:
        return Err(unauthenticated_error())
    user = vc.user

    loaded = load_for_update(
        db, store, opaque_id, lambda row: has_collection_permission(db, vc, row.collection_id, "see_collection")
    )
    if isinstance(loaded, Err):
        return loaded
    existing = loaded.value
    is_author = existing.created_by_user_id == user.id

    if existing.branch_type == BranchType.published:
        if not has_collection_permission(db, vc, existing.collection_id, store.publish_permission):
            return Err(permission_error())
    elif existing.branch_type == BranchType.suggestion:
        if not is_author and not has_collection_permission(
            db, vc, existing.collection_id, "review_suggestions"
        ):
            return Err(permission_error())
    elif not is_author:
        sentry_sdk.capture_message(
            f"Attempt to {operation} another user's branch", extras={"kind": store.kind, "id": opaque_id}
        )
        return Err(not_found_error())

    meta: dict[str, Any] = {}
    if operation == "delete":
        if existing.is_archived:
            return Err(invalid_value_error("This has already been archived"))
        if existing.branch_type == BranchType.suggestion and not is_author:
            meta = {"archiveReason": "rejected"}
    else:
        if not existing.is_archived:
            return Err(invalid_value_error("Only archived items can be restored"))
        if existing.branch_type not in (BranchType.published, BranchType.draft):
            return Err(invalid_value_error("Only published items and drafts can be restored"))

    row_data = {
        **generated_fields(user, existing),
        **store.preservable_fields(existing),
        "is_archived": operation == "delete",
        "meta": meta,
    }

    def toggle():
        store.retire(db, existing)
        row = store.create(db, row_data)
        record_mutation(db, user, store, operation, row)
        return row

    return write(db, toggle)


def execute_delete(db: Session, vc: ViewerContext | None, store: VersionedStore, opaque_id: str) -> Result:
    return _execute_archive_toggle(db, vc, store, opaque_id, "delete")


def execute_restore(db: Session, vc: ViewerContext | None, store: VersionedStore, opaque_id: str) -> Result:
    return _execute_archive_toggle(db, vc, store, opaque_id, "restore")
