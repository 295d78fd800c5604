from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import TYPE_CHECKING, Iterable, Mapping

import sentry_sdk
import sqlalchemy as sa
from sqlalchemy.orm import Session

from . import models

if TYPE_CHECKING:
    from .auth import ViewerContext

# purpose: answer "may this actor do P on this collection/organization"
# inputs: viewer context or user, collection/organization ids, permission names
# outputs: booleans and flattened permission sets
# status: stable

ORG_PERMISSIONS = (
    "manage_org_shortcuts",
    "manage_users",
    "manage_spaces",
    "manage_collections",
    "manage_org_settings",
    "manage_data_sources",
    "manage_widgets",
)

COLLECTION_PERMISSIONS = (
    "manage_collection_permissions",
    "review_suggestions",
    "publish_tool",
    "publish_workflow",
    "see_collection",
)

COLLECTION_PERMISSION_GROUPS = ("admin", "publisher", "viewer")

# Groups expand into permissions and lesser groups. Only groups are ever
# stored on ACL rows or as collection defaults.
COLLECTION_PERMISSION_GROUP_MAP: Mapping[str, tuple[str, ...]] = MappingProxyType(
    {
        "admin": ("manage_collection_permissions", "review_suggestions", "publisher"),
        "publisher": ("publish_tool", "publish_workflow", "viewer"),
        "viewer": ("see_collection",),
    }
)


def build_permission_closure(
    group_map: Mapping[str, Iterable[str]],
    permissions: Iterable[str],
) -> Mapping[str, frozenset[str]]:
    """Flatten ``group_map`` into group -> every permission it implies.

    Raises ``ValueError`` on a cycle or on a member that is neither a
    permission nor a group.
    """

    known_permissions = frozenset(permissions)
    closure: dict[str, frozenset[str]] = {}

    def visit(group: str, path: tuple[str, ...]) -> frozenset[str]:
        if group in path:
            cycle = " -> ".join(path[path.index(group):] + (group,))
            raise ValueError(f"Permission group cycle: {cycle}")
        if group in closure:
            return closure[group]
        flattened: set[str] = set()
        for member in group_map[group]:
            if member in known_permissions:
                flattened.add(member)
            elif member in group_map:
                flattened |= visit(member, path + (group,))
            else:
                raise ValueError(f"Unknown permission or group {member!r} in {group!r}")
        closure[group] = frozenset(flattened)
        return closure[group]

    for group in group_map:
        visit(group, ())
    return MappingProxyType(closure)


UNWRAPPED_COLLECTION_PERMISSION_GROUPS = build_permission_closure(
    COLLECTION_PERMISSION_GROUP_MAP, COLLECTION_PERMISSIONS
)


def is_collection_permission_group(name: str) -> bool:
    return name in UNWRAPPED_COLLECTION_PERMISSION_GROUPS


def unwrap_permission_groups(names: Iterable[str]) -> set[str]:
    permissions: set[str] = set()
    for name in names or ():
        if is_collection_permission_group(name):
            permissions |= UNWRAPPED_COLLECTION_PERMISSION_GROUPS[name]
        else:
            sentry_sdk.capture_message(f"Unexpected permission {name}")
    return permissions


def has_org_permission(user: models.User, permission: str, organization_id: int | None) -> bool:
    """Org permissions are all-or-nothing: org admins of the same org hold every one."""

    if permission not in ORG_PERMISSIONS:
        raise ValueError(f"Unknown organization permission {permission!r}")
    if organization_id is None or user.organization_id != organization_id:
        sentry_sdk.capture_message(
            "User without matching org requesting org admin: denying access",
            extras={"user_id": user.id, "permission": permission},
        )
        return False
    return bool(user.is_organization_admin)


@dataclass(frozen=True)
class CollectionPermissionsDetails:
    organization_id: int | None
    all_permissions: frozenset[str]


def compute_collection_permissions_details(
    db: Session,
    user: models.User,
    collection_id: int,
    user_group_ids: list[int] | None = None,
) -> CollectionPermissionsDetails | None:
    collection = db.get(models.Collection, collection_id)
    if collection is None:
        return None

    if user_group_ids is None:
        user_group_ids = [
            row.user_group_id
            for row in db.query(models.UserGroupMember.user_group_id)
            .filter(models.UserGroupMember.user_id == user.id)
            .all()
        ]

    acl_filters = [sa.and_(models.CollectionAcl.user_id == user.id, models.CollectionAcl.user_group_id.is_(None))]
    if user_group_ids:
        acl_filters.append(
            sa.and_(
                models.CollectionAcl.user_id.is_(None),
                models.CollectionAcl.user_group_id.in_(user_group_ids),
            )
        )
    acl_rows = (
        db.query(models.CollectionAcl)
        .filter(models.CollectionAcl.collection_id == collection_id, sa.or_(*acl_filters))
        .all()
    )

    all_permissions: set[str] = set()
    if user.organization_id and user.organization_id == collection.organization_id:
        all_permissions |= unwrap_permission_groups(collection.default_permissions)
    for acl in acl_rows:
        all_permissions |= unwrap_permission_groups(acl.permissions)
    return CollectionPermissionsDetails(
        organization_id=collection.organization_id,
        all_permissions=frozenset(all_permissions),
    )


def get_collection_permissions_details(
    db: Session, vc: ViewerContext, collection_id: int
) -> CollectionPermissionsDetails | None:
    cached = vc.collection_permissions_cache.get(collection_id)
    if cached is None:
        cached = compute_collection_permissions_details(db, vc.user, collection_id, vc.user_group_ids)
        if cached is None:
            return None
        vc.collection_permissions_cache[collection_id] = cached
    return cached


def get_collection_permissions(db: Session, vc: ViewerContext | None, collection_id: int) -> frozenset[str]:
    if vc is None:
        return frozenset()
    details = get_collection_permissions_details(db, vc, collection_id)
    return details.all_permissions if details else frozenset()


def _permitted(user: models.User, details: CollectionPermissionsDetails | None, permission: str) -> bool:
    if details is None:
        return False
    if permission in details.all_permissions:
        return True
    return bool(details.organization_id) and has_org_permission(
        user, "manage_collections", details.organization_id
    )


def has_collection_permission(
    db: Session,
    vc: ViewerContext | None,
    collection_id: int,
    permission: str,
) -> bool:
    if permission not in COLLECTION_PERMISSIONS:
        raise ValueError(f"Unknown collection permission {permission!r}")
    if vc is None:
        return False
    return _permitted(vc.user, get_collection_permissions_details(db, vc, collection_id), permission)


def user_has_collection_permission(
    db: Session,
    user: models.User,
    collection_id: int,
    permission: str,
) -> bool:
    """Uncached check for callers that have a user but no viewer context."""

    if permission not in COLLECTION_PERMISSIONS:
        raise ValueError(f"Unknown collection permission {permission!r}")
    return _permitted(user, compute_collection_permissions_details(db, user, collection_id), permission)


def visible_collection_ids(db: Session, vc: ViewerContext) -> list[int]:
    """Ids of every collection the viewer holds ``see_collection`` on."""

    user = vc.user
    acl_filters = [models.CollectionAcl.user_id == user.id]
    if vc.user_group_ids:
        acl_filters.append(models.CollectionAcl.user_group_id.in_(vc.user_group_ids))
    candidate_ids = {
        row.collection_id
        for row in db.query(models.CollectionAcl.collection_id).filter(sa.or_(*acl_filters)).all()
    }
    if user.organization_id:
        candidate_ids |= {
            row.id
            for row in db.query(models.Collection.id)
            .filter(models.Collection.organization_id == user.organization_id)
            .all()
        }
    return sorted(
        collection_id
        for collection_id in candidate_ids
        if has_collection_permission(db, vc, collection_id, "see_collection")
    )
