from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ..database import get_db
from ..auth import build_viewer_context, get_current_user
from ..ids import InvalidIdError, decode_id_for_kind, encode_id
from ..rbac import get_collection_permissions, has_collection_permission, has_org_permission, visible_collection_ids
from .. import models, schemas, audit

router = APIRouter(prefix="/api/collections", tags=["collections"])


def _collection_out(collection: models.Collection) -> schemas.CollectionOut:
    return schemas.CollectionOut(
        id=encode_id("coll", collection.id),
        organization_id=encode_id("org", collection.organization_id) if collection.organization_id else None,
        name=collection.name,
        description=collection.description,
        icon=collection.icon,
        default_permissions=collection.default_permissions or [],
        created_at=collection.created_at,
    )


def _acl_out(acl: models.CollectionAcl) -> schemas.CollectionAclOut:
    return schemas.CollectionAclOut(
        id=acl.id,
        user_id=encode_id("user", acl.user_id) if acl.user_id else None,
        user_group_id=encode_id("ugrp", acl.user_group_id) if acl.user_group_id else None,
        permissions=acl.permissions or [],
        created_at=acl.created_at,
    )


def _decode(encoded_id: str, kind_tag: str, detail: str) -> int:
    try:
        return decode_id_for_kind(encoded_id, kind_tag)
    except InvalidIdError:
        raise HTTPException(status_code=404, detail=detail)


def _load_collection(db: Session, vc, collection_id: str, permission: str = "see_collection") -> models.Collection:
    decoded = _decode(collection_id, "coll", "Collection not found")
    collection = db.get(models.Collection, decoded)
    if not collection or not has_collection_permission(db, vc, decoded, "see_collection"):
        raise HTTPException(status_code=404, detail="Collection not found")
    if not has_collection_permission(db, vc, decoded, permission):
        raise HTTPException(status_code=403, detail="Not authorized")
    return collection


@router.post("", response_model=schemas.CollectionOut)
def create_collection(
    collection_in: schemas.CollectionCreate,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    if not has_org_permission(user, "manage_collections", user.organization_id):
        raise HTTPException(status_code=403, detail="Not authorized")
    collection = models.Collection(**collection_in.model_dump(), organization_id=user.organization_id)
    db.add(collection)
    db.flush()
    db.add(models.CollectionAcl(collection_id=collection.id, user_id=user.id, permissions=["admin"]))
    audit.log_action(db, user.id, "collection.create", "collection", collection.id, commit=False)
    db.commit()
    db.refresh(collection)
    return _collection_out(collection)


@router.get("", response_model=list[schemas.CollectionOut])
def list_collections(db: Session = Depends(get_db), user: models.User = Depends(get_current_user)):
    vc = build_viewer_context(user)
    ids = visible_collection_ids(db, vc)
    if not ids:
        return []
    rows = db.query(models.Collection).filter(models.Collection.id.in_(ids)).order_by(models.Collection.id).all()
    return [_collection_out(row) for row in rows]


@router.get("/{collection_id}", response_model=schemas.CollectionOut)
def get_collection(collection_id: str, db: Session = Depends(get_db), user: models.User = Depends(get_current_user)):
    return _collection_out(_load_collection(db, build_viewer_context(user), collection_id))


@router.get("/{collection_id}/permissions", response_model=schemas.CollectionPermissionsOut)
def get_permissions(collection_id: str, db: Session = Depends(get_db), user: models.User = Depends(get_current_user)):
    vc = build_viewer_context(user)
    collection = _load_collection(db, vc, collection_id)
    return schemas.CollectionPermissionsOut(
        collection_id=collection_id,
        permissions=sorted(get_collection_permissions(db, vc, collection.id)),
    )


@router.get("/{collection_id}/acl", response_model=list[schemas.CollectionAclOut])
def list_acl(collection_id: str, db: Session = Depends(get_db), user: models.User = Depends(get_current_user)):
    collection = _load_collection(db, build_viewer_context(user), collection_id, "manage_collection_permissions")
    return [_acl_out(acl) for acl in sorted(collection.acl, key=lambda acl: acl.id)]


@router.put("/{collection_id}/acl", response_model=schemas.CollectionAclOut)
def set_acl(
    collection_id: str,
    acl_in: schemas.CollectionAclUpdate,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    collection = _load_collection(db, build_viewer_context(user), collection_id, "manage_collection_permissions")
    query = db.query(models.CollectionAcl).filter(models.CollectionAcl.collection_id == collection.id)
    if acl_in.user_id:
        grantee = db.get(models.User, _decode(acl_in.user_id, "user", "User not found"))
        if not grantee or grantee.organization_id != collection.organization_id:
            raise HTTPException(status_code=404, detail="User not found")
        query = query.filter(models.CollectionAcl.user_id == grantee.id)
        fields = {"user_id": grantee.id}
    else:
        group = db.get(models.UserGroup, _decode(acl_in.user_group_id, "ugrp", "Group not found"))
        if not group or group.organization_id != collection.organization_id:
            raise HTTPException(status_code=404, detail="Group not found")
        query = query.filter(models.CollectionAcl.user_group_id == group.id)
        fields = {"user_group_id": group.id}
    acl = query.first()
    if acl is None:
        acl = models.CollectionAcl(collection_id=collection.id, **fields)
        db.add(acl)
    acl.permissions = acl_in.permissions
    db.flush()
    audit.log_action(
        db, user.id, "collection.acl_set", "collection", collection.id,
        {"acl_id": acl.id, "permissions": acl_in.permissions}, commit=False,
    )
    db.commit()
    db.refresh(acl)
    return _acl_out(acl)


@router.delete("/{collection_id}/acl/{acl_id}")
def delete_acl(
    collection_id: str,
    acl_id: int,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    collection = _load_collection(db, build_viewer_context(user), collection_id, "manage_collection_permissions")
    acl = db.get(models.CollectionAcl, acl_id)
    if not acl or acl.collection_id != collection.id:
        raise HTTPException(status_code=404, detail="ACL entry not found")
    db.delete(acl)
    audit.log_action(db, user.id, "collection.acl_delete", "collection", collection.id, {"acl_id": acl_id}, commit=False)
    db.commit()
    return {"ok": True}
