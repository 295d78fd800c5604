import enum
from datetime import datetime, timezone

import sqlalchemy as sa
from sqlalchemy import (
    Column,
    String,
    Boolean,
    DateTime,
    ForeignKey,
    JSON,
    Integer,
    Text,
)
from sqlalchemy.orm import declared_attr, relationship

from .database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BranchType(str, enum.Enum):
    draft = "draft"
    suggestion = "suggestion"
    published = "published"
    remix = "remix"


class Organization(Base):
    __tablename__ = "organizations"
    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String)
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    users = relationship("User", back_populates="organization")


class User(Base):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True, autoincrement=True)
    organization_id = Column(Integer, ForeignKey("organizations.id"))
    email = Column(String, unique=True)
    name = Column(String)
    is_organization_admin = Column(Boolean, default=False, nullable=False)
    # platform staff, bypasses visibility checks
    is_admin = Column(Boolean, default=False, nullable=False)
    disabled_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=_utcnow)

    organization = relationship("Organization", back_populates="users")
    group_memberships = relationship("UserGroupMember", back_populates="user")


class UserGroup(Base):
    __tablename__ = "user_groups"
    id = Column(Integer, primary_key=True, autoincrement=True)
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=False)
    name = Column(String, nullable=False)
    created_at = Column(DateTime, default=_utcnow)

    members = relationship("UserGroupMember", back_populates="user_group")


class UserGroupMember(Base):
    __tablename__ = "user_group_members"
    user_group_id = Column(Integer, ForeignKey("user_groups.id"), primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), primary_key=True)
    manager = Column(Boolean, default=False, nullable=False)

    user = relationship("User", back_populates="group_memberships")
    user_group = relationship("UserGroup", back_populates="members")


class Collection(Base):
    __tablename__ = "collections"
    id = Column(Integer, primary_key=True, autoincrement=True)
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=True)
    name = Column(String, nullable=False)
    description = Column(Text, default="", nullable=False)
    icon = Column(String)
    # permission group names granted to every member of the owning organization
    default_permissions = Column(JSON, default=list, nullable=False)
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    acl = relationship("CollectionAcl", back_populates="collection", cascade="all, delete-orphan")


class CollectionAcl(Base):
    __tablename__ = "collection_acl"
    id = Column(Integer, primary_key=True, autoincrement=True)
    collection_id = Column(Integer, ForeignKey("collections.id"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    user_group_id = Column(Integer, ForeignKey("user_groups.id"), nullable=True)
    # permission group names, never individual permissions
    permissions = Column(JSON, default=list, nullable=False)
    created_at = Column(DateTime, default=_utcnow)

    collection = relationship("Collection", back_populates="acl")

    __table_args__ = (
        sa.CheckConstraint(
            "(user_id IS NULL) <> (user_group_id IS NULL)",
            name="ck_collection_acl_user_xor_group",
        ),
        sa.Index(
            "idx_collection_acl_collection_user",
            "collection_id",
            "user_id",
            unique=True,
            sqlite_where=sa.text("user_group_id IS NULL"),
            postgresql_where=sa.text("user_group_id IS NULL"),
        ),
        sa.Index(
            "idx_collection_acl_collection_user_group",
            "collection_id",
            "user_group_id",
            unique=True,
            sqlite_where=sa.text("user_id IS NULL"),
            postgresql_where=sa.text("user_id IS NULL"),
        ),
    )


def versioned_node_indexes(table: str) -> tuple:
    """Indexes shared by every versioned table.

    The two partial unique indexes are what actually guarantees a single
    latest row per lineage; the application-level ``is_latest`` recheck only
    turns most conflicts into a friendlier error before they reach them.
    """

    published = "is_latest = true AND branch_type = 'published'"
    unpublished = "is_latest = true AND branch_type <> 'published'"
    return (
        sa.Index(f"idx_{table}_static_id_is_latest_branch_type", "static_id", "is_latest", "branch_type"),
        sa.Index(f"idx_{table}_branch_id", "branch_id"),
        sa.Index(
            f"idx_{table}_unique_static_id_published",
            "static_id",
            unique=True,
            sqlite_where=sa.text(published),
            postgresql_where=sa.text(published),
        ),
        sa.Index(
            f"idx_{table}_unique_branch_id_unpublished",
            "branch_id",
            unique=True,
            sqlite_where=sa.text(unpublished),
            postgresql_where=sa.text(unpublished),
        ),
    )


class VersionedNodeMixin:
    """Columns common to tools, workflows, spaces and widgets.

    Every physical row is one immutable version of a logical entity
    identified by ``static_id``. Non-published rows also share a
    ``branch_id`` per draft/suggestion lineage.
    """

    id = Column(Integer, primary_key=True, autoincrement=True)
    created_at = Column(DateTime, default=_utcnow, nullable=False)
    static_id = Column(String, nullable=False)
    branch_id = Column(String, nullable=True)
    branch_type = Column(
        sa.Enum(BranchType, name="branch_type_enum", native_enum=False, length=16),
        nullable=False,
    )
    is_latest = Column(Boolean, nullable=False)
    is_archived = Column(Boolean, default=False, nullable=False)
    major_change_description = Column(JSON(none_as_null=True), nullable=True)
    meta = Column("metadata", JSON, default=dict, nullable=False)

    @declared_attr
    def previous_version_id(cls):
        return Column(Integer, ForeignKey(f"{cls.__tablename__}.id"), nullable=True)

    @declared_attr
    def branched_from_id(cls):
        return Column(Integer, ForeignKey(f"{cls.__tablename__}.id"), nullable=True)

    @declared_attr
    def created_by_user_id(cls):
        return Column(Integer, ForeignKey("users.id"), nullable=False)

    @declared_attr
    def suggested_by_user_id(cls):
        return Column(Integer, ForeignKey("users.id"), nullable=True)

    @declared_attr
    def __table_args__(cls):
        return versioned_node_indexes(cls.__tablename__)


class Tool(VersionedNodeMixin, Base):
    __tablename__ = "tools"
    collection_id = Column(Integer, ForeignKey("collections.id"), nullable=False)
    name = Column(String, nullable=False)
    description = Column(Text, default="", nullable=False)
    icon = Column(String, nullable=True)
    component = Column(String, nullable=False)
    inputs = Column(JSON, default=list, nullable=False)
    configuration = Column(JSON, default=dict, nullable=False)
    keywords = Column(JSON, default=list, nullable=False)

    collection = relationship("Collection")


class Workflow(VersionedNodeMixin, Base):
    __tablename__ = "workflows"
    collection_id = Column(Integer, ForeignKey("collections.id"), nullable=False)
    name = Column(String, nullable=False)
    description = Column(Text, default="", nullable=False)
    icon = Column(String, nullable=True)
    contents = Column(JSON, default=list, nullable=False)
    keywords = Column(JSON, default=list, nullable=False)

    collection = relationship("Collection")


class Space(VersionedNodeMixin, Base):
    __tablename__ = "spaces"
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=False)
    name = Column(String, nullable=False)
    icon = Column(String, nullable=True)
    widgets = Column(JSON, default=list, nullable=False)
    visible_to_org = Column(Boolean, default=False, nullable=False)


class SpaceAcl(Base):
    __tablename__ = "space_acl"
    id = Column(Integer, primary_key=True, autoincrement=True)
    static_id = Column(String, nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    user_group_id = Column(Integer, ForeignKey("user_groups.id"), nullable=True)
    created_at = Column(DateTime, default=_utcnow)

    user_group = relationship("UserGroup")


class Widget(VersionedNodeMixin, Base):
    __tablename__ = "widgets"
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=False)
    contents = Column(JSON, default=list, nullable=False)
    inputs = Column(JSON, default=list, nullable=False)


class AuditLog(Base):
    __tablename__ = "audit_logs"
    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"))
    action = Column(String, nullable=False)
    target_type = Column(String)
    target_id = Column(Integer)
    details = Column(JSON, default=dict)
    created_at = Column(DateTime, default=_utcnow)
