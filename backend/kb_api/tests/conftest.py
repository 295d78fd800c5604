import os
os.environ["TESTING"] = "1"
os.environ.setdefault("SECRET_KEY", "test-secret")
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

import sys
from pathlib import Path

import uuid

sys.path.append(str(Path(__file__).resolve().parents[2]))

from kb_api.main import app
from kb_api.database import Base, enable_sqlite_foreign_keys, get_db
from kb_api.auth import ViewerContext, build_viewer_context, create_access_token
from kb_api.ids import encode_id
from kb_api import models

SQLALCHEMY_DATABASE_URL = "sqlite:///./test.db"
engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False, "timeout": 30},
)
enable_sqlite_foreign_keys(engine)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base.metadata.drop_all(bind=engine)
Base.metadata.create_all(bind=engine)

def override_get_db():
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()

app.dependency_overrides[get_db] = override_get_db


@pytest.fixture
def client():
    with TestClient(app) as c:
        yield c


@pytest.fixture
def db():
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


class Factory:
    """Builds organizations, users, groups and collections for one test."""

    def __init__(self, db):
        self.db = db

    def _save(self, obj):
        self.db.add(obj)
        self.db.commit()
        self.db.refresh(obj)
        return obj

    def organization(self, name="Acme"):
        return self._save(models.Organization(name=name))

    def user(self, organization=None, *, org_admin=False, admin=False, disabled=False):
        from datetime import datetime, timezone

        return self._save(
            models.User(
                organization_id=organization.id if organization else None,
                email=f"{uuid.uuid4()}@example.com",
                name="Test User",
                is_organization_admin=org_admin,
                is_admin=admin,
                disabled_at=datetime.now(timezone.utc) if disabled else None,
            )
        )

    def group(self, organization, members=(), managers=()):
        group = self._save(models.UserGroup(organization_id=organization.id, name=f"group-{uuid.uuid4()}"))
        for user in members:
            self.db.add(models.UserGroupMember(user_group_id=group.id, user_id=user.id, manager=False))
        for user in managers:
            self.db.add(models.UserGroupMember(user_group_id=group.id, user_id=user.id, manager=True))
        self.db.commit()
        return group

    def collection(self, organization=None, default_permissions=()):
        return self._save(
            models.Collection(
                organization_id=organization.id if organization else None,
                name=f"collection-{uuid.uuid4()}",
                default_permissions=list(default_permissions),
            )
        )

    def grant(self, collection, permissions, *, user=None, group=None):
        return self._save(
            models.CollectionAcl(
                collection_id=collection.id,
                user_id=user.id if user else None,
                user_group_id=group.id if group else None,
                permissions=list(permissions),
            )
        )

    def viewer(self, user) -> ViewerContext:
        self.db.refresh(user)
        return build_viewer_context(user)


@pytest.fixture
def factory(db):
    return Factory(db)


def auth_headers(user) -> dict:
    return {"Authorization": f"Bearer {create_access_token({'sub': user.email})}"}


def collection_gid(collection) -> str:
    return encode_id("coll", collection.id)


def tool_data(collection, **overrides) -> dict:
    data = {
        "collection_id": collection_gid(collection),
        "name": "Greeting",
        "description": "Say hello",
        "component": "GmailAction",
        "inputs": [{"id": "name", "placeholder": "Name"}],
        "configuration": {"data": {"children": [{"type": "paragraph", "children": [{"text": "Hi"}]}]}},
        "keywords": ["hello"],
    }
    data.update(overrides)
    return data


def workflow_data(collection, **overrides) -> dict:
    data = {
        "collection_id": collection_gid(collection),
        "name": "Onboarding",
        "description": "Steps for new customers",
        "contents": [{"type": "paragraph", "children": [{"text": "Step one"}]}],
        "keywords": ["onboarding"],
    }
    data.update(overrides)
    return data
