import pytest

from kb_api.errors import Ok
from kb_api.models import BranchType
from kb_api.services import visibility
from kb_api.services.versioned_store import TOOLS, WIDGETS
from kb_api.services.versioning import execute_create, execute_update
from kb_api.services import org_nodes

from .conftest import collection_gid, tool_data


def ok(result):
    assert isinstance(result, Ok), result
    return result.value


@pytest.fixture
def org(factory):
    return factory.organization()


@pytest.fixture
def collection(factory, org):
    return factory.collection(org, default_permissions=["viewer"])


@pytest.fixture
def author(factory, org, collection):
    user = factory.user(org)
    factory.grant(collection, ["publisher"], user=user)
    return factory.viewer(user)


@pytest.fixture
def tool(db, author, collection):
    return ok(execute_create(db, author, TOOLS, tool_data(collection)))


def test_published_rows_follow_see_collection(db, factory, org, tool):
    assert visibility.can_view(db, factory.viewer(factory.user(org)), tool)
    assert not visibility.can_view(db, factory.viewer(factory.user(factory.organization())), tool)
    assert not visibility.can_view(db, None, tool)


def test_platform_admins_see_everything(db, factory, tool):
    admin = factory.viewer(factory.user(factory.organization(), admin=True))
    assert visibility.can_view(db, admin, tool)


def test_drafts_are_visible_to_their_creator_only(db, factory, org, author, tool):
    draft = ok(execute_update(db, author, TOOLS, TOOLS.encode_row_id(tool), {"branch_type": BranchType.draft}))
    assert visibility.can_view(db, author, draft)
    assert not visibility.can_view(db, factory.viewer(factory.user(org)), draft)


def test_suggestions_are_visible_to_reviewers(db, factory, org, collection, tool):
    suggester = factory.viewer(factory.user(org))
    suggestion = ok(
        execute_update(db, suggester, TOOLS, TOOLS.encode_row_id(tool), {"branch_type": BranchType.suggestion})
    )
    reviewer_user = factory.user(org)
    factory.grant(collection, ["admin"], user=reviewer_user)
    assert visibility.can_view(db, suggester, suggestion)
    assert visibility.can_view(db, factory.viewer(reviewer_user), suggestion)
    assert not visibility.can_view(db, factory.viewer(factory.user(org)), suggestion)


def test_history_follows_the_current_collection(db, factory, org, author, tool):
    private = factory.collection(org)
    factory.grant(private, ["publisher"], user=author.user)
    fresh = factory.viewer(author.user)
    ok(execute_update(db, fresh, TOOLS, TOOLS.encode_row_id(tool), {"collection_id": collection_gid(private)}))
    db.refresh(tool)
    assert not tool.is_latest
    bystander = factory.viewer(factory.user(org))
    assert visibility.collection_id_for_permissions(db, TOOLS, tool) == private.id
    assert not visibility.can_view(db, bystander, tool)


def test_readers_hide_unpermitted_rows(db, factory, org, author, tool):
    outsider = factory.viewer(factory.user(factory.organization()))
    assert visibility.find_by_id(db, outsider, TOOLS, tool.id) is None
    assert visibility.find_by_id(db, author, TOOLS, tool.id).id == tool.id
    assert visibility.find_many_visible(db, outsider, TOOLS, static_id=tool.static_id) == []
    assert visibility.find_first_visible(db, author, TOOLS, static_id=tool.static_id).id == tool.id


def test_get_versioned_node_by_static_and_branch_id(db, author, tool):
    assert visibility.get_versioned_node(db, author, tool.static_id).id == tool.id
    draft = ok(execute_update(db, author, TOOLS, TOOLS.encode_row_id(tool), {"branch_type": BranchType.draft}))
    assert visibility.get_versioned_node(db, author, draft.branch_id).id == draft.id
    assert visibility.get_versioned_node(db, author, "nope_0abc") is None


def test_org_scoped_rows_are_visible_within_the_org(db, factory, org):
    admin = factory.viewer(factory.user(org, org_admin=True))
    widget = ok(org_nodes.create_widget(db, admin, contents=[{"text": "hi"}]))
    assert visibility.can_view(db, factory.viewer(factory.user(org)), widget, WIDGETS)
    assert not visibility.can_view(db, factory.viewer(factory.user(factory.organization())), widget)


def test_find_branches_filters_by_author_and_type(db, factory, org, collection, author, tool):
    other = factory.viewer(factory.user(org))
    rid = TOOLS.encode_row_id(tool)
    mine = ok(execute_update(db, author, TOOLS, rid, {"branch_type": BranchType.suggestion, "name": "Mine"}))
    theirs = ok(execute_update(db, other, TOOLS, rid, {"branch_type": BranchType.suggestion, "name": "Theirs"}))
    draft = ok(execute_update(db, author, TOOLS, rid, {"branch_type": BranchType.draft}))

    everything = visibility.find_branches(db, author, TOOLS, tool.static_id)
    assert [row.id for row in everything] == [draft.id, mine.id]

    reviewer_user = factory.user(org)
    factory.grant(collection, ["admin"], user=reviewer_user)
    reviewer = factory.viewer(reviewer_user)
    assert [row.id for row in visibility.find_branches(db, reviewer, TOOLS, tool.static_id)] == [theirs.id, mine.id]

    assert [row.id for row in visibility.find_branches(db, author, TOOLS, tool.static_id, created_by_me=True)] == [
        draft.id,
        mine.id,
    ]
    assert visibility.find_branches(db, author, TOOLS, tool.static_id, created_by_me=False) == []
    assert [
        row.id
        for row in visibility.find_branches(db, author, TOOLS, tool.static_id, branch_type=BranchType.draft)
    ] == [draft.id]
    assert visibility.find_branches(db, None, TOOLS, tool.static_id) == []


def test_published_versions_newest_first_and_only_major(db, author, tool):
    minor = ok(execute_update(db, author, TOOLS, TOOLS.encode_row_id(tool), {"name": "v2"}))
    major = ok(
        execute_update(
            db, author, TOOLS, TOOLS.encode_row_id(minor),
            {"name": "v3", "major_change_description": {"text": "Rewritten"}},
        )
    )
    versions = visibility.find_published_versions(db, author, TOOLS, tool.static_id)
    assert [row.id for row in versions] == [major.id, minor.id, tool.id]
    assert [row.id for row in visibility.find_published_versions(db, author, TOOLS, tool.static_id, True)] == [
        major.id
    ]


def test_branch_versions(db, author, tool):
    assert visibility.find_branch_versions(db, author, TOOLS, tool.branch_id) is None
    draft = ok(execute_update(db, author, TOOLS, TOOLS.encode_row_id(tool), {"branch_type": BranchType.draft}))
    revised = ok(
        execute_update(
            db, author, TOOLS, TOOLS.encode_row_id(draft), {"major_change_description": {"text": "Big"}}
        )
    )
    assert [row.id for row in visibility.find_branch_versions(db, author, TOOLS, draft.branch_id)] == [
        revised.id,
        draft.id,
    ]
    assert [row.id for row in visibility.find_branch_versions(db, author, TOOLS, draft.branch_id, True)] == [
        revised.id
    ]
