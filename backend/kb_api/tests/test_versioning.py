import pytest
from sqlalchemy.exc import IntegrityError

from kb_api import models
from kb_api.errors import DisallowedInputKeysError, Err, Ok
from kb_api.ids import encode_id
from kb_api.models import BranchType
from kb_api.services import versioning
from kb_api.services.versioned_store import TOOLS, WORKFLOWS
from kb_api.services.versioning import (
    execute_create,
    execute_delete,
    execute_merge,
    execute_restore,
    execute_update,
)

from .conftest import TestingSessionLocal, collection_gid, tool_data, workflow_data


def ok(result):
    assert isinstance(result, Ok), result
    return result.value


def err(result, code, param=None):
    assert isinstance(result, Err), result
    assert result.error.code == code
    assert result.error.param == param
    return result.error


def rid(row):
    return TOOLS.encode_row_id(row)


def latest_published(db, static_id):
    return (
        db.query(models.Tool)
        .filter_by(static_id=static_id, branch_type=BranchType.published, is_latest=True)
        .all()
    )


@pytest.fixture
def org(factory):
    return factory.organization()


@pytest.fixture
def collection(factory, org):
    return factory.collection(org, default_permissions=["viewer"])


@pytest.fixture
def publisher(factory, org, collection):
    user = factory.user(org)
    factory.grant(collection, ["publisher"], user=user)
    return factory.viewer(user)


@pytest.fixture
def reviewer(factory, org, collection):
    user = factory.user(org)
    factory.grant(collection, ["admin"], user=user)
    return factory.viewer(user)


@pytest.fixture
def member(factory, org):
    return factory.viewer(factory.user(org))


@pytest.fixture
def published_tool(db, publisher, collection):
    return ok(execute_create(db, publisher, TOOLS, tool_data(collection)))


def test_create_published_tool(db, publisher, collection):
    tool = ok(execute_create(db, publisher, TOOLS, tool_data(collection)))
    assert tool.static_id.startswith("tool_0")
    assert tool.branch_type == BranchType.published
    assert tool.branch_id is None
    assert tool.is_latest and not tool.is_archived
    assert tool.previous_version_id is None
    assert tool.created_by_user_id == publisher.user.id
    assert tool.meta == {}
    log = db.query(models.AuditLog).filter_by(action="tool.create", target_id=tool.id).one()
    assert log.details["static_id"] == tool.static_id


def test_create_requires_a_viewer(db, collection):
    before = db.query(models.Tool).count()
    err(execute_create(db, None, TOOLS, tool_data(collection)), "unauthenticated")
    assert db.query(models.Tool).count() == before


def test_create_in_unseen_collection_is_not_found(db, factory, collection):
    outsider = factory.viewer(factory.user(factory.organization()))
    err(execute_create(db, outsider, TOOLS, tool_data(collection)), "notFound", "collectionId")
    err(execute_create(db, outsider, TOOLS, tool_data(collection, collection_id="coll_nope")), "notFound", "collectionId")


def test_publish_requires_publish_permission(db, member, collection):
    err(execute_create(db, member, TOOLS, tool_data(collection)), "insufficientPermission")


def test_member_can_create_a_draft(db, member, collection):
    draft = ok(execute_create(db, member, TOOLS, tool_data(collection, branch_type=BranchType.draft)))
    assert draft.branch_type == BranchType.draft
    assert draft.branch_id.startswith("tbrch_0")
    assert draft.suggested_by_user_id == member.user.id


def test_system_managed_keys_are_rejected(db, publisher, collection):
    with pytest.raises(DisallowedInputKeysError) as excinfo:
        execute_create(db, publisher, TOOLS, tool_data(collection, is_latest=False, static_id="tool_0x"))
    assert excinfo.value.keys == ["is_latest", "static_id"]


def test_invalid_payload_is_an_invalid_value(db, publisher, collection):
    result = execute_create(db, publisher, TOOLS, tool_data(collection, configuration={"data": {}}))
    err(result, "invalidValue", "configuration")
    result = execute_create(db, publisher, WORKFLOWS, workflow_data(collection, contents={"type": "p"}))
    err(result, "invalidValue", "contents")


def test_remix_is_not_implemented(db, publisher, collection, published_tool):
    with pytest.raises(NotImplementedError):
        execute_update(db, publisher, TOOLS, rid(published_tool), {"branch_type": BranchType.remix})


def test_update_with_empty_payload_preserves_fields(db, publisher, published_tool):
    before = TOOLS.preservable_fields(published_tool)
    updated = ok(execute_update(db, publisher, TOOLS, rid(published_tool), {}))
    db.refresh(published_tool)
    assert TOOLS.preservable_fields(updated) == before
    assert updated.static_id == published_tool.static_id
    assert updated.previous_version_id == published_tool.id
    assert updated.id != published_tool.id
    assert not published_tool.is_latest
    assert updated.is_latest


def test_update_null_clears_optional_and_keeps_required(db, publisher, collection):
    tool = ok(execute_create(db, publisher, TOOLS, tool_data(collection, icon="star")))
    updated = ok(execute_update(db, publisher, TOOLS, rid(tool), {"icon": None, "name": None, "description": "New"}))
    assert updated.icon is None
    assert updated.name == "Greeting"
    assert updated.description == "New"


def test_metadata_and_change_description_are_not_carried_forward(db, publisher, published_tool):
    first = ok(
        execute_update(db, publisher, TOOLS, rid(published_tool), {"major_change_description": {"text": "v2"}})
    )
    assert first.major_change_description == {"text": "v2"}
    second = ok(execute_update(db, publisher, TOOLS, rid(first), {"name": "Renamed"}))
    assert second.major_change_description is None
    assert second.meta == {}


def test_single_latest_published_row(db, publisher, published_tool):
    current = published_tool
    for name in ("one", "two", "three"):
        current = ok(execute_update(db, publisher, TOOLS, rid(current), {"name": name}))
    rows = latest_published(db, published_tool.static_id)
    assert [row.id for row in rows] == [current.id]
    assert db.query(models.Tool).filter_by(static_id=published_tool.static_id).count() == 4


def test_unique_index_rejects_a_second_latest_published_row(db, publisher, published_tool):
    data = {
        **versioning.generated_fields(publisher.user, published_tool),
        **TOOLS.preservable_fields(published_tool),
    }
    db.add(models.Tool(**data))
    with pytest.raises(IntegrityError):
        db.commit()
    db.rollback()


def test_write_turns_integrity_errors_into_already_modified(db, publisher, published_tool):
    data = {
        **versioning.generated_fields(publisher.user, published_tool),
        **TOOLS.preservable_fields(published_tool),
    }
    err(versioning.write(db, lambda: TOOLS.create(db, data)), "alreadyModified")
    db.refresh(published_tool)
    assert published_tool.is_latest
    assert len(latest_published(db, published_tool.static_id)) == 1


def test_update_of_a_stale_version_is_already_modified(db, publisher, published_tool):
    base_id = rid(published_tool)
    ok(execute_update(db, publisher, TOOLS, base_id, {"name": "first"}))
    err(execute_update(db, publisher, TOOLS, base_id, {"name": "second"}), "alreadyModified")
    (head,) = latest_published(db, published_tool.static_id)
    assert head.name == "first"


def test_concurrent_updates_from_the_same_version(publisher, published_tool):
    base_id = rid(published_tool)

    def always(row):
        return True

    first_db, second_db = TestingSessionLocal(), TestingSessionLocal()
    try:
        first = ok(versioning.load_for_update(first_db, TOOLS, base_id, always))
        second = ok(versioning.load_for_update(second_db, TOOLS, base_id, always))

        def update(db, existing, name):
            data = {
                **versioning.generated_fields(publisher.user, existing),
                **TOOLS.preservable_fields(existing),
                "name": name,
            }

            def operation():
                TOOLS.retire(db, existing)
                return TOOLS.create(db, data)

            return versioning.write(db, operation)

        ok(update(first_db, first, "first"))
        err(update(second_db, second, "second"), "alreadyModified")
    finally:
        first_db.close()
        second_db.close()

    check_db = TestingSessionLocal()
    try:
        (head,) = latest_published(check_db, published_tool.static_id)
        assert head.name == "first"
    finally:
        check_db.close()


def test_update_of_missing_or_malformed_id_is_not_found(db, publisher):
    err(execute_update(db, publisher, TOOLS, "trev_nope", {}), "notFound")
    err(execute_update(db, publisher, TOOLS, encode_id("trev", 987654), {}), "notFound")
    err(execute_update(db, publisher, TOOLS, encode_id("wrev", 1), {}), "notFound")
    err(execute_update(db, publisher, TOOLS, encode_id("trev", 10**20), {}), "notFound")
    err(execute_delete(db, publisher, TOOLS, encode_id("trev", 2**63)), "notFound")


def test_branching_leaves_published_untouched(db, member, published_tool):
    suggestion = ok(
        execute_update(
            db, member, TOOLS, rid(published_tool), {"branch_type": BranchType.suggestion, "name": "Better"}
        )
    )
    assert suggestion.branch_type == BranchType.suggestion
    assert suggestion.branch_id.startswith("tbrch_0")
    assert suggestion.branched_from_id == published_tool.id
    assert suggestion.suggested_by_user_id == member.user.id

    revised = ok(execute_update(db, member, TOOLS, rid(suggestion), {"name": "Best"}))
    assert revised.branch_id == suggestion.branch_id
    assert revised.previous_version_id == suggestion.id

    (head,) = latest_published(db, published_tool.static_id)
    assert head.id == published_tool.id
    assert head.name == "Greeting"


def test_one_open_branch_per_type(db, member, published_tool):
    ok(execute_update(db, member, TOOLS, rid(published_tool), {"branch_type": BranchType.draft}))
    err(
        execute_update(db, member, TOOLS, rid(published_tool), {"branch_type": BranchType.draft}),
        "invalidValue",
        "branchType",
    )
    ok(execute_update(db, member, TOOLS, rid(published_tool), {"branch_type": BranchType.suggestion}))


def test_branches_are_private_to_their_author(db, factory, org, member, published_tool):
    draft = ok(execute_update(db, member, TOOLS, rid(published_tool), {"branch_type": BranchType.draft}))
    other = factory.viewer(factory.user(org))
    err(execute_update(db, other, TOOLS, rid(draft), {"name": "Hijack"}), "notFound")
    err(execute_delete(db, other, TOOLS, rid(draft)), "notFound")


def test_drafts_are_published_through_merge(db, publisher, published_tool):
    draft = ok(execute_update(db, publisher, TOOLS, rid(published_tool), {"branch_type": BranchType.draft}))
    err(
        execute_update(db, publisher, TOOLS, rid(draft), {"branch_type": BranchType.published}),
        "invalidValue",
        "branchType",
    )


def test_moving_collections_needs_access_to_the_target(db, factory, org, publisher, published_tool):
    hidden = factory.collection(org)
    err(
        execute_update(db, publisher, TOOLS, rid(published_tool), {"collection_id": collection_gid(hidden)}),
        "notFound",
        "collectionId",
    )
    viewable = factory.collection(org, default_permissions=["viewer"])
    err(
        execute_update(db, publisher, TOOLS, rid(published_tool), {"collection_id": collection_gid(viewable)}),
        "insufficientPermission",
    )
    factory.grant(viewable, ["publisher"], user=publisher.user)
    fresh = factory.viewer(publisher.user)
    moved = ok(
        execute_update(db, fresh, TOOLS, rid(published_tool), {"collection_id": collection_gid(viewable)})
    )
    assert moved.collection_id == viewable.id


def test_merge_round_trip(db, member, reviewer, published_tool):
    suggestion = ok(
        execute_update(
            db, member, TOOLS, rid(published_tool), {"branch_type": BranchType.suggestion, "name": "Better"}
        )
    )
    merged = ok(execute_merge(db, reviewer, TOOLS, rid(suggestion), rid(published_tool), {}))

    assert merged.branch_type == BranchType.published
    assert merged.name == "Better"
    assert merged.branch_id is None
    assert merged.previous_version_id == published_tool.id
    assert merged.static_id == published_tool.static_id

    (head,) = latest_published(db, published_tool.static_id)
    assert head.id == merged.id

    archived = (
        db.query(models.Tool).filter_by(branch_id=suggestion.branch_id, is_latest=True).one()
    )
    assert archived.is_archived
    assert archived.branch_type == BranchType.suggestion
    assert archived.previous_version_id == suggestion.id
    assert archived.meta == {"archiveReason": "approved", "mergedToId": rid(merged)}
    assert merged.meta == {"mergedFromId": rid(archived)}

    db.refresh(suggestion)
    assert not suggestion.is_latest


def test_merging_a_suggestion_needs_review_permission(db, member, publisher, published_tool):
    suggestion = ok(
        execute_update(db, member, TOOLS, rid(published_tool), {"branch_type": BranchType.suggestion})
    )
    err(
        execute_merge(db, publisher, TOOLS, rid(suggestion), rid(published_tool), {}),
        "insufficientPermission",
    )


def test_merge_without_target_publishes_a_new_entity(db, publisher, collection):
    draft = ok(execute_create(db, publisher, TOOLS, tool_data(collection, branch_type=BranchType.draft)))
    merged = ok(execute_merge(db, publisher, TOOLS, rid(draft), None, {}))
    assert merged.branch_type == BranchType.published
    assert merged.previous_version_id is None
    assert merged.static_id == draft.static_id

    second = ok(execute_update(db, publisher, TOOLS, rid(merged), {"branch_type": BranchType.draft}))
    err(execute_merge(db, publisher, TOOLS, rid(second), None, {}), "alreadyModified")


def test_merge_carries_the_change_description(db, publisher, published_tool):
    draft = ok(
        execute_update(
            db,
            publisher,
            TOOLS,
            rid(published_tool),
            {"branch_type": BranchType.draft, "major_change_description": {"text": "Rewrite"}},
        )
    )
    merged = ok(execute_merge(db, publisher, TOOLS, rid(draft), rid(published_tool), {}))
    assert merged.major_change_description == {"text": "Rewrite"}


def test_merge_validation(db, publisher, collection, published_tool):
    other = ok(execute_create(db, publisher, TOOLS, tool_data(collection)))
    draft = ok(execute_update(db, publisher, TOOLS, rid(published_tool), {"branch_type": BranchType.draft}))
    err(execute_merge(db, publisher, TOOLS, rid(draft), rid(other), {}), "invalidValue", "toId")
    err(execute_merge(db, publisher, TOOLS, rid(draft), rid(draft), {}), "invalidValue", "toId")
    err(
        execute_merge(db, publisher, TOOLS, rid(draft), rid(published_tool), {"branch_type": BranchType.draft}),
        "invalidValue",
        "branchType",
    )
    err(execute_merge(db, None, TOOLS, rid(draft), rid(published_tool), {}), "unauthenticated")


def test_delete_then_double_delete(db, publisher, published_tool):
    deleted = ok(execute_delete(db, publisher, TOOLS, rid(published_tool)))
    assert deleted.is_archived and deleted.is_latest
    assert deleted.previous_version_id == published_tool.id
    err(execute_delete(db, publisher, TOOLS, rid(deleted)), "invalidValue")
    err(execute_delete(db, publisher, TOOLS, rid(published_tool)), "alreadyModified")


def test_restore_after_delete(db, publisher, published_tool):
    err(execute_restore(db, publisher, TOOLS, rid(published_tool)), "invalidValue")
    deleted = ok(execute_delete(db, publisher, TOOLS, rid(published_tool)))
    restored = ok(execute_restore(db, publisher, TOOLS, rid(deleted)))
    assert not restored.is_archived
    assert restored.name == published_tool.name
    assert len(latest_published(db, published_tool.static_id)) == 1


def test_deleting_published_needs_publish_permission(db, member, published_tool):
    err(execute_delete(db, member, TOOLS, rid(published_tool)), "insufficientPermission")


def test_suggestions_cannot_be_restored(db, member, collection):
    suggestion = ok(
        execute_create(db, member, TOOLS, tool_data(collection, branch_type=BranchType.suggestion))
    )
    withdrawn = ok(execute_delete(db, member, TOOLS, rid(suggestion)))
    assert withdrawn.meta == {}
    err(execute_restore(db, member, TOOLS, rid(withdrawn)), "invalidValue")


def test_reviewer_rejecting_a_suggestion_records_the_reason(db, member, reviewer, collection):
    suggestion = ok(
        execute_create(db, member, TOOLS, tool_data(collection, branch_type=BranchType.suggestion))
    )
    rejected = ok(execute_delete(db, reviewer, TOOLS, rid(suggestion)))
    assert rejected.is_archived
    assert rejected.meta == {"archiveReason": "rejected"}


def test_workflows_use_the_same_engine(db, factory, org, collection):
    user = factory.user(org)
    factory.grant(collection, ["publisher"], user=user)
    vc = factory.viewer(user)
    workflow = ok(execute_create(db, vc, WORKFLOWS, workflow_data(collection)))
    assert workflow.static_id.startswith("wrkf_0")
    updated = ok(execute_update(db, vc, WORKFLOWS, WORKFLOWS.encode_row_id(workflow), {"name": "Renamed"}))
    assert updated.contents == workflow.contents
    err(execute_update(db, vc, TOOLS, WORKFLOWS.encode_row_id(updated), {}), "notFound")
