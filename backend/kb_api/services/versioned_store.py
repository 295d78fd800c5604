"""Kind-generic access to the versioned node tables."""

# purpose: one adapter shape over tools, workflows, spaces and widgets so the
#   versioning engine is written once
# status: stable
# depends_on: kb_api.models, kb_api.ids

from __future__ import annotations

import copy
from dataclasses import dataclass
from typing import Any, Callable, Generic, TypeVar

import sqlalchemy as sa
from sqlalchemy.orm import Session

from .. import models
from ..ids import decode_id_for_kind, encode_id

M = TypeVar("M", bound=models.VersionedNodeMixin)

# Row columns that belong to one physical version and are never carried over
# to the next one.
NON_PRESERVABLE_FIELDS = frozenset(
    {
        "id",
        "created_at",
        "is_latest",
        "static_id",
        "previous_version_id",
        "created_by_user_id",
        "suggested_by_user_id",
        "branched_from_id",
        "branch_id",
        "major_change_description",
        "meta",
    }
)


class PayloadValidationError(ValueError):
    def __init__(self, message: str, param: str | None = None):
        self.param = param
        super().__init__(message)


def expect_json_object(value: Any, param: str) -> dict:
    if not isinstance(value, dict):
        raise PayloadValidationError(f"Expected {param} to be an object", param)
    return value


def expect_json_array(value: Any, param: str) -> list:
    if not isinstance(value, list):
        raise PayloadValidationError(f"Expected {param} to be an array", param)
    return value


def expect_slate_node(value: Any, param: str) -> None:
    node = expect_json_object(value, param)
    if "text" in node:
        if not isinstance(node["text"], str):
            raise PayloadValidationError(f"Text node in {param} must have a string text value", param)
        if "type" in node or "children" in node:
            raise PayloadValidationError(f"Text node in {param} must not have type or children", param)
        return
    if "type" not in node and "children" not in node:
        raise PayloadValidationError(f"Node in {param} has no text, type or children", param)
    if "type" in node and not isinstance(node["type"], str):
        raise PayloadValidationError(f"Node type in {param} must be a string", param)
    # legacy configurations may still carry element nodes without children
    if "children" in node:
        expect_slate_node_array(node["children"], param)


def expect_slate_node_array(value: Any, param: str) -> None:
    for node in expect_json_array(value, param):
        expect_slate_node(node, param)


def _validate_string_list(data: dict, key: str) -> None:
    if key in data:
        for item in expect_json_array(data[key], key):
            if not isinstance(item, str):
                raise PayloadValidationError(f"Expected every entry of {key} to be a string", key)


def validate_tool_payload(data: dict) -> None:
    if "configuration" in data:
        configuration = expect_json_object(data["configuration"], "configuration")
        # legacy tools were stored with an empty configuration
        if configuration:
            inner = expect_json_object(configuration.get("data"), "configuration")
            if "children" not in inner:
                raise PayloadValidationError("Tool configuration data has no children", "configuration")
            expect_slate_node_array(inner["children"], "configuration")
    if "inputs" in data:
        for tool_input in expect_json_array(data["inputs"], "inputs"):
            expect_json_object(tool_input, "inputs")
    _validate_string_list(data, "keywords")


def validate_workflow_payload(data: dict) -> None:
    if "contents" in data:
        expect_slate_node_array(data["contents"], "contents")
    _validate_string_list(data, "keywords")


def validate_space_payload(data: dict) -> None:
    if "widgets" in data:
        expect_json_array(data["widgets"], "widgets")


def validate_widget_payload(data: dict) -> None:
    if "contents" in data:
        expect_slate_node_array(data["contents"], "contents")
    if "inputs" in data:
        for widget_input in expect_json_array(data["inputs"], "inputs"):
            expect_json_object(widget_input, "inputs")


def get_metadata(row: models.VersionedNodeMixin) -> dict[str, Any]:
    meta = row.meta if row.meta is not None else {}
    if not isinstance(meta, dict):
        raise ValueError(f"Metadata of {type(row).__name__} {row.id} is not an object")
    return meta


@dataclass(frozen=True)
class VersionedStore(Generic[M]):
    """Table adapter for one versioned node kind.

    ``publish_permission`` is the collection permission needed to publish this
    kind; organization-scoped kinds (spaces, widgets) have none.
    """

    model: type[M]
    kind: str
    static_id_prefix: str
    branch_id_prefix: str
    revision_id_prefix: str
    publish_permission: str | None
    validate_payload: Callable[[dict], None]
    # columns where an explicit null means "keep the previous value"
    required_fields: frozenset[str]

    @property
    def has_collection(self) -> bool:
        return "collection_id" in sa.inspect(self.model).columns

    @property
    def payload_fields(self) -> frozenset[str]:
        return frozenset(
            attr.key for attr in sa.inspect(self.model).column_attrs if attr.key not in NON_PRESERVABLE_FIELDS
        )

    def encode_row_id(self, row: M) -> str:
        return encode_id(self.revision_id_prefix, row.id)

    def decode_row_id(self, opaque_id: str) -> int:
        return decode_id_for_kind(opaque_id, self.revision_id_prefix)

    def find_unique(self, db: Session, row_id: int) -> M | None:
        return db.get(self.model, row_id)

    def find_many(self, db: Session, **filters: Any) -> list[M]:
        return db.query(self.model).filter_by(**filters).order_by(self.model.id).all()

    def find_first(self, db: Session, **filters: Any) -> M | None:
        return db.query(self.model).filter_by(**filters).order_by(self.model.id.desc()).first()

    def find_history(self, db: Session, *criteria: Any, **filters: Any) -> list[M]:
        """Rows matching ``criteria`` and ``filters``, newest version first."""

        return (
            db.query(self.model)
            .filter(*criteria)
            .filter_by(**filters)
            .order_by(self.model.created_at.desc(), self.model.id.desc())
            .all()
        )

    def create(self, db: Session, data: dict[str, Any]) -> M:
        row = self.model(**data)
        db.add(row)
        db.flush()
        return row

    def retire(self, db: Session, row: M) -> M:
        """Flip ``is_latest`` off; the only in-place change a version ever gets."""

        row.is_latest = False
        db.add(row)
        db.flush()
        return row

    def preservable_fields(self, row: M) -> dict[str, Any]:
        return {key: copy.deepcopy(getattr(row, key)) for key in self.payload_fields}


TOOLS: VersionedStore[models.Tool] = VersionedStore(
    model=models.Tool,
    kind="tool",
    static_id_prefix="tool",
    branch_id_prefix="tbrch",
    revision_id_prefix="trev",
    publish_permission="publish_tool",
    validate_payload=validate_tool_payload,
    required_fields=frozenset({"name", "description", "component", "inputs", "configuration", "keywords"}),
)

WORKFLOWS: VersionedStore[models.Workflow] = VersionedStore(
    model=models.Workflow,
    kind="workflow",
    static_id_prefix="wrkf",
    branch_id_prefix="wbrch",
    revision_id_prefix="wrev",
    publish_permission="publish_workflow",
    validate_payload=validate_workflow_payload,
    required_fields=frozenset({"name", "description", "contents", "keywords"}),
)

SPACES: VersionedStore[models.Space] = VersionedStore(
    model=models.Space,
    kind="space",
    static_id_prefix="spce",
    branch_id_prefix="sbrch",
    revision_id_prefix="srev",
    publish_permission=None,
    validate_payload=validate_space_payload,
    required_fields=frozenset({"name", "widgets", "visible_to_org"}),
)

WIDGETS: VersionedStore[models.Widget] = VersionedStore(
    model=models.Widget,
    kind="widget",
    static_id_prefix="wdgt",
    branch_id_prefix="wgbrch",
    revision_id_prefix="wgrev",
    publish_permission=None,
    validate_payload=validate_widget_payload,
    required_fields=frozenset({"contents", "inputs"}),
)

ALL_STORES: tuple[VersionedStore, ...] = (TOOLS, WORKFLOWS, SPACES, WIDGETS)


def store_for_model(row: models.VersionedNodeMixin) -> VersionedStore:
    for store in ALL_STORES:
        if isinstance(row, store.model):
            return store
    raise TypeError(f"Not a versioned node: {type(row).__name__}")


def store_for_prefix(prefix: str) -> VersionedStore | None:
    for store in ALL_STORES:
        if prefix in (store.static_id_prefix, store.branch_id_prefix):
            return store
    return None
