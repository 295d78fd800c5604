from kb_api.services.versioned_store import TOOLS
from kb_api.services.versioning import execute_create, execute_update

from .conftest import auth_headers, tool_data


def test_versioned_mutations_are_audited(client, db, factory):
    org = factory.organization()
    collection = factory.collection(org)
    user = factory.user(org)
    factory.grant(collection, ["publisher"], user=user)
    vc = factory.viewer(user)
    tool = execute_create(db, vc, TOOLS, tool_data(collection)).value
    execute_update(db, vc, TOOLS, TOOLS.encode_row_id(tool), {"name": "v2"})

    logs = client.get("/api/audit/", params={"target_type": "tool"}, headers=auth_headers(user)).json()
    assert [log["action"] for log in logs] == ["tool.update", "tool.create"]

    report = client.get(
        "/api/audit/report",
        params={"start": "2000-01-01T00:00:00", "end": "2100-01-01T00:00:00"},
        headers=auth_headers(user),
    ).json()
    assert {"action": "tool.create", "count": 1} in report
