from datetime import datetime, timedelta, timezone
import uuid

import pytest

from careerline import models
from careerline.errors import NodeNotFound, NotFoundError, ValidationFailed
from careerline.schemas import ShareConfiguration, ShareTarget
from careerline.services import permissions, policy_store, sharing

from .conftest import client, db, ensure_auth_headers, current_user_id, make_node, make_user

OVERVIEW = models.VisibilityLevel.OVERVIEW
FULL = models.VisibilityLevel.FULL


def _user_target(user, level=OVERVIEW):
    return ShareTarget(type=models.SubjectType.USER, id=user.id, access_level=level)


def _view_grants(db, node, user):
    return [
        p
        for p in policy_store.list_node_policies(db, node.id)
        if p.subject_type == models.SubjectType.USER and p.subject_id == user.id
    ]


def test_share_then_upgrade_leaves_one_grant(db):
    owner, viewer = make_user(db), make_user(db)
    node = make_node(db, owner)

    sharing.execute_share(
        db, ShareConfiguration(targets=[_user_target(viewer)], selected_node_ids=[node.id]), owner_id=owner.id
    )
    assert permissions.get_node_access_level(db, viewer.id, node.id) == OVERVIEW

    sharing.execute_share(
        db, ShareConfiguration(targets=[_user_target(viewer, FULL)], selected_node_ids=[node.id]), owner_id=owner.id
    )
    grants = _view_grants(db, node, viewer)
    assert len(grants) == 1
    assert grants[0].level == FULL
    assert permissions.get_node_access_level(db, viewer.id, node.id) == FULL


def test_sharing_twice_is_idempotent(db):
    owner, viewer = make_user(db), make_user(db)
    node = make_node(db, owner)
    config = ShareConfiguration(targets=[_user_target(viewer)], selected_node_ids=[node.id])
    sharing.execute_share(db, config, owner_id=owner.id)
    sharing.execute_share(db, config, owner_id=owner.id)
    assert len(_view_grants(db, node, viewer)) == 1


def test_share_all_nodes_covers_every_owned_node(db):
    owner, viewer = make_user(db), make_user(db)
    first = make_node(db, owner, label="First")
    second = make_node(db, owner, label="Second")
    config = ShareConfiguration(targets=[_user_target(viewer)], share_all_nodes=True)
    granted = sharing.execute_share(db, config, owner_id=owner.id)
    assert {p.node_id for p in granted} == {first.id, second.id}


def test_share_validates_before_writing(db):
    owner, viewer, stranger = make_user(db), make_user(db), make_user(db)
    mine = make_node(db, owner)
    theirs = make_node(db, stranger)

    with pytest.raises(NodeNotFound):
        sharing.execute_share(
            db,
            ShareConfiguration(targets=[_user_target(viewer)], selected_node_ids=[mine.id, theirs.id]),
            owner_id=owner.id,
        )
    with pytest.raises(ValidationFailed):
        sharing.execute_share(
            db,
            ShareConfiguration(
                targets=[_user_target(viewer), ShareTarget(type=models.SubjectType.ORG, id=uuid.uuid4())],
                selected_node_ids=[mine.id],
            ),
            owner_id=owner.id,
        )
    with pytest.raises(ValidationFailed):
        sharing.execute_share(
            db, ShareConfiguration(targets=[_user_target(owner)], selected_node_ids=[mine.id]), owner_id=owner.id
        )
    with pytest.raises(ValidationFailed):
        sharing.execute_share(db, ShareConfiguration(selected_node_ids=[mine.id]), owner_id=owner.id)
    assert policy_store.list_node_policies(db, mine.id) == []


def test_fetch_current_permissions_groups_by_subject(db):
    owner = make_user(db)
    viewer = make_user(db, full_name="Grace Hopper")
    org = models.Organization(name="Navy", type=models.OrganizationType.OTHER)
    db.add(org)
    db.flush()
    job = make_node(db, owner, models.NodeType.JOB, meta={"role": "Admiral", "company": "US Navy"})
    school = make_node(db, owner, models.NodeType.EDUCATION, meta={"degree": "PhD", "institution": "Yale"})

    sharing.execute_share(
        db,
        ShareConfiguration(
            targets=[
                _user_target(viewer, FULL),
                ShareTarget(type=models.SubjectType.ORG, id=org.id),
                ShareTarget(type=models.SubjectType.PUBLIC),
            ],
            selected_node_ids=[job.id, school.id],
        ),
        owner_id=owner.id,
    )

    current = sharing.fetch_current_permissions(db, [job.id, school.id], owner_id=owner.id)
    assert len(current["users"]) == 1
    user_entry = current["users"][0]
    assert user_entry["name"] == "Grace Hopper"
    assert user_entry["accessLevel"] == "full"
    assert user_entry["subjectKey"] == f"user-{viewer.id}"
    assert {n["nodeTitle"] for n in user_entry["nodes"]} == {"US Navy", "Yale"}
    assert len(user_entry["policyIds"]) == 2

    assert current["organizations"][0]["name"] == "Navy"
    assert current["public"]["subjectKey"] == "public"
    assert current["public"]["accessLevel"] == "overview"


def test_update_and_remove_subject_permission(db):
    owner, viewer = make_user(db), make_user(db)
    first = make_node(db, owner, label="First")
    second = make_node(db, owner, label="Second")
    sharing.execute_share(
        db,
        ShareConfiguration(targets=[_user_target(viewer)], selected_node_ids=[first.id, second.id]),
        owner_id=owner.id,
    )
    key = f"user-{viewer.id}"

    updated = sharing.update_permission(db, key, FULL, owner_id=owner.id, node_id=first.id)
    assert len(updated) == 1
    assert permissions.get_node_access_level(db, viewer.id, first.id) == FULL
    assert permissions.get_node_access_level(db, viewer.id, second.id) == OVERVIEW

    assert sharing.remove_permission(db, key, owner_id=owner.id) == 2
    assert permissions.get_node_access_level(db, viewer.id, first.id) is None
    with pytest.raises(NotFoundError):
        sharing.remove_permission(db, key, owner_id=owner.id)


def test_upgrading_a_lapsed_grant_makes_it_live(db):
    owner, viewer = make_user(db), make_user(db)
    node = make_node(db, owner)
    policy_store.upsert_policy(
        db,
        node_id=node.id,
        level=OVERVIEW,
        subject_type=models.SubjectType.USER,
        subject_id=viewer.id,
        granted_by=owner.id,
        expires_at=datetime.now(timezone.utc) - timedelta(days=1),
    )
    assert permissions.get_node_access_level(db, viewer.id, node.id) is None

    [grant] = sharing.update_permission(db, f"user-{viewer.id}", FULL, owner_id=owner.id, node_id=node.id)
    assert grant.expires_at is None
    assert permissions.get_node_access_level(db, viewer.id, node.id) == FULL


def test_upgrade_keeps_a_future_expiry(db):
    owner, viewer = make_user(db), make_user(db)
    node = make_node(db, owner)
    later = datetime.now(timezone.utc) + timedelta(days=7)
    policy_store.upsert_policy(
        db,
        node_id=node.id,
        level=OVERVIEW,
        subject_type=models.SubjectType.USER,
        subject_id=viewer.id,
        granted_by=owner.id,
        expires_at=later,
    )
    [grant] = sharing.update_permission(db, f"user-{viewer.id}", FULL, owner_id=owner.id)
    assert policy_store.as_utc(grant.expires_at) == later


def test_current_permissions_report_expiry_per_node(db):
    owner, viewer = make_user(db), make_user(db)
    soon_node = make_node(db, owner, label="Soon")
    later_node = make_node(db, owner, label="Later")
    open_node = make_node(db, owner, label="Open")
    soon = datetime.now(timezone.utc) + timedelta(days=1)
    later = datetime.now(timezone.utc) + timedelta(days=30)
    for node, expires_at in ((later_node, later), (soon_node, soon), (open_node, None)):
        policy_store.upsert_policy(
            db,
            node_id=node.id,
            level=OVERVIEW,
            subject_type=models.SubjectType.USER,
            subject_id=viewer.id,
            granted_by=owner.id,
            expires_at=expires_at,
        )

    current = sharing.fetch_current_permissions(db, [], owner_id=owner.id)
    [entry] = current["users"]
    assert entry["expiresAt"] == soon.isoformat()
    by_node = {n["nodeId"]: n["expiresAt"] for n in entry["nodes"]}
    assert by_node == {
        str(soon_node.id): soon.isoformat(),
        str(later_node.id): later.isoformat(),
        str(open_node.id): None,
    }


def test_malformed_subject_key(db):
    owner = make_user(db)
    make_node(db, owner)
    with pytest.raises(ValidationFailed):
        sharing.remove_permission(db, "user-not-a-uuid", owner_id=owner.id)


def test_node_title_fallbacks(db):
    owner = make_user(db)
    job = make_node(db, owner, models.NodeType.JOB, label="Backend role", meta={"role": "Dev"})
    project = make_node(db, owner, models.NodeType.PROJECT, meta={"title": "Compiler"})
    assert sharing.node_title(job) == "Backend role"
    assert sharing.node_title(project) == "Compiler"


def test_configuration_edits_return_new_values():
    viewer_id = uuid.uuid4()
    empty = ShareConfiguration()
    target = ShareTarget(type=models.SubjectType.USER, id=viewer_id, name="Viewer")

    with_target = empty.add_target(target)
    assert empty.targets == []
    assert with_target.target_keys() == [f"user-{viewer_id}"]
    assert with_target.add_target(target) is with_target

    upgraded = with_target.set_target_access_level(target.key, FULL)
    assert upgraded.targets[0].access_level == FULL
    assert with_target.targets[0].access_level == OVERVIEW
    assert upgraded.remove_target(target.key).targets == []
    assert upgraded.clear_targets().targets == []


def test_configuration_node_selection_and_share_all():
    node_a, node_b = uuid.uuid4(), uuid.uuid4()
    config = ShareConfiguration().add_node(node_a).add_node(node_b).add_node(node_a)
    assert config.selected_node_ids == [node_a, node_b]
    assert config.remove_node(node_a).selected_node_ids == [node_b]

    everything = config.toggle_share_all_nodes()
    assert everything.share_all_nodes
    assert everything.selected_node_ids == []
    assert not everything.toggle_share_all_nodes().share_all_nodes

    picked = everything.add_node(node_b)
    assert not picked.share_all_nodes
    assert picked.selected_node_ids == [node_b]


def test_configuration_dedupes_on_input():
    viewer_id, node_id = uuid.uuid4(), uuid.uuid4()
    config = ShareConfiguration.model_validate(
        {
            "targets": [
                {"type": "user", "id": str(viewer_id), "accessLevel": "full"},
                {"type": "user", "id": str(viewer_id), "accessLevel": "overview"},
                {"type": "public"},
            ],
            "selectedNodeIds": [str(node_id), str(node_id)],
        }
    )
    assert config.target_keys() == [f"user-{viewer_id}", "public"]
    assert config.targets[0].access_level == FULL
    assert config.selected_node_ids == [node_id]


def test_share_api_round_trip(client):
    owner_headers, _ = ensure_auth_headers(client)
    viewer_headers, _ = ensure_auth_headers(client)
    viewer_id = current_user_id(client, viewer_headers)
    node = client.post(
        "/api/v2/timeline/nodes",
        json={"type": "job", "label": "Researcher", "meta": {"role": "Researcher", "company": "Lab"}},
        headers=owner_headers,
    ).json()["data"]

    shared = client.post(
        "/api/v2/sharing/share",
        json={
            "targets": [{"type": "user", "id": viewer_id, "accessLevel": "overview"}],
            "selectedNodeIds": [node["id"]],
        },
        headers=owner_headers,
    )
    assert shared.status_code == 200, shared.text
    assert shared.json()["data"]["granted"] == 1

    seen = client.get(f"/api/public/nodes/{node['id']}", headers=viewer_headers).json()["data"]
    assert seen["accessLevel"] == "overview"
    assert seen["meta"] == {"role": "Researcher", "company": "Lab"}
    assert "userId" not in seen

    key = f"user-{viewer_id}"
    patched = client.patch(
        f"/api/v2/sharing/subjects/{key}", json={"accessLevel": "full"}, headers=owner_headers
    )
    assert patched.status_code == 200
    current = client.post("/api/v2/sharing/current", json={"nodeIds": [node["id"]]}, headers=owner_headers)
    assert current.json()["data"]["users"][0]["accessLevel"] == "full"

    removed = client.delete(f"/api/v2/sharing/subjects/{key}", headers=owner_headers)
    assert removed.json()["data"]["removed"] == 1
    hidden = client.get(f"/api/public/nodes/{node['id']}", headers=viewer_headers)
    assert hidden.status_code == 404


def test_failed_share_writes_nothing(client):
    owner_headers, _ = ensure_auth_headers(client)
    node = client.post(
        "/api/v2/timeline/nodes",
        json={"type": "event", "label": "Conference", "meta": {"title": "PyCon"}},
        headers=owner_headers,
    ).json()["data"]
    resp = client.post(
        "/api/v2/sharing/share",
        json={
            "targets": [{"type": "public"}, {"type": "user", "id": str(uuid.uuid4())}],
            "selectedNodeIds": [node["id"]],
        },
        headers=owner_headers,
    )
    assert resp.status_code == 400
    policies = client.get(f"/api/v2/nodes/{node['id']}/permissions", headers=owner_headers)
    assert policies.json()["data"]["policies"] == []


def test_anonymous_public_read(client):
    owner_headers, _ = ensure_auth_headers(client)
    node = client.post(
        "/api/v2/timeline/nodes",
        json={"type": "project", "label": "Open source", "meta": {"title": "Parser", "technologies": ["python"]}},
        headers=owner_headers,
    ).json()["data"]
    assert client.get(f"/api/public/nodes/{node['id']}").status_code == 404

    client.post(
        "/api/v2/sharing/share",
        json={"targets": [{"type": "public"}], "selectedNodeIds": [node["id"]]},
        headers=owner_headers,
    )
    resp = client.get(f"/api/public/nodes/{node['id']}")
    assert resp.status_code == 200
    assert resp.json()["data"]["meta"] == {"title": "Parser"}
