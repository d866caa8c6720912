import uuid
from datetime import datetime, timedelta, timezone

from careerline import models
from careerline.services import permissions, policy_store

from .conftest import client, db, ensure_auth_headers, current_user_id, make_node, make_user

VIEW = models.PermissionAction.VIEW
EDIT = models.PermissionAction.EDIT
OVERVIEW = models.VisibilityLevel.OVERVIEW
FULL = models.VisibilityLevel.FULL


def _grant(db, node, owner, level, subject_type, subject_id=None, **kwargs):
    return policy_store.upsert_policy(
        db,
        node_id=node.id,
        level=level,
        subject_type=subject_type,
        subject_id=subject_id,
        granted_by=owner.id,
        **kwargs,
    )


def _org_with_member(db, member):
    org = models.Organization(name="Acme Corp", type=models.OrganizationType.COMPANY)
    db.add(org)
    db.flush()
    db.add(models.OrgMember(org_id=org.id, user_id=member.id, role=models.OrgMemberRole.MEMBER))
    db.flush()
    return org


def test_owner_always_has_full_access(db):
    owner = make_user(db)
    node = make_node(db, owner)
    # a deny aimed at the owner changes nothing
    _grant(db, node, owner, FULL, models.SubjectType.USER, owner.id, effect=models.PolicyEffect.DENY)
    assert permissions.can_access(db, owner.id, node.id, VIEW, FULL)
    assert permissions.can_access(db, owner.id, node.id, EDIT, FULL)
    assert permissions.get_node_access_level(db, owner.id, node.id) == FULL


def test_no_policy_means_no_access(db):
    owner, stranger = make_user(db), make_user(db)
    node = make_node(db, owner)
    assert not permissions.can_access(db, stranger.id, node.id)
    assert permissions.get_node_access_level(db, stranger.id, node.id) is None


def test_full_grant_implies_overview(db):
    owner, viewer = make_user(db), make_user(db)
    node = make_node(db, owner)
    _grant(db, node, owner, FULL, models.SubjectType.USER, viewer.id)
    assert permissions.can_access(db, viewer.id, node.id, VIEW, OVERVIEW)
    assert permissions.can_access(db, viewer.id, node.id, VIEW, FULL)
    assert not permissions.can_access(db, viewer.id, node.id, EDIT, FULL)


def test_overview_grant_does_not_imply_full(db):
    owner, viewer = make_user(db), make_user(db)
    node = make_node(db, owner)
    _grant(db, node, owner, OVERVIEW, models.SubjectType.USER, viewer.id)
    assert permissions.can_access(db, viewer.id, node.id, VIEW, OVERVIEW)
    assert not permissions.can_access(db, viewer.id, node.id, VIEW, FULL)
    assert permissions.get_node_access_level(db, viewer.id, node.id) == OVERVIEW


def test_user_deny_beats_org_allow(db):
    owner, member = make_user(db), make_user(db)
    org = _org_with_member(db, member)
    node = make_node(db, owner)
    _grant(db, node, owner, FULL, models.SubjectType.ORG, org.id)
    assert permissions.can_access(db, member.id, node.id, VIEW, FULL)

    _grant(db, node, owner, FULL, models.SubjectType.USER, member.id, effect=models.PolicyEffect.DENY)
    assert not permissions.can_access(db, member.id, node.id, VIEW, FULL)


def test_deny_stays_at_its_level(db):
    owner, member = make_user(db), make_user(db)
    org = _org_with_member(db, member)
    node = make_node(db, owner)
    _grant(db, node, owner, OVERVIEW, models.SubjectType.ORG, org.id)
    _grant(db, node, owner, FULL, models.SubjectType.ORG, org.id)
    _grant(db, node, owner, FULL, models.SubjectType.USER, member.id, effect=models.PolicyEffect.DENY)

    assert not permissions.can_access(db, member.id, node.id, VIEW, FULL)
    assert permissions.can_access(db, member.id, node.id, VIEW, OVERVIEW)
    assert permissions.get_node_access_level(db, member.id, node.id) == OVERVIEW


def test_public_deny_rows_are_ignored(db):
    owner, viewer = make_user(db), make_user(db)
    node = make_node(db, owner)
    _grant(db, node, owner, OVERVIEW, models.SubjectType.USER, viewer.id)
    _grant(db, node, owner, OVERVIEW, models.SubjectType.PUBLIC, effect=models.PolicyEffect.DENY)
    assert permissions.can_access(db, viewer.id, node.id, VIEW, OVERVIEW)


def test_expired_grant_is_inert(db):
    owner, viewer = make_user(db), make_user(db)
    node = make_node(db, owner)
    past = datetime.now(timezone.utc) - timedelta(hours=1)
    _grant(db, node, owner, FULL, models.SubjectType.USER, viewer.id, expires_at=past)
    assert not permissions.can_access(db, viewer.id, node.id, VIEW, OVERVIEW)

    future = datetime.now(timezone.utc) + timedelta(days=1)
    _grant(db, node, owner, FULL, models.SubjectType.USER, viewer.id, expires_at=future)
    assert permissions.can_access(db, viewer.id, node.id, VIEW, FULL)


def test_expired_deny_no_longer_blocks(db):
    owner, member = make_user(db), make_user(db)
    org = _org_with_member(db, member)
    node = make_node(db, owner)
    _grant(db, node, owner, FULL, models.SubjectType.ORG, org.id)
    past = datetime.now(timezone.utc) - timedelta(minutes=5)
    _grant(
        db, node, owner, FULL, models.SubjectType.USER, member.id,
        effect=models.PolicyEffect.DENY, expires_at=past,
    )
    assert permissions.can_access(db, member.id, node.id, VIEW, FULL)


def test_anonymous_sees_public_overview_only(db):
    owner = make_user(db)
    node = make_node(db, owner)
    _grant(db, node, owner, OVERVIEW, models.SubjectType.PUBLIC)
    assert permissions.can_access(db, None, node.id, VIEW, OVERVIEW)
    assert not permissions.can_access(db, None, node.id, VIEW, FULL)


def test_missing_node_is_never_accessible(db):
    import uuid

    user = make_user(db)
    assert not permissions.can_access(db, user.id, uuid.uuid4())


def test_batch_and_listing_agree_with_single_checks(db):
    owner, viewer = make_user(db), make_user(db)
    org = _org_with_member(db, viewer)
    shared_full = make_node(db, owner, label="Full share")
    shared_overview = make_node(db, owner, label="Overview share")
    denied = make_node(db, owner, label="Denied")
    private = make_node(db, owner, label="Private")
    mine = make_node(db, viewer, label="Mine")

    _grant(db, shared_full, owner, FULL, models.SubjectType.USER, viewer.id)
    _grant(db, shared_overview, owner, OVERVIEW, models.SubjectType.ORG, org.id)
    _grant(db, denied, owner, FULL, models.SubjectType.PUBLIC)
    _grant(db, denied, owner, FULL, models.SubjectType.ORG, org.id, effect=models.PolicyEffect.DENY)

    ids = [shared_full.id, shared_overview.id, denied.id, private.id, mine.id]
    batch = permissions.batch_can_access(db, viewer.id, ids, VIEW, OVERVIEW)
    for node_id in ids:
        assert batch[node_id] == permissions.can_access(db, viewer.id, node_id, VIEW, OVERVIEW)

    listed = {row.node_id: row for row in permissions.list_accessible_nodes(db, viewer.id)}
    assert set(listed) == {node_id for node_id, allowed in batch.items() if allowed}
    assert listed[mine.id].level == FULL and listed[mine.id].can_edit
    assert listed[shared_full.id].level == FULL
    assert listed[shared_overview.id].level == OVERVIEW
    assert not listed[shared_overview.id].can_edit

    full_only = {row.node_id for row in permissions.list_accessible_nodes(db, viewer.id, min_level=FULL)}
    assert shared_overview.id not in full_only
    assert shared_full.id in full_only


def test_cleanup_removes_only_expired_rows(db):
    owner, viewer = make_user(db), make_user(db)
    node = make_node(db, owner)
    past = datetime.now(timezone.utc) - timedelta(days=2)
    _grant(db, node, owner, OVERVIEW, models.SubjectType.USER, viewer.id, expires_at=past)
    _grant(db, node, owner, FULL, models.SubjectType.PUBLIC)
    assert policy_store.cleanup_expired_policies(db) >= 1
    remaining = policy_store.list_node_policies(db, node.id)
    assert [p.subject_type for p in remaining] == [models.SubjectType.PUBLIC]


def _create_node(client, headers, **overrides):
    payload = {"type": "job", "label": "Staff Engineer", "meta": {"role": "Staff Engineer", "company": "Acme"}}
    payload.update(overrides)
    resp = client.post("/api/v2/timeline/nodes", json=payload, headers=headers)
    assert resp.status_code == 201, resp.text
    return resp.json()["data"]


def test_policy_api_replace_list_and_delete(client):
    owner_headers, _ = ensure_auth_headers(client)
    viewer_headers, _ = ensure_auth_headers(client)
    viewer_id = current_user_id(client, viewer_headers)
    node = _create_node(client, owner_headers)

    resp = client.post(
        f"/api/v2/nodes/{node['id']}/permissions",
        json={
            "policies": [
                {"level": "full", "subject_type": "user", "subject_id": viewer_id},
                {"level": "overview", "subject_type": "public"},
            ]
        },
        headers=owner_headers,
    )
    assert resp.status_code == 200, resp.text
    assert len(resp.json()["data"]) == 2

    listed = client.get(f"/api/v2/nodes/{node['id']}/permissions", headers=owner_headers)
    effective = listed.json()["data"]["effective"]
    assert effective["public"] == "overview"
    assert effective["users"] == [{"userId": viewer_id, "level": "full"}]

    access = client.get(f"/api/v2/nodes/{node['id']}/access", headers=viewer_headers).json()["data"]
    assert access["canView"] is True
    assert access["accessLevel"] == "full"
    assert access["canShare"] is False

    public_policy = next(
        p for p in listed.json()["data"]["policies"] if p["subject_type"] == "public"
    )
    deleted = client.delete(
        f"/api/v2/nodes/{node['id']}/permissions/{public_policy['id']}", headers=owner_headers
    )
    assert deleted.status_code == 200
    remaining = client.get(f"/api/v2/nodes/{node['id']}/permissions", headers=owner_headers)
    assert len(remaining.json()["data"]["policies"]) == 1


def test_policy_api_rejects_bad_subject(client):
    owner_headers, _ = ensure_auth_headers(client)
    node = _create_node(client, owner_headers)
    resp = client.post(
        f"/api/v2/nodes/{node['id']}/permissions",
        json={"policies": [{"level": "full", "subject_type": "user"}]},
        headers=owner_headers,
    )
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "VALIDATION_ERROR"


def test_only_owner_manages_policies(client):
    owner_headers, _ = ensure_auth_headers(client)
    other_headers, _ = ensure_auth_headers(client)
    node = _create_node(client, owner_headers)
    resp = client.get(f"/api/v2/nodes/{node['id']}/permissions", headers=other_headers)
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "NODE_NOT_FOUND"


def test_update_policy_level_conflict(client):
    owner_headers, _ = ensure_auth_headers(client)
    viewer_headers, _ = ensure_auth_headers(client)
    viewer_id = current_user_id(client, viewer_headers)
    node = _create_node(client, owner_headers)
    created = client.post(
        f"/api/v2/nodes/{node['id']}/permissions",
        json={
            "policies": [
                {"level": "full", "subject_type": "user", "subject_id": viewer_id},
                {"level": "overview", "subject_type": "user", "subject_id": viewer_id, "effect": "DENY"},
            ]
        },
        headers=owner_headers,
    ).json()["data"]
    allow = next(p for p in created if p["effect"] == "ALLOW")

    expires = (datetime.now(timezone.utc) + timedelta(days=7)).isoformat()
    ok = client.put(f"/api/v2/permissions/{allow['id']}", json={"expires_at": expires}, headers=owner_headers)
    assert ok.status_code == 200
    assert ok.json()["data"]["expires_at"] is not None

    # the deny row already holds the overview coordinate
    clash = client.put(f"/api/v2/permissions/{allow['id']}", json={"level": "overview"}, headers=owner_headers)
    assert clash.status_code == 409


def test_accessible_and_batch_endpoints(client):
    owner_headers, _ = ensure_auth_headers(client)
    viewer_headers, _ = ensure_auth_headers(client)
    viewer_id = current_user_id(client, viewer_headers)
    shared = _create_node(client, owner_headers, label="Shared role")
    hidden = _create_node(client, owner_headers, label="Hidden role")
    client.post(
        f"/api/v2/nodes/{shared['id']}/permissions",
        json={"policies": [{"level": "overview", "subject_type": "user", "subject_id": viewer_id}]},
        headers=owner_headers,
    )

    accessible = client.get("/api/v2/nodes/accessible", headers=viewer_headers).json()["data"]
    ids = {row["node_id"] for row in accessible}
    assert shared["id"] in ids
    assert hidden["id"] not in ids

    batch = client.post(
        "/api/v2/nodes/access/batch",
        json={"nodeIds": [shared["id"], hidden["id"]]},
        headers=viewer_headers,
    ).json()["data"]
    assert batch == {shared["id"]: True, hidden["id"]: False}

    bulk = client.post(
        "/api/v2/nodes/permissions/bulk",
        json={"node_ids": [shared["id"], hidden["id"]]},
        headers=owner_headers,
    ).json()["data"]
    counts = {row["nodeId"]: len(row["policies"]) for row in bulk}
    assert counts == {shared["id"]: 1, hidden["id"]: 0}


def test_viewer_reads_another_users_timeline_by_level(client):
    owner_headers, _ = ensure_auth_headers(client)
    viewer_headers, _ = ensure_auth_headers(client)
    owner_id = current_user_id(client, owner_headers)
    viewer_id = current_user_id(client, viewer_headers)
    summary = _create_node(
        client, owner_headers, label="Summary", meta={"role": "Lead", "company": "Acme", "description": "private notes"}
    )
    detailed = _create_node(
        client, owner_headers, label="Detailed", meta={"role": "Dev", "company": "Acme", "description": "all of it"}
    )
    denied = _create_node(client, owner_headers, label="Denied")
    _create_node(client, owner_headers, label="Never shared")

    def share(node, policies):
        resp = client.post(f"/api/v2/nodes/{node['id']}/permissions", json={"policies": policies}, headers=owner_headers)
        assert resp.status_code == 200, resp.text

    share(summary, [{"level": "overview", "subject_type": "user", "subject_id": viewer_id}])
    share(detailed, [{"level": "full", "subject_type": "user", "subject_id": viewer_id}])
    share(
        denied,
        [
            {"level": "overview", "subject_type": "public"},
            {"level": "overview", "subject_type": "user", "subject_id": viewer_id, "effect": "DENY"},
        ],
    )

    resp = client.get(f"/api/v2/users/{owner_id}/nodes", headers=viewer_headers)
    assert resp.status_code == 200, resp.text
    rows = {row["id"]: row for row in resp.json()["data"]}
    assert set(rows) == {summary["id"], detailed["id"]}
    assert rows[summary["id"]]["accessLevel"] == "overview"
    assert "description" not in rows[summary["id"]]["meta"]
    assert "userId" not in rows[summary["id"]]
    assert rows[detailed["id"]]["accessLevel"] == "full"
    assert rows[detailed["id"]]["meta"]["description"] == "all of it"

    own = client.get(f"/api/v2/users/{owner_id}/nodes", headers=owner_headers).json()["data"]
    assert len(own) == 4
    assert {row["accessLevel"] for row in own} == {"full"}


def test_reading_unknown_users_timeline(client):
    headers, _ = ensure_auth_headers(client)
    missing = client.get(f"/api/v2/users/{uuid.uuid4()}/nodes", headers=headers)
    assert missing.status_code == 404
    assert client.get(f"/api/v2/users/{uuid.uuid4()}/nodes").status_code == 401
