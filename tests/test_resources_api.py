from sqlmodel import select

from models import Activity, Allocation, Request, Resource, ResourceCategory, ResourceStatus


def _approve(client, auth_headers, admin, user, resource_id):
    req_id = client.post(
        "/api/requests/",
        json={"resource_id": resource_id, "reason": "work"},
        headers=auth_headers(user),
    ).json()["data"]["id"]
    resp = client.put(f"/api/requests/{req_id}/approve", headers=auth_headers(admin))
    assert resp.status_code == 200
    return req_id


def test_customer_owns_what_they_list(client, alice, auth_headers):
    resp = client.post(
        "/api/resources/",
        json={"name": "  Ladder ", "category": "equipment", "quantity": 2, "owner_id": 999},
        headers=auth_headers(alice),
    )
    assert resp.status_code == 201
    data = resp.json()["data"]
    assert data["name"] == "Ladder"
    assert data["owner_id"] == alice.id
    assert data["quantity"] == 2
    assert data["available_qty"] == 2
    assert data["status"] == "available"
    assert data["is_verified"] is False

    mine = client.get("/api/resources/mine", headers=auth_headers(alice)).json()["data"]
    assert [r["id"] for r in mine] == [data["id"]]


def test_admin_creates_unowned_or_assigned(client, admin, bob, auth_headers):
    resp = client.post(
        "/api/resources/",
        json={"name": "Office license", "category": "license", "quantity": 10},
        headers=auth_headers(admin),
    )
    assert resp.status_code == 201
    assert resp.json()["data"]["owner_id"] is None

    resp = client.post(
        "/api/resources/",
        json={"name": "Bob's camera", "category": "hardware", "owner_id": bob.id},
        headers=auth_headers(admin),
    )
    assert resp.json()["data"]["owner_id"] == bob.id

    resp = client.post(
        "/api/resources/",
        json={"name": "Nobody's", "category": "hardware", "owner_id": 999},
        headers=auth_headers(admin),
    )
    assert resp.status_code == 400


def test_create_validation(client, alice, auth_headers):
    resp = client.post(
        "/api/resources/",
        json={"name": "Thing", "category": "furniture"},
        headers=auth_headers(alice),
    )
    assert resp.status_code == 400
    assert resp.json()["message"].startswith("category")

    resp = client.post(
        "/api/resources/",
        json={"name": "Thing", "category": "hardware", "quantity": 0},
        headers=auth_headers(alice),
    )
    assert resp.status_code == 400

    resp = client.post("/api/resources/", json={"name": "Thing", "category": "hardware"})
    assert resp.status_code == 401


def test_list_filters_and_pagination(client, make_resource):
    make_resource(name="Dell laptop", category=ResourceCategory.hardware)
    make_resource(name="Lenovo laptop", category=ResourceCategory.hardware)
    make_resource(name="IDE license", category=ResourceCategory.license)
    make_resource(name="Old printer", status=ResourceStatus.retired)

    everything = client.get("/api/resources/").json()["data"]
    assert everything["total"] == 4

    laptops = client.get("/api/resources/", params={"search": "LAPTOP"}).json()["data"]
    assert {r["name"] for r in laptops["items"]} == {"Dell laptop", "Lenovo laptop"}

    licenses = client.get("/api/resources/", params={"category": "license"}).json()["data"]
    assert [r["name"] for r in licenses["items"]] == ["IDE license"]

    retired = client.get("/api/resources/", params={"status": "retired"}).json()["data"]
    assert [r["name"] for r in retired["items"]] == ["Old printer"]

    page = client.get("/api/resources/", params={"page": 2, "limit": 3}).json()["data"]
    assert page["total"] == 4
    assert page["total_pages"] == 2
    assert len(page["items"]) == 1

    available = client.get("/api/resources/available").json()["data"]
    assert available["total"] == 3


def test_available_hides_own_listings(client, alice, bob, make_resource, auth_headers):
    make_resource(name="Alice's drill", owner=alice)
    make_resource(name="Bob's saw", owner=bob)
    make_resource(name="Shared van")

    anonymous = client.get("/api/resources/available").json()["data"]
    assert anonymous["total"] == 3

    for_alice = client.get("/api/resources/available", headers=auth_headers(alice)).json()["data"]
    assert {r["name"] for r in for_alice["items"]} == {"Bob's saw", "Shared van"}


def test_get_unknown_resource(client):
    resp = client.get("/api/resources/12345")
    assert resp.status_code == 404
    assert resp.json() == {"success": False, "message": "Resource not found"}


def test_update_permissions(client, alice, bob, admin, make_resource, auth_headers):
    resource = make_resource(name="Tent", owner=bob)

    resp = client.put(
        f"/api/resources/{resource.id}", json={"name": "Big tent"}, headers=auth_headers(alice)
    )
    assert resp.status_code == 403

    resp = client.put(
        f"/api/resources/{resource.id}", json={"location": "Garage"}, headers=auth_headers(bob)
    )
    assert resp.status_code == 200
    assert resp.json()["data"]["location"] == "Garage"

    resp = client.put(
        f"/api/resources/{resource.id}", json={"name": "Big tent"}, headers=auth_headers(admin)
    )
    assert resp.json()["data"]["name"] == "Big tent"


def test_in_use_cannot_be_set_by_hand(client, admin, make_resource, auth_headers):
    resource = make_resource()
    resp = client.put(
        f"/api/resources/{resource.id}", json={"status": "in-use"}, headers=auth_headers(admin)
    )
    assert resp.status_code == 400


def test_maintenance_blocks_new_requests(client, admin, alice, make_resource, auth_headers):
    resource = make_resource(quantity=2)
    client.put(
        f"/api/resources/{resource.id}", json={"status": "maintenance"}, headers=auth_headers(admin)
    )

    resp = client.post(
        "/api/requests/",
        json={"resource_id": resource.id, "reason": "please"},
        headers=auth_headers(alice),
    )
    assert resp.status_code == 409

    resp = client.put(
        f"/api/resources/{resource.id}", json={"status": "available"}, headers=auth_headers(admin)
    )
    assert resp.json()["data"]["status"] == "available"
    resp = client.post(
        "/api/requests/",
        json={"resource_id": resource.id, "reason": "please"},
        headers=auth_headers(alice),
    )
    assert resp.status_code == 201


def test_quantity_change_keeps_loans(client, admin, alice, bob, make_resource, auth_headers):
    resource = make_resource(quantity=2)
    _approve(client, auth_headers, admin, alice, resource.id)
    _approve(client, auth_headers, admin, bob, resource.id)

    data = client.get(f"/api/resources/{resource.id}").json()["data"]
    assert (data["available_qty"], data["status"]) == (0, "in-use")

    resp = client.put(
        f"/api/resources/{resource.id}", json={"quantity": 1}, headers=auth_headers(admin)
    )
    assert resp.status_code == 409

    resp = client.put(
        f"/api/resources/{resource.id}", json={"quantity": 5}, headers=auth_headers(admin)
    )
    data = resp.json()["data"]
    assert (data["quantity"], data["available_qty"], data["status"]) == (5, 3, "available")


def test_exhausted_resource_cannot_be_marked_available(client, admin, alice, make_resource, auth_headers):
    resource = make_resource(quantity=1)
    _approve(client, auth_headers, admin, alice, resource.id)

    resp = client.put(
        f"/api/resources/{resource.id}", json={"status": "available"}, headers=auth_headers(admin)
    )
    assert resp.status_code == 409


def test_delete_removes_requests_and_allocations(client, session, admin, alice, bob, make_resource, auth_headers):
    resource = make_resource(quantity=2, owner=bob)
    _approve(client, auth_headers, admin, alice, resource.id)

    assert client.delete(f"/api/resources/{resource.id}", headers=auth_headers(alice)).status_code == 403

    resp = client.delete(f"/api/resources/{resource.id}", headers=auth_headers(bob))
    assert resp.status_code == 200
    assert resp.json()["success"] is True

    session.expire_all()
    assert session.exec(select(Resource)).all() == []
    assert session.exec(select(Request)).all() == []
    assert session.exec(select(Allocation)).all() == []
    assert client.get(f"/api/resources/{resource.id}").status_code == 404


def test_stats_and_cost_overview(client, admin, alice, make_resource, auth_headers):
    make_resource(name="Laptop", quantity=2, cost_per_unit=1000.0)
    make_resource(name="License", category=ResourceCategory.license, quantity=10, cost_per_unit=5.0)
    make_resource(name="Broken", status=ResourceStatus.maintenance)

    assert client.get("/api/resources/stats", headers=auth_headers(alice)).status_code == 403

    stats = client.get("/api/resources/stats", headers=auth_headers(admin)).json()["data"]
    assert stats["total"] == 3
    assert stats["available"] == 2
    assert stats["maintenance"] == 1
    assert {c["category"]: c["count"] for c in stats["categories"]} == {"hardware": 2, "license": 1}

    costs = client.get("/api/resources/cost-overview", headers=auth_headers(admin)).json()["data"]
    by_category = {c["category"]: c["total_cost"] for c in costs}
    assert by_category == {"hardware": 2000.0, "license": 50.0}


def test_categories_lists_every_category(client, make_resource):
    make_resource(category=ResourceCategory.software)

    data = client.get("/api/categories/").json()["data"]
    counts = {c["category"]: c["count"] for c in data}
    assert counts == {"hardware": 0, "software": 1, "license": 0, "equipment": 0}


def test_listings_need_verification(client, session, admin, alice, auth_headers):
    resp = client.post(
        "/api/resources/",
        json={"name": "Sewing machine", "category": "equipment"},
        headers=auth_headers(alice),
    )
    resource_id = resp.json()["data"]["id"]
    assert resp.json()["data"]["is_verified"] is False

    public = client.get("/api/resources/").json()["data"]
    assert public["total"] == 0
    assert client.get("/api/resources/available").json()["data"]["total"] == 0
    pending = client.get("/api/resources/", params={"is_verified": False}).json()["data"]
    assert [r["id"] for r in pending["items"]] == [resource_id]

    queue = client.get(
        "/api/admin/resources", params={"is_verified": False}, headers=auth_headers(admin)
    ).json()["data"]
    assert [r["id"] for r in queue["items"]] == [resource_id]
    stats = client.get("/api/resources/stats", headers=auth_headers(admin)).json()["data"]
    assert stats["unverified"] == 1

    resp = client.put(
        f"/api/resources/{resource_id}/verify", json={"is_verified": True}, headers=auth_headers(alice)
    )
    assert resp.status_code == 403

    resp = client.put(
        f"/api/resources/{resource_id}/verify", json={"is_verified": True}, headers=auth_headers(admin)
    )
    assert resp.status_code == 200
    assert resp.json()["message"] == "Resource verified successfully"
    assert resp.json()["data"]["is_verified"] is True

    public = client.get("/api/resources/").json()["data"]
    assert [r["id"] for r in public["items"]] == [resource_id]
    assert client.get(
        "/api/admin/resources", params={"is_verified": False}, headers=auth_headers(admin)
    ).json()["data"]["total"] == 0

    entry = session.exec(select(Activity).where(Activity.action == "resource_verified")).one()
    assert entry.entity_id == resource_id
    assert entry.details == {"is_verified": True}


def test_admin_listings_start_verified(client, admin, auth_headers):
    resp = client.post(
        "/api/resources/",
        json={"name": "Conference room kit", "category": "equipment"},
        headers=auth_headers(admin),
    )
    assert resp.json()["data"]["is_verified"] is True
    assert client.get("/api/resources/").json()["data"]["total"] == 1


def test_verify_unknown_resource(client, admin, auth_headers):
    resp = client.put("/api/resources/777/verify", json={"is_verified": True}, headers=auth_headers(admin))
    assert resp.status_code == 404


def test_single_category(client, make_resource):
    make_resource(category=ResourceCategory.software)
    make_resource(category=ResourceCategory.software, is_verified=False)

    resp = client.get("/api/categories/Software")
    assert resp.status_code == 200
    assert resp.json()["data"] == {"category": "software", "count": 1}

    resp = client.get("/api/categories/furniture")
    assert resp.status_code == 404
    assert resp.json()["message"] == "Category not found"
