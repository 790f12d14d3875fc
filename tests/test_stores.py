from conftest import store_payload, week_schedule


def test_list_and_get_stores_are_public(client, admin, other_admin):
    res = client.get("/api/stores")
    data = res.json()["data"]
    assert data["pagination"]["total"] == 2

    res = client.get("/api/stores", params={"search": "rival"})
    assert [s["name"] for s in res.json()["data"]["stores"]] == ["Rival Shop"]

    res = client.get("/api/stores", params={"category": "Restaurante", "limit": 1})
    data = res.json()["data"]
    assert len(data["stores"]) == 1
    assert data["pagination"] == {"page": 1, "limit": 1, "total": 2}

    res = client.get(f"/api/stores/{admin['store_id']}")
    assert res.json()["data"]["owner_id"] == admin["user"]["id"]


def test_get_store_errors(client):
    assert client.get("/api/stores/nope").status_code == 400
    assert client.get("/api/stores/64b7f0000000000000000000").status_code == 404


def test_create_store_requires_admin_role(client, admin, customer):
    res = client.post("/api/stores", json=store_payload(name="Second"), headers=customer["headers"])
    assert res.status_code == 403

    res = client.post("/api/stores", json=store_payload(name="Second"), headers=admin["headers"])
    assert res.status_code == 201
    assert res.json()["data"]["owner_id"] == admin["user"]["id"]


def test_owner_updates_store(client, admin):
    res = client.put(f"/api/stores/{admin['store_id']}",
                     json={"name": "La Esquina 2", "social_media": {"website": "https://esquina.example.com"}},
                     headers=admin["headers"])
    assert res.status_code == 200
    data = res.json()["data"]
    assert data["name"] == "La Esquina 2"
    assert data["social_media"]["website"] == "https://esquina.example.com"


def test_non_owner_cannot_update_store(client, admin, other_admin, mongo):
    res = client.put(f"/api/stores/{admin['store_id']}", json={"name": "Hijacked"}, headers=other_admin["headers"])
    assert res.status_code == 403
    assert mongo["store"].find_one({"name": "Hijacked"}) is None


def test_platform_admin_updates_any_store(client, admin, platform_admin):
    res = client.put(f"/api/stores/{admin['store_id']}", json={"status": "inactive"},
                     headers=platform_admin["headers"])
    assert res.json()["data"]["status"] == "inactive"


def test_schedule_update_needs_all_weekdays(client, admin):
    url = f"/api/stores/{admin['store_id']}"
    short = week_schedule()[:6]
    assert client.put(url, json={"schedule": short}, headers=admin["headers"]).status_code == 400

    repeated = week_schedule()
    repeated[6]["day"] = "monday"
    assert client.put(url, json={"schedule": repeated}, headers=admin["headers"]).status_code == 400

    bad_time = week_schedule(monday={"open": "9:00"})
    assert client.put(url, json={"schedule": bad_time}, headers=admin["headers"]).status_code == 400

    late = week_schedule(friday={"close": "23:30"})
    res = client.put(url, json={"schedule": late}, headers=admin["headers"])
    assert res.status_code == 200
    assert res.json()["data"]["schedule"][4]["close"] == "23:30"


def test_categories_must_be_known_and_non_empty(client, admin):
    url = f"/api/stores/{admin['store_id']}"
    assert client.put(url, json={"categories": []}, headers=admin["headers"]).status_code == 400
    assert client.put(url, json={"categories": ["Juguetes"]}, headers=admin["headers"]).status_code == 400


def test_cannot_drop_category_in_use(client, admin, make_product):
    make_product(category="Otros")
    url = f"/api/stores/{admin['store_id']}"
    res = client.put(url, json={"categories": ["Restaurante"]}, headers=admin["headers"])
    assert res.status_code == 400
    res = client.put(url, json={"categories": ["Otros", "Hogar"]}, headers=admin["headers"])
    assert res.status_code == 200


def test_delete_store_cascades_products(client, admin, other_admin, make_product, mongo):
    make_product()
    make_product(name="Agua fresca", category="Otros")
    make_product(owner=other_admin)

    url = f"/api/stores/{admin['store_id']}"
    assert client.delete(url, headers=other_admin["headers"]).status_code == 403

    assert client.delete(url, headers=admin["headers"]).status_code == 200
    assert mongo["store"].count_documents({}) == 1
    assert mongo["product"].count_documents({"store_id": admin["store_id"]}) == 0
    assert mongo["product"].count_documents({"store_id": other_admin["store_id"]}) == 1
