def _create_category(client, admin, name="Books"):
    res = client.post("/api/categories", json={"name": name, "description": "d"}, headers=admin["headers"])
    assert res.status_code == 201
    return res.json()


def test_category_crud(client, admin):
    created = _create_category(client, admin)
    assert client.get("/api/categories").json()[0]["name"] == "Books"
    assert client.get(f"/api/categories/{created['id']}").status_code == 200

    res = client.put(f"/api/categories/{created['id']}", json={"name": "Novels"}, headers=admin["headers"])
    assert res.json()["name"] == "Novels"
    assert res.json()["description"] == "d"

    assert client.delete(f"/api/categories/{created['id']}", headers=admin["headers"]).status_code == 200
    assert client.get(f"/api/categories/{created['id']}").status_code == 404


def test_category_writes_need_admin(client, vendor):
    res = client.post("/api/categories", json={"name": "X"}, headers=vendor["headers"])
    assert res.status_code == 403
    assert client.post("/api/categories", json={"name": "X"}).status_code == 401


def test_malformed_id_is_400(client):
    assert client.get("/api/categories/nope").status_code == 400
    assert client.get("/api/products/nope").status_code == 400


def test_product_crud(client, admin, vendor):
    cat = _create_category(client, admin)
    payload = {"name": "Lamp", "price": 19.5, "category_id": cat["id"], "quantity": 3}
    res = client.post("/api/products", json=payload, headers=vendor["headers"])
    assert res.status_code == 201
    product = res.json()
    assert product["category_id"] == cat["id"]
    assert product["images"] == []

    res = client.put(f"/api/products/{product['id']}", json={"price": 21.0}, headers=vendor["headers"])
    assert res.json()["price"] == 21.0
    assert res.json()["name"] == "Lamp"

    assert client.put(f"/api/products/{product['id']}", json={"price": 0}, headers=vendor["headers"]).status_code == 400
    assert client.put(f"/api/products/{product['id']}", json={}, headers=vendor["headers"]).status_code == 400

    assert client.delete(f"/api/products/{product['id']}", headers=admin["headers"]).status_code == 200
    assert client.get(f"/api/products/{product['id']}").status_code == 404


def test_product_requires_existing_category(client, vendor, missing_id):
    payload = {"name": "Lamp", "price": 5, "category_id": missing_id}
    assert client.post("/api/products", json=payload, headers=vendor["headers"]).status_code == 404


def test_product_rejects_bad_price(client, admin, vendor):
    cat = _create_category(client, admin)
    payload = {"name": "Lamp", "price": -1, "category_id": cat["id"]}
    assert client.post("/api/products", json=payload, headers=vendor["headers"]).status_code == 400


def test_customers_cannot_write_products(client, customer, category):
    payload = {"name": "Lamp", "price": 5, "category_id": str(category["_id"])}
    assert client.post("/api/products", json=payload, headers=customer["headers"]).status_code == 403


def test_product_listing_filters(client, make_product, category):
    make_product("Cheap pen", 1.0)
    make_product("Fancy pen", 50.0)
    make_product("Notebook", 8.0, quantity=0)

    res = client.get("/api/products", params={"q": "pen", "sort": "price_desc"})
    body = res.json()
    assert body["total"] == 2
    assert [p["name"] for p in body["items"]] == ["Fancy pen", "Cheap pen"]

    res = client.get("/api/products", params={"max_price": 10, "in_stock": "true"})
    assert [p["name"] for p in res.json()["items"]] == ["Cheap pen"]

    res = client.get("/api/products", params={"category_id": str(category["_id"]), "limit": 2, "page": 2})
    assert res.json()["total"] == 3
    assert len(res.json()["items"]) == 1


def test_deleting_category_leaves_products(client, admin, make_product, category):
    product = make_product()
    client.delete(f"/api/categories/{category['_id']}", headers=admin["headers"])
    res = client.get(f"/api/products/{product['_id']}")
    assert res.status_code == 200
    assert res.json()["category_id"] == str(category["_id"])


def test_product_image_upload_and_delete(client, vendor, make_product, upload_dir):
    product = make_product()
    pid = str(product["_id"])

    files = {"image": ("front.jpg", b"\xff\xd8\xff fake jpeg", "image/jpeg")}
    res = client.post(f"/api/products/{pid}/image", files=files, headers=vendor["headers"])
    assert res.status_code == 201
    url = res.json()["images"][0]
    assert (upload_dir / url.rsplit("/", 1)[1]).exists()

    res = client.delete(f"/api/products/{pid}/image", params={"url": url}, headers=vendor["headers"])
    assert res.status_code == 200
    assert res.json()["images"] == []
    assert not (upload_dir / url.rsplit("/", 1)[1]).exists()

    res = client.delete(f"/api/products/{pid}/image", params={"url": url}, headers=vendor["headers"])
    assert res.status_code == 404


def test_image_upload_rejects_non_images(client, vendor, make_product, monkeypatch):
    import config

    pid = str(make_product()["_id"])
    files = {"image": ("notes.txt", b"hello", "text/plain")}
    assert client.post(f"/api/products/{pid}/image", files=files, headers=vendor["headers"]).status_code == 400

    monkeypatch.setattr(config, "MAX_UPLOAD_BYTES", 4)
    files = {"image": ("big.png", b"0123456789", "image/png")}
    assert client.post(f"/api/products/{pid}/image", files=files, headers=vendor["headers"]).status_code == 400


def test_root_and_health(client):
    assert client.get("/").json()["status"] == "success"
    assert client.get("/test").status_code == 200


def test_product_without_quantity_is_not_in_stock(client, admin, vendor, customer):
    cat = _create_category(client, admin)
    res = client.post("/api/products", json={"name": "P1", "price": 10, "category_id": cat["id"]}, headers=vendor["headers"])
    product = res.json()
    assert product["quantity"] == 0
    assert product["in_stock"] is False
    assert client.get("/api/products", params={"in_stock": "true"}).json()["total"] == 0

    client.post(f"/api/cart/{customer['id']}/items", json={"product_id": product["id"], "quantity": 2}, headers=customer["headers"])
    assert client.post("/api/orders", headers=customer["headers"]).status_code == 409

    res = client.put(f"/api/products/{product['id']}", json={"quantity": 5}, headers=vendor["headers"])
    assert res.json()["in_stock"] is True
    res = client.post("/api/orders", headers=customer["headers"])
    assert res.status_code == 201
    assert res.json()["total_amount"] == 20.0


def test_checkout_with_products_created_over_http(client, admin, vendor, customer):
    cat = _create_category(client, admin)
    base = f"/api/cart/{customer['id']}/items"
    for name, price, quantity in [("P1", 10, 2), ("P2", 5, 1)]:
        payload = {"name": name, "price": price, "category_id": cat["id"], "quantity": 10}
        product = client.post("/api/products", json=payload, headers=vendor["headers"]).json()
        assert product["in_stock"] is True
        client.post(base, json={"product_id": product["id"], "quantity": quantity}, headers=customer["headers"])

    res = client.post("/api/orders", headers=customer["headers"])
    assert res.status_code == 201
    assert res.json()["total_amount"] == 25.0


def test_restocking_sold_out_product_puts_it_back_in_stock(client, customer, vendor, make_product):
    product = make_product("Last lamp", 4.0, quantity=1)
    pid = str(product["_id"])
    client.post(f"/api/cart/{customer['id']}/items", json={"product_id": pid, "quantity": 1}, headers=customer["headers"])
    assert client.post("/api/orders", headers=customer["headers"]).status_code == 201
    assert client.get(f"/api/products/{pid}").json()["in_stock"] is False

    res = client.put(f"/api/products/{pid}", json={"quantity": 5}, headers=vendor["headers"])
    assert res.json()["quantity"] == 5
    assert res.json()["in_stock"] is True
    listed = client.get("/api/products", params={"in_stock": "true"}).json()["items"]
    assert [p["id"] for p in listed] == [pid]


def test_in_stock_needs_quantity(client, vendor, make_product):
    pid = str(make_product("Empty", 3.0, quantity=0)["_id"])
    res = client.put(f"/api/products/{pid}", json={"in_stock": True}, headers=vendor["headers"])
    assert res.json()["in_stock"] is False

    res = client.put(f"/api/products/{pid}", json={"quantity": 3, "in_stock": False}, headers=vendor["headers"])
    assert res.json()["in_stock"] is False
