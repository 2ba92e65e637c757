def _upload_many(client, initiate, owner, count, **extra):
    return [initiate(client, owner, filename=f"photo-{i:02d}.jpg", **extra).json()["fileId"] for i in range(count)]


def test_pagination_is_deterministic(client, initiate):
    ids = _upload_many(client, initiate, "u1", 5)
    headers = client.auth_headers("u1")

    pages = [client.get("/files", params={"page": p, "size": 2}, headers=headers) for p in range(3)]
    assert [r.status_code for r in pages] == [200, 200, 200]
    seen = [item["id"] for r in pages for item in r.json()]
    assert len(seen) == 5
    assert set(seen) == set(ids)
    assert pages[0].headers["X-Total-Count"] == "5"

    repeat = client.get("/files", params={"page": 0, "size": 2}, headers=headers)
    assert [item["id"] for item in repeat.json()] == [item["id"] for item in pages[0].json()]


def test_default_sort_is_newest_first(client, initiate):
    ids = _upload_many(client, initiate, "u1", 3)
    listed = client.get("/files", headers=client.auth_headers("u1")).json()
    assert [item["id"] for item in listed] == list(reversed(ids))


def test_sort_by_filename_and_unknown_field(client, initiate):
    headers = client.auth_headers("u1")
    for name in ("b.jpg", "c.jpg", "a.jpg"):
        initiate(client, "u1", filename=name)

    by_name = client.get("/files", params={"sortBy": "filename"}, headers=headers).json()
    assert [item["filename"] for item in by_name] == ["c.jpg", "b.jpg", "a.jpg"]

    fallback = client.get("/files", params={"sortBy": "owner_id; DROP TABLE file"}, headers=headers)
    assert fallback.status_code == 200
    assert [item["filename"] for item in fallback.json()] == ["a.jpg", "c.jpg", "b.jpg"]


def test_page_size_bounds(client, initiate):
    _upload_many(client, initiate, "u1", 3)
    headers = client.auth_headers("u1")
    assert len(client.get("/files", params={"size": 0}, headers=headers).json()) == 3
    assert len(client.get("/files", params={"size": 1000}, headers=headers).json()) == 3
    assert client.get("/files", params={"page": 5}, headers=headers).json() == []

    negative = client.get("/files", params={"page": -1}, headers=headers)
    assert negative.status_code == 400
    assert negative.json()["code"] == "VALIDATION_FAILED"


def test_listing_is_isolated_per_owner(client, initiate):
    mine = initiate(client, "u1").json()["fileId"]
    initiate(client, "u2")

    listed = client.get("/files", headers=client.auth_headers("u1")).json()
    assert [item["id"] for item in listed] == [mine]


def test_tag_filter_accepts_comma_list_and_normalizes(client, initiate):
    target = initiate(client, "u1", tags=["Beach", "summer"]).json()["fileId"]
    initiate(client, "u1", tags=["summer"])
    initiate(client, "u2", tags=["beach", "summer"])

    listed = client.get("/files", params={"tags": " BEACH ,summer"}, headers=client.auth_headers("u1"))
    assert [item["id"] for item in listed.json()] == [target]

    # Blank filters mean no filter
    everything = client.get("/files", params={"tags": " , "}, headers=client.auth_headers("u1"))
    assert everything.headers["X-Total-Count"] == "2"


def test_download_url_is_fresh_per_request(client, initiate):
    file_id = initiate(client, "u1").json()["fileId"]
    headers = client.auth_headers("u1")

    first = client.get(f"/files/{file_id}/download", headers=headers)
    second = client.get(f"/files/{file_id}/download", headers=headers)
    assert first.status_code == 200
    assert first.json()["url"] != second.json()["url"]
    assert "expires=3600" in first.json()["url"]
    assert first.json()["expiresAt"].endswith("+00:00")

    assert client.get(f"/files/{file_id}/download", headers=client.auth_headers("u2")).status_code == 404


def test_get_file_of_other_owner_is_masked(client, initiate):
    file_id = initiate(client, "u1").json()["fileId"]
    response = client.get(f"/files/{file_id}", headers=client.auth_headers("u2"))
    assert response.status_code == 404
    assert client.get("/files/unknown", headers=client.auth_headers("u1")).status_code == 404


def test_tag_operations(client, initiate):
    file_id = initiate(client, "u1", tags=["beach"]).json()["fileId"]
    headers = client.auth_headers("u1")

    added = client.post(f"/files/{file_id}/tags", json={"tags": ["Sunset", "family"]}, headers=headers)
    assert added.json()["tags"] == ["beach", "family", "sunset"]

    removed = client.request("DELETE", f"/files/{file_id}/tags", json={"tags": ["BEACH", "absent"]}, headers=headers)
    assert removed.status_code == 200
    assert removed.json()["tags"] == ["family", "sunset"]

    replaced = client.put(f"/files/{file_id}/tags", json={"tags": ["winter"]}, headers=headers)
    assert replaced.json()["tags"] == ["winter"]

    listed = client.get("/files", params={"tags": "winter"}, headers=headers).json()
    assert [item["id"] for item in listed] == [file_id]


def test_empty_tag_list_is_a_no_op(client, initiate):
    file_id = initiate(client, "u1", tags=["beach"]).json()["fileId"]
    headers = client.auth_headers("u1")

    for method in ("POST", "DELETE", "PUT"):
        response = client.request(method, f"/files/{file_id}/tags", json={"tags": ["  "]}, headers=headers)
        assert response.status_code == 200
        assert response.json()["tags"] == ["beach"]


def test_tag_body_is_required(client, initiate):
    file_id = initiate(client, "u1").json()["fileId"]
    headers = client.auth_headers("u1")
    assert client.post(f"/files/{file_id}/tags", headers=headers).status_code == 400
    assert client.post(f"/files/{file_id}/tags", json={}, headers=headers).status_code == 400

    too_long = client.post(f"/files/{file_id}/tags", json={"tags": ["x" * 101]}, headers=headers)
    assert too_long.status_code == 400


def test_tag_mutation_ownership(client, initiate):
    file_id = initiate(client, "u1").json()["fileId"]
    response = client.post(f"/files/{file_id}/tags", json={"tags": ["mine"]}, headers=client.auth_headers("u2"))
    assert response.status_code == 403
    assert client.post("/files/unknown/tags", json={"tags": ["x"]}, headers=client.auth_headers("u1")).status_code == 404


def test_delete_removes_object_then_record(client, initiate):
    upload = initiate(client, "u1").json()
    headers = client.auth_headers("u1")

    response = client.delete(f"/files/{upload['fileId']}", headers=headers)
    assert response.status_code == 204
    assert client.storage.deleted == [upload["s3Key"]]
    assert client.get(f"/files/{upload['fileId']}", headers=headers).status_code == 404
    assert client.delete(f"/files/{upload['fileId']}", headers=headers).status_code == 404


def test_delete_keeps_record_when_storage_fails(client, initiate):
    file_id = initiate(client, "u1").json()["fileId"]
    headers = client.auth_headers("u1")
    client.storage.fail_deletes = True

    response = client.delete(f"/files/{file_id}", headers=headers)
    assert response.status_code == 502
    assert client.get(f"/files/{file_id}", headers=headers).status_code == 200


def test_delete_by_other_owner_is_forbidden(client, initiate):
    file_id = initiate(client, "u1").json()["fileId"]
    assert client.delete(f"/files/{file_id}", headers=client.auth_headers("u2")).status_code == 403
    assert client.storage.deleted == []


def test_batch_tag_mutation(client, initiate):
    headers = client.auth_headers("u1")
    ids = _upload_many(client, initiate, "u1", 3, tags=["old"])

    response = client.post(
        "/files/batch/tags",
        json={"fileIds": ids + [ids[0]], "tags": ["Trip"], "operation": "ADD"},
        headers=headers,
    )
    assert response.status_code == 200
    body = response.json()
    assert [item["id"] for item in body] == ids
    assert all(item["tags"] == ["old", "trip"] for item in body)

    replaced = client.post(
        "/files/batch/tags", json={"fileIds": ids[:1], "tags": ["new"], "operation": "REPLACE"}, headers=headers
    )
    assert replaced.json()[0]["tags"] == ["new"]


def test_batch_tag_mutation_is_all_or_nothing(client, initiate):
    mine = initiate(client, "u1").json()["fileId"]
    theirs = initiate(client, "u2").json()["fileId"]
    headers = client.auth_headers("u1")

    forbidden = client.post(
        "/files/batch/tags", json={"fileIds": [mine, theirs], "tags": ["x"], "operation": "ADD"}, headers=headers
    )
    assert forbidden.status_code == 403
    assert client.get(f"/files/{mine}", headers=headers).json()["tags"] == []

    missing = client.post(
        "/files/batch/tags", json={"fileIds": [mine, "nope"], "tags": ["x"], "operation": "ADD"}, headers=headers
    )
    assert missing.status_code == 404

    empty = client.post("/files/batch/tags", json={"fileIds": [], "tags": ["x"], "operation": "ADD"}, headers=headers)
    assert empty.status_code == 400

    bad_op = client.post(
        "/files/batch/tags", json={"fileIds": [mine], "tags": ["x"], "operation": "MERGE"}, headers=headers
    )
    assert bad_op.status_code == 400
