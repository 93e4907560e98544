"""HTTP-level tests through FastAPI's TestClient."""

from factories import make_observation, make_patient

FHIR_JSON = "application/fhir+json"


def _create(client, resource, path="/Patient"):
    response = client.post(path, json=resource)
    assert response.status_code == 201, response.text
    return response.json()


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy", "environment": "test", "database": "connected"}


def test_capability_statement_lists_kinds_and_params(client):
    response = client.get("/metadata")
    assert response.status_code == 200
    assert response.headers["content-type"].startswith(FHIR_JSON)
    body = response.json()
    assert body["resourceType"] == "CapabilityStatement"
    resources = {r["type"]: r for r in body["rest"][0]["resource"]}
    assert set(resources) == {"Patient", "Observation"}
    assert "gender" in {p["name"] for p in resources["Patient"]["searchParam"]}


def test_create_sets_fhir_headers(client):
    response = client.post("/Patient", json=make_patient())
    assert response.status_code == 201
    assert response.headers["content-type"].startswith(FHIR_JSON)
    assert response.headers["etag"] == 'W/"1"'
    assert response.headers["location"] == "http://fhir.test/Patient/p1/_history/1"
    assert "last-modified" in response.headers
    assert response.json()["id"] == "p1"


def test_create_accepts_fhir_content_type(client):
    response = client.post(
        "/Patient",
        content='{"resourceType": "Patient", "gender": "unknown"}',
        headers={"Content-Type": FHIR_JSON},
    )
    assert response.status_code == 201


def test_validation_failure_is_400_operation_outcome(client):
    response = client.post("/Patient", json=make_patient(gender="robot"))
    assert response.status_code == 400
    body = response.json()
    assert body["resourceType"] == "OperationOutcome"
    assert body["issue"][0]["code"] == "structure"
    assert any(issue.get("expression") == ["gender"] for issue in body["issue"])


def test_missing_resource_type_is_400(client):
    response = client.post("/Patient", json={"gender": "female"})
    assert response.status_code == 400
    assert response.json()["issue"][0]["code"] == "required"


def test_malformed_body_is_400(client):
    response = client.post("/Patient", content="not json", headers={"Content-Type": "application/json"})
    assert response.status_code == 400
    assert response.json()["resourceType"] == "OperationOutcome"


def test_client_assigned_id_is_400(client):
    response = client.post("/Patient", json=make_patient(id="mine"))
    assert response.status_code == 400


def test_unknown_resource_type_is_404(client):
    assert client.get("/Spaceship/1").status_code == 404
    assert client.post("/Spaceship", json={"resourceType": "Spaceship"}).status_code == 404


def test_read_and_not_found(client):
    _create(client, make_patient())
    response = client.get("/Patient/p1")
    assert response.status_code == 200
    assert response.headers["etag"] == 'W/"1"'
    assert client.get("/Patient/nope").status_code == 404


def test_update_uses_if_match(client):
    _create(client, make_patient())

    response = client.put("/Patient/p1", json=make_patient(gender="other"))
    assert response.status_code == 409

    response = client.put("/Patient/p1", json=make_patient(gender="other"), headers={"If-Match": 'W/"1"'})
    assert response.status_code == 200
    assert response.headers["etag"] == 'W/"2"'

    stale = client.put("/Patient/p1", json=make_patient(gender="male"), headers={"If-Match": 'W/"1"'})
    assert stale.status_code == 409
    assert stale.json()["issue"][0]["code"] == "conflict"

    response = client.put("/Patient/p1", json=make_patient(gender="male"), headers={"If-Match": 'W/"2"'})
    assert response.status_code == 200
    assert response.json()["meta"]["versionId"] == "3"


def test_update_missing_is_404(client):
    response = client.put("/Patient/ghost", json=make_patient(), headers={"If-Match": 'W/"1"'})
    assert response.status_code == 404


def test_delete_then_gone(client):
    _create(client, make_patient())
    response = client.delete("/Patient/p1", headers={"X-Actor": "dr.who"})
    assert response.status_code == 204
    assert client.get("/Patient/p1").status_code == 410
    assert client.delete("/Patient/p1").status_code == 410

    response = client.get("/Patient/p1/_history/1")
    assert response.status_code == 200
    assert response.json()["gender"] == "female"
    assert client.get("/Patient/p1/_history/2").status_code == 410


def test_history_bundle(client):
    _create(client, make_patient())
    client.put("/Patient/p1", json=make_patient(gender="other"), headers={"If-Match": 'W/"1"'})
    client.delete("/Patient/p1")

    body = client.get("/Patient/p1/_history").json()
    assert body["type"] == "history"
    assert body["total"] == 3
    methods = [entry["request"]["method"] for entry in body["entry"]]
    assert methods == ["DELETE", "PUT", "POST"]
    assert "resource" not in body["entry"][0]
    assert body["entry"][2]["response"]["etag"] == 'W/"1"'


def test_search_bundle_and_paging_links(client):
    for family in ("Smith", "Smythe", "Jones"):
        _create(client, make_patient(family=family))

    body = client.get("/Patient", params={"name": "sm", "_count": "1"}).json()
    assert body["resourceType"] == "Bundle"
    assert body["type"] == "searchset"
    assert body["total"] == 2
    assert [entry["resource"]["id"] for entry in body["entry"]] == ["p1"]
    assert body["entry"][0]["fullUrl"] == "http://fhir.test/Patient/p1"
    links = {link["relation"]: link["url"] for link in body["link"]}
    assert links["next"] == "http://fhir.test/Patient?name=sm&_count=1&_offset=1"
    assert "previous" not in links

    body = client.get("/Patient", params={"name": "sm", "_count": "1", "_offset": "1"}).json()
    assert [entry["resource"]["id"] for entry in body["entry"]] == ["p2"]
    assert "next" not in {link["relation"] for link in body["link"]}


def test_search_errors(client):
    response = client.get("/Patient", params={"shoe": "42"})
    assert response.status_code == 400
    assert response.json()["issue"][0]["code"] == "not-supported"

    response = client.get("/Patient", params={"gender": "unknown-value"})
    assert response.status_code == 400
    assert response.json()["issue"][0]["code"] == "structure"


def test_observation_round_trip(client):
    _create(client, make_patient())
    observation = _create(client, make_observation(subject="Patient/p1"), path="/Observation")
    assert observation["id"] == "p2"

    body = client.get("/Observation", params={"subject": "Patient/p1", "code": "8867-4"}).json()
    assert body["total"] == 1
    assert body["entry"][0]["resource"] == observation


def test_patient_lifecycle_scenario(client):
    created = _create(
        client,
        {"resourceType": "Patient", "name": [{"family": "Smith", "given": ["Jane"]}], "gender": "female"},
    )
    assert (created["id"], created["meta"]["versionId"]) == ("p1", "1")

    response = client.put(
        "/Patient/p1",
        json={"resourceType": "Patient", "name": [{"family": "Smith", "given": ["Jane"]}], "gender": "other"},
        headers={"If-Match": 'W/"1"'},
    )
    assert response.json()["meta"]["versionId"] == "2"
    assert client.get("/Patient/p1").json()["gender"] == "other"

    assert client.delete("/Patient/p1").status_code == 204
    assert client.get("/Patient/p1").status_code == 410
    assert client.get("/Patient/p1/_history/1").json()["gender"] == "female"
