"""Tests for the versioned resource store (in-memory SQLite)."""

from datetime import datetime, timezone

import pytest
from sqlalchemy import select

from fhir_server.models.resource import AuditLog, ResourceRecord, ResourceVersion
from fhir_server.services.errors import (
    ConflictVersion,
    Gone,
    InvalidState,
    MissingField,
    NotFound,
    SchemaViolation,
    UnknownResourceType,
    UnsupportedParameter,
)
from factories import make_observation, make_patient


def test_create_assigns_identity_and_meta(store):
    created = store.create("Patient", make_patient())
    assert created["id"] == "p1"
    assert created["meta"]["versionId"] == "1"
    assert created["meta"]["lastUpdated"].endswith("Z")


def test_create_then_read_returns_input_plus_server_fields(store):
    patient = make_patient(birthDate="1990-01-15")
    created = store.create("Patient", patient)
    read = store.read("Patient", created["id"])

    assert read == created
    stripped = {k: v for k, v in read.items() if k not in ("id", "meta")}
    assert stripped == patient


def test_create_does_not_mutate_input(store):
    patient = make_patient(meta={"versionId": "99"})
    store.create("Patient", patient)
    assert patient["meta"] == {"versionId": "99"}
    assert "id" not in patient


def test_create_rejects_client_assigned_id(store):
    with pytest.raises(InvalidState) as exc:
        store.create("Patient", make_patient(id="mine"))
    assert exc.value.field == "id"


def test_create_rejects_type_mismatch(store):
    with pytest.raises(InvalidState):
        store.create("Patient", make_observation())


def test_create_validates(store, session_factory):
    record = make_patient()
    del record["resourceType"]
    with pytest.raises(MissingField):
        store.create("Patient", record)
    with pytest.raises(SchemaViolation):
        store.create("Patient", make_patient(gender="robot"))

    with session_factory() as db:
        assert db.scalars(select(ResourceRecord)).all() == []
        assert db.scalars(select(AuditLog)).all() == []


def test_unknown_resource_type(store):
    with pytest.raises(UnknownResourceType):
        store.read("Spaceship", "x")


def test_read_missing(store):
    with pytest.raises(NotFound):
        store.read("Patient", "nope")


def test_bodies_are_encrypted_at_rest(store, session_factory):
    store.create("Patient", make_patient(family="Smith"))
    with session_factory() as db:
        row = db.get(ResourceRecord, ("Patient", "p1"))
    assert "Smith" not in row.encrypted_body
    assert store.encryption.decrypt_json(row.encrypted_body)["name"][0]["family"] == "Smith"


def test_update_with_matching_token(store):
    store.create("Patient", make_patient())
    updated = store.update("Patient", "p1", make_patient(gender="other"), expected_version="1")
    assert updated["meta"]["versionId"] == "2"
    assert store.read("Patient", "p1")["gender"] == "other"


def test_update_requires_token_by_default(store):
    store.create("Patient", make_patient())
    with pytest.raises(ConflictVersion):
        store.update("Patient", "p1", make_patient(gender="other"))


def test_update_without_token_when_not_required(store):
    store.require_version_token = False
    store.create("Patient", make_patient())
    assert store.update("Patient", "p1", make_patient(gender="male"))["meta"]["versionId"] == "2"


def test_update_stale_token_conflicts_then_matching_succeeds(store):
    store.create("Patient", make_patient())
    store.update("Patient", "p1", make_patient(gender="other"), expected_version=1)

    with pytest.raises(ConflictVersion):
        store.update("Patient", "p1", make_patient(gender="male"), expected_version=1)

    updated = store.update("Patient", "p1", make_patient(gender="male"), expected_version=2)
    assert updated["meta"]["versionId"] == "3"


def test_concurrent_writer_loses_compare_and_swap(store, session_factory):
    store.create("Patient", make_patient())
    stale = store._current_record("Patient", "p1")
    store.update("Patient", "p1", make_patient(gender="other"), expected_version=1)

    # Second writer validated against version 1 before the first one committed
    store._current_record = lambda *args: stale
    with pytest.raises(ConflictVersion):
        store.update("Patient", "p1", make_patient(gender="male"), expected_version=1)

    with session_factory() as db:
        versions = db.scalars(select(ResourceVersion.version_id)).all()
    assert sorted(versions) == [1, 2]


def test_update_missing_resource(store):
    with pytest.raises(NotFound):
        store.update("Patient", "ghost", make_patient(), expected_version=1)


def test_update_rejects_mismatched_body_id(store):
    store.create("Patient", make_patient())
    with pytest.raises(InvalidState):
        store.update("Patient", "p1", make_patient(id="p9"), expected_version=1)


def test_update_validates_before_checking_token(store):
    store.create("Patient", make_patient())
    with pytest.raises(SchemaViolation):
        store.update("Patient", "p1", make_patient(gender="robot"), expected_version=7)


def test_delete_tombstones_and_keeps_history(store):
    store.create("Patient", make_patient())
    store.delete("Patient", "p1")

    with pytest.raises(Gone):
        store.read("Patient", "p1")
    assert store.read_version("Patient", "p1", 1)["gender"] == "female"
    with pytest.raises(Gone):
        store.read_version("Patient", "p1", 2)


def test_deleted_is_terminal(store):
    store.create("Patient", make_patient())
    store.delete("Patient", "p1")
    with pytest.raises(Gone):
        store.update("Patient", "p1", make_patient(), expected_version=2)
    with pytest.raises(Gone):
        store.delete("Patient", "p1")


def test_delete_missing(store):
    with pytest.raises(NotFound):
        store.delete("Patient", "ghost")


def test_read_version_missing(store):
    store.create("Patient", make_patient())
    with pytest.raises(NotFound):
        store.read_version("Patient", "p1", 5)
    with pytest.raises(NotFound):
        store.read_version("Patient", "p1", "abc")


def test_history_newest_first(store):
    store.create("Patient", make_patient())
    store.update("Patient", "p1", make_patient(gender="other"), expected_version=1)
    store.delete("Patient", "p1")

    history = store.history("Patient", "p1")
    assert [e.version_id for e in history] == [3, 2, 1]
    assert history[0].deleted and history[0].resource is None
    assert history[1].resource["gender"] == "other"

    with pytest.raises(NotFound):
        store.history("Patient", "ghost")


def test_every_mutation_is_audited(store, session_factory):
    store.create("Patient", make_patient(), actor="dr.who")
    store.update("Patient", "p1", make_patient(gender="other"), expected_version=1, actor="dr.who")
    store.delete("Patient", "p1", actor="nurse")

    with session_factory() as db:
        entries = db.scalars(select(AuditLog).order_by(AuditLog.version_id)).all()
    assert [(e.action, e.actor, e.version_id) for e in entries] == [
        ("create", "dr.who", 1),
        ("update", "dr.who", 2),
        ("delete", "nurse", 3),
    ]
    assert all(e.resource_type == "Patient" and e.resource_id == "p1" for e in entries)


def test_injected_clock_sets_last_updated(settings, session_factory):
    from fhir_server.main import build_store

    fixed = datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)
    store = build_store(settings, session_factory, clock=lambda: fixed, id_factory=lambda: "fixed")
    created = store.create("Patient", make_patient())
    assert created["meta"]["lastUpdated"] == "2024-05-01T10:00:00.000Z"


def test_create_with_colliding_id_cannot_succeed_twice(settings, session_factory):
    from fhir_server.main import build_store

    store = build_store(settings, session_factory, id_factory=lambda: "same")
    store.create("Patient", make_patient(family="First"))
    with pytest.raises(InvalidState, match="already exists"):
        store.create("Patient", make_patient(family="Second"))

    assert store.read("Patient", "same")["name"][0]["family"] == "First"
    with session_factory() as db:
        assert len(db.scalars(select(ResourceVersion)).all()) == 1
        assert len(db.scalars(select(AuditLog)).all()) == 1


def test_search_current_non_deleted_ordered_by_id(store):
    store.create("Patient", make_patient(family="Smith"))
    store.create("Patient", make_patient(family="Smythe", gender="male"))
    store.create("Patient", make_patient(family="Jones"))
    store.delete("Patient", "p1")

    page = store.search("Patient", {"family": "sm"})
    assert page.total == 1
    assert [r["id"] for r in page.resources] == ["p2"]

    page = store.search("Patient", {})
    assert [r["id"] for r in page.resources] == ["p2", "p3"]


def test_search_sees_latest_version_only(store):
    store.create("Patient", make_patient(gender="female"))
    store.update("Patient", "p1", make_patient(gender="other"), expected_version=1)
    assert store.search("Patient", {"gender": "female"}).total == 0
    assert store.search("Patient", {"gender": "other"}).total == 1


def test_search_pagination(store):
    for _ in range(5):
        store.create("Patient", make_patient())
    store.page_size = 2

    first = store.search("Patient", {})
    assert first.total == 5
    assert [r["id"] for r in first.resources] == ["p1", "p2"]

    last = store.search("Patient", {"_offset": "4"})
    assert [r["id"] for r in last.resources] == ["p5"]


def test_search_unknown_parameter(store):
    with pytest.raises(UnsupportedParameter):
        store.search("Patient", {"favourite": "blue"})


def test_search_observations_by_patient(store):
    store.create("Patient", make_patient())
    store.create("Observation", make_observation(subject="Patient/p1"))
    store.create("Observation", make_observation(subject="Patient/p9"))

    page = store.search("Observation", {"patient": "p1"})
    assert [r["id"] for r in page.resources] == ["p2"]


def test_patient_lifecycle_scenario(store):
    created = store.create(
        "Patient",
        {"resourceType": "Patient", "name": [{"family": "Smith", "given": ["Jane"]}], "gender": "female"},
    )
    assert created["id"] == "p1"
    assert created["meta"]["versionId"] == "1"

    updated = store.update(
        "Patient",
        "p1",
        {"resourceType": "Patient", "name": [{"family": "Smith", "given": ["Jane"]}], "gender": "other"},
        expected_version="1",
    )
    assert updated["meta"]["versionId"] == "2"
    assert store.read("Patient", "p1")["gender"] == "other"

    store.delete("Patient", "p1")
    with pytest.raises(Gone):
        store.read("Patient", "p1")
    assert store.read_version("Patient", "p1", 1)["gender"] == "female"
