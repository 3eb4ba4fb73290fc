from __future__ import annotations

import uuid
from functools import partial

from app.core.settings import settings


def _seed(client, concepts: dict[str, list[str]]) -> str:
    """Register a fresh student plus concepts on the app's own event loop."""
    runtime = client.app.state.runtime
    student_id = f"s-{uuid.uuid4().hex[:12]}"
    client.portal.call(runtime.catalog.register_learner, student_id)
    for concept_id, tags in concepts.items():
        client.portal.call(partial(runtime.catalog.register_concept, concept_id, skill_tags=tags))
    return student_id


def _concept(tag: str = "fractions") -> tuple[str, dict[str, list[str]]]:
    concept_id = f"c-{uuid.uuid4().hex[:12]}"
    return concept_id, {concept_id: [tag]}


def _attempt(student_id: str, concept_id: str, correct: bool = True, **overrides) -> dict:
    payload = {
        "student_id": student_id,
        "exercise_id": f"ex-{uuid.uuid4().hex[:8]}",
        "concept_id": concept_id,
        "answer": "3/4",
        "is_correct": correct,
        "score": 100 if correct else 0,
        "time_taken_seconds": 45,
    }
    payload.update(overrides)
    return payload


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "ok"
    assert body["env"] == "test"
    assert body["cache"]["enabled"] is False
    assert "x-request-id" in resp.headers


def test_record_attempt_updates_profile(client):
    concept_id, concepts = _concept()
    student_id = _seed(client, concepts)

    resp = client.post("/attempts", json=_attempt(student_id, concept_id))
    assert resp.status_code == 200
    body = resp.json()
    assert body["profile_update"] == "applied"
    assert body["attempt"]["id"]

    state = client.get(f"/adaptive/state/{student_id}").json()
    assert state["version"] == 2
    assert state["current_difficulty"] == 3
    assert state["skills"]["fractions"]["attempts_count"] == 1
    assert state["skills"]["fractions"]["trend"] == "improving"
    assert state["overall_mastery_percent"] == round(state["overall_mastery"] * 100)


def test_invalid_attempt_is_rejected_with_error_envelope(client):
    concept_id, concepts = _concept()
    student_id = _seed(client, concepts)

    resp = client.post("/attempts", json=_attempt(student_id, concept_id, score=150), headers={"x-request-id": "req-1"})
    assert resp.status_code == 422
    body = resp.json()
    assert body["success"] is False
    assert body["error"]["code"] == "validation_error"
    assert body["error"]["request_id"] == "req-1"


def test_unknown_student(client):
    concept_id, concepts = _concept()
    _seed(client, concepts)

    resp = client.post("/attempts", json=_attempt("nobody-here", concept_id))
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "not_found"

    assert client.get("/adaptive/state/nobody-here").status_code == 404
    assert client.get("/adaptive/difficulty-history/nobody-here").status_code == 404


def test_offline_sync_refreshes_each_pair_once(client):
    algebra_id, algebra = _concept("algebra")
    geometry_id, geometry = _concept("geometry")
    student_id = _seed(client, {**algebra, **geometry})

    payload = {
        "attempts": [
            _attempt(student_id, algebra_id, created_at="2026-03-01T08:00:00Z"),
            _attempt(student_id, algebra_id, correct=False, created_at="2026-03-01T08:05:00Z"),
            _attempt(student_id, geometry_id, created_at="2026-03-01T08:10:00Z"),
        ]
    }
    resp = client.post("/attempts/sync", json=payload)
    assert resp.status_code == 200
    body = resp.json()
    assert body["synced"] == 3
    assert body["profile_updates"] == {
        f"{student_id}:{algebra_id}": "applied",
        f"{student_id}:{geometry_id}": "applied",
    }

    state = client.get(f"/adaptive/state/{student_id}").json()
    assert set(state["skills"]) == {"algebra", "geometry"}
    assert state["version"] == 3


def test_ability_window_endpoint(client):
    concept_id, concepts = _concept()
    student_id = _seed(client, concepts)
    ids = [
        client.post(
            "/attempts", json=_attempt(student_id, concept_id, created_at=f"2026-03-01T09:0{n}:00Z")
        ).json()["attempt"]["id"]
        for n in range(3)
    ]

    resp = client.get(f"/attempts/{student_id}/window", params={"concept_id": concept_id, "window_size": 2})
    assert resp.status_code == 200
    assert [a["id"] for a in resp.json()] == [ids[2], ids[1]]

    bad = client.get(f"/attempts/{student_id}/window", params={"concept_id": concept_id, "window_size": 0})
    assert bad.status_code == 422


def test_next_skill_and_history(client):
    algebra_id, algebra = _concept("algebra")
    geometry_id, geometry = _concept("geometry")
    student_id = _seed(client, {**algebra, **geometry})

    empty = client.get(f"/adaptive/next-skill/{student_id}").json()
    assert empty["recommended_skill"] is None

    client.post("/attempts", json=_attempt(student_id, algebra_id, correct=True))
    client.post("/attempts", json=_attempt(student_id, geometry_id, correct=False))

    advice = client.get(f"/adaptive/next-skill/{student_id}").json()
    assert advice["recommended_skill"] == "geometry"
    assert advice["weak_skills"] == ["geometry"]

    history = client.get(f"/adaptive/difficulty-history/{student_id}", params={"limit": 5}).json()
    assert len(history) == 2
    assert {entry["concept_id"] for entry in history} == {algebra_id, geometry_id}


def test_internal_update_requires_api_key_when_enabled(client, monkeypatch):
    concept_id, concepts = _concept()
    student_id = _seed(client, concepts)
    client.post("/attempts", json=_attempt(student_id, concept_id))

    monkeypatch.setattr(settings, "internal_auth_enabled", True)
    monkeypatch.setattr(settings, "internal_api_key", "secret-key")
    payload = {"student_id": student_id, "concept_id": concept_id}

    denied = client.post("/adaptive/update", json=payload)
    assert denied.status_code == 401
    assert denied.json()["error"]["code"] == "unauthorized"

    resp = client.post("/adaptive/update", json=payload, headers={"x-api-key": "secret-key"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["replayed"] is True
    assert body["difficulty"]["delta"] == 0
    assert body["skills_updated"] == ["fractions"]


def test_metrics_endpoint(client):
    concept_id, concepts = _concept()
    student_id = _seed(client, concepts)
    client.post("/attempts", json=_attempt(student_id, concept_id))

    body = client.get("/metrics/app").json()
    assert body["profile_updates_by_outcome"]["applied"] >= 1
    assert "cache" in body
    assert body["worker"] is None
