import io
import zipfile
from datetime import datetime, timedelta

import pytest

from blueprint.errors import AlreadyInProgress
from blueprint.models import Job, JobStatus
from blueprint.services import pipeline

H1 = {"X-User-Id": "user-1"}
H2 = {"X-User-Id": "user-2"}


def _fill(client, sid, phases=12, headers=H1):
    for n in range(1, phases + 1):
        r = client.put(f"/sessions/{sid}/phases/{n}", headers=headers, json={
            "answers": [{"question_id": "q1", "question_text": "Q1", "answer_text": "A1"}], "complete": True})
        assert r.status_code == 200


def _new_session(client, headers=H1):
    r = client.post("/sessions", headers=headers, json={"description": "Invoice tracking", "name": "Invoicer"})
    assert r.status_code == 201
    return r.json()["id"]


def test_healthz(client):
    assert client.get("/healthz").json() == {"status": "ok"}


def test_session_flow(client):
    sid = _new_session(client)
    _fill(client, sid, phases=3)
    body = client.get(f"/sessions/{sid}", headers=H1).json()
    assert (body["completed_phases"], body["current_phase"], body["status"]) == (3, 4, "in_progress")
    r = client.put(f"/sessions/{sid}/phases/13", headers=H1, json={"answers": []})
    assert r.status_code == 422


def test_generate_needs_all_phases_and_skips_the_model(client, llm):
    sid = _new_session(client)
    _fill(client, sid, phases=11)
    r = client.post(f"/plans/{sid}/generate", headers=H1)
    assert r.status_code == 400
    assert r.json()["error"] == "IncompletePhases"
    assert r.json()["found"] == 11
    assert llm.calls == []
    assert client.get(f"/sessions/{sid}/answers", headers=H1).status_code == 400


def test_ownership_errors(client):
    sid = _new_session(client)
    assert client.get(f"/sessions/{sid}", headers=H2).status_code == 403
    assert client.post(f"/plans/{sid}/generate", headers=H2).json()["error"] == "Unauthorized"
    r = client.get("/sessions/missing", headers=H1)
    assert r.status_code == 404 and r.json()["error"] == "NotFound"
    assert client.get(f"/sessions/{sid}").status_code == 422


def test_generate_edit_approve(client, llm):
    sid = _new_session(client)
    _fill(client, sid)
    r = client.post(f"/plans/{sid}/generate", headers=H1)
    assert r.status_code == 200
    assert r.json()["status"] == "generated"
    prompt = llm.calls[0]["messages"][0]["content"]
    assert "**Phase 12**:" in prompt

    r = client.put(f"/plans/{sid}/content", headers=H1, json={"content": "# Edited"})
    assert r.json()["display_content"] == "# Edited"
    assert client.post(f"/plans/{sid}/approve", headers=H1).json()["status"] == "approved"

    r = client.post(f"/plans/{sid}/generate", headers=H1)
    assert r.json() == {"plan": "# Edited", "status": "approved", "plan_id": r.json()["plan_id"]}
    assert len(llm.calls) == 1
    assert client.put(f"/plans/{sid}/content", headers=H1, json={"content": "x"}).status_code == 409


def test_export_before_approval_is_rejected(client):
    sid = _new_session(client)
    _fill(client, sid)
    client.post(f"/plans/{sid}/generate", headers=H1)
    r = client.post("/export", headers=H1, json={"session_id": sid})
    assert r.status_code == 409 and r.json()["error"] == "NotApproved"


def test_active_job_blocks_generation(client, db, llm, make_session):
    ws = make_session()
    job = Job(session_id=ws.id, user_id=ws.user_id, status=JobStatus.processing)
    db.add(job); db.commit()
    r = client.post(f"/plans/{ws.id}/generate", headers=H1)
    assert r.status_code == 409
    assert r.json() == {"error": "AlreadyInProgress", "message": r.json()["message"], "job_id": job.id}
    assert llm.calls == []


def test_stale_job_no_longer_blocks(client, db, make_session):
    ws = make_session()
    job = Job(session_id=ws.id, user_id=ws.user_id, status=JobStatus.processing,
              updated_at=datetime.utcnow() - timedelta(minutes=10))
    db.add(job); db.commit()
    assert client.post(f"/plans/{ws.id}/generate", headers=H1).status_code == 200
    db.expire_all()
    assert db.get(Job, job.id).status == JobStatus.failed


def test_session_lock_rejects_concurrent_generation(db, kb, llm, make_session):
    ws = make_session()
    with pipeline.session_guard(ws.id):
        with pytest.raises(AlreadyInProgress):
            pipeline.generate_plan(db, llm, kb, ws.user_id, ws.id)
    assert llm.calls == []
    assert pipeline.generate_plan(db, llm, kb, ws.user_id, ws.id).status == "generated"


def test_plan_job_via_http(client, llm):
    sid = _new_session(client)
    _fill(client, sid)
    r = client.post(f"/plans/{sid}/jobs", headers=H1)
    assert r.status_code == 202
    job_id = r.json()["job_id"]
    body = client.get(f"/jobs/{job_id}", headers=H1).json()
    assert body["status"] == "completed"
    assert body["result"]["status"] == "generated"
    assert client.get(f"/plans/{sid}", headers=H1).json()["id"] == body["result"]["plan_id"]
    assert client.get(f"/jobs/{job_id}", headers=H2).status_code == 403
    assert client.post(f"/jobs/{job_id}/process", headers=H1).json()["status"] == "completed"
    assert len(llm.calls) == 1


def test_bundle_and_docx(client):
    sid = _new_session(client)
    _fill(client, sid, phases=2)
    r = client.get(f"/plans/{sid}/bundle", headers=H1)
    assert r.status_code == 200
    names = zipfile.ZipFile(io.BytesIO(r.content)).namelist()
    assert names[:3] == ["README.md", "CLAUDE.md", "COMPLETE-PLAN.md"]
    assert "phases/phase-1-product-abstraction-vision.md" in names

    assert client.get(f"/plans/{sid}/docx", headers=H1).status_code == 404
    _fill(client, sid)
    client.post(f"/plans/{sid}/generate", headers=H1)
    r = client.get(f"/plans/{sid}/docx", headers=H1)
    assert r.status_code == 200
    assert r.content[:2] == b"PK"


def test_archived_session_is_read_only(client):
    sid = _new_session(client)
    assert client.post(f"/sessions/{sid}/archive", headers=H1).json()["status"] == "archived"
    r = client.put(f"/sessions/{sid}/phases/1", headers=H1,
                   json={"answers": [{"question_id": "q", "question_text": "Q", "answer_text": "A"}]})
    assert r.status_code == 409 and r.json()["error"] == "SessionArchived"


def test_reload_kb(client, tmp_path, monkeypatch):
    from blueprint.config import settings
    doc = tmp_path / "kb1.md"
    doc.write_text("# Fresh KB", encoding="utf-8")
    monkeypatch.setattr(settings, "KB1_PATH", str(doc))
    body = client.post("/admin/reload-kb").json()
    assert body["status"] == "reloaded"
    assert body["kb1_chars"] == len("# Fresh KB")


def test_archived_session_cannot_regenerate(client, llm):
    sid = _new_session(client)
    _fill(client, sid)
    client.post(f"/sessions/{sid}/archive", headers=H1)
    for path in (f"/plans/{sid}/generate", f"/plans/{sid}/jobs"):
        r = client.post(path, headers=H1)
        assert r.status_code == 409
        assert r.json()["error"] == "SessionArchived"
    assert llm.calls == []
    assert client.get(f"/plans/{sid}", headers=H1).status_code == 404


def test_session_guard_is_released(make_session):
    ws = make_session(phases=0)
    with pytest.raises(RuntimeError):
        with pipeline.session_guard(ws.id):
            assert ws.id in pipeline._active_sessions
            raise RuntimeError("boom")
    assert pipeline._active_sessions == set()
    with pipeline.session_guard(ws.id):
        pass
    assert pipeline._active_sessions == set()
