import io
import zipfile
from datetime import datetime, timedelta

import pytest
from sqlmodel import select

from blueprint.errors import AlreadyInProgress, InvalidTransition, NotApproved, NotReady
from blueprint.models import Export, ExportStatus, JobStep
from blueprint.services import bundle, pipeline, planner
from blueprint.services.jobs import advance_export

HEADERS = {"X-User-Id": "user-1"}


def _approved(db, ws, text="# Approved plan"):
    return planner.approve_plan(db, planner.save_plan(db, ws, text))


def _no_enqueue(event, payload):
    pass


def test_export_moves_forward_only(db, make_session):
    ws = make_session()
    export = Export(session_id=ws.id, user_id=ws.user_id)
    db.add(export); db.commit()
    with pytest.raises(InvalidTransition):
        advance_export(db, export, ExportStatus.completed)
    advance_export(db, export, ExportStatus.processing, 5, "Starting")
    advance_export(db, export, ExportStatus.processing, 50, "Halfway")
    advance_export(db, export, ExportStatus.failed, error="boom")
    for status in ExportStatus:
        with pytest.raises(InvalidTransition):
            advance_export(db, export, status)
    assert (export.progress, export.progress_message, export.error_message) == (50, "Halfway", "boom")


def test_export_requires_approved_plan(db, make_session):
    ws = make_session()
    planner.save_plan(db, ws, "# Draft")
    with pytest.raises(NotApproved):
        pipeline.start_export(db, ws.user_id, ws.id, None, _no_enqueue)


def test_in_flight_export_is_reused(db, make_session):
    ws = make_session()
    _approved(db, ws)
    queued = []
    first = pipeline.start_export(db, ws.user_id, ws.id, None, lambda e, p: queued.append(p))
    second = pipeline.start_export(db, ws.user_id, ws.id, None, lambda e, p: queued.append(p))
    assert first.id == second.id
    assert len(queued) == 1
    assert first.options == {k: True for k in pipeline.EXPORT_OPTIONS}


def test_stale_export_is_failed_and_replaced(db, make_session):
    ws = make_session()
    _approved(db, ws)
    old = pipeline.start_export(db, ws.user_id, ws.id, None, _no_enqueue)
    old.created_at = datetime.utcnow() - timedelta(minutes=20)
    db.add(old); db.commit()
    fresh = pipeline.start_export(db, ws.user_id, ws.id, None, _no_enqueue)
    db.refresh(old)
    assert fresh.id != old.id
    assert old.status == ExportStatus.failed


def test_download_while_processing_is_not_ready(client, db, make_session):
    ws = make_session()
    export = Export(session_id=ws.id, user_id=ws.user_id, status=ExportStatus.processing, progress=40)
    db.add(export); db.commit()
    with pytest.raises(NotReady):
        pipeline.download_export(db, ws.user_id, export.id)
    r = client.get(f"/export/{export.id}/download", headers=HEADERS)
    assert r.status_code == 409
    assert r.json()["error"] == "NotReady"


def test_completed_export_without_files(client, db, make_session):
    ws = make_session()
    export = Export(session_id=ws.id, user_id=ws.user_id, status=ExportStatus.completed,
                    files=bundle.empty_files())
    db.add(export); db.commit()
    r = client.get(f"/export/{export.id}/download", headers=HEADERS)
    assert r.status_code == 500
    assert r.json()["error"] == "NoFiles"


def test_status_check_is_read_only(client, db, make_session):
    ws = make_session()
    export = Export(session_id=ws.id, user_id=ws.user_id)
    db.add(export); db.commit()
    before = export.updated_at
    for _ in range(2):
        r = client.get(f"/export/{export.id}/status", headers=HEADERS)
        assert r.json() == {"id": export.id, "status": "pending", "progress": 0,
                            "progress_message": None, "error_message": None}
    db.expire_all()
    assert db.get(Export, export.id).updated_at == before
    assert db.exec(select(JobStep).where(JobStep.run_id == export.id)).all() == []


def test_export_end_to_end(client, db, llm, make_session):
    ws = make_session()
    _approved(db, ws)
    r = client.post("/export", json={"session_id": ws.id}, headers=HEADERS)
    assert r.status_code == 202
    export_id = r.json()["export_id"]

    status = client.get(f"/export/{export_id}/status", headers=HEADERS).json()
    assert status["status"] == "completed"
    assert status["progress"] == 100
    assert status["progress_message"] == "Export complete!"
    assert sorted(status["files"]["modules"]) == ["api", "auth", "database", "payments", "ui"]
    assert len(llm.calls) == 4

    r = client.get(f"/export/{export_id}/download", headers=HEADERS)
    assert r.status_code == 200
    assert r.headers["content-type"] == "application/zip"
    assert r.headers["content-disposition"].startswith('attachment; filename="invoice-tracking-for-freelancers-blueprint-')
    names = zipfile.ZipFile(io.BytesIO(r.content)).namelist()
    assert names[:4] == ["USER_INSTRUCTIONS.md", "README.md", "CLAUDE.md", "QUICK_START.md"]
    assert "modules/auth/README.md" in names
    assert "prompts/01-setup-auth.md" in names


def test_export_options_drop_files(client, db, make_session):
    ws = make_session()
    _approved(db, ws)
    r = client.post("/export", json={"session_id": ws.id, "options": {"include_prompts": False,
                                                                       "include_user_instructions": False}},
                    headers=HEADERS)
    names = zipfile.ZipFile(io.BytesIO(
        client.get(f"/export/{r.json()['export_id']}/download", headers=HEADERS).content)).namelist()
    assert "USER_INSTRUCTIONS.md" not in names
    assert not any(n.startswith("prompts/") for n in names)


def test_in_flight_export_with_other_options_is_rejected(db, make_session):
    ws = make_session()
    _approved(db, ws)
    running = pipeline.start_export(db, ws.user_id, ws.id, None, _no_enqueue)
    with pytest.raises(AlreadyInProgress) as exc:
        pipeline.start_export(db, ws.user_id, ws.id, {"include_prompts": False}, _no_enqueue)
    assert exc.value.extra == {"export_id": running.id}
    same = pipeline.start_export(db, ws.user_id, ws.id, {"include_prompts": True}, _no_enqueue)
    assert same.id == running.id
