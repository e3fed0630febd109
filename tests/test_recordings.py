"""Recording upload, listing, retrieval, update and download."""
from datetime import datetime, timedelta, timezone

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from conftest import SERVICE_KEY, USER_ID, upload_clip
from voicerelay.models import Recording
from voicerelay.services.file_storage import StorageError


async def _count_recordings(session_factory) -> int:
    async with session_factory() as db:
        return await db.scalar(select(func.count()).select_from(Recording))


def _stored_files(storage_root) -> list:
    return [p for p in storage_root.rglob("*") if p.is_file()]


async def _add_recordings(session_factory, senders, created_at=None) -> list:
    """Insert rows directly, one second apart unless ``created_at`` pins them all."""
    base = datetime(2024, 1, 1, tzinfo=timezone.utc)
    ids = []
    async with session_factory() as db:
        for i, sender in enumerate(senders):
            recording = Recording(
                user_id=USER_ID,
                file_path=f"{sender}/{USER_ID}/{i}_seed.webm",
                sender=sender,
                status="pending",
                played=False,
                created_at=created_at or base + timedelta(seconds=i),
            )
            db.add(recording)
            await db.flush()
            ids.append(str(recording.id))
        await db.commit()
    return ids


# ── Upload ───────────────────────────────────────────────────────

async def test_multipart_upload_creates_pending_user_recording(client, device_headers, storage_root):
    resp = await upload_clip(client, device_headers, content=b"abc123", filename="morning note.webm", duration="4.5")
    assert resp.status_code == 201
    body = resp.json()
    assert body["success"] is True
    recording = body["recording"]
    assert recording["status"] == "pending"
    assert recording["file_path"].startswith(f"user/{USER_ID}/")
    assert recording["file_path"].endswith("_morning_note.webm")
    assert (storage_root / recording["file_path"]).read_bytes() == b"abc123"

    resp = await client.get("/list-recordings", headers=device_headers)
    listed = resp.json()
    assert listed["total"] == 1
    entry = listed["recordings"][0]
    assert entry["id"] == recording["id"]
    assert entry["sender"] == "user"
    assert entry["played"] is False
    assert entry["duration"] == 4.5


async def test_raw_body_upload_uses_default_name(client, device_headers, session_factory):
    headers = {**device_headers, "content-type": "audio/mpeg", "x-recording-duration": "2"}
    resp = await client.post("/upload-recording", headers=headers, content=b"\xff\xfbraw-mp3")
    assert resp.status_code == 201
    file_path = resp.json()["recording"]["file_path"]
    assert file_path.startswith(f"user/{USER_ID}/")
    assert "_recording_" in file_path and file_path.endswith(".mp3")

    async with session_factory() as db:
        recording = (await db.execute(select(Recording))).scalar_one()
        assert recording.mime_type == "audio/mpeg"
        assert recording.duration == 2.0


async def test_empty_upload_creates_nothing(client, device_headers, session_factory, storage_root):
    resp = await upload_clip(client, device_headers, content=b"")
    assert resp.status_code == 400
    assert resp.json() == {"error": "Empty file"}

    resp = await client.post("/upload-recording", headers={**device_headers, "content-type": "audio/mpeg"}, content=b"")
    assert resp.status_code == 400

    assert await _count_recordings(session_factory) == 0
    assert _stored_files(storage_root) == []


async def test_multipart_without_file_field(client, device_headers):
    resp = await client.post(
        "/upload-recording",
        headers=device_headers,
        files={"attachment": ("notes.txt", b"hello", "text/plain")},
    )
    assert resp.status_code == 400
    assert resp.json() == {"error": "No file provided"}


async def test_invalid_duration_is_rejected(client, device_headers):
    resp = await upload_clip(client, device_headers, duration="long")
    assert resp.status_code == 400


async def test_storage_failure_creates_no_row(client, app, device_headers, session_factory, monkeypatch):
    async def failing_save(path, data, content_type="application/octet-stream"):
        raise StorageError("bucket unavailable")

    monkeypatch.setattr(app.state.storage, "save", failing_save)
    resp = await upload_clip(client, device_headers)
    assert resp.status_code == 500
    assert resp.json() == {"error": "Failed to upload file"}
    assert await _count_recordings(session_factory) == 0


async def test_unexpected_error_keeps_cors_headers(client, app, device_headers, session_factory, monkeypatch):
    async def broken_save(path, data, content_type="application/octet-stream"):
        raise RuntimeError("disk controller on fire")

    monkeypatch.setattr(app.state.storage, "save", broken_save)
    headers = {**device_headers, "Origin": "http://app.test"}
    resp = await upload_clip(client, headers)
    assert resp.status_code == 500
    assert resp.json() == {"error": "Internal server error"}
    assert resp.headers["access-control-allow-origin"] == "*"
    assert await _count_recordings(session_factory) == 0


async def test_cors_preflight_for_upload(client):
    resp = await client.options(
        "/upload-recording",
        headers={
            "Origin": "http://app.test",
            "Access-Control-Request-Method": "POST",
            "Access-Control-Request-Headers": "x-device-token",
        },
    )
    assert resp.status_code == 200
    assert resp.headers["access-control-allow-origin"] == "*"
    assert "POST" in resp.headers["access-control-allow-methods"]


async def test_failed_insert_removes_stored_object(client, device_headers, session_factory, storage_root, monkeypatch):
    async def failing_flush(self, objects=None):
        raise SQLAlchemyError("insert failed")

    monkeypatch.setattr(AsyncSession, "flush", failing_flush)
    resp = await upload_clip(client, device_headers)
    monkeypatch.undo()

    assert resp.status_code == 500
    assert resp.json() == {"error": "Failed to create record"}
    assert _stored_files(storage_root) == []
    assert await _count_recordings(session_factory) == 0


async def test_upload_response_stores_ai_recording(client, device_headers, storage_root):
    resp = await client.post(
        "/upload-response",
        headers=device_headers,
        files={"file": ("reply.webm", b"ai-audio", "audio/webm")},
        data={"transcript": "Here is what I found."},
    )
    assert resp.status_code == 201
    file_path = resp.json()["recording"]["file_path"]
    assert file_path.startswith(f"ai/{USER_ID}/")
    assert file_path.endswith("_response.webm")
    assert (storage_root / file_path).read_bytes() == b"ai-audio"

    resp = await client.get("/list-recordings", params={"sender": "ai"}, headers=device_headers)
    entry = resp.json()["recordings"][0]
    assert entry["sender"] == "ai"
    assert entry["transcript"] == "Here is what I found."


async def test_upload_response_requires_multipart(client, device_headers):
    resp = await client.post(
        "/upload-response",
        headers={**device_headers, "content-type": "audio/mpeg"},
        content=b"bytes",
    )
    assert resp.status_code == 400
    assert resp.json() == {"error": "Content-Type must be multipart/form-data"}


async def test_upload_response_mp3_extension(client, device_headers):
    resp = await client.post(
        "/upload-response",
        headers=device_headers,
        files={"file": ("reply.mp3", b"ai-audio", "audio/mpeg")},
    )
    assert resp.json()["recording"]["file_path"].endswith("_response.mp3")


# ── Listing ──────────────────────────────────────────────────────

async def test_list_total_ignores_paging(client, device_headers):
    for i in range(3):
        resp = await upload_clip(client, device_headers, filename=f"clip-{i}.webm")
        assert resp.status_code == 201

    resp = await client.get("/list-recordings", params={"limit": 1, "offset": 1}, headers=device_headers)
    body = resp.json()
    assert body["total"] == 3
    assert body["limit"] == 1
    assert body["offset"] == 1
    assert len(body["recordings"]) == 1

    resp = await client.get("/list-recordings", params={"offset": 5}, headers=device_headers)
    assert resp.json()["total"] == 3
    assert resp.json()["recordings"] == []


async def test_list_filters_by_played(client, device_headers):
    first = (await upload_clip(client, device_headers, filename="a.webm")).json()["recording"]
    await upload_clip(client, device_headers, filename="b.webm")
    await client.post("/mark-played", json={"id": first["id"]}, headers=device_headers)

    resp = await client.get("/list-recordings", params={"played": "true"}, headers=device_headers)
    assert resp.json()["total"] == 1
    assert resp.json()["recordings"][0]["id"] == first["id"]

    resp = await client.get("/list-recordings", params={"played": "false"}, headers=device_headers)
    assert resp.json()["total"] == 1


async def test_list_only_shows_own_recordings(client, device_headers, other_device_headers):
    await upload_clip(client, device_headers)
    resp = await client.get("/list-recordings", headers=other_device_headers)
    assert resp.json()["total"] == 0


async def test_list_limit_out_of_range(client, device_headers):
    resp = await client.get("/list-recordings", params={"limit": 500}, headers=device_headers)
    assert resp.status_code == 400
    assert "error" in resp.json()

    resp = await client.get("/list-recordings", params={"limit": 0}, headers=device_headers)
    assert resp.status_code == 400


async def test_list_sender_filter_counts_only_matching_rows(client, device_headers, session_factory):
    await _add_recordings(session_factory, ["user", "ai", "user", "ai", "user"])

    resp = await client.get("/list-recordings", params={"sender": "ai", "limit": 1}, headers=device_headers)
    body = resp.json()
    assert body["total"] == 2
    assert len(body["recordings"]) == 1

    resp = await client.get("/list-recordings", params={"sender": "ai", "limit": 50}, headers=device_headers)
    body = resp.json()
    assert body["total"] == 2
    assert [r["sender"] for r in body["recordings"]] == ["ai", "ai"]

    resp = await client.get("/list-recordings", params={"sender": "user"}, headers=device_headers)
    assert resp.json()["total"] == 3


async def test_list_is_newest_first(client, device_headers, session_factory):
    ids = await _add_recordings(session_factory, ["user", "ai", "user", "user"])

    resp = await client.get("/list-recordings", headers=device_headers)
    recordings = resp.json()["recordings"]
    assert [r["id"] for r in recordings] == list(reversed(ids))
    created = [r["created_at"] for r in recordings]
    assert created == sorted(created, reverse=True)
    assert len(set(created)) == 4


async def test_list_paging_is_stable_for_equal_timestamps(client, device_headers, session_factory):
    same_instant = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
    ids = await _add_recordings(session_factory, ["user"] * 4, created_at=same_instant)

    paged = []
    for offset in range(4):
        resp = await client.get("/list-recordings", params={"limit": 1, "offset": offset}, headers=device_headers)
        paged.extend(r["id"] for r in resp.json()["recordings"])
    assert len(set(paged)) == 4
    assert paged == sorted(ids, reverse=True)


async def test_list_filters_are_lenient(client, device_headers, session_factory):
    first = (await upload_clip(client, device_headers, filename="a.webm")).json()["recording"]
    await upload_clip(client, device_headers, filename="b.webm")
    await client.post("/mark-played", json={"id": first["id"]}, headers=device_headers)

    # Unknown sender matches nothing
    resp = await client.get("/list-recordings", params={"sender": "robot"}, headers=device_headers)
    assert resp.status_code == 200
    assert resp.json()["total"] == 0
    assert resp.json()["recordings"] == []

    # Anything but "true" means unplayed
    for value in ("yes", "1", "TRUE"):
        resp = await client.get("/list-recordings", params={"played": value}, headers=device_headers)
        assert resp.status_code == 200
        assert resp.json()["total"] == 1
        assert resp.json()["recordings"][0]["id"] != first["id"]


# ── Retrieval / update / mark-played ─────────────────────────────

async def test_get_recording_includes_download_url(client, device_headers):
    recording = (await upload_clip(client, device_headers)).json()["recording"]
    resp = await client.get("/get-recording", params={"id": recording["id"]}, headers=device_headers)
    assert resp.status_code == 200
    body = resp.json()
    assert body["recording"]["id"] == recording["id"]
    assert body["recording"]["mime_type"] == "audio/webm"
    assert body["download_url"] == f"http://testserver/download-recording?id={recording['id']}"


async def test_get_recording_errors(client, device_headers, other_device_headers):
    resp = await client.get("/get-recording", headers=device_headers)
    assert resp.status_code == 400
    assert resp.json() == {"error": "Missing id parameter"}

    resp = await client.get("/get-recording", params={"id": "not-a-uuid"}, headers=device_headers)
    assert resp.status_code == 404

    recording = (await upload_clip(client, device_headers)).json()["recording"]
    resp = await client.get("/get-recording", params={"id": recording["id"]}, headers=other_device_headers)
    assert resp.status_code == 404
    assert resp.json() == {"error": "Recording not found"}


async def test_update_recording_ignores_unknown_fields(client, device_headers):
    recording = (await upload_clip(client, device_headers)).json()["recording"]
    resp = await client.patch(
        "/update-recording",
        params={"id": recording["id"]},
        json={"status": "done", "transcript": "hello", "file_path": "user/evil.mp3", "user_id": "user-2"},
        headers=device_headers,
    )
    assert resp.status_code == 200
    updated = resp.json()["recording"]
    assert updated["status"] == "done"
    assert updated["transcript"] == "hello"
    assert updated["file_path"] == recording["file_path"]
    assert updated["user_id"] == USER_ID


async def test_update_recording_rejects_empty_patch(client, device_headers):
    recording = (await upload_clip(client, device_headers)).json()["recording"]
    for body in ({}, {"sender": "ai"}):
        resp = await client.patch(
            "/update-recording", params={"id": recording["id"]}, json=body, headers=device_headers
        )
        assert resp.status_code == 400
        assert resp.json() == {"error": "No valid fields to update"}


async def test_update_recording_rejects_unknown_status(client, device_headers):
    recording = (await upload_clip(client, device_headers)).json()["recording"]
    resp = await client.patch(
        "/update-recording", params={"id": recording["id"]}, json={"status": "archived"}, headers=device_headers
    )
    assert resp.status_code == 400


async def test_update_other_users_recording_is_not_found(client, device_headers, other_device_headers):
    recording = (await upload_clip(client, device_headers)).json()["recording"]
    resp = await client.patch(
        "/update-recording", params={"id": recording["id"]}, json={"played": True}, headers=other_device_headers
    )
    assert resp.status_code == 404


async def test_mark_played(client, device_headers, other_device_headers):
    resp = await client.post("/mark-played", json={}, headers=device_headers)
    assert resp.status_code == 400
    assert resp.json() == {"error": "Missing id in request body"}

    recording = (await upload_clip(client, device_headers)).json()["recording"]
    resp = await client.post("/mark-played", json={"id": recording["id"]}, headers=other_device_headers)
    assert resp.status_code == 404

    resp = await client.post("/mark-played", json={"id": recording["id"]}, headers=device_headers)
    assert resp.status_code == 200
    assert resp.json() == {"success": True, "recording": {"id": recording["id"], "played": True}}


# ── Download ─────────────────────────────────────────────────────

async def test_download_with_device_token(client, device_headers, other_device_headers):
    recording = (await upload_clip(client, device_headers, content=b"opus-bytes", filename="memo.webm")).json()["recording"]

    resp = await client.get("/download-recording", params={"id": recording["id"]}, headers=device_headers)
    assert resp.status_code == 200
    assert resp.content == b"opus-bytes"
    assert resp.headers["content-type"].startswith("audio/webm")
    filename = recording["file_path"].split("/")[-1]
    assert resp.headers["content-disposition"] == f'attachment; filename="{filename}"'

    resp = await client.get("/download-recording", params={"id": recording["id"]}, headers=other_device_headers)
    assert resp.status_code == 404


async def test_download_with_service_key_reads_any_recording(client, device_headers):
    recording = (await upload_clip(client, device_headers, content=b"ci-bytes")).json()["recording"]
    resp = await client.get(
        "/download-recording", params={"id": recording["id"]}, headers={"x-api-key": SERVICE_KEY}
    )
    assert resp.status_code == 200
    assert resp.content == b"ci-bytes"


async def test_download_missing_object(client, device_headers, storage_root):
    recording = (await upload_clip(client, device_headers)).json()["recording"]
    (storage_root / recording["file_path"]).unlink()

    resp = await client.get("/download-recording", params={"id": recording["id"]}, headers=device_headers)
    assert resp.status_code == 500
    assert resp.json() == {"error": "Failed to download file"}
