"""Tests for the HTTP API using httpx ASGITransport.

The lifespan is not run, so no ffmpeg check happens and jobs are not
actually started: start_job is replaced with a recorder.
"""

import uuid
from datetime import datetime

import httpx
import pytest
import pytest_asyncio
from sqlalchemy import func, select

from conftest import make_music_step, make_text_step, make_video_gen_step
from templatepipe.api import routes
from templatepipe.api.app import app
from templatepipe.db.models import MusicTrack, TemplateJob
from templatepipe.services.file_manager import FileManager
from templatepipe.services.storage import LocalStorage

SOURCE_URL = "https://cdn.example.com/uploads/source.mp4"


@pytest.fixture
def started(monkeypatch, session_factory, tmp_path):
    """Wire routes to the test database; returns ids passed to start_job."""
    ids: list[uuid.UUID] = []
    storage = LocalStorage(FileManager(tmp_path / "runs", tmp_path / "out"))
    monkeypatch.setattr(routes, "async_session", session_factory)
    monkeypatch.setattr(routes, "start_job", ids.append)
    monkeypatch.setattr(routes, "get_storage", lambda: storage)
    return ids


@pytest_asyncio.fixture
async def client(started):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


async def _count_jobs(session_factory) -> int:
    async with session_factory() as session:
        return (await session.execute(select(func.count(TemplateJob.id)))).scalar()


async def _insert_job(session_factory, **kwargs) -> TemplateJob:
    data = dict(
        name="stored",
        status="queued",
        step="Queued",
        pipeline=[make_text_step()],
        video_source="upload",
        video_url=SOURCE_URL,
        total_steps=1,
    )
    data.update(kwargs)
    async with session_factory() as session:
        job = TemplateJob(**data)
        session.add(job)
        await session.commit()
        await session.refresh(job)
        return job


@pytest.mark.asyncio
async def test_create_job_returns_202_and_schedules(client, started, session_factory):
    body = {
        "name": "promo",
        "pipeline": [
            make_text_step("t1"),
            make_music_step("m1", enabled=False),
            make_music_step("m2"),
        ],
        "videoUrl": SOURCE_URL,
    }

    response = await client.post("/api/templates", json=body)

    assert response.status_code == 202
    data = response.json()
    assert data["status"] == "queued"
    assert data["videoSource"] == "upload"
    assert data["totalSteps"] == 2
    assert data["currentStep"] == 0
    assert data["outputUrl"] is None
    assert started == [uuid.UUID(data["id"])]
    assert await _count_jobs(session_factory) == 1


@pytest.mark.asyncio
async def test_tiktok_source_is_recorded(client):
    body = {
        "name": "tiktok",
        "pipeline": [make_text_step()],
        "tiktokUrl": "https://www.tiktok.com/@someone/video/123",
    }
    response = await client.post("/api/templates", json=body)
    assert response.status_code == 202
    assert response.json()["videoSource"] == "tiktok"


@pytest.mark.asyncio
async def test_generation_pipeline_needs_no_source(client):
    body = {"name": "generated", "pipeline": [make_video_gen_step(), make_text_step()]}
    response = await client.post("/api/templates", json=body)
    assert response.status_code == 202


@pytest.mark.asyncio
async def test_missing_source_is_422_and_creates_nothing(client, started, session_factory):
    response = await client.post(
        "/api/templates",
        json={"name": "bad", "pipeline": [make_text_step()]},
    )

    assert response.status_code == 422
    assert "video source is required" in response.json()["detail"]
    assert started == []
    assert await _count_jobs(session_factory) == 0


@pytest.mark.asyncio
async def test_server_file_as_source_is_422(client, started, session_factory):
    response = await client.post(
        "/api/templates",
        json={"name": "sneaky", "pipeline": [make_text_step()], "videoUrl": "/etc/passwd"},
    )

    assert response.status_code == 422
    assert "outside the upload directory" in response.json()["detail"]
    assert started == []
    assert await _count_jobs(session_factory) == 0


@pytest.mark.asyncio
async def test_invalid_step_is_422(client, session_factory):
    step = make_video_gen_step(maxSeconds=60)
    response = await client.post("/api/templates", json={"name": "bad", "pipeline": [step]})
    assert response.status_code == 422
    assert await _count_jobs(session_factory) == 0


@pytest.mark.asyncio
async def test_list_jobs_newest_first(client, session_factory):
    await _insert_job(session_factory, name="old", created_at=datetime(2024, 1, 1))
    await _insert_job(session_factory, name="new", created_at=datetime(2024, 6, 1))

    response = await client.get("/api/templates")

    assert response.status_code == 200
    assert [j["name"] for j in response.json()] == ["new", "old"]


@pytest.mark.asyncio
async def test_get_unknown_job_is_404(client):
    response = await client.get(f"/api/templates/{uuid.uuid4()}")
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_completed_local_output_is_signed_and_downloadable(client, session_factory, tmp_path):
    output = tmp_path / "final.mp4"
    output.write_bytes(b"final video")
    job = await _insert_job(
        session_factory,
        status="completed",
        step="Completed",
        output_url=output.as_uri(),
    )

    detail = await client.get(f"/api/templates/{job.id}")
    assert detail.status_code == 200
    assert detail.json()["signedUrl"] == f"/api/templates/{job.id}/download"

    download = await client.get(f"/api/templates/{job.id}/download")
    assert download.status_code == 200
    assert download.content == b"final video"


@pytest.mark.asyncio
async def test_unmanaged_output_falls_back_to_stored_url(client, session_factory):
    url = "https://cdn.example.com/renders/final.mp4"
    job = await _insert_job(session_factory, status="completed", output_url=url)

    response = await client.get(f"/api/templates/{job.id}")

    assert response.json()["signedUrl"] == url


@pytest.mark.asyncio
async def test_download_requires_completed_job(client, session_factory):
    job = await _insert_job(session_factory, status="processing")
    response = await client.get(f"/api/templates/{job.id}/download")
    assert response.status_code == 409


@pytest.mark.asyncio
async def test_preset_crud(client):
    created = await client.post(
        "/api/template-presets",
        json={"name": "Outro", "description": "Adds outro", "pipeline": [make_text_step()]},
    )
    assert created.status_code == 201
    preset_id = created.json()["id"]

    listed = await client.get("/api/template-presets")
    assert [p["id"] for p in listed.json()] == [preset_id]

    updated = await client.put(
        f"/api/template-presets/{preset_id}",
        json={"name": "Outro v2", "pipeline": [make_text_step(), make_music_step()]},
    )
    assert updated.status_code == 200
    assert updated.json()["name"] == "Outro v2"
    assert updated.json()["description"] == "Adds outro"
    assert len(updated.json()["pipeline"]) == 2

    deleted = await client.delete(f"/api/template-presets/{preset_id}")
    assert deleted.status_code == 200
    assert (await client.delete(f"/api/template-presets/{preset_id}")).status_code == 404
    assert (await client.get("/api/template-presets")).json() == []


@pytest.mark.asyncio
async def test_music_tracks_default_first(client, session_factory):
    async with session_factory() as session:
        session.add_all([
            MusicTrack(name="Ambient", url="https://cdn.example.com/a.mp3"),
            MusicTrack(name="Upbeat", url="https://cdn.example.com/u.mp3", is_default=True),
        ])
        await session.commit()

    response = await client.get("/api/music-tracks")

    assert [t["name"] for t in response.json()] == ["Upbeat", "Ambient"]
    assert response.json()[0]["isDefault"] is True


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/api/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"
