"""Shared fixtures: in-memory database and pipeline step builders."""

import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from templatepipe.db.models import Base


@pytest_asyncio.fixture
async def session_factory():
    """Session factory bound to a fresh in-memory SQLite database."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


def make_text_step(step_id="t1", enabled=True, **config):
    cfg = {"text": "Hello world", "position": "bottom", "fontSize": 48, "fontColor": "#FFFFFF"}
    cfg.update(config)
    return {"id": step_id, "type": "text-overlay", "enabled": enabled, "config": cfg}


def make_music_step(step_id="m1", enabled=True, **config):
    cfg = {"customTrackUrl": "https://cdn.example.com/music/track.mp3", "volume": 30}
    cfg.update(config)
    return {"id": step_id, "type": "bg-music", "enabled": enabled, "config": cfg}


def make_attach_step(step_id="a1", enabled=True, **config):
    cfg = {"videoUrl": "https://cdn.example.com/clips/outro.mp4", "position": "after"}
    cfg.update(config)
    return {"id": step_id, "type": "attach-video", "enabled": enabled, "config": cfg}


def make_video_gen_step(step_id="g1", enabled=True, **config):
    cfg = {"mode": "subtle-animation", "imageUrl": "https://cdn.example.com/images/model.png"}
    cfg.update(config)
    return {"id": step_id, "type": "video-generation", "enabled": enabled, "config": cfg}

