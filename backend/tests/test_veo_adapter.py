"""Tests for the Veo generator with a fake google-genai client."""

from types import SimpleNamespace

import pytest

from templatepipe.config import settings
from templatepipe.errors import GenerationError
from templatepipe.services.generation import GenerationRequest
from templatepipe.services.generation.veo_adapter import VeoGenerator, build_prompt, pick_duration


def _operation(done: bool, video_bytes: bytes = None, filtered: int = 0):
    videos = []
    if video_bytes is not None:
        videos = [SimpleNamespace(video=SimpleNamespace(video_bytes=video_bytes, uri=None))]
    response = SimpleNamespace(generated_videos=videos, rai_media_filtered_count=filtered)
    return SimpleNamespace(name="operations/123", done=done, response=response if done else None, error=None)


class FakeClient:
    """Mimics client.aio.models.generate_videos and client.aio.operations.get."""

    def __init__(self, submitted, polled=()):
        self.submitted = submitted
        self.polled = list(polled)
        self.submit_kwargs = None
        self.poll_count = 0
        self.aio = SimpleNamespace(
            models=SimpleNamespace(generate_videos=self._generate_videos),
            operations=SimpleNamespace(get=self._get),
        )

    async def _generate_videos(self, **kwargs):
        self.submit_kwargs = kwargs
        return self.submitted

    async def _get(self, operation):
        self.poll_count += 1
        return self.polled.pop(0)


def _request(**kwargs) -> GenerationRequest:
    data = dict(image_bytes=b"\x89PNG", mode="subtle-animation", max_seconds=5)
    data.update(kwargs)
    return GenerationRequest(**data)


@pytest.mark.parametrize(
    "model,max_seconds,expected",
    [
        ("veo-3.1-fast-generate-001", 10, 8),
        ("veo-3.1-fast-generate-001", 5, 4),
        ("veo-3.1-fast-generate-001", 2, 4),
        ("veo-2.0-generate-001", 7, 7),
    ],
)
def test_pick_duration(model, max_seconds, expected):
    assert pick_duration(model, max_seconds) == expected


def test_prompt_combines_user_text_and_mode():
    prompt = build_prompt(_request(prompt="  She waves at the camera. "))
    assert prompt.startswith("She waves at the camera. ")
    assert "Subtle" in prompt
    assert "Subtle" in build_prompt(_request())


@pytest.mark.asyncio
async def test_generate_polls_until_done(monkeypatch):
    monkeypatch.setattr(settings.pipeline, "generation_poll_interval", 0)
    client = FakeClient(_operation(False), [_operation(False), _operation(True, b"mp4")])
    generator = VeoGenerator("veo-3.1-fast-generate-001", client=client)

    result = await generator.generate(_request(max_seconds=10, mode="motion-control"))

    assert result == b"mp4"
    assert client.poll_count == 2
    assert client.submit_kwargs["model"] == "veo-3.1-fast-generate-001"
    assert client.submit_kwargs["config"].duration_seconds == 8
    assert client.submit_kwargs["image"].mime_type == "image/png"


@pytest.mark.asyncio
async def test_filtered_result_raises():
    client = FakeClient(_operation(True, filtered=1))
    generator = VeoGenerator("veo-3.1-fast-generate-001", client=client)

    with pytest.raises(GenerationError, match="content filtering"):
        await generator.generate(_request())


@pytest.mark.asyncio
async def test_empty_result_raises():
    client = FakeClient(_operation(True))
    generator = VeoGenerator("veo-3.1-fast-generate-001", client=client)

    with pytest.raises(GenerationError, match="no video returned"):
        await generator.generate(_request())


@pytest.mark.asyncio
async def test_gives_up_after_max_polls(monkeypatch):
    monkeypatch.setattr(settings.pipeline, "generation_poll_interval", 0)
    monkeypatch.setattr(settings.pipeline, "generation_poll_max", 2)
    client = FakeClient(_operation(False), [_operation(False), _operation(False)])
    generator = VeoGenerator("veo-3.1-fast-generate-001", client=client)

    with pytest.raises(GenerationError, match="did not complete"):
        await generator.generate(_request())
