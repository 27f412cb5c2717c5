"""Tests for ffmpeg command building and execution in media_ops.

subprocess.run is monkeypatched throughout; no ffmpeg binary is needed.
"""

import subprocess
from pathlib import Path

import pytest

from templatepipe.errors import StepTimeoutError, TranscoderError
from templatepipe.pipeline import media_ops
from templatepipe.schemas.pipeline import BgMusicConfig, TextOverlayConfig


class FakeRun:
    """Records subprocess.run calls and replays scripted outcomes."""

    def __init__(self, outcomes=None, stdout=""):
        self.calls: list[list[str]] = []
        self.outcomes = list(outcomes or [])
        self.stdout = stdout
        self.manifests: list[str] = []

    def __call__(self, cmd, **kwargs):
        self.calls.append(list(cmd))
        if "concat" in cmd:
            self.manifests.append(Path(cmd[cmd.index("-i") + 1]).read_text())
        if self.outcomes:
            outcome = self.outcomes.pop(0)
            if isinstance(outcome, BaseException):
                raise outcome
        return subprocess.CompletedProcess(cmd, 0, stdout=self.stdout, stderr="")


def _failure(stderr: bytes = b"Invalid data found") -> subprocess.CalledProcessError:
    return subprocess.CalledProcessError(1, ["ffmpeg"], output=b"", stderr=stderr)


# ---------------------------------------------------------------------------
# Word wrap
# ---------------------------------------------------------------------------

def test_wrap_keeps_line_that_fits_exactly():
    assert media_ops.wrap_text("hello world", 11) == ["hello world"]


def test_wrap_one_word_per_line_when_pairs_do_not_fit():
    assert media_ops.wrap_text("a b c d", 2) == ["a", "b", "c", "d"]


def test_wrap_packs_greedily():
    assert media_ops.wrap_text("a b c d", 3) == ["a b", "c d"]


def test_wrap_long_word_gets_its_own_line():
    assert media_ops.wrap_text("supercalifragilistic is long", 5) == [
        "supercalifragilistic",
        "is",
        "long",
    ]


def test_wrap_collapses_whitespace():
    assert media_ops.wrap_text("  spaced   out  ", 20) == ["spaced out"]


@pytest.mark.parametrize(
    "font_size,left,right,expected",
    [
        (48, 0, 0, 27),
        (48, 100, 100, 19),
        (200, 0, 0, 6),
        (400, 0, 0, 5),
    ],
)
def test_max_chars_per_line(font_size, left, right, expected):
    assert media_ops.max_chars_per_line(font_size, left, right, frame_width=720) == expected


# ---------------------------------------------------------------------------
# drawtext filter
# ---------------------------------------------------------------------------

def _overlay(**kwargs) -> TextOverlayConfig:
    data = {"text": "Hello"}
    data.update(kwargs)
    return TextOverlayConfig(**data)


def test_default_overlay_is_centered_at_bottom():
    vf = media_ops.build_text_overlay_filter(_overlay(), frame_width=720, margin=50)
    assert vf.startswith("drawtext=text='Hello'")
    assert ":expansion=none" in vf
    assert ":fontsize=48" in vf
    assert ":fontcolor=#FFFFFF" in vf
    assert ":x=(w-text_w)/2" in vf
    assert ":y=h-text_h-50" in vf
    assert "enable=" not in vf
    assert "box=" not in vf


@pytest.mark.parametrize(
    "position,expected_y",
    [("top", "y=50"), ("center", "y=(h-text_h)/2"), ("bottom", "y=h-text_h-50")],
)
def test_vertical_anchor(position, expected_y):
    vf = media_ops.build_text_overlay_filter(_overlay(position=position), margin=50)
    assert f":{expected_y}" in vf


def test_custom_position_is_percentage_of_free_space():
    vf = media_ops.build_text_overlay_filter(_overlay(position="custom", customX=25))
    assert ":x=(w-text_w)*25/100" in vf
    # Missing customY defaults to the middle
    assert ":y=(h-text_h)*50/100" in vf


def test_padding_shifts_anchor_and_wraps_text():
    config = _overlay(
        text="one two three four five six seven eight nine ten",
        paddingLeft=100,
        paddingRight=0,
    )
    vf = media_ops.build_text_overlay_filter(config, frame_width=720)
    assert ":x=(w-text_w)/2+50" in vf
    assert "\n" in vf

    right_heavy = _overlay(paddingLeft=0, paddingRight=60)
    assert ":x=(w-text_w)/2-30" in media_ops.build_text_overlay_filter(right_heavy)


def test_no_wrap_without_padding():
    text = "a very long caption that would otherwise wrap across several lines"
    vf = media_ops.build_text_overlay_filter(_overlay(text=text), frame_width=720)
    assert "\n" not in vf


@pytest.mark.parametrize(
    "kwargs,expected",
    [
        ({"startTime": 1, "duration": 2}, "between(t,1,3)"),
        ({"startTime": 2.5}, "gte(t,2.5)"),
        ({"duration": 4}, "between(t,0,4)"),
        ({}, None),
        ({"entireVideo": True, "startTime": 1, "duration": 2}, None),
    ],
)
def test_enable_expression(kwargs, expected):
    assert media_ops.enable_expression(_overlay(**kwargs)) == expected


def test_time_window_is_quoted_in_filter():
    vf = media_ops.build_text_overlay_filter(_overlay(startTime=1, duration=2))
    assert vf.endswith(":enable='between(t,1,3)'")


def test_escape_drawtext():
    assert media_ops.escape_drawtext("it's 50%: done") == "it'\\''s 50%\\: done"
    assert media_ops.escape_drawtext("back\\slash") == "back\\\\slash"


def test_bg_color_adds_translucent_box():
    vf = media_ops.build_text_overlay_filter(_overlay(bgColor="#000000"))
    assert ":box=1" in vf
    assert ":boxcolor=#000000@0.7" in vf
    assert ":boxborderw=10" in vf


def test_text_style_and_font_family():
    vf = media_ops.build_text_overlay_filter(
        _overlay(text="follow me", textStyle="creator", fontFamily="Impact, sans-serif")
    )
    assert "text='FOLLOW ME'" in vf
    assert ":font='Impact'" in vf

    plain = media_ops.build_text_overlay_filter(_overlay(textStyle="does-not-exist"))
    assert plain == media_ops.build_text_overlay_filter(_overlay())


def test_add_text_overlay_copies_audio(monkeypatch, tmp_path):
    fake = FakeRun()
    monkeypatch.setattr(subprocess, "run", fake)

    media_ops.add_text_overlay(tmp_path / "in.mp4", tmp_path / "out.mp4", _overlay(), timeout=30)

    cmd = fake.calls[0]
    assert cmd[:2] == ["ffmpeg", "-y"]
    assert cmd[cmd.index("-vf") + 1].startswith("drawtext=")
    assert cmd[cmd.index("-c:a") + 1] == "copy"
    assert cmd[-1] == str(tmp_path / "out.mp4")


def test_transcoder_failure_carries_stderr(monkeypatch, tmp_path):
    monkeypatch.setattr(subprocess, "run", FakeRun([_failure(b"No such filter: 'drawtext'")]))

    with pytest.raises(TranscoderError) as exc_info:
        media_ops.add_text_overlay(tmp_path / "in.mp4", tmp_path / "out.mp4", _overlay())

    assert "No such filter" in str(exc_info.value)
    assert "drawtext" in exc_info.value.stderr


def test_timeout_is_step_failure(monkeypatch, tmp_path):
    expired = subprocess.TimeoutExpired(["ffmpeg"], 5)
    monkeypatch.setattr(subprocess, "run", FakeRun([expired]))

    with pytest.raises(StepTimeoutError):
        media_ops.add_text_overlay(tmp_path / "in.mp4", tmp_path / "out.mp4", _overlay(), timeout=5)


# ---------------------------------------------------------------------------
# Background music
# ---------------------------------------------------------------------------

def test_volume_zero_is_zero_gain():
    config = BgMusicConfig(customTrackUrl="x.mp3", volume=0)
    assert media_ops.build_music_filter(config, 10.0) == "[1:a]volume=0[a1]"


def test_music_filter_with_fades():
    config = BgMusicConfig(trackId="t", volume=30, fadeIn=2, fadeOut=3)
    assert media_ops.build_music_filter(config, 12.0) == (
        "[1:a]volume=0.3,afade=t=in:d=2,afade=t=out:st=9:d=3[a1]"
    )


def test_fade_out_longer_than_video_starts_at_zero():
    config = BgMusicConfig(trackId="t", fadeOut=10)
    assert media_ops.fade_out_start(5.0, 10.0) == 0.0
    assert "afade=t=out:st=0:d=10" in media_ops.build_music_filter(config, 5.0)


def test_unknown_duration_skips_fade_out():
    config = BgMusicConfig(trackId="t", fadeOut=3)
    assert "t=out" not in media_ops.build_music_filter(config, 0.0)


def test_mix_with_existing_audio_maps_video_and_mixed_audio(monkeypatch, tmp_path):
    fake = FakeRun()
    monkeypatch.setattr(subprocess, "run", fake)
    monkeypatch.setattr(media_ops, "probe_duration", lambda path, timeout=None: 8.0)
    monkeypatch.setattr(media_ops, "probe_has_audio", lambda path, timeout=None: True)

    config = BgMusicConfig(trackId="t", volume=50)
    media_ops.mix_audio(tmp_path / "v.mp4", tmp_path / "a.mp3", tmp_path / "o.mp4", config)

    cmd = fake.calls[0]
    graph = cmd[cmd.index("-filter_complex") + 1]
    assert graph == "[1:a]volume=0.5[a1];[0:a][a1]amix=inputs=2:duration=first[aout]"
    # Cover art in the music file must never be picked as the video stream
    maps = [cmd[i + 1] for i, arg in enumerate(cmd) if arg == "-map"]
    assert maps == ["0:v", "[aout]"]
    assert cmd[cmd.index("-c:v") + 1] == "copy"
    assert "-shortest" not in cmd


def test_mix_without_audio_maps_music_only(monkeypatch, tmp_path):
    fake = FakeRun()
    monkeypatch.setattr(subprocess, "run", fake)
    monkeypatch.setattr(media_ops, "probe_duration", lambda path, timeout=None: 8.0)
    monkeypatch.setattr(media_ops, "probe_has_audio", lambda path, timeout=None: False)

    config = BgMusicConfig(trackId="t", volume=50)
    media_ops.mix_audio(tmp_path / "v.mp4", tmp_path / "a.mp3", tmp_path / "o.mp4", config)

    cmd = fake.calls[0]
    assert "amix" not in cmd[cmd.index("-filter_complex") + 1]
    assert cmd.count("-map") == 2
    assert "[a1]" in cmd
    assert "-shortest" in cmd
    assert cmd[cmd.index("-c:v") + 1] == "copy"


# ---------------------------------------------------------------------------
# Concatenation
# ---------------------------------------------------------------------------

def test_concat_stream_copy_preserves_order(monkeypatch, tmp_path):
    fake = FakeRun()
    monkeypatch.setattr(subprocess, "run", fake)
    clips = [tmp_path / "first.mp4", tmp_path / "second.mp4", tmp_path / "third.mp4"]

    media_ops.concat_videos(clips, tmp_path / "out.mp4")

    assert len(fake.calls) == 1
    assert fake.calls[0][fake.calls[0].index("-c") + 1] == "copy"
    lines = fake.manifests[0].strip().splitlines()
    assert [line.split("/")[-1] for line in lines] == ["first.mp4'", "second.mp4'", "third.mp4'"]
    assert not list(tmp_path.glob("concat_*.txt"))


def test_concat_falls_back_to_reencode(monkeypatch, tmp_path):
    fake = FakeRun([_failure()])
    monkeypatch.setattr(subprocess, "run", fake)

    media_ops.concat_videos([tmp_path / "a.mp4", tmp_path / "b.mp4"], tmp_path / "out.mp4")

    assert len(fake.calls) == 2
    retry = fake.calls[1]
    assert retry[retry.index("-c:v") + 1] == "libx264"
    assert retry[retry.index("-preset") + 1] == "fast"
    assert retry[retry.index("-c:a") + 1] == "aac"
    assert fake.manifests[0] == fake.manifests[1]
    assert not list(tmp_path.glob("concat_*.txt"))


def test_concat_removes_manifest_when_both_attempts_fail(monkeypatch, tmp_path):
    monkeypatch.setattr(subprocess, "run", FakeRun([_failure(), _failure()]))

    with pytest.raises(TranscoderError):
        media_ops.concat_videos([tmp_path / "a.mp4"], tmp_path / "out.mp4")

    assert not list(tmp_path.glob("concat_*.txt"))


def test_concat_single_input_is_valid(monkeypatch, tmp_path):
    fake = FakeRun()
    monkeypatch.setattr(subprocess, "run", fake)

    media_ops.concat_videos([tmp_path / "only.mp4"], tmp_path / "out.mp4")

    assert len(fake.manifests[0].strip().splitlines()) == 1


def test_concat_requires_input(tmp_path):
    with pytest.raises(ValueError):
        media_ops.concat_videos([], tmp_path / "out.mp4")


# ---------------------------------------------------------------------------
# Probing
# ---------------------------------------------------------------------------

def test_probe_duration_parses_output(monkeypatch, tmp_path):
    monkeypatch.setattr(subprocess, "run", FakeRun(stdout="12.500000\n"))
    assert media_ops.probe_duration(tmp_path / "v.mp4") == 12.5


@pytest.mark.parametrize("stdout", ["N/A\n", ""])
def test_probe_duration_unparseable_is_zero(monkeypatch, tmp_path, stdout):
    monkeypatch.setattr(subprocess, "run", FakeRun(stdout=stdout))
    assert media_ops.probe_duration(tmp_path / "v.mp4") == 0.0


def test_probe_failures_degrade(monkeypatch, tmp_path):
    monkeypatch.setattr(subprocess, "run", FakeRun([_failure(), _failure()]))
    assert media_ops.probe_duration(tmp_path / "v.mp4") == 0.0
    assert media_ops.probe_has_audio(tmp_path / "v.mp4") is False


def test_probe_has_audio(monkeypatch, tmp_path):
    monkeypatch.setattr(subprocess, "run", FakeRun(stdout="1\n"))
    assert media_ops.probe_has_audio(tmp_path / "v.mp4") is True

    monkeypatch.setattr(subprocess, "run", FakeRun(stdout=""))
    assert media_ops.probe_has_audio(tmp_path / "v.mp4") is False
