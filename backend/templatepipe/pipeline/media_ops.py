"""ffmpeg media operations used by template pipeline steps.

Stateless, blocking functions; the runner calls them through
``asyncio.to_thread``. Each invocation carries a timeout, and every failure
surfaces as a ``StepExecutionError`` subclass:

- add_text_overlay: drawtext burn-in with greedy word wrap and time window
- mix_audio: background music at a given gain with optional fades
- concat_videos: concat demuxer with stream copy, re-encode fallback
- probe_duration / probe_has_audio: ffprobe lookups that never raise
"""

import logging
import math
import subprocess
import uuid
from pathlib import Path
from typing import Optional

from templatepipe.config import settings
from templatepipe.errors import StepTimeoutError, TranscoderError
from templatepipe.pipeline.text_styles import primary_font_family, style_options
from templatepipe.schemas.pipeline import BgMusicConfig, TextOverlayConfig

logger = logging.getLogger(__name__)

# Average glyph width relative to font size, used by the wrap heuristic
CHAR_WIDTH_RATIO = 0.55
MIN_CHARS_PER_LINE = 5


def _fmt(value: float) -> str:
    """Format a number for filter expressions: 2.0 -> '2', 2.50 -> '2.5'."""
    text = f"{value:.3f}".rstrip("0").rstrip(".")
    return "0" if text in ("", "-0") else text


def _timeout(timeout: Optional[float]) -> float:
    return timeout if timeout is not None else settings.pipeline.step_timeout_seconds


def _stderr_tail(stderr: str, limit: int = 500) -> str:
    stderr = stderr.strip()
    return stderr[-limit:] if stderr else "no error output"


def _run_ffmpeg(args: list[str], timeout: Optional[float] = None) -> None:
    """Run ffmpeg with ``-y`` and map failures to step errors."""
    cmd = [settings.binaries.ffmpeg, "-y", *args]
    limit = _timeout(timeout)
    logger.debug(f"Running: {' '.join(cmd)}")
    try:
        subprocess.run(cmd, check=True, capture_output=True, timeout=limit)
    except subprocess.TimeoutExpired as e:
        raise StepTimeoutError(f"ffmpeg did not finish within {limit:g}s") from e
    except subprocess.CalledProcessError as e:
        stderr = e.stderr.decode(errors="replace") if e.stderr else ""
        raise TranscoderError(f"ffmpeg failed: {_stderr_tail(stderr)}", stderr=stderr) from e
    except FileNotFoundError as e:
        raise TranscoderError(f"ffmpeg executable not found: {settings.binaries.ffmpeg}") from e


# ---------------------------------------------------------------------------
# Probing
# ---------------------------------------------------------------------------

def _run_ffprobe(args: list[str], timeout: Optional[float] = None) -> str:
    result = subprocess.run(
        [settings.binaries.ffprobe, "-v", "error", *args],
        check=True,
        capture_output=True,
        text=True,
        timeout=_timeout(timeout),
    )
    return result.stdout


def probe_duration(path: Path, timeout: Optional[float] = None) -> float:
    """Container duration in seconds, or 0.0 when it cannot be determined."""
    try:
        output = _run_ffprobe(
            [
                "-show_entries", "format=duration",
                "-of", "default=noprint_wrappers=1:nokey=1",
                str(path),
            ],
            timeout,
        )
        duration = float(output.strip())
    except (subprocess.SubprocessError, OSError, ValueError) as e:
        logger.warning(f"Duration probe failed for {path}: {e}")
        return 0.0
    if math.isnan(duration) or duration < 0:
        return 0.0
    return duration


def probe_has_audio(path: Path, timeout: Optional[float] = None) -> bool:
    """True if the file has at least one audio stream; False on probe failure."""
    try:
        output = _run_ffprobe(
            [
                "-select_streams", "a",
                "-show_entries", "stream=index",
                "-of", "csv=p=0",
                str(path),
            ],
            timeout,
        )
    except (subprocess.SubprocessError, OSError) as e:
        logger.warning(f"Audio stream probe failed for {path}, assuming no audio: {e}")
        return False
    return len(output.strip()) > 0


# ---------------------------------------------------------------------------
# Text overlay
# ---------------------------------------------------------------------------

def wrap_text(text: str, max_chars: int) -> list[str]:
    """Greedy word wrap: pack words into lines of at most ``max_chars``.

    A word longer than ``max_chars`` occupies a line of its own.
    """
    lines: list[str] = []
    line = ""
    for word in text.split():
        if not line:
            line = word
        elif len(line) + 1 + len(word) <= max_chars:
            line += " " + word
        else:
            lines.append(line)
            line = word
    if line:
        lines.append(line)
    return lines


def max_chars_per_line(
    font_size: float,
    padding_left: float,
    padding_right: float,
    frame_width: Optional[int] = None,
) -> int:
    """Estimated character budget for one line of text.

    Approximates glyph metrics from the font size against an assumed frame
    width; it is not real text layout.
    """
    width = frame_width if frame_width is not None else settings.pipeline.frame_width
    available = width - padding_left - padding_right
    char_width = font_size * CHAR_WIDTH_RATIO
    return max(MIN_CHARS_PER_LINE, math.floor(available / char_width))


def escape_drawtext(text: str) -> str:
    """Escape backslashes, single quotes and colons for a quoted drawtext value."""
    return text.replace("\\", "\\\\").replace("'", "'\\''").replace(":", "\\:")


def _x_expression(config: TextOverlayConfig) -> str:
    if config.position == "custom":
        custom_x = config.custom_x if config.custom_x is not None else 50
        return f"(w-text_w)*{_fmt(custom_x)}/100"
    offset = (config.padding_left - config.padding_right) / 2
    if offset > 0:
        return f"(w-text_w)/2+{_fmt(offset)}"
    if offset < 0:
        return f"(w-text_w)/2-{_fmt(-offset)}"
    return "(w-text_w)/2"


def _y_expression(config: TextOverlayConfig, margin: int) -> str:
    if config.position == "top":
        return str(margin)
    if config.position == "center":
        return "(h-text_h)/2"
    if config.position == "custom":
        custom_y = config.custom_y if config.custom_y is not None else 50
        return f"(h-text_h)*{_fmt(custom_y)}/100"
    return f"h-text_h-{margin}"


def enable_expression(config: TextOverlayConfig) -> Optional[str]:
    """drawtext ``enable`` expression, or None when the text spans the clip."""
    if config.entire_video:
        return None
    if config.start_time is None and config.duration is None:
        return None
    start = config.start_time or 0
    if config.duration is not None:
        return f"between(t,{_fmt(start)},{_fmt(start + config.duration)})"
    return f"gte(t,{_fmt(start)})"


def build_text_overlay_filter(
    config: TextOverlayConfig,
    frame_width: Optional[int] = None,
    margin: Optional[int] = None,
) -> str:
    """Build the drawtext filter string for a text overlay step."""
    margin = margin if margin is not None else settings.pipeline.text_margin
    extra, uppercase = style_options(config.text_style)

    text = config.text.upper() if uppercase else config.text
    if config.padding_left > 0 or config.padding_right > 0:
        budget = max_chars_per_line(
            config.font_size, config.padding_left, config.padding_right, frame_width
        )
        text = "\n".join(wrap_text(text, budget))

    options: dict[str, str] = {
        "text": f"'{escape_drawtext(text)}'",
        "expansion": "none",
        "fontsize": _fmt(config.font_size),
        "fontcolor": config.font_color,
        "x": _x_expression(config),
        "y": _y_expression(config, margin),
    }
    family = primary_font_family(config.font_family)
    if family:
        options["font"] = f"'{family}'"
    for key, value in extra.items():
        if key == "font" and family:
            continue
        options[key] = f"'{value}'" if key == "font" else value
    if config.bg_color:
        options.update(box="1", boxcolor=f"{config.bg_color}@0.7", boxborderw="10")

    enable = enable_expression(config)
    if enable:
        options["enable"] = f"'{enable}'"

    return "drawtext=" + ":".join(f"{key}={value}" for key, value in options.items())


def add_text_overlay(
    input_path: Path,
    output_path: Path,
    config: TextOverlayConfig,
    timeout: Optional[float] = None,
) -> None:
    """Burn text onto a video; the audio stream is copied untouched."""
    vf = build_text_overlay_filter(config)
    logger.info(f"Text overlay: {input_path.name} -> {output_path.name}")
    _run_ffmpeg(
        ["-i", str(input_path), "-vf", vf, "-c:a", "copy", str(output_path)],
        timeout,
    )


# ---------------------------------------------------------------------------
# Background music
# ---------------------------------------------------------------------------

def fade_out_start(video_duration: float, fade_out: float) -> float:
    """Start time of a fade-out that ends with the video, never negative."""
    return max(0.0, video_duration - fade_out)


def build_music_filter(config: BgMusicConfig, video_duration: float) -> str:
    """Filter chain for the music input, labelled ``[a1]``.

    Fade-out is only added when the video duration is known.
    """
    chain = f"[1:a]volume={_fmt(config.volume / 100)}"
    if config.fade_in:
        chain += f",afade=t=in:d={_fmt(config.fade_in)}"
    if config.fade_out and video_duration > 0:
        start = fade_out_start(video_duration, config.fade_out)
        chain += f",afade=t=out:st={_fmt(start)}:d={_fmt(config.fade_out)}"
    return chain + "[a1]"


def mix_audio(
    input_path: Path,
    audio_path: Path,
    output_path: Path,
    config: BgMusicConfig,
    timeout: Optional[float] = None,
) -> None:
    """Mix a music track into a video without re-encoding the video stream.

    With existing audio the two are mixed at equal weight for the video's
    duration; without, the music becomes the only track and the output is
    cut to the shorter input.
    """
    video_duration = probe_duration(input_path, timeout)
    audio_filter = build_music_filter(config, video_duration)
    has_audio = probe_has_audio(input_path, timeout)
    logger.info(
        f"Mixing music into {input_path.name} "
        f"(volume={config.volume}, existing_audio={has_audio}, duration={video_duration:.2f}s)"
    )

    if has_audio:
        args = [
            "-i", str(input_path),
            "-i", str(audio_path),
            "-filter_complex", f"{audio_filter};[0:a][a1]amix=inputs=2:duration=first[aout]",
            "-map", "0:v",
            "-map", "[aout]",
            "-c:v", "copy",
            str(output_path),
        ]
    else:
        args = [
            "-i", str(input_path),
            "-i", str(audio_path),
            "-filter_complex", audio_filter,
            "-map", "0:v",
            "-map", "[a1]",
            "-c:v", "copy",
            "-shortest",
            str(output_path),
        ]
    _run_ffmpeg(args, timeout)


# ---------------------------------------------------------------------------
# Concatenation
# ---------------------------------------------------------------------------

def _concat_line(path: Path) -> str:
    escaped = str(path.resolve()).replace("'", "'\\''")
    return f"file '{escaped}'"


def concat_videos(
    video_paths: list[Path],
    output_path: Path,
    timeout: Optional[float] = None,
) -> None:
    """Concatenate videos in order with the concat demuxer.

    Stream copy is tried first and only works when codecs and parameters
    match; otherwise the inputs are re-encoded to H.264/AAC. The list file
    is removed whatever the outcome.
    """
    if not video_paths:
        raise ValueError("concat_videos needs at least one input")

    list_file = output_path.parent / f"concat_{uuid.uuid4().hex}.txt"
    try:
        list_file.write_text("\n".join(_concat_line(p) for p in video_paths) + "\n")
        base_args = ["-f", "concat", "-safe", "0", "-i", str(list_file)]
        try:
            _run_ffmpeg([*base_args, "-c", "copy", str(output_path)], timeout)
        except TranscoderError as e:
            logger.warning(f"Concat stream copy failed, re-encoding: {e}")
            _run_ffmpeg(
                [
                    *base_args,
                    "-c:v", "libx264",
                    "-preset", "fast",
                    "-c:a", "aac",
                    str(output_path),
                ],
                timeout,
            )
        logger.info(f"Concatenated {len(video_paths)} clips -> {output_path.name}")
    finally:
        list_file.unlink(missing_ok=True)
