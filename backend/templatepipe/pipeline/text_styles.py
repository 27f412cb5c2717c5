"""drawtext renderings of the authoring UI's text style presets.

The UI previews styles with CSS; these are the closest drawtext options.
Keys are drawtext option names; ``uppercase`` is applied to the text itself.
"""

from typing import Optional

TEXT_STYLES: dict[str, dict] = {
    "plain": {},
    "bold-shadow": {"shadowx": "2", "shadowy": "2", "shadowcolor": "black@0.6"},
    "creator": {"uppercase": True},
    "text-box": {"fontcolor": "black", "box": "1", "boxcolor": "white", "boxborderw": "8"},
    "bubble": {"fontcolor": "white", "box": "1", "boxcolor": "0xff3b30", "boxborderw": "14"},
    "neon": {"fontcolor": "0xff00ff", "borderw": "2", "bordercolor": "0xff00ff@0.5"},
    "tag": {"fontcolor": "black", "box": "1", "boxcolor": "0xffcc00", "boxborderw": "8"},
    "subscribe": {
        "uppercase": True,
        "fontcolor": "white",
        "box": "1",
        "boxcolor": "0xff0000",
        "boxborderw": "12",
    },
    "retro": {
        "fontcolor": "0xff6b35",
        "shadowx": "3",
        "shadowy": "3",
        "shadowcolor": "0x004e89",
        "font": "Impact",
    },
    "classic": {"shadowx": "2", "shadowy": "2", "shadowcolor": "black@0.5", "font": "Georgia"},
    "caption": {"fontcolor": "white", "box": "1", "boxcolor": "black@0.7", "boxborderw": "10"},
    "rounded": {"fontcolor": "white", "box": "1", "boxcolor": "0x8b5cf6", "boxborderw": "14"},
}


def style_options(style_id: Optional[str]) -> tuple[dict[str, str], bool]:
    """Return (drawtext options, uppercase flag) for a style id.

    Unknown or missing ids yield no extra options.
    """
    style = dict(TEXT_STYLES.get(style_id or "", {}))
    uppercase = bool(style.pop("uppercase", False))
    return style, uppercase


def primary_font_family(font_family: Optional[str]) -> Optional[str]:
    """First family of a CSS font list: ``"Impact, sans-serif"`` -> ``"Impact"``."""
    if not font_family:
        return None
    first = font_family.split(",")[0].strip().strip("'\"")
    return first or None
