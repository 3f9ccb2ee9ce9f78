"""Render a deterministic PNG of what the page looked like at a given step."""

from __future__ import annotations

import base64
import hashlib
import io
from typing import Optional

from PIL import Image, ImageDraw, ImageFont

from .context import PageSnapshot

WIDTH = 640
HEIGHT = 360
_HEADER_COLOR = (79, 70, 229)
_OK_COLOR = (16, 185, 129)
_WARN_COLOR = (239, 68, 68)
_MUTED = (107, 114, 128)


def _ascii(text: str, limit: int) -> str:
    cleaned = (text or "").encode("ascii", "replace").decode("ascii")
    if len(cleaned) > limit:
        cleaned = cleaned[: limit - 3] + "..."
    return cleaned


def render_snapshot(
    snapshot: Optional[PageSnapshot],
    *,
    step_number: int,
    total_steps: int,
    caption: str = "",
) -> bytes:
    """Return PNG bytes for *snapshot*; identical inputs give identical bytes."""

    img = Image.new("RGB", (WIDTH, HEIGHT), color=(248, 249, 250))
    draw = ImageDraw.Draw(img)
    font = ImageFont.load_default()

    url = snapshot.url if snapshot else ""
    title = snapshot.title if snapshot else "No page captured"
    simulated = snapshot is None or snapshot.is_fallback

    # browser chrome
    draw.rectangle((0, 0, WIDTH, 24), fill=(229, 231, 235))
    for i, color in enumerate(((239, 68, 68), (245, 158, 11), (16, 185, 129))):
        x = 12 + i * 14
        draw.ellipse((x - 4, 8, x + 4, 16), fill=color)
    draw.rectangle((60, 5, WIDTH - 20, 19), fill="white")
    draw.text((66, 7), _ascii(url, 90), fill=_MUTED, font=font)

    draw.rectangle((0, 24, WIDTH, 64), fill=_HEADER_COLOR)
    draw.text((16, 38), _ascii(title, 90), fill="white", font=font)

    draw.rectangle((24, 80, WIDTH - 24, HEIGHT - 40), fill="white", outline=(229, 231, 235))
    if simulated:
        draw.text((40, 96), "Simulation Mode", fill=_WARN_COLOR, font=font)
        draw.text((40, 114), "Unable to fetch real content", fill=_MUTED, font=font)
    else:
        draw.text((40, 96), "Real Page Content Detected", fill=_OK_COLOR, font=font)
        length = len(snapshot.raw_content) if snapshot else 0
        draw.text((40, 114), f"{length} characters analysed", fill=_MUTED, font=font)

    draw.rectangle((40, 150, 340, 190), fill=(243, 244, 246), outline=(209, 213, 219))
    draw.text((52, 158), f"AI Execution Step {step_number}", fill=(55, 65, 81), font=font)
    if caption:
        draw.text((52, 172), _ascii(caption, 45), fill=_MUTED, font=font)

    total = max(total_steps, 1)
    bar_width = 400
    done = int(bar_width * min(step_number, total) / total)
    draw.rectangle((40, 210, 40 + bar_width, 216), fill=(229, 231, 235))
    if done:
        draw.rectangle((40, 210, 40 + done, 216), fill=_OK_COLOR)

    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def to_data_uri(png: bytes) -> str:
    return "data:image/png;base64," + base64.b64encode(png).decode("ascii")


def evidence_ref(png: bytes) -> str:
    return "sha256:" + hashlib.sha256(png).hexdigest()[:16]
