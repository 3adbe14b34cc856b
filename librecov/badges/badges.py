"""Shields-style SVG coverage badges."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from xml.sax.saxutils import escape

from fastapi import Response

# Upper bounds (exclusive) of each colour band, checked in order.
_BANDS: tuple[tuple[float, str], ...] = (
    (50.0, "#e05d44"),  # red
    (75.0, "#fe7d37"),  # orange
    (90.0, "#dfb317"),  # yellow
)
_GREEN = "#4c1"
_GREY = "#9f9f9f"

_XML_ENTITIES = {'"': "&quot;", "'": "&apos;"}


def badge_color(percent: float | None) -> str:
    if percent is None:
        return _GREY
    p = float(percent)
    for upper, color in _BANDS:
        if p < upper:
            return color
    return _GREEN


def coverage_message(percent: float | None, decimals: int = 1) -> str:
    if percent is None:
        return "unknown"
    p = min(max(float(percent), 0.0), 100.0)
    return f"{p:.{decimals}f}%"


def _text_width(s: str) -> int:
    # Approximation for Verdana 11px; no font engine needed.
    return max(0, int(len(s) * 6.2) + 10)


@dataclass(frozen=True, slots=True)
class Badge:
    label: str
    message: str
    color: str

    @classmethod
    def for_coverage(
        cls, percent: float | None, *, label: str = "coverage", decimals: int = 1
    ) -> "Badge":
        decimals = max(0, min(int(decimals), 3))
        return cls(
            label=label,
            message=coverage_message(percent, decimals),
            color=badge_color(percent),
        )

    def etag(self, *parts: object) -> str:
        seed = "|".join([self.label, self.message, self.color, *map(str, parts)])
        return '"' + hashlib.sha256(seed.encode("utf-8")).hexdigest() + '"'

    def render(self) -> str:
        label = escape(self.label, _XML_ENTITIES)
        message = escape(self.message, _XML_ENTITIES)
        lw = _text_width(self.label)
        mw = _text_width(self.message)
        w = lw + mw
        return f"""<svg xmlns="http://www.w3.org/2000/svg" width="{w}" height="20" role="img" aria-label="{label}: {message}">
  <title>{label}: {message}</title>
  <linearGradient id="s" x2="0" y2="100%">
    <stop offset="0" stop-color="#bbb" stop-opacity=".1"/>
    <stop offset="1" stop-opacity=".1"/>
  </linearGradient>
  <clipPath id="r">
    <rect width="{w}" height="20" rx="3" fill="#fff"/>
  </clipPath>
  <g clip-path="url(#r)">
    <rect width="{lw}" height="20" fill="#555"/>
    <rect x="{lw}" width="{mw}" height="20" fill="{self.color}"/>
    <rect width="{w}" height="20" fill="url(#s)"/>
  </g>
  <g fill="#fff" text-anchor="middle"
     font-family="Verdana,Geneva,DejaVu Sans,sans-serif" font-size="11">
    <text x="{lw // 2}" y="14">{label}</text>
    <text x="{lw + mw // 2}" y="14">{message}</text>
  </g>
</svg>
"""


def svg_response(badge: Badge, *, cache_control: str, etag: str) -> Response:
    return Response(
        content=badge.render(),
        media_type="image/svg+xml; charset=utf-8",
        headers={"Cache-Control": cache_control, "ETag": etag},
    )
