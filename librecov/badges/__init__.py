from librecov.badges.badges import (
    Badge,
    badge_color,
    coverage_message,
    svg_response,
)

__all__ = ["Badge", "badge_color", "coverage_message", "svg_response"]
