"""
Rendering hints for feed entries, keyed by event kind.
"""

from typing import Any, Dict

DEFAULT_DISPLAY_HINTS: Dict[str, Any] = {
    "show_shelf_card": True,
    "section_title": "Recent activity",
    "item_display_mode": "list",
}

DISPLAY_HINTS: Dict[str, Dict[str, Any]] = {
    "item.collectable_added": {
        "show_shelf_card": True,
        "section_title": "Added to shelf",
        "item_display_mode": "covers",
    },
    "item.manual_added": {
        "show_shelf_card": True,
        "section_title": "Added to shelf",
        "item_display_mode": "list",
    },
    "item.rated": {
        "show_shelf_card": False,
        "section_title": "Rated",
        "item_display_mode": "rating",
    },
    "checkin.activity": {
        "show_shelf_card": False,
        "section_title": "Checked in",
        "item_display_mode": "checkin",
    },
    "news.discovery": {
        "show_shelf_card": False,
        "section_title": "Recommended for you",
        "item_display_mode": "carousel",
    },
}


def display_hints_for(event_type: str) -> Dict[str, Any]:
    return dict(DISPLAY_HINTS.get(event_type, DEFAULT_DISPLAY_HINTS))
