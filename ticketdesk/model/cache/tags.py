# model/cache/tags.py
from typing import Dict, Iterable, List, Tuple

# table written -> cached query tags that read it
INVALIDATES: Dict[str, Tuple[str, ...]] = {
    "events": ("events",),
    "bundle_options": ("bundle_options",),
    "contacts": ("orders", "attendees", "attendance"),
    "orders": ("orders",),
    "attendees": ("attendees", "attendance"),
    "seat_assignments": ("seat_assignments", "attendees", "attendance"),
    "location_api_keys": ("location_api_keys",),
}


def tags_for(tables: Iterable[str]) -> List[str]:
    out: List[str] = []
    for table in tables:
        for tag in INVALIDATES.get(table, (table,)):
            if tag not in out:
                out.append(tag)
    return out
