"""
dependencies.py — Shared FastAPI Dependencies

Business Rules:
- Authentication happens in front of this service; the caller passes the
  acting user as an X-Actor-Id header
- A missing or blank header records the actor as "system"
- Actor ids are trimmed and capped at 100 characters (the audit column width)

Called by: routers/pricing.py, routers/line_items.py
"""

from fastapi import Header

SYSTEM_ACTOR = "system"


def get_actor(x_actor_id: str | None = Header(default=None)) -> str:
    """Dependency: the actor recorded on audit entries for this request."""
    actor = (x_actor_id or "").strip()
    return actor[:100] if actor else SYSTEM_ACTOR
