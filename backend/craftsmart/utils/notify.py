from __future__ import annotations

from datetime import datetime
import json
from typing import Any, Dict, Optional

from craftsmart.extensions import db
from craftsmart.models.notification import Notification


def queue_in_app(user_id: int | None, title: str, message: str, meta: Optional[Dict[str, Any]] = None) -> Notification | None:
    if not user_id:
        return None
    n = Notification(
        user_id=int(user_id),
        channel="in_app",
        title=title[:160] if title else "",
        message=message or "",
        status="queued",
        meta=json.dumps(meta or {}),
    )
    db.session.add(n)
    return n


def mark_read(n: Notification) -> None:
    n.status = "read"
    n.read_at = datetime.utcnow()
    db.session.add(n)
