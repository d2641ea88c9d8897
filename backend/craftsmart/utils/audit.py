from __future__ import annotations

import json
from typing import Any

from craftsmart.extensions import db
from craftsmart.models import AuditLog


def log_audit(actor_user_id: int | None, action: str, target_type: str | None = None,
              target_id: int | None = None, meta: Any = None) -> AuditLog:
    row = AuditLog(
        actor_user_id=actor_user_id,
        action=action[:64],
        target_type=target_type,
        target_id=target_id,
        meta=json.dumps(meta, default=str) if meta is not None else None,
    )
    db.session.add(row)
    return row
