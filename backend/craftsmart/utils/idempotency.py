from __future__ import annotations

import hashlib
import json
from typing import Any

from flask import request

from craftsmart.extensions import db
from craftsmart.models import IdempotencyKey


def _hash_request(payload: Any) -> str:
    raw = json.dumps(payload, sort_keys=True, default=str).encode("utf-8")
    return hashlib.sha256(raw).hexdigest()


def get_idempotency_key() -> str | None:
    k = request.headers.get("Idempotency-Key") or request.headers.get("X-Idempotency-Key")
    if not k or not k.strip():
        return None
    return k.strip()[:128]


def lookup_response(user_id: int | None, route: str, payload: Any):
    """Return ("hit", body, code), ("conflict", body, 409), ("miss", row, 0) or None without a key."""
    k = get_idempotency_key()
    if not k:
        return None

    rh = _hash_request(payload)
    row = IdempotencyKey.query.filter_by(key=k).first()
    if row:
        # Same key reused for another caller, route or payload
        if row.route != route or row.user_id != user_id or (row.request_hash and row.request_hash != rh):
            return ("conflict", {"message": "Idempotency key reuse with different payload"}, 409)
        if row.response_json:
            return ("hit", json.loads(row.response_json), int(row.status_code or 200))
        return ("conflict", {"message": "Request with this idempotency key is still in progress"}, 409)

    row = IdempotencyKey(key=k, user_id=int(user_id) if user_id is not None else None, route=route, request_hash=rh)
    db.session.add(row)
    db.session.commit()
    return ("miss", row, 0)


def store_response(row: IdempotencyKey, response_json: Any, status_code: int) -> None:
    row.response_json = json.dumps(response_json, default=str)
    row.status_code = int(status_code)
    db.session.add(row)
    db.session.commit()
