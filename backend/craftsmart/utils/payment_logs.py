from __future__ import annotations

import json
from typing import Any

from sqlalchemy import or_

from craftsmart.extensions import db
from craftsmart.models import PaymentLog, Transaction


def _dump(data: Any) -> str | None:
    if data is None:
        return None
    return json.dumps(data, default=str)


def create_log(tx: Transaction, action: str, status: str, request_data: Any = None,
               response_data: Any = None, error_message: str | None = None) -> PaymentLog:
    """Append a log row for ``tx``.

    The merchant id is copied as it was at the time of the call. A charge
    retry issues a new one, so rows are tied to the transaction by its key.
    """
    row = PaymentLog(
        transaction_pk=tx.id,
        transaction_id=tx.transaction_id,
        action=action[:64],
        status=status[:32],
        request_data=_dump(request_data),
        response_data=_dump(response_data),
        error_message=error_message,
    )
    db.session.add(row)
    return row


def logs_for_transaction(tx: Transaction) -> list[PaymentLog]:
    return (
        PaymentLog.query.filter(
            or_(PaymentLog.transaction_pk == tx.id, PaymentLog.transaction_id == tx.transaction_id)
        )
        .order_by(PaymentLog.created_at.desc(), PaymentLog.id.desc())
        .all()
    )


def recent_logs(limit: int = 50) -> list[PaymentLog]:
    return PaymentLog.query.order_by(PaymentLog.id.desc()).limit(limit).all()
