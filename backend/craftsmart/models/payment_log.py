import json
from datetime import datetime

from craftsmart.extensions import db


class PaymentLog(db.Model):
    """Append-only record of one gateway interaction for a transaction."""

    __tablename__ = "payment_logs"

    id = db.Column(db.Integer, primary_key=True)

    transaction_pk = db.Column(db.Integer, db.ForeignKey("transactions.id"), nullable=True, index=True)
    transaction_id = db.Column(db.String(64), nullable=False, index=True)
    action = db.Column(db.String(64), nullable=False)  # FLUTTERWAVE_INITIATE, MTN_TRANSFER, WEBHOOK ...
    status = db.Column(db.String(32), nullable=False)  # INITIATED | SUCCESS | ERROR | FAILED ...

    request_data = db.Column(db.Text, nullable=True)  # JSON string
    response_data = db.Column(db.Text, nullable=True)  # JSON string
    error_message = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    @staticmethod
    def _load(raw):
        if not raw:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            return raw

    def to_dict(self):
        return {
            "id": int(self.id),
            "transaction_pk": self.transaction_pk,
            "transaction_id": self.transaction_id,
            "action": self.action,
            "status": self.status,
            "request_data": self._load(self.request_data),
            "response_data": self._load(self.response_data),
            "error_message": self.error_message or "",
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
