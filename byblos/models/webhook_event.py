from datetime import datetime

from byblos.extensions import db


class WebhookEvent(db.Model):
    __tablename__ = "webhook_events"

    id = db.Column(db.Integer, primary_key=True)
    kind = db.Column(db.String(24), nullable=False, default="payment")  # payment | withdrawal
    provider = db.Column(db.String(32), nullable=False, default="payd")
    reference = db.Column(db.String(128), nullable=True, index=True)
    provider_status = db.Column(db.String(40), nullable=True)
    outcome = db.Column(db.String(32), nullable=False, default="received", index=True)
    source_ip = db.Column(db.String(64), nullable=True)
    request_id = db.Column(db.String(64), nullable=True)
    payload_hash = db.Column(db.String(64), nullable=True, index=True)
    payload_json = db.Column(db.Text, nullable=True)
    error = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)

    def to_dict(self):
        return {
            "id": int(self.id),
            "kind": self.kind or "",
            "provider": self.provider or "",
            "reference": self.reference or "",
            "provider_status": self.provider_status or "",
            "outcome": self.outcome or "",
            "source_ip": self.source_ip or "",
            "request_id": self.request_id or "",
            "payload_hash": self.payload_hash or "",
            "error": self.error or "",
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
