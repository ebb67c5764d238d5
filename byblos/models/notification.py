import json
from datetime import datetime

from byblos.extensions import db


class Notification(db.Model):
    __tablename__ = "notifications"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, nullable=True, index=True)
    recipient_role = db.Column(db.String(16), nullable=False)  # buyer | seller | logistics | organizer
    recipient_id = db.Column(db.Integer, nullable=True)
    template = db.Column(db.String(64), nullable=False)
    channel = db.Column(db.String(16), nullable=False, default="log")  # log | whatsapp | email

    status = db.Column(db.String(16), nullable=False, default="queued")  # queued | sent | failed
    provider = db.Column(db.String(32), nullable=True)
    provider_ref = db.Column(db.String(120), nullable=True)
    error = db.Column(db.Text, nullable=True)
    data_json = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    sent_at = db.Column(db.DateTime, nullable=True)

    def data(self) -> dict:
        try:
            parsed = json.loads(self.data_json or "{}")
        except Exception:
            return {}
        return parsed if isinstance(parsed, dict) else {}

    def to_dict(self):
        return {
            "id": self.id,
            "order_id": self.order_id,
            "recipient_role": self.recipient_role or "",
            "recipient_id": self.recipient_id,
            "template": self.template or "",
            "channel": self.channel or "log",
            "status": self.status or "queued",
            "provider": self.provider or "",
            "provider_ref": self.provider_ref or "",
            "error": self.error or "",
            "data": self.data(),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "sent_at": self.sent_at.isoformat() if self.sent_at else None,
        }
