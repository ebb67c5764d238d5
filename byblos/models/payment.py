import json
from datetime import datetime

from byblos.extensions import db

METADATA_LIMIT = 20000
METADATA_VALUE_LIMIT = 8000


def _fit_value(value):
    text = json.dumps(value, default=str)
    if len(text) <= METADATA_VALUE_LIMIT:
        return value
    return {"truncated": True, "size": len(text), "preview": text[: METADATA_VALUE_LIMIT // 2]}


class Payment(db.Model):
    __tablename__ = "payments"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True, index=True)
    provider = db.Column(db.String(32), nullable=False, default="payd")
    provider_reference = db.Column(db.String(128), nullable=True, unique=True)
    api_ref = db.Column(db.String(128), nullable=True, index=True)
    status = db.Column(db.String(16), nullable=False, default="pending", index=True)
    amount = db.Column(db.Integer, nullable=False, default=0)  # minor units
    currency = db.Column(db.String(8), nullable=False, default="KES")
    mobile_number = db.Column(db.String(20), nullable=True, index=True)
    metadata_json = db.Column(db.Text, nullable=True)
    needs_review = db.Column(db.Boolean, nullable=False, default=False, index=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
    processed_at = db.Column(db.DateTime, nullable=True)

    version = db.Column(db.Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    def metadata_dict(self) -> dict:
        raw = (self.metadata_json or "").strip()
        if not raw:
            return {}
        try:
            parsed = json.loads(raw)
        except Exception:
            return {"raw": raw}
        return parsed if isinstance(parsed, dict) else {"raw": parsed}

    def merge_metadata(self, extra: dict | None) -> None:
        meta = self.metadata_dict()
        meta.update({str(k): _fit_value(v) for k, v in (extra or {}).items()})
        text = json.dumps(meta, default=str)
        # Shrink the largest entries until the document fits; it always stays valid JSON.
        while len(text) > METADATA_LIMIT and meta:
            key = max(meta, key=lambda k: len(json.dumps(meta[k], default=str)))
            if isinstance(meta[key], dict) and meta[key].get("truncated") and "preview" not in meta[key]:
                meta.pop(key)
            else:
                meta[key] = {"truncated": True, "size": len(json.dumps(meta[key], default=str))}
            text = json.dumps(meta, default=str)
        self.metadata_json = text

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "order_id": int(self.order_id) if self.order_id is not None else None,
            "provider": self.provider or "",
            "provider_reference": self.provider_reference or None,
            "api_ref": self.api_ref or None,
            "status": self.status or "",
            "amount": int(self.amount or 0),
            "currency": self.currency or "KES",
            "needs_review": bool(self.needs_review),
            "metadata": self.metadata_dict(),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
        }
