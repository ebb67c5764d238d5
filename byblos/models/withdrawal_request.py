from datetime import datetime

from byblos.extensions import db


class WithdrawalRequest(db.Model):
    __tablename__ = "withdrawal_requests"
    __table_args__ = (
        db.CheckConstraint(
            "(seller_id IS NOT NULL AND organizer_id IS NULL AND event_id IS NULL)"
            " OR (seller_id IS NULL AND organizer_id IS NOT NULL)",
            name="ck_withdrawal_single_owner",
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    seller_id = db.Column(db.Integer, nullable=True, index=True)
    organizer_id = db.Column(db.Integer, nullable=True, index=True)
    event_id = db.Column(db.Integer, nullable=True, index=True)

    amount = db.Column(db.Integer, nullable=False)  # minor units paid out
    debited_amount = db.Column(db.Integer, nullable=False, default=0)  # minor units taken from balance
    mpesa_number = db.Column(db.String(20), nullable=True)
    status = db.Column(db.String(16), nullable=False, default="processing", index=True)
    provider_reference = db.Column(db.String(128), nullable=True, unique=True)
    failure_reason = db.Column(db.String(500), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)
    processed_at = db.Column(db.DateTime, nullable=True)

    version = db.Column(db.Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    @property
    def owner_type(self) -> str:
        if self.seller_id is not None:
            return "seller"
        if self.event_id is not None:
            return "event"
        return "organizer"

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "owner_type": self.owner_type,
            "seller_id": int(self.seller_id) if self.seller_id is not None else None,
            "organizer_id": int(self.organizer_id) if self.organizer_id is not None else None,
            "event_id": int(self.event_id) if self.event_id is not None else None,
            "amount": int(self.amount or 0),
            "debited_amount": int(self.debited_amount or 0),
            "status": self.status or "",
            "provider_reference": self.provider_reference or None,
            "failure_reason": self.failure_reason or None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
        }
