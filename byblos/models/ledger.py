from datetime import datetime

from byblos.extensions import db


class LedgerAccount(db.Model):
    __tablename__ = "ledger_accounts"
    __table_args__ = (
        db.UniqueConstraint("owner_type", "owner_id", "bucket", name="uq_ledger_account_owner_bucket"),
        db.CheckConstraint("balance >= 0", name="ck_ledger_account_non_negative"),
    )

    id = db.Column(db.Integer, primary_key=True)
    owner_type = db.Column(db.String(16), nullable=False)
    owner_id = db.Column(db.Integer, nullable=False)
    bucket = db.Column(db.String(16), nullable=False, default="available")
    balance = db.Column(db.Integer, nullable=False, default=0)  # minor units
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    version = db.Column(db.Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    @property
    def key(self) -> str:
        return f"{self.owner_type}:{int(self.owner_id)}:{self.bucket}"

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "account": self.key,
            "balance": int(self.balance or 0),
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class LedgerEntry(db.Model):
    __tablename__ = "ledger_entries"

    id = db.Column(db.Integer, primary_key=True)
    account_id = db.Column(db.Integer, db.ForeignKey("ledger_accounts.id"), nullable=False, index=True)
    amount = db.Column(db.Integer, nullable=False)  # signed minor units
    reason = db.Column(db.String(64), nullable=False)
    reference = db.Column(db.String(128), nullable=True, index=True)
    balance_after = db.Column(db.Integer, nullable=False)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "account_id": int(self.account_id),
            "amount": int(self.amount),
            "reason": self.reason or "",
            "reference": self.reference or "",
            "balance_after": int(self.balance_after),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
