from datetime import datetime

from kmarket.extensions import db


class IdempotencyKey(db.Model):
    """Stored response for a client retry carrying the same Idempotency-Key."""

    __tablename__ = "idempotency_keys"
    __table_args__ = (
        db.UniqueConstraint("scope", "user_id", "key", name="uq_idempotency_scope_user_key"),
    )

    id = db.Column(db.Integer, primary_key=True)

    key = db.Column(db.String(128), nullable=False, index=True)
    scope = db.Column(db.String(128), nullable=False, default="")
    user_id = db.Column(db.Integer, nullable=True)
    request_hash = db.Column(db.String(64), nullable=False, default="")

    # NULL until the first attempt finished; a second attempt seeing NULL is still in flight.
    response_body_json = db.Column(db.Text, nullable=True)
    response_code = db.Column(db.Integer, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    @property
    def completed(self) -> bool:
        return self.response_code is not None

    def to_dict(self):
        return {
            "id": int(self.id),
            "key": self.key,
            "scope": self.scope,
            "user_id": int(self.user_id) if self.user_id is not None else None,
            "request_hash": self.request_hash,
            "response_code": int(self.response_code) if self.response_code is not None else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
