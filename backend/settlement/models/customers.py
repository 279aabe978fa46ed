from __future__ import annotations

from ..extensions import db
from settlement.time_utils import to_utc_z


POINTS_KIND_EARN = "EARN"
POINTS_KIND_SPEND = "SPEND"


class User(db.Model):
    """
    Shopper account with a cached loyalty balance.

    points_balance is denormalized: it is only mutated inside the same
    transaction that appends a PointsEntry, or overwritten from the external
    loyalty system (the source of truth for the balance).
    """
    __tablename__ = "users"
    __table_args__ = (
        db.UniqueConstraint("email", name="uq_users_email"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), nullable=True)
    first_name = db.Column(db.String(128), nullable=True)
    last_name = db.Column(db.String(128), nullable=True)

    # E.164 (+972...)
    phone = db.Column(db.String(32), nullable=True, index=True)

    points_balance = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    verifone_customer_no = db.Column(db.String(32), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())


class PointsEntry(db.Model):
    """
    Append-only ledger of loyalty point movements.

    KINDS:
    - EARN: Points attributed to a paid order (positive delta)
    - SPEND: Points used as payment on an order (negative delta)

    IDEMPOTENCY: unique (order_id, kind) - at most one EARN and one SPEND
    row may ever exist per order.
    IMMUTABLE: Records are never updated or deleted.
    """
    __tablename__ = "points_entries"
    __table_args__ = (
        db.UniqueConstraint("order_id", "kind", name="uq_points_entries_order_kind"),
        db.Index("ix_points_entries_user_created", "user_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)

    kind = db.Column(db.String(8), nullable=False)  # EARN, SPEND
    delta = db.Column(db.Numeric(12, 2), nullable=False)
    reason = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    user = db.relationship("User", backref=db.backref("points_entries", lazy=True))
    order = db.relationship("Order", backref=db.backref("points_entries", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "order_id": self.order_id,
            "kind": self.kind,
            "delta": str(self.delta),
            "reason": self.reason,
            "created_at": to_utc_z(self.created_at),
        }
