from sqlalchemy import func, text
from tuition_billing.extensions import db

class BillingAssignment(db.Model):
    __tablename__ = "billing_assignments"

    id = db.Column(db.Integer, primary_key=True)
    subscription_id = db.Column(db.Integer, db.ForeignKey("subscriptions.id", ondelete="RESTRICT"), nullable=False, index=True)
    program_profile_id = db.Column(db.Integer, db.ForeignKey("program_profiles.id", ondelete="RESTRICT"), nullable=False, index=True)

    # This profile's share, minor currency units
    amount = db.Column(db.Integer, nullable=False)
    percentage = db.Column(db.Float, nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)
    start_date = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())
    end_date = db.Column(db.DateTime(timezone=True), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    subscription = db.relationship("Subscription", back_populates="assignments")
    profile = db.relationship("ProgramProfile", back_populates="assignments")

    __table_args__ = (
        # At most one active assignment per (subscription, profile); history is unbounded
        db.Index(
            "uq_billing_assignments_active_pair",
            "subscription_id",
            "program_profile_id",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active = 1"),
        ),
    )

    def __repr__(self) -> str:
        return f"<BillingAssignment id={self.id} subscription_id={self.subscription_id} profile_id={self.program_profile_id} active={self.is_active}>"
