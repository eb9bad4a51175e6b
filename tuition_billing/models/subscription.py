from sqlalchemy import func
from tuition_billing.extensions import db

class Subscription(db.Model):
    __tablename__ = "subscriptions"

    id = db.Column(db.Integer, primary_key=True)
    billing_account_id = db.Column(db.Integer, db.ForeignKey("billing_accounts.id", ondelete="RESTRICT"), nullable=False, index=True)
    stripe_account_type = db.Column(db.String(32), nullable=False, index=True)

    stripe_subscription_id = db.Column(db.String(64), nullable=False, unique=True, index=True)
    stripe_customer_id = db.Column(db.String(64), nullable=False, index=True)

    status = db.Column(db.String(32), nullable=False, index=True, default="incomplete")
    amount = db.Column(db.Integer, nullable=False)
    currency = db.Column(db.String(8), nullable=False, default="usd")
    interval = db.Column(db.String(16), nullable=False, default="month")

    current_period_start = db.Column(db.DateTime(timezone=True), nullable=True)
    current_period_end = db.Column(db.DateTime(timezone=True), nullable=True, index=True)
    paid_until = db.Column(db.DateTime(timezone=True), nullable=True)
    last_payment_date = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    billing_account = db.relationship("BillingAccount", back_populates="subscriptions")
    assignments = db.relationship("BillingAssignment", back_populates="subscription")

    def __repr__(self) -> str:
        return f"<Subscription id={self.id} stripe_subscription_id={self.stripe_subscription_id!r} status={self.status!r}>"
