from sqlalchemy import func, UniqueConstraint
from tuition_billing.extensions import db
from tuition_billing.billing.statuses import AccountType, customer_id_column

class BillingAccount(db.Model):
    __tablename__ = "billing_accounts"

    id = db.Column(db.Integer, primary_key=True)
    person_id = db.Column(db.Integer, db.ForeignKey("persons.id", ondelete="RESTRICT"), nullable=True, index=True)
    account_type = db.Column(db.String(32), nullable=False, index=True)

    stripe_customer_id_mahad = db.Column(db.String(64), nullable=True, unique=True, index=True)
    stripe_customer_id_dugsi = db.Column(db.String(64), nullable=True, unique=True, index=True)
    stripe_customer_id_youth = db.Column(db.String(64), nullable=True, unique=True, index=True)
    stripe_customer_id_donation = db.Column(db.String(64), nullable=True, unique=True, index=True)
    payment_intent_id_dugsi = db.Column(db.String(64), nullable=True)

    payment_method_captured = db.Column(db.Boolean, nullable=False, default=False)
    payment_method_captured_at = db.Column(db.DateTime(timezone=True), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    person = db.relationship("Person", back_populates="billing_accounts")
    subscriptions = db.relationship("Subscription", back_populates="billing_account", order_by="Subscription.created_at.desc()")

    __table_args__ = (
        UniqueConstraint("person_id", "account_type", name="uq_billing_accounts_person_account_type"),
    )

    def customer_id_for(self, account_type: AccountType) -> str | None:
        return getattr(self, customer_id_column(account_type))

    def __repr__(self) -> str:
        return f"<BillingAccount id={self.id} person_id={self.person_id} account_type={self.account_type}>"
