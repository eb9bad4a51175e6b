from sqlalchemy import func
from tuition_billing.extensions import db
from tuition_billing.models.columns import JSONVariant

class WebhookEvent(db.Model):
    __tablename__ = "webhook_events"

    id = db.Column(db.Integer, primary_key=True)
    stripe_event_id = db.Column(db.String(255), nullable=False, unique=True, index=True)
    type = db.Column(db.String(80), nullable=False, index=True)
    account_type = db.Column(db.String(32), nullable=True, index=True)
    signature_valid = db.Column(db.Boolean, nullable=False, default=True)
    payload = db.Column(JSONVariant, nullable=False, default=dict)
    notes = db.Column(db.String(255), nullable=True)

    processed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())

    def __repr__(self) -> str:
        return f"<WebhookEvent id={self.id} type={self.type!r} account_type={self.account_type}>"
