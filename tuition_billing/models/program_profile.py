from sqlalchemy import func
from tuition_billing.extensions import db
from tuition_billing.models.columns import JSONVariant

class ProgramProfile(db.Model):
    __tablename__ = "program_profiles"

    id = db.Column(db.Integer, primary_key=True)
    person_id = db.Column(db.Integer, db.ForeignKey("persons.id", ondelete="RESTRICT"), nullable=False, index=True)
    program = db.Column(db.String(32), nullable=False, index=True)
    status = db.Column(db.String(16), nullable=False, default="REGISTERED")
    monthly_rate = db.Column(db.Integer, nullable=False, default=0)

    # Family programs: siblings share a guardian email and a family reference
    guardian_email = db.Column(db.String(255), nullable=True, index=True)
    family_reference_id = db.Column(db.String(64), nullable=True, index=True)

    # Direct subscription linkage (set by the link-subscriptions tooling)
    stripe_subscription_id = db.Column(db.String(64), nullable=True, index=True)
    stripe_customer_id = db.Column(db.String(64), nullable=True)
    subscription_status = db.Column(db.String(32), nullable=True)
    subscription_status_updated_at = db.Column(db.DateTime(timezone=True), nullable=True)
    paid_until = db.Column(db.DateTime(timezone=True), nullable=True)
    current_period_start = db.Column(db.DateTime(timezone=True), nullable=True)
    current_period_end = db.Column(db.DateTime(timezone=True), nullable=True)
    previous_subscription_ids = db.Column(JSONVariant, nullable=False, default=list)

    version = db.Column(db.Integer, nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    person = db.relationship("Person", back_populates="profiles", lazy="joined")
    enrollments = db.relationship("Enrollment", back_populates="profile", order_by="Enrollment.start_date.desc()")
    assignments = db.relationship("BillingAssignment", back_populates="profile")

    __mapper_args__ = {"version_id_col": version}

    @property
    def contact_email(self) -> str | None:
        """Email a payer would use: the guardian's when set, else the person's own."""
        return self.guardian_email or (self.person.email if self.person else None)

    def __repr__(self) -> str:
        return f"<ProgramProfile id={self.id} program={self.program} status={self.status}>"


class Enrollment(db.Model):
    __tablename__ = "enrollments"

    id = db.Column(db.Integer, primary_key=True)
    program_profile_id = db.Column(db.Integer, db.ForeignKey("program_profiles.id", ondelete="CASCADE"), nullable=False, index=True)
    batch_id = db.Column(db.Integer, nullable=True, index=True)
    status = db.Column(db.String(16), nullable=False, default="REGISTERED", index=True)
    start_date = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())
    end_date = db.Column(db.DateTime(timezone=True), nullable=True)
    reason = db.Column(db.String(255), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    profile = db.relationship("ProgramProfile", back_populates="enrollments")

    def __repr__(self) -> str:
        return f"<Enrollment id={self.id} profile_id={self.program_profile_id} status={self.status}>"
