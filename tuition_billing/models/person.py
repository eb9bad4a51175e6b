from sqlalchemy import func
from tuition_billing.extensions import db

CONTACT_EMAIL = "EMAIL"
CONTACT_PHONE = "PHONE"
CONTACT_WHATSAPP = "WHATSAPP"

class Person(db.Model):
    __tablename__ = "persons"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    date_of_birth = db.Column(db.Date, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    contact_points = db.relationship("ContactPoint", back_populates="person", lazy="selectin")
    profiles = db.relationship("ProgramProfile", back_populates="person")
    billing_accounts = db.relationship("BillingAccount", back_populates="person")

    def _contact(self, *types: str) -> str | None:
        active = [cp for cp in self.contact_points if cp.is_active and cp.type in types]
        active.sort(key=lambda cp: not cp.is_primary)
        return active[0].value if active else None

    @property
    def email(self) -> str | None:
        return self._contact(CONTACT_EMAIL)

    @property
    def phone(self) -> str | None:
        return self._contact(CONTACT_PHONE, CONTACT_WHATSAPP)

    def __repr__(self) -> str:
        return f"<Person id={self.id} name={self.name!r}>"


class ContactPoint(db.Model):
    __tablename__ = "contact_points"

    id = db.Column(db.Integer, primary_key=True)
    person_id = db.Column(db.Integer, db.ForeignKey("persons.id", ondelete="CASCADE"), nullable=False, index=True)
    type = db.Column(db.String(16), nullable=False, index=True)
    # Emails are stored lower-cased
    value = db.Column(db.String(255), nullable=False, index=True)
    is_primary = db.Column(db.Boolean, nullable=False, default=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())

    person = db.relationship("Person", back_populates="contact_points")

    def __repr__(self) -> str:
        return f"<ContactPoint id={self.id} type={self.type} value={self.value!r}>"
