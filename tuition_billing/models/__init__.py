from .person import Person, ContactPoint, CONTACT_EMAIL, CONTACT_PHONE, CONTACT_WHATSAPP
from .program_profile import ProgramProfile, Enrollment
from .billing_account import BillingAccount
from .subscription import Subscription
from .billing_assignment import BillingAssignment
from .webhook_event import WebhookEvent
