from sqlalchemy.dialects.postgresql import JSONB
from tuition_billing.extensions import db

# JSONB on Postgres, plain JSON elsewhere (SQLite in tests)
JSONVariant = db.JSON().with_variant(JSONB(), "postgresql")
