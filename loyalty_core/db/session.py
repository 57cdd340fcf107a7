# loyalty_core/db/session.py
from sqlalchemy.orm import declarative_base

# Shared metadata for models, migrations and the test schema.
# Runtime sessions live in session_async.
Base = declarative_base()
