from . import cards
from . import customers
from . import enrollments
from . import internal
from . import notifications
from . import programs
from . import qr
from . import transactions

__all__ = [
    "cards",
    "customers",
    "enrollments",
    "internal",
    "notifications",
    "programs",
    "qr",
    "transactions",
]
