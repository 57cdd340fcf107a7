# loyalty_core/domain/enums.py
import enum


class EnrollmentStatus(str, enum.Enum):
    INVITED = "INVITED"
    PENDING_APPROVAL = "PENDING_APPROVAL"
    ACTIVE = "ACTIVE"
    DECLINED = "DECLINED"
    REVOKED = "REVOKED"

    @property
    def is_terminal(self) -> bool:
        return self in (EnrollmentStatus.DECLINED, EnrollmentStatus.REVOKED)


NON_TERMINAL_ENROLLMENT_STATUSES = (
    EnrollmentStatus.INVITED,
    EnrollmentStatus.PENDING_APPROVAL,
    EnrollmentStatus.ACTIVE,
)


class ApprovalStatus(str, enum.Enum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    DECLINED = "DECLINED"
    EXPIRED = "EXPIRED"


class CardStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"


class CardTier(str, enum.Enum):
    STANDARD = "STANDARD"
    SILVER = "SILVER"
    GOLD = "GOLD"
    PLATINUM = "PLATINUM"


class NotificationEventType(str, enum.Enum):
    BALANCE_CHANGED = "BALANCE_CHANGED"
    ENROLLMENT_REQUESTED = "ENROLLMENT_REQUESTED"
    ENROLLMENT_ACCEPTED = "ENROLLMENT_ACCEPTED"
    ENROLLMENT_DECLINED = "ENROLLMENT_DECLINED"
    ENROLLMENT_EXPIRED = "ENROLLMENT_EXPIRED"
    ENROLLMENT_REVOKED = "ENROLLMENT_REVOKED"


class QRSubjectKind(str, enum.Enum):
    customer = "customer"
    card = "card"


class ScanOutcome(str, enum.Enum):
    AWARDED = "AWARDED"
    ENROLLMENT_PENDING = "ENROLLMENT_PENDING"
    REJECTED = "REJECTED"
