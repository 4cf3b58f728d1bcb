from badminton_signup.models.archive import SessionArchive
from badminton_signup.models.audit_log import AuditLog
from badminton_signup.models.failed_job import FailedJob
from badminton_signup.models.registrant import Classification, Registrant, RegistrantKind, Roster
from badminton_signup.models.regulars import RegularPlayers
from badminton_signup.models.session import CurrentSessionHandle, MaintenanceFlag, Session, SessionStatus
from badminton_signup.models.transaction import Reason, Transaction
from badminton_signup.models.user import Role, User

__all__ = [
    "AuditLog",
    "Classification",
    "CurrentSessionHandle",
    "FailedJob",
    "MaintenanceFlag",
    "Reason",
    "Registrant",
    "RegistrantKind",
    "RegularPlayers",
    "Roster",
    "Role",
    "Session",
    "SessionArchive",
    "SessionStatus",
    "Transaction",
    "User",
]
