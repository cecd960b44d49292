from .audit_log import AuditLog, AuditOptions, AuditRecord, USER_MARKER
from .collection import AuditedCollection
from .users import UserMissingError, StaticUserProvider, ContextUserProvider, no_user
from .update_operators import UpdateFlattener, MongoUpdateFlattener
from .diff import diff_and_classify, ChangeEntry, ChangeType

__all__ = [
    "AuditLog",
    "AuditOptions",
    "AuditRecord",
    "USER_MARKER",
    "AuditedCollection",
    "UserMissingError",
    "StaticUserProvider",
    "ContextUserProvider",
    "no_user",
    "UpdateFlattener",
    "MongoUpdateFlattener",
    "diff_and_classify",
    "ChangeEntry",
    "ChangeType",
]
