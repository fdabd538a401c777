from .audit_log import PolicyAuditLog
from .consent_store import ConsentStore
from .conversation_store import ConversationArchive
from .database import SQLiteMemoryDB

__all__ = [
    "ConsentStore",
    "ConversationArchive",
    "PolicyAuditLog",
    "SQLiteMemoryDB",
]
