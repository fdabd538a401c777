from .content import CuratedContentService, SearchApiContentService
from .gdpr import ConsentLedgerService
from .notifier import NurseTeamNotifier

__all__ = [
    "ConsentLedgerService",
    "CuratedContentService",
    "NurseTeamNotifier",
    "SearchApiContentService",
]
