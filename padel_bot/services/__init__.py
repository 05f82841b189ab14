"""
Services package for the padel settlement bot.

Match confirmation, deferred Glicko-2 settlement, expiry sweeping and
dispute handling.
"""

from .base import BaseService
from .match_events import MatchEventBus, MatchEvent, MatchEventKind
from .processing_lock import ProcessingLock
from .settlement_engine import SettlementEngine
from .dispute_handler import DisputeHandler
from .confirmation_ledger import ConfirmationLedger
from .expiry_processor import ExpiryProcessor
from .settlement_services import SettlementServices, build_settlement_services

__all__ = [
    'BaseService', 'MatchEventBus', 'MatchEvent', 'MatchEventKind', 'ProcessingLock',
    'SettlementEngine', 'DisputeHandler', 'ConfirmationLedger', 'ExpiryProcessor',
    'SettlementServices', 'build_settlement_services',
]
