"""
Wiring for the settlement services.

Built once at bot startup and handed to the cogs, so every caller shares
the same event bus, lock holder identity and configuration.
"""

from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from padel_bot.services.confirmation_ledger import ConfirmationLedger
from padel_bot.services.dispute_handler import DisputeHandler
from padel_bot.services.expiry_processor import ExpiryProcessor
from padel_bot.services.match_events import MatchEventBus
from padel_bot.services.processing_lock import ProcessingLock
from padel_bot.services.settlement_engine import SettlementEngine

@dataclass
class SettlementServices:
    event_bus: MatchEventBus
    processing_lock: ProcessingLock
    settlement_engine: SettlementEngine
    dispute_handler: DisputeHandler
    confirmation_ledger: ConfirmationLedger
    expiry_processor: ExpiryProcessor

async def build_settlement_services(session_factory, confirmation_window: Optional[timedelta] = None,
                                    event_bus: Optional[MatchEventBus] = None,
                                    **retry_options) -> SettlementServices:
    """
    Create the settlement services around one session factory and subscribe
    the expiry processor to match events.

    Args:
        session_factory: Async session factory from Database class
        confirmation_window: Overrides Config.get_confirmation_window()
        event_bus: Existing bus to publish on (a new one by default)
        retry_options: retry_attempts / retry_backoff passed to every service
    """
    event_bus = event_bus or MatchEventBus()
    processing_lock = ProcessingLock(session_factory)
    settlement_engine = SettlementEngine(
        session_factory, event_bus=event_bus, confirmation_window=confirmation_window, **retry_options
    )
    dispute_handler = DisputeHandler(session_factory, event_bus=event_bus, **retry_options)
    confirmation_ledger = ConfirmationLedger(
        session_factory, settlement_engine, dispute_handler, event_bus=event_bus, **retry_options
    )
    expiry_processor = ExpiryProcessor(
        session_factory, settlement_engine, dispute_handler, processing_lock, **retry_options
    )
    await event_bus.subscribe(expiry_processor.handle_match_event)

    return SettlementServices(
        event_bus=event_bus,
        processing_lock=processing_lock,
        settlement_engine=settlement_engine,
        dispute_handler=dispute_handler,
        confirmation_ledger=confirmation_ledger,
        expiry_processor=expiry_processor
    )
