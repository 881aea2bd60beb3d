"""Service layer: the escrow workflow and its collaborators."""

from vaultix_escrow.services.condition_tracker import ConditionTracker
from vaultix_escrow.services.context import EscrowContext, EscrowScope
from vaultix_escrow.services.dispute_resolver import DisputeResolver
from vaultix_escrow.services.event_log import EventLog
from vaultix_escrow.services.expiry_scheduler import ExpiryScheduler, SweepReport
from vaultix_escrow.services.ledger_service import (
    HttpLedgerService,
    SimulatedLedgerService,
    settle_with_retry,
)
from vaultix_escrow.services.webhook_dispatcher import (
    WebhookDispatcher,
    encode_envelope,
    sign_payload,
    verify_signature,
)
from vaultix_escrow.services.webhook_subscriptions import WebhookSubscriptionService
from vaultix_escrow.services.workflow_engine import EscrowWorkflowEngine

__all__ = [
    "ConditionTracker",
    "DisputeResolver",
    "EscrowContext",
    "EscrowScope",
    "EscrowWorkflowEngine",
    "EventLog",
    "ExpiryScheduler",
    "HttpLedgerService",
    "SimulatedLedgerService",
    "SweepReport",
    "WebhookDispatcher",
    "WebhookSubscriptionService",
    "encode_envelope",
    "settle_with_retry",
    "sign_payload",
    "verify_signature",
]
