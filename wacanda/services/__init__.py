from wacanda.services.event_processor import EventOutcome, EventProcessor
from wacanda.services.handoff_service import HandoffDecision, evaluate
from wacanda.services.normalizer import NormalizedMessage, normalize_message
from wacanda.services.reconciliation_service import ReconciliationEngine, SyncProgress
from wacanda.services.retrieval_composer import ComposedReply, RetrievalComposer
