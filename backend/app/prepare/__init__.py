from app.prepare.engine import SessionEngine, SessionRuntimeRegistry
from app.prepare.orchestrator import QuestionOrchestrator
from app.prepare.scorer import EvaluationScorer, heuristic_evaluate, summarize_session
from app.prepare.storage import InMemoryPrepareStore, JsonFilePrepareStore, build_prepare_store
from app.prepare.transcript_buffer import TranscriptBuffer

__all__ = [
    "SessionEngine",
    "SessionRuntimeRegistry",
    "QuestionOrchestrator",
    "EvaluationScorer",
    "heuristic_evaluate",
    "summarize_session",
    "InMemoryPrepareStore",
    "JsonFilePrepareStore",
    "build_prepare_store",
    "TranscriptBuffer",
]
