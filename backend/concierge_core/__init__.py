from .call_script import CallScriptService, ScriptSignal, advance, extract_script_text
from .care_options import compute_score, passes_review_gate, rank_places
from .citations import EvidencePolicy, filter_allowed, gate_reply, is_declarative
from .errors import (
    ConciergeError,
    MalformedResponse,
    PersistenceFailure,
    TurnInProgress,
    UpstreamUnavailable,
    WorkflowError,
)
from .executor import TurnInput, TurnPipeline, TurnResult, extract_zip
from .insights import merge_insights
from .models import CareOption, Citation, Episode, InsightCard, Task
from .plan import build_plan, visit_expectations
from .risk import classify_risk
from .session import EpisodeSession, SessionRegistry
from .settings import ConciergeSettings
from .stage import derive_stage, stage_for
from .topics import extract_topic

__all__ = [
    "CallScriptService",
    "CareOption",
    "Citation",
    "ConciergeError",
    "ConciergeSettings",
    "Episode",
    "EpisodeSession",
    "EvidencePolicy",
    "InsightCard",
    "MalformedResponse",
    "PersistenceFailure",
    "ScriptSignal",
    "SessionRegistry",
    "Task",
    "TurnInProgress",
    "TurnInput",
    "TurnPipeline",
    "TurnResult",
    "UpstreamUnavailable",
    "WorkflowError",
    "advance",
    "build_plan",
    "classify_risk",
    "compute_score",
    "derive_stage",
    "extract_script_text",
    "extract_topic",
    "extract_zip",
    "filter_allowed",
    "gate_reply",
    "is_declarative",
    "merge_insights",
    "passes_review_gate",
    "rank_places",
    "stage_for",
    "visit_expectations",
]
