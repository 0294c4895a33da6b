from .calling import CallingClient
from .citation_backfill import CitationBackfill
from .model_client import ConversationalModel
from .nearby import NearbyCareSearch

__all__ = [
    "CallingClient",
    "CitationBackfill",
    "ConversationalModel",
    "NearbyCareSearch",
]
