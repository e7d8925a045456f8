from .base import FeedPage, FeedSource, select_new_events
from .doma import DomaPollSource

__all__ = [
    "DomaPollSource",
    "FeedPage",
    "FeedSource",
    "select_new_events",
]
