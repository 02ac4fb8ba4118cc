"""Player presence trackers (shard and raiding outpost)."""

from .render import build_presence_embed, bullets_for
from .tracker import TRACKER_KINDS, PresenceTracker, TrackerKind, diff_names, filter_names, watched_names

__all__ = [
    "PresenceTracker",
    "TRACKER_KINDS",
    "TrackerKind",
    "build_presence_embed",
    "bullets_for",
    "diff_names",
    "filter_names",
    "watched_names",
]
