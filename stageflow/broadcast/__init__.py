"""
Broadcast Module - Board event fan-out.

Every committed move is published on its board:
    {"event": "card_moved", "card_id": ..., "stage_key": ..., "position": ...}

Stage deactivation publishes:
    {"event": "stage_deactivated", "stage_key": ..., "fallback_stage_key": ...}
"""

from .channel import (
    AccountChannel,
    BroadcastChannel,
    InMemoryBroadcastChannel,
    Subscription,
    channel_key,
)

__all__ = [
    "AccountChannel",
    "BroadcastChannel",
    "InMemoryBroadcastChannel",
    "Subscription",
    "channel_key",
]
