from __future__ import annotations

from enum import Enum


class PresenceChange(str, Enum):
    ENTERED = "entered"
    LEFT = "left"
    STILL_PRESENT = "still_present"
    IRRELEVANT = "irrelevant"


def classify(
    previous_channel_id: int | None,
    new_channel_id: int | None,
    tracked_channel_id: int,
) -> PresenceChange:
    """Decide what a voice state update means for the tracked channel.

    ``None`` stands for "not connected to any voice channel". Updates where
    both sides are the tracked channel (mute, deafen, stream toggles) are
    reported as ``STILL_PRESENT``.
    """
    was_tracked = previous_channel_id is not None and previous_channel_id == tracked_channel_id
    is_tracked = new_channel_id is not None and new_channel_id == tracked_channel_id

    if is_tracked and not was_tracked:
        return PresenceChange.ENTERED
    if was_tracked and not is_tracked:
        return PresenceChange.LEFT
    if was_tracked and is_tracked:
        return PresenceChange.STILL_PRESENT
    return PresenceChange.IRRELEVANT
