"""RoomOS Sonos Control — drive Sonos groups from a RoomOS touch panel."""

__version__ = "1.0.0"
