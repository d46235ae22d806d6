# -*- coding: utf-8 -*-

# =============================================================================
# Broadcast Data Model
# =============================================================================
# Value types shared by the coordinator, the providers and the status
# fan-out. Only the coordinator mutates BroadcastSession and Advertisement.
# =============================================================================

from collections import namedtuple
from enum import Enum


class Mode(Enum):
    """Advertisement mechanisms. Value is the control-surface mode id."""
    SHORT_RANGE = "mode-ble"
    LAN_SERVICE = "mode-mdns"

    @property
    def label(self):
        return MODE_LABELS[self]

    @property
    def remote_tag(self):
        return MODE_REMOTE_TAGS[self]

    @classmethod
    def from_id(cls, mode_id):
        """Returns the Mode for a control-surface id, or None if unknown."""
        for mode in cls:
            if mode.value == mode_id:
                return mode
        return None


MODE_LABELS = {Mode.SHORT_RANGE: "Bluetooth", Mode.LAN_SERVICE: "mDNS"}
MODE_REMOTE_TAGS = {Mode.SHORT_RANGE: "ble", Mode.LAN_SERVICE: "mdns"}


class AdvertisementState(Enum):
    IDLE = "Idle"
    STARTING = "Starting"
    BROADCASTING = "Broadcasting"
    ERROR = "Error"


class ProviderError(Exception):
    """Raised by an advertisement provider when it cannot start."""

    def __init__(self, message):
        super().__init__(message)
        self.message = message

# =============================================================================
# Status Events
# =============================================================================
# Immutable value delivered to every observer. `mode` and `url` are only set
# for per-mode results and drive the plain-text form sent to remote clients.

StatusEvent = namedtuple("StatusEvent", ["message", "label", "ok", "mode", "url"],
                         defaults=(None, None))

# =============================================================================
# Session State
# =============================================================================

class ModeToggle:
    """Which modes the next set_url call will start."""

    def __init__(self, short_range=True, lan_service=False):
        self.short_range = short_range
        self.lan_service = lan_service

    def is_enabled(self, mode):
        if mode is Mode.SHORT_RANGE:
            return self.short_range
        return self.lan_service

    def set(self, mode, enabled):
        if mode is Mode.SHORT_RANGE:
            self.short_range = enabled
        else:
            self.lan_service = enabled

    def any_enabled(self):
        return self.short_range or self.lan_service

    def __repr__(self):
        return f"ModeToggle(short_range={self.short_range}, lan_service={self.lan_service})"


class Advertisement:
    """One provider's running (or failed) instance for one mode."""

    def __init__(self, mode, url, state=AdvertisementState.IDLE, last_error=None, handle=None):
        self.mode = mode
        self.url = url
        self.state = state
        self.last_error = last_error
        self.handle = handle

    @property
    def is_broadcasting(self):
        return self.state is AdvertisementState.BROADCASTING

    def __repr__(self):
        return f"Advertisement({self.mode.name}, {self.url!r}, {self.state.value})"


class BroadcastSession:
    """Process-lifetime broadcast state, owned by the coordinator."""

    def __init__(self, current_url=None, modes=None, active_advertisements=None, stop_enabled=False):
        self.current_url = current_url
        self.modes = modes if modes is not None else ModeToggle()
        self.active_advertisements = active_advertisements if active_advertisements is not None else {}
        self.stop_enabled = stop_enabled
