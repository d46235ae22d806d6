# -*- coding: utf-8 -*-

# =============================================================================
# BroadcastCoordinator Class
# =============================================================================
# Decides which advertisement providers to (re)start for a URL, in what
# order, and reports the outcome through the status fan-out. All calls are
# made from the controller's single event loop task, one at a time, so the
# session needs no locking.
#
# Start order for set_url:
#   1. Any previous mDNS advertisement is stopped (zeroconf cannot replace a
#      service record in place).
#   2. Bluetooth is started if enabled.
#   3. mDNS is started only after Bluetooth succeeded, or directly when
#      Bluetooth is disabled. A Bluetooth failure suppresses mDNS for the
#      call so observers never see mDNS advertising a URL the beacon is not.
# =============================================================================

import traceback

from slide_beacon.models import (
    Advertisement,
    AdvertisementState,
    BroadcastSession,
    Mode,
    ProviderError,
    StatusEvent,
)
from slide_beacon.urls import decompose

# --- Status Texts ---
NO_MODE_MESSAGE = "Choose at least one broadcasting mode"
WAITING_MESSAGE = "Type a URL and press Enter to broadcast (or send one over the control socket)"
LABEL_BROADCASTING = "Broadcasting"
LABEL_ERROR = "Error"
LABEL_WAITING = "Waiting"


class BroadcastCoordinator:
    def __init__(self, providers, fanout, session=None):
        """
        Args:
            providers (dict): Mode -> provider implementing async start/stop.
            fanout (StatusFanout): Delivers status events and notifications.
            session (BroadcastSession): Injected state; a fresh one by default.
        """
        self.providers = providers
        self.fanout = fanout
        self.session = session if session is not None else BroadcastSession()

    # --- Mode Toggles ---

    def set_mode(self, mode_id, enabled):
        """Enables or disables a mode for future set_url calls. Unknown ids are ignored."""
        mode = mode_id if isinstance(mode_id, Mode) else Mode.from_id(mode_id)
        if mode is None:
            return
        self.session.modes.set(mode, bool(enabled))

    def toggle_mode(self, mode_id):
        """Flips a mode and tells the local surface. Returns the new state, or None if unknown."""
        mode = mode_id if isinstance(mode_id, Mode) else Mode.from_id(mode_id)
        if mode is None:
            return None
        enabled = not self.session.modes.is_enabled(mode)
        self.set_mode(mode, enabled)
        self.fanout.notify("mode", (mode.value, enabled))
        return enabled

    def clear_history(self):
        self.fanout.notify("clear_history")

    # --- Broadcasting ---

    async def set_url(self, url, origin=None):
        """
        Broadcasts url on every enabled mode.

        Args:
            url (str): URL to advertise.
            origin: Remote WebSocket that issued the request, if any. Replies
                for this call are routed to it in addition to the local surface.

        Returns:
            StatusEvent: the last event published for this call.
        """
        session = self.session
        session.current_url = url
        labels = []  # Mode labels that came up during this call

        await self._stop_mode(Mode.LAN_SERVICE)
        if not session.modes.short_range and Mode.SHORT_RANGE in session.active_advertisements:
            # Bluetooth was switched off since the last broadcast
            await self._stop_mode(Mode.SHORT_RANGE)

        if not session.modes.any_enabled():
            return await self._publish(StatusEvent(NO_MODE_MESSAGE, LABEL_ERROR, False), origin)

        parts = decompose(url)
        if not parts.is_complete:
            print(f"Warning: BroadcastCoordinator: URL looks malformed: {url!r} -> {parts}")

        event = None
        if session.modes.short_range:
            short_range = await self._start_mode(Mode.SHORT_RANGE, url, url)
            event = await self._report(short_range, labels, origin)
            if short_range.is_broadcasting and session.modes.lan_service:
                lan = await self._start_mode(Mode.LAN_SERVICE, (url, parts), url)
                event = await self._report(lan, labels, origin)
        elif session.modes.lan_service:
            lan = await self._start_mode(Mode.LAN_SERVICE, (url, parts), url)
            event = await self._report(lan, labels, origin)

        self._set_stop_enabled(True)
        return event

    async def stop_all(self):
        """Stops mDNS then Bluetooth, disables the stop affordance and reports Waiting."""
        await self._stop_mode(Mode.LAN_SERVICE)
        await self._stop_mode(Mode.SHORT_RANGE)
        self._set_stop_enabled(False)
        print("BroadcastCoordinator: Broadcasting stopped.")
        return await self.announce_waiting()

    async def announce_waiting(self):
        return await self._publish(StatusEvent(WAITING_MESSAGE, LABEL_WAITING, True))

    # --- Internals ---

    async def _start_mode(self, mode, payload, url):
        """Runs one provider start. Returns an Advertisement in BROADCASTING or ERROR state."""
        advertisement = Advertisement(mode=mode, url=url, state=AdvertisementState.STARTING)
        provider = self.providers.get(mode)
        try:
            if provider is None:
                raise ProviderError(f"No provider configured for {mode.label}")
            advertisement.handle = await provider.start(payload)
        except ProviderError as e:
            advertisement.state = AdvertisementState.ERROR
            advertisement.last_error = e.message
        except Exception as e:
            print(f"BroadcastCoordinator: Unexpected error starting {mode.label}:")
            traceback.print_exc()
            advertisement.state = AdvertisementState.ERROR
            advertisement.last_error = f"{type(e).__name__}: {e}"
        else:
            advertisement.state = AdvertisementState.BROADCASTING
            previous = self.session.active_advertisements.get(mode)
            if previous is not None:
                previous.state = AdvertisementState.IDLE
            self.session.active_advertisements[mode] = advertisement
        return advertisement

    async def _stop_mode(self, mode):
        provider = self.providers.get(mode)
        if provider is not None:
            try:
                await provider.stop()
            except Exception as e:
                print(f"Warning: BroadcastCoordinator: {mode.label} stop failed: {e}")
        advertisement = self.session.active_advertisements.pop(mode, None)
        if advertisement is not None:
            advertisement.state = AdvertisementState.IDLE

    async def _report(self, advertisement, labels, origin):
        mode, url = advertisement.mode, advertisement.url
        if advertisement.is_broadcasting:
            labels.append(mode.label)
            print(f"{mode.remote_tag} broadcasting: {url}")
            event = StatusEvent(f"{url} [{', '.join(labels)}]", LABEL_BROADCASTING, True, mode, url)
        else:
            print(f"error: {advertisement.last_error}")
            event = StatusEvent(advertisement.last_error, LABEL_ERROR, False, mode, url)
        return await self._publish(event, origin)

    async def _publish(self, event, origin=None):
        await self.fanout.publish(event, origin)
        return event

    def _set_stop_enabled(self, enabled):
        self.session.stop_enabled = enabled
        self.fanout.notify("stop_enabled", enabled)
