# -*- coding: utf-8 -*-

# =============================================================================
# Status Fan-out
# =============================================================================
# Delivers coordinator output to observers. The local control surface always
# gets every update through its queue; the remote client that triggered a
# call additionally gets a plain-text rendering over its WebSocket. Remote
# delivery is best-effort and never blocks or fails local delivery.
# =============================================================================

import asyncio
import queue

from websockets.exceptions import ConnectionClosed

REMOTE_SEND_TIMEOUT = 2.0       # Seconds before giving up on a slow remote client


def render_remote(event):
    """Renders a StatusEvent as the plain text sent to remote clients."""
    if not event.ok:
        return f"error: {event.message}"
    if event.mode is not None and event.url is not None:
        return f"{event.mode.remote_tag} broadcasting: {event.url}"
    return event.message


class StatusFanout:
    def __init__(self, update_queue=None):
        """
        Args:
            update_queue (queue.Queue): Queue read by the local control surface.
                Receives (message_type, data) tuples.
        """
        self.update_queue = update_queue

    async def publish(self, event, origin=None):
        """Sends a StatusEvent to the local surface and, if given, to the originating socket."""
        self.notify("status", event)
        if origin is not None:
            await self.send_remote(origin, render_remote(event))

    def notify(self, message_type, data=None):
        """Puts a non-blocking update on the local surface queue."""
        if self.update_queue is None:
            return
        try:
            self.update_queue.put_nowait((message_type, data))
        except queue.Full:
            print(f"Warning: Update queue full. Dropping update: {message_type}")

    async def send_remote(self, websocket, text):
        """Sends text to one remote client. Returns False if delivery failed."""
        try:
            await asyncio.wait_for(websocket.send(text), timeout=REMOTE_SEND_TIMEOUT)
            return True
        except ConnectionClosed:
            print("StatusFanout: Remote client disconnected, reply dropped.")
        except asyncio.TimeoutError:
            print(f"Warning: StatusFanout: Remote send timed out after {REMOTE_SEND_TIMEOUT}s.")
        except Exception as e:
            print(f"Warning: StatusFanout: Remote send failed: {type(e).__name__}: {e}")
        return False
