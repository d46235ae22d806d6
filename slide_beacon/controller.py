# -*- coding: utf-8 -*-

# =============================================================================
# AsyncioController Class
# =============================================================================
# Runs the asyncio event loop in a background thread and owns everything
# that happens on it: the remote control WebSocket server, the bridge from
# the local surface's command queue, and the single dispatcher task that
# feeds commands to the BroadcastCoordinator one at a time.
#
# Commands are (kind, argument, origin) tuples:
#   ("set_url", url, websocket_or_None)
#   ("toggle_mode", mode_id, None)
#   ("set_mode", (mode_id, enabled), None)
#   ("stop", None, None)
#   ("clear_history", None, None)
# =============================================================================

import asyncio
import errno
import queue
import threading
import traceback

import websockets
from websockets.exceptions import ConnectionClosed

# --- Configuration Constants ---
REMOTE_HOST = "0.0.0.0"         # Interface for the remote control socket
REMOTE_PORT = 1234              # Port for the remote control socket
COMMAND_POLL_SECONDS = 0.5      # Local command queue poll interval
SHUTDOWN_JOIN_TIMEOUT = 7.0     # Seconds to wait for the loop thread on stop


class AsyncioController:
    def __init__(self, coordinator, command_queue, update_queue,
                 remote_enabled=True, remote_host=REMOTE_HOST, remote_port=REMOTE_PORT,
                 running_event=None):
        """
        Initializes the controller.

        Args:
            coordinator (BroadcastCoordinator): Receives all broadcast commands.
            command_queue (queue.Queue): Commands from the local surface.
            update_queue (queue.Queue): Updates to the local surface (status, errors).
            remote_enabled (bool): Whether to run the remote control WebSocket server.
            remote_host (str): Listen address for the remote control socket.
            remote_port (int): Listen port for the remote control socket.
            running_event (threading.Event): Shared shutdown flag.
        """
        self.coordinator = coordinator
        self.command_queue = command_queue
        self.update_queue = update_queue
        self.remote_enabled = remote_enabled
        self.remote_host = remote_host
        self.remote_port = remote_port

        self.app_running_event = running_event if running_event is not None else threading.Event()
        self.loop = None        # The asyncio event loop for this controller
        self.thread = None      # The thread running the event loop
        self.events = None      # asyncio.Queue serialising every inbound command
        self.remote_clients = set()

    def start(self):
        """Starts the asyncio event loop in a new background thread."""
        if self.thread is None or not self.thread.is_alive():
            self.app_running_event.set()
            self.thread = threading.Thread(target=self._run_asyncio_loop, daemon=True, name="BroadcastLoop")
            self.thread.start()

    def stop(self):
        """Signals the controller to shut down and waits for its thread."""
        if self.app_running_event.is_set():
            self.app_running_event.clear()

            # Wake up command queue listener if it's blocking
            if self.command_queue:
                try: self.command_queue.put_nowait(None)
                except queue.Full: pass

        if self.thread and self.thread.is_alive() and self.thread is not threading.current_thread():
            self.thread.join(timeout=SHUTDOWN_JOIN_TIMEOUT)
            if self.thread.is_alive():
                print("Warning: AsyncioController thread did not exit cleanly after stop request.")
        self.thread = None

    def is_running(self):
        return self.app_running_event.is_set() and self.thread is not None and self.thread.is_alive()

    def put_update(self, message_type, data):
        """Safely puts an update message onto the queue for the UI."""
        if self.update_queue:
            try:
                self.update_queue.put_nowait((message_type, data))
            except queue.Full:
                print(f"Warning: Update queue full. Dropping update: {message_type}")

    def _run_asyncio_loop(self):
        """The target method for the controller's thread. Sets up and runs the event loop."""
        try:
            self.loop = asyncio.new_event_loop()
            asyncio.set_event_loop(self.loop)
            self.loop.run_until_complete(self._main_async())
        except Exception as e:
            self.put_update("error", f"Asyncio loop crashed: {e}")
            traceback.print_exc()
            self.app_running_event.clear()
        finally:
            if self.loop:
                try:
                    pending_tasks = [t for t in asyncio.all_tasks(self.loop) if not t.done()]
                    for task in pending_tasks:
                        task.cancel()
                    if pending_tasks:
                        self.loop.run_until_complete(asyncio.gather(*pending_tasks, return_exceptions=True))
                    self.loop.run_until_complete(self.loop.shutdown_asyncgens())
                except Exception as e_shutdown:
                    print(f"Error during final asyncio cleanup processing: {e_shutdown}")
                    traceback.print_exc()
                finally:
                    self.loop.close()
                    self.loop = None
            self.put_update("closed", None)

    async def _main_async(self):
        """Creates the core tasks and supervises them until shutdown."""
        self.events = asyncio.Queue()
        await self.coordinator.announce_waiting()

        tasks = {
            asyncio.create_task(self._handle_local_commands(), name="CmdListen"),
            asyncio.create_task(self._dispatch_commands(), name="Dispatch"),
        }
        if self.remote_enabled:
            tasks.add(asyncio.create_task(self._run_remote_server(), name="RemoteSrv"))
        else:
            self.put_update("remote_status", "Remote: Disabled")

        while self.app_running_event.is_set() and tasks:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED, timeout=0.5)
            if not self.app_running_event.is_set():
                break

            for task in done:
                tasks.remove(task)
                task_name = task.get_name()
                if task.cancelled():
                    continue
                exc = task.exception()
                if exc is None:
                    continue

                # --- Remote server port conflicts disable the remote channel only ---
                if task_name == "RemoteSrv" and isinstance(exc, OSError) and exc.errno == errno.EADDRINUSE:
                    self.put_update("remote_status", f"Remote: Port {self.remote_port} in use")
                    self.put_update("error", f"Port {self.remote_port} already in use. Remote control disabled.")
                    print(f"ERROR: Port {self.remote_port} for the control socket is already in use.")
                    self.remote_enabled = False
                    continue

                self.put_update("error", f"Task {task_name} failed: {type(exc).__name__}: {exc}")
                print(f"--- Error in Task: {task_name} ---")
                traceback.print_exception(type(exc), exc, exc.__traceback__)
                print(f"--- End Error Traceback ({task_name}) ---")

                if self.app_running_event.is_set():
                    print(f"AsyncioController: Restarting task {task_name} after error...")
                    tasks.add(asyncio.create_task(self._task_factory(task_name)(), name=task_name))

        # --- Shutdown: stop advertising before the loop goes away ---
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        try:
            await self.coordinator.stop_all()
        except Exception as e:
            print(f"Warning: AsyncioController: Failed to stop broadcasting on shutdown: {e}")

    def _task_factory(self, task_name):
        return {
            "CmdListen": self._handle_local_commands,
            "Dispatch": self._dispatch_commands,
            "RemoteSrv": self._run_remote_server,
        }[task_name]

    async def _handle_local_commands(self):
        """Moves commands from the local surface's thread queue onto the event queue."""
        while self.app_running_event.is_set():
            try:
                command = await asyncio.to_thread(self.command_queue.get, True, COMMAND_POLL_SECONDS)
            except queue.Empty:
                continue
            if command is None:
                continue  # Shutdown wake-up; the while condition decides
            await self.events.put(command)
            self.command_queue.task_done()

    async def _dispatch_commands(self):
        """Runs queued commands one at a time so coordinator calls never interleave."""
        while True:
            command = await self.events.get()
            try:
                await self.execute(command)
            except Exception as e:
                self.put_update("error", f"Command failed: {e}")
                print(f"AsyncioController: Unexpected error running {command[0]!r}: {e}")
                traceback.print_exc()
            finally:
                self.events.task_done()

    async def execute(self, command):
        """Applies one command to the coordinator."""
        kind, argument, origin = command
        if kind == "set_url":
            return await self.coordinator.set_url(argument, origin)
        if kind == "toggle_mode":
            return self.coordinator.toggle_mode(argument)
        if kind == "set_mode":
            mode_id, enabled = argument
            return self.coordinator.set_mode(mode_id, enabled)
        if kind == "stop":
            return await self.coordinator.stop_all()
        if kind == "clear_history":
            return self.coordinator.clear_history()
        print(f"Warning: AsyncioController: Ignoring unknown command {kind!r}")
        return None

    async def _run_remote_server(self):
        """Serves the remote control WebSocket until shutdown."""
        async with websockets.serve(self.handle_remote_client, self.remote_host, self.remote_port):
            print(f"Info: Remote control listening on ws://{self.remote_host}:{self.remote_port}")
            self.put_update("remote_status", f"Remote: ws://:{self.remote_port} | Clients: 0")
            while self.app_running_event.is_set():
                await asyncio.sleep(1)

    async def handle_remote_client(self, websocket):
        """One connection: every inbound text message is a URL to broadcast."""
        self.remote_clients.add(websocket)
        self._update_client_count()
        try:
            async for message in websocket:
                if isinstance(message, bytes):
                    message = message.decode("utf-8", errors="replace")
                url = message
                print(f"received: {url}")
                await self.coordinator.fanout.send_remote(websocket, f"received: {url}")
                await self.events.put(("set_url", url, websocket))
        except ConnectionClosed:
            pass
        finally:
            self.remote_clients.discard(websocket)
            self._update_client_count()

    def _update_client_count(self):
        self.put_update("remote_status", f"Remote: ws://:{self.remote_port} | Clients: {len(self.remote_clients)}")
