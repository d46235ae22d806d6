#!/usr/bin/env python3
# -*- coding: utf-8 -*-

# =============================================================================
# Slide Beacon: URL Broadcaster over Eddystone (BLE) and mDNS
# =============================================================================
#
# Description:
#   Broadcasts a single "current URL" to nearby devices. The URL can be
#   advertised as an Eddystone-URL Bluetooth LE beacon, as an mDNS/DNS-SD
#   service record on the local network, or both. URLs are entered in the
#   console or pushed by remote clients (e.g. a presentation plugin) over a
#   WebSocket control socket.
#
# License:
#   This project is licensed under the GNU-GPL v3 License.
#
# =============================================================================
#
# Usage:
#   slide-beacon [url] [options]
#
#   Arguments:
#     url                   Optional. URL to broadcast right after start-up.
#
#   Options:
#     --host HOST           Listen address for the remote control socket.
#     -p PORT, --port PORT  Port for the remote control socket. (Default: 1234)
#     --no-remote           Do not start the remote control socket.
#     --no-ble              Start with Bluetooth (Eddystone) disabled.
#     --mdns                Start with mDNS enabled.
#     --hci-device DEV      Bluetooth adapter to advertise on. (Default: hci0)
#     --tx-power DBM        TX power at 0 m written into the frame. (Default: -21)
#     --headless            No interactive screen; print status lines only.
#
#   Console Interaction:
#     - Type a URL and press Enter to broadcast it.
#     - /ble, /mdns : Toggle a broadcasting mode.
#     - /stop       : Stop broadcasting.
#     - /clear      : Clear the broadcast history.
#     - /quit       : Exit (Ctrl+C works too).
#     - Esc clears the input line, Backspace deletes a character.
#
#   Remote Control Socket:
#     Send a URL as a text message. Replies are "received: <url>", then
#     "ble broadcasting: <url>", "mdns broadcasting: <url>" or "error: <msg>".
#
#   Dependencies:
#     - Python Libraries: websockets, zeroconf, readchar
#     - External Programs: hciconfig, hcitool (BlueZ, for Bluetooth mode)
#
# =============================================================================

# --- Core Imports ---
import argparse
import queue
import shutil
import signal
import sys
import threading
import traceback

import readchar

from slide_beacon.controller import AsyncioController, REMOTE_HOST, REMOTE_PORT
from slide_beacon.coordinator import BroadcastCoordinator, LABEL_BROADCASTING
from slide_beacon.fanout import StatusFanout
from slide_beacon.models import Mode
from slide_beacon.providers import EddystoneProvider, MdnsProvider, HCI_DEVICE, TX_POWER_DBM

# --- CLI Constants ---
CLEAR_LINE = "\033[K"             # ANSI: Clear line from cursor to end
SHOW_CURSOR = "\033[?25h"         # ANSI: Show cursor
HIDE_CURSOR = "\033[?25l"         # ANSI: Hide cursor
KEY_BACKSPACE = ["\x08", "\x7f"] # Backspace and Delete often map differently
KEY_ENTER = ["\r", "\n"]         # Carriage Return and Line Feed
KEY_ESC = "\x1b"                 # Escape key
KEY_CTRL_C = "\x03"              # Control-C character
HISTORY_LIMIT = 8                 # URLs kept in the on-screen history
INPUT_LIMIT = 512                 # Max characters in the input buffer

LOCAL_COMMANDS = {
    "/ble": ("toggle_mode", Mode.SHORT_RANGE.value, None),
    "/mdns": ("toggle_mode", Mode.LAN_SERVICE.value, None),
    "/stop": ("stop", None, None),
    "/clear": ("clear_history", None, None),
    "/quit": ("quit", None, None),
}

# --- Global State ---
app_running = threading.Event()   # Thread-safe flag to signal application shutdown
app_running.set()
cli_command_queue = None          # Local surface -> controller
cli_update_queue = None           # Controller -> local surface
cli_controller = None
# CLI Display State Variables
cli_status_label = "Waiting"
cli_status_message = ""
cli_modes = {}                    # mode id -> enabled, mirrored from mode updates
cli_stop_enabled = False
cli_remote_status = ""
cli_history = []
cli_input_buffer = ""
cli_temp_message = ""

# =============================================================================
# Helper Functions
# =============================================================================

def parse_local_command(text):
    """
    Turns a line typed in the console into a controller command tuple.

    Returns None for empty input or an unknown slash command.
    """
    text = text.strip()
    if not text:
        return None
    if text.startswith("/"):
        return LOCAL_COMMANDS.get(text.lower())
    return ("set_url", text, None)


def build_coordinator(args, update_queue):
    """Wires providers, fan-out and coordinator from the parsed arguments."""
    providers = {
        Mode.SHORT_RANGE: EddystoneProvider(hci_device=args.hci_device, tx_power=args.tx_power),
        Mode.LAN_SERVICE: MdnsProvider(),
    }
    coordinator = BroadcastCoordinator(providers, StatusFanout(update_queue))
    coordinator.set_mode(Mode.SHORT_RANGE, not args.no_ble)
    coordinator.set_mode(Mode.LAN_SERVICE, args.mdns)
    return coordinator


def record_history(url):
    """Adds a URL to the top of the history, without duplicates."""
    if url in cli_history:
        cli_history.remove(url)
    cli_history.insert(0, url)
    del cli_history[HISTORY_LIMIT:]

# =============================================================================
# CLI Display
# =============================================================================

def build_display_lines():
    def box(mode):
        return "x" if cli_modes.get(mode.value) else " "

    stop_hint = "/stop to stop broadcasting" if cli_stop_enabled else "not broadcasting"
    lines = [
        "=" * 70,
        f" Status  : [{cli_status_label}] {cli_status_message}",
        f" Modes   : [{box(Mode.SHORT_RANGE)}] Bluetooth (/ble)   [{box(Mode.LAN_SERVICE)}] mDNS (/mdns)",
        f" Control : {stop_hint}",
        f" Remote  : {cli_remote_status or 'N/A'}",
        "-" * 70,
        " History :",
    ]
    lines.extend(f"   {url}" for url in cli_history)
    if not cli_history:
        lines.append("   (empty)")
    lines.append("=" * 70)
    return lines


def redraw_screen():
    """Redraws the whole CLI screen and the input prompt."""
    term_width = shutil.get_terminal_size((80, 24)).columns
    print("\033[2J\033[1;1H", end="")
    for line in build_display_lines():
        print(f"{CLEAR_LINE}{line[:term_width]}")
    print(f"{CLEAR_LINE}{cli_temp_message[:term_width - 1]}")
    prompt = "URL (Enter to broadcast, /stop /ble /mdns /clear /quit): "
    print(f"{CLEAR_LINE}{(prompt + cli_input_buffer)[-(term_width - 1):]}", end="", flush=True)

# =============================================================================
# CLI Mode Functions
# =============================================================================

def _blocking_keyboard_listener():
    """
    Runs in a separate thread to read keys with 'readchar' and build the
    input line. Enter submits the line as a URL or slash command.
    """
    global cli_input_buffer, cli_temp_message

    while app_running.is_set():
        try:
            char = readchar.readkey()

            if char == KEY_CTRL_C:
                print(f"\n{CLEAR_LINE}Ctrl+C detected, initiating shutdown...")
                request_shutdown()
                break

            elif char == KEY_ESC:
                cli_input_buffer = ""

            elif char in KEY_BACKSPACE:
                cli_input_buffer = cli_input_buffer[:-1]

            elif char in KEY_ENTER:
                command = parse_local_command(cli_input_buffer)
                if command is None and cli_input_buffer.strip():
                    cli_temp_message = f"Unknown command: {cli_input_buffer.strip()}"
                elif command is not None and command[0] == "quit":
                    request_shutdown()
                    break
                elif command is not None:
                    cli_command_queue.put(command)
                    cli_temp_message = ""
                cli_input_buffer = ""

            elif len(char) == 1 and char.isprintable():
                if len(cli_input_buffer) < INPUT_LIMIT:
                    cli_input_buffer += char

            redraw_screen()

        except KeyboardInterrupt:
            print(f"\n{CLEAR_LINE}KeyboardInterrupt in listener thread, shutting down...")
            request_shutdown()
            break
        except Exception as e:
            if app_running.is_set():
                print(f"\n{CLEAR_LINE}CLI Keyboard listener error: {e}", flush=True)
                traceback.print_exc()
                request_shutdown()
            break


def request_shutdown():
    """Clears the running flag and wakes the controller's command listener."""
    app_running.clear()
    if cli_command_queue:
        try: cli_command_queue.put_nowait(None)
        except queue.Full: pass


def apply_update(message_type, data):
    """
    Applies one controller update to the CLI state.

    Returns a printable line for headless mode, or None.
    """
    global cli_status_label, cli_status_message, cli_stop_enabled, cli_remote_status

    if message_type == "status":
        cli_status_label, cli_status_message = data.label, data.message
        if data.ok and data.label == LABEL_BROADCASTING and data.url:
            record_history(data.url)
        return f"[{data.label}] {data.message}"
    if message_type == "mode":
        mode_id, enabled = data
        cli_modes[mode_id] = enabled
        return f"Mode {mode_id}: {'on' if enabled else 'off'}"
    if message_type == "clear_history":
        cli_history.clear()
        return "History cleared."
    if message_type == "stop_enabled":
        cli_stop_enabled = data
        return None
    if message_type == "remote_status":
        cli_remote_status = data
        return data
    if message_type == "error":
        cli_status_label, cli_status_message = "Error", data
        return f"ERROR: {data}"
    return None


def cli_update_loop(args):
    """
    Runs in the main thread, processing updates from the controller queue
    and refreshing the display. Exits when app_running is cleared or the
    controller reports it has closed.
    """
    while app_running.is_set():
        try:
            message_type, data = cli_update_queue.get(block=True, timeout=0.2)

            if message_type == "closed":
                app_running.clear()
                break

            line = apply_update(message_type, data)
            if args.headless:
                if line:
                    print(line, flush=True)
            else:
                redraw_screen()

            cli_update_queue.task_done()

        except queue.Empty:
            continue
        except Exception as e:
            print(f"\n{CLEAR_LINE}Error in CLI update loop: {e}", flush=True)
            traceback.print_exc()
            app_running.clear()
            break


def run_cli(args):
    """Sets up the coordinator and controller and runs the console surface."""
    global cli_command_queue, cli_update_queue, cli_controller

    print(f"Starting {'headless ' if args.headless else ''}slide-beacon...")

    cli_command_queue = queue.Queue()   # UI -> Controller
    cli_update_queue = queue.Queue()    # Controller -> UI

    coordinator = build_coordinator(args, cli_update_queue)
    for mode in Mode:
        cli_modes[mode.value] = coordinator.session.modes.is_enabled(mode)

    if args.url:
        cli_command_queue.put(("set_url", args.url, None))

    # --- Setup Signal Handling (Ctrl+C, Terminate) ---
    def signal_handler(sig, frame):
        """Handles SIGINT/SIGTERM to initiate graceful shutdown."""
        if app_running.is_set():
            print(f"\n{CLEAR_LINE}SIGNAL {signal.Signals(sig).name} received. Initiating shutdown...", flush=True)
            request_shutdown()

    original_sigint = signal.getsignal(signal.SIGINT)
    original_sigterm = signal.getsignal(signal.SIGTERM)
    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    if not args.headless:
        print(HIDE_CURSOR, end="", flush=True)
        redraw_screen()

    cli_controller = AsyncioController(
        coordinator, cli_command_queue, cli_update_queue,
        remote_enabled=not args.no_remote,
        remote_host=args.host,
        remote_port=args.port,
        running_event=app_running,
    )
    cli_controller.start()

    if not args.headless:
        keyboard_thread = threading.Thread(target=_blocking_keyboard_listener, daemon=True, name="CLIKeyboardThread")
        keyboard_thread.start()

    try:
        cli_update_loop(args)
    except Exception as e:
        print(f"\n{CLEAR_LINE}Fatal error in main CLI execution: {e}", flush=True)
        traceback.print_exc()
    finally:
        print(f"\n{CLEAR_LINE}Shutting down...", flush=True)
        app_running.clear()
        # Joins the loop thread, which stops any running advertisement first
        cli_controller.stop()

        if not args.headless:
            print(SHOW_CURSOR, end="", flush=True)

        try: signal.signal(signal.SIGINT, original_sigint)
        except Exception: pass
        try: signal.signal(signal.SIGTERM, original_sigterm)
        except Exception: pass

        print(f"{CLEAR_LINE}Exit.", flush=True)

# =============================================================================
# Main Execution Block
# =============================================================================

def build_parser():
    parser = argparse.ArgumentParser(
        prog="slide-beacon",
        description="Broadcast a URL as an Eddystone BLE beacon and/or an mDNS service, "
                    "controlled from the console or a WebSocket control socket.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )
    parser.add_argument(
        "url",
        nargs="?",
        default=None,
        help="URL to broadcast immediately after start-up."
    )
    parser.add_argument(
        "--host",
        default=REMOTE_HOST,
        help="Listen address for the remote control WebSocket."
    )
    parser.add_argument(
        "-p", "--port",
        type=int,
        default=REMOTE_PORT,
        metavar="PORT",
        help="Port for the remote control WebSocket."
    )
    parser.add_argument(
        "--no-remote",
        action="store_true",
        help="Do not start the remote control WebSocket."
    )
    parser.add_argument(
        "--no-ble",
        action="store_true",
        help="Start with Bluetooth (Eddystone-URL) broadcasting disabled."
    )
    parser.add_argument(
        "--mdns",
        action="store_true",
        help="Start with mDNS service broadcasting enabled."
    )
    parser.add_argument(
        "--hci-device",
        default=HCI_DEVICE,
        metavar="DEV",
        help="Bluetooth adapter used for advertising."
    )
    parser.add_argument(
        "--tx-power",
        type=int,
        default=TX_POWER_DBM,
        metavar="DBM",
        help="Calibrated TX power at 0 m written into the Eddystone frame."
    )
    parser.add_argument(
        "--headless",
        action="store_true",
        help="Print status lines instead of the interactive screen (no keyboard input)."
    )
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)

    if not args.no_ble:
        for cmd_name in ("hciconfig", "hcitool"):
            if shutil.which(cmd_name) is None:
                print(f"Warning: Required command '{cmd_name}' not found in PATH. Bluetooth broadcasting will fail.")

    run_cli(args)


if __name__ == "__main__":
    sys.exit(main())
