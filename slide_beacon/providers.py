# -*- coding: utf-8 -*-

# =============================================================================
# Advertisement Providers
# =============================================================================
# Each provider owns one advertisement mechanism and exposes the same async
# contract:
#
#   await provider.start(payload) -> handle   (raises ProviderError)
#   await provider.stop()                     (idempotent, never raises)
#
# EddystoneProvider broadcasts an Eddystone-URL frame through the BlueZ
# command line tools (hciconfig / hcitool). MdnsProvider publishes a DNS-SD
# service record on the local network with zeroconf.
# =============================================================================

import asyncio
import shutil
import socket
import traceback

from zeroconf import ServiceInfo
from zeroconf.asyncio import AsyncZeroconf

from slide_beacon.models import ProviderError

# --- Eddystone Configuration ---
HCI_DEVICE = "hci0"             # Bluetooth adapter used for advertising
TX_POWER_DBM = -21              # Calibrated TX power at 0 m placed in the frame
MAX_ENCODED_URL_LENGTH = 17     # Eddystone-URL limit for the encoded URL bytes
ADV_DATA_LENGTH = 31            # LE advertising data is always 31 bytes
EDDYSTONE_UUID = (0xAA, 0xFE)   # 16-bit service UUID 0xFEAA, little endian
EDDYSTONE_URL_FRAME = 0x10

# Longest prefixes first so "https://www." wins over "https://"
URL_SCHEME_PREFIXES = [
    ("http://www.", 0x00),
    ("https://www.", 0x01),
    ("http://", 0x02),
    ("https://", 0x03),
]

# Slash variants come first so ".com/" is preferred over ".com"
URL_EXPANSIONS = [
    (".com/", 0x00), (".org/", 0x01), (".edu/", 0x02), (".net/", 0x03),
    (".info/", 0x04), (".biz/", 0x05), (".gov/", 0x06),
    (".com", 0x07), (".org", 0x08), (".edu", 0x09), (".net", 0x0A),
    (".info", 0x0B), (".biz", 0x0C), (".gov", 0x0D),
]

# LE Set Advertising Parameters: 100 ms interval, ADV_NONCONN_IND, all channels
HCI_ADV_PARAMS = ["a0", "00", "a0", "00", "03", "00", "00",
                  "00", "00", "00", "00", "00", "00", "07", "00"]
HCI_EVENT_COMMAND_COMPLETE = "0x0e"
HCI_EVENT_COMMAND_STATUS = "0x0f"

# --- mDNS Configuration ---
MDNS_DOMAIN = "local."
MDNS_MAX_INSTANCE_BYTES = 63    # DNS label limit for the service instance name

# =============================================================================
# Eddystone-URL Encoding
# =============================================================================

def encode_eddystone_url(url):
    """
    Encodes a URL into (scheme_byte, encoded_bytes) per the Eddystone-URL
    compression scheme.

    Raises:
        ProviderError: unsupported scheme or encoded URL longer than 17 bytes.
    """
    for prefix, code in URL_SCHEME_PREFIXES:
        if url.startswith(prefix):
            scheme_byte = code
            remainder = url[len(prefix):]
            break
    else:
        raise ProviderError(f"Invalid URL scheme in {url!r} (expected http:// or https://)")

    encoded = bytearray()
    i = 0
    while i < len(remainder):
        for text, code in URL_EXPANSIONS:
            if remainder.startswith(text, i):
                encoded.append(code)
                i += len(text)
                break
        else:
            char_code = ord(remainder[i])
            if char_code <= 0x20 or char_code >= 0x7F:
                raise ProviderError(f"Invalid character in URL: {remainder[i]!r}")
            encoded.append(char_code)
            i += 1

    if len(encoded) > MAX_ENCODED_URL_LENGTH:
        raise ProviderError(
            f"Encoded URL ({url}) is too long (max {MAX_ENCODED_URL_LENGTH} bytes): {len(encoded)} bytes"
        )
    return scheme_byte, bytes(encoded)


def build_advertising_data(url, tx_power=TX_POWER_DBM):
    """Builds the (significant_length, 31-byte payload) for an Eddystone-URL frame."""
    scheme_byte, encoded = encode_eddystone_url(url)
    service_data = bytes([
        0x16,                       # AD type: Service Data - 16-bit UUID
        *EDDYSTONE_UUID,
        EDDYSTONE_URL_FRAME,
        tx_power & 0xFF,            # Signed byte
        scheme_byte,
    ]) + encoded
    data = bytes([
        0x02, 0x01, 0x06,           # Flags: LE General Discoverable, BR/EDR unsupported
        0x03, 0x03, *EDDYSTONE_UUID,  # Complete list of 16-bit service UUIDs
        len(service_data),
    ]) + service_data
    return len(data), data.ljust(ADV_DATA_LENGTH, b"\x00")


def parse_hci_status(output):
    """
    Returns the controller status byte from `hcitool cmd` output, or None if
    no event was printed. Zero means success.

    Command Complete (0x0e) carries num_packets, opcode (2 bytes), status.
    Command Status (0x0f) carries status first.
    """
    event_code = None
    params = []
    for line in output.splitlines():
        line = line.strip()
        if line.startswith(">"):
            fields = line.split()
            event_code = fields[3].lower() if len(fields) > 3 else None
            params = []
        elif event_code is not None and line:
            try:
                params.extend(int(token, 16) for token in line.split())
            except ValueError:
                break

    if event_code == HCI_EVENT_COMMAND_COMPLETE and len(params) > 3:
        return params[3]
    if event_code == HCI_EVENT_COMMAND_STATUS and params:
        return params[0]
    return None

# =============================================================================
# EddystoneProvider Class
# =============================================================================

class EddystoneProvider:

    def __init__(self, hci_device=HCI_DEVICE, tx_power=TX_POWER_DBM):
        self.hci_device = hci_device
        self.tx_power = tx_power
        self.advertising = False

    async def start(self, url):
        """Starts (or replaces) the Eddystone-URL broadcast. Returns the advertising payload."""
        length, data = build_advertising_data(url, self.tx_power)
        for cmd_name in ("hciconfig", "hcitool"):
            if shutil.which(cmd_name) is None:
                raise ProviderError(f"Required command '{cmd_name}' not found in PATH.")

        hex_data = [f"{byte:02x}" for byte in data]
        if self.advertising:
            # Controllers reject parameter changes while advertising; swap the data only
            await self._hci_cmd("0x0008", [f"{length:02x}"] + hex_data)
            return data

        await self._run(["hciconfig", self.hci_device, "up"])
        await self._hci_cmd("0x0006", HCI_ADV_PARAMS)         # Advertising parameters
        await self._hci_cmd("0x0008", [f"{length:02x}"] + hex_data)  # Advertising data
        await self._hci_cmd("0x000a", ["01"])                 # Advertising enable
        self.advertising = True
        return data

    async def stop(self):
        """Disables LE advertising. No-op when nothing is being advertised."""
        if not self.advertising:
            return
        self.advertising = False
        try:
            await self._hci_cmd("0x000a", ["00"])
        except ProviderError as e:
            print(f"Warning: EddystoneProvider: Failed to disable advertising: {e}")

    async def _hci_cmd(self, ocf, params):
        # OGF 0x08 is the LE controller command group
        output = await self._run(["hcitool", "-i", self.hci_device, "cmd", "0x08", ocf] + params)
        # hcitool exits 0 even when the controller refuses the command
        status = parse_hci_status(output)
        if status:
            raise ProviderError(f"hcitool command {ocf} rejected by controller (HCI status 0x{status:02x})")

    async def _run(self, cmd):
        """Runs a BlueZ tool, returning its stdout. Raises ProviderError on failure."""
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            stdout, stderr = await proc.communicate()
        except FileNotFoundError:
            raise ProviderError(f"Required command '{cmd[0]}' not found in PATH.")
        except OSError as e:
            raise ProviderError(f"{cmd[0]} failed to run: {e}")
        if proc.returncode != 0:
            detail = stderr.decode(errors="replace").strip() if stderr else ""
            raise ProviderError(f"{cmd[0]} exited with code {proc.returncode}: {detail}")
        return stdout.decode(errors="replace") if stdout else ""

# =============================================================================
# MdnsProvider Class
# =============================================================================

class MdnsProvider:

    def __init__(self):
        self.zeroconf = None
        self.service_info = None

    async def start(self, payload):
        """
        Registers a DNS-SD service for a decomposed URL.

        Args:
            payload (tuple): (url, UrlParts). The URL becomes the instance name.

        Returns:
            ServiceInfo: the registered service record.
        """
        url, parts = payload
        if not parts.host:
            raise ProviderError(f"Cannot advertise {url!r} over mDNS: no host in URL")

        addresses = await self._resolve_addresses(parts.host, parts.port)
        service_type = f"_{parts.scheme}._tcp.{MDNS_DOMAIN}"
        try:
            info = ServiceInfo(
                type_=service_type,
                name=f"{self._instance_name(url)}.{service_type}",
                addresses=addresses,
                port=parts.port,
                properties={"path": parts.path},
                server=f"{parts.host}.",
            )
            if self.zeroconf is None:
                self.zeroconf = AsyncZeroconf()
            await self.zeroconf.async_register_service(info)
        except Exception as e:
            raise ProviderError(f"mDNS registration failed: {type(e).__name__}: {e}")

        self.service_info = info
        return info

    async def stop(self):
        """Unregisters the current service and closes zeroconf. Safe to call repeatedly."""
        zc, info = self.zeroconf, self.service_info
        self.zeroconf = None
        self.service_info = None
        if zc is None:
            return
        try:
            if info is not None:
                await zc.async_unregister_service(info)
            await zc.async_close()
        except Exception as e:
            print(f"Warning: MdnsProvider: Error while stopping advertisement: {e}")
            traceback.print_exc()

    @staticmethod
    def _instance_name(url):
        # Dots would be read as label separators by resolvers
        name = url.replace(".", "․")
        encoded = name.encode("utf-8")[:MDNS_MAX_INSTANCE_BYTES]
        return encoded.decode("utf-8", errors="ignore")

    async def _resolve_addresses(self, host, port):
        """Resolves host to packed IPv4 addresses; an IP literal resolves to itself."""
        loop = asyncio.get_running_loop()
        try:
            infos = await loop.getaddrinfo(host, port, family=socket.AF_INET, type=socket.SOCK_STREAM)
        except (socket.gaierror, OSError) as e:
            raise ProviderError(f"Could not resolve host '{host}': {e}")
        addresses = []
        for _, _, _, _, sockaddr in infos:
            packed = socket.inet_aton(sockaddr[0])
            if packed not in addresses:
                addresses.append(packed)
        if not addresses:
            raise ProviderError(f"Could not resolve host '{host}'")
        return addresses
