"""
Tests for the Eddystone and mDNS advertisement providers.

BlueZ tools and zeroconf are mocked; no radio or network is touched.
"""

import socket
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from slide_beacon.models import ProviderError
from slide_beacon.providers import (
    EddystoneProvider,
    MdnsProvider,
    build_advertising_data,
    encode_eddystone_url,
    parse_hci_status,
)
from slide_beacon.urls import decompose

URL = "https://example.com/talk"


class TestEddystoneEncoding:
    """Eddystone-URL compression"""

    def test_https_with_expansion(self):
        scheme, encoded = encode_eddystone_url(URL)

        assert scheme == 0x03
        assert encoded == b"example\x00talk"

    def test_www_prefix_wins(self):
        scheme, encoded = encode_eddystone_url("http://www.google.com")

        assert scheme == 0x00
        assert encoded == b"google\x07"

    def test_unsupported_scheme(self):
        with pytest.raises(ProviderError, match="Invalid URL scheme"):
            encode_eddystone_url("ftp://example.com")

    def test_too_long(self):
        with pytest.raises(ProviderError, match="too long"):
            encode_eddystone_url("https://example.com/a-rather-long-slide-path")

    def test_whitespace_rejected(self):
        with pytest.raises(ProviderError):
            encode_eddystone_url("https://exa mple.com")

    def test_advertising_data_layout(self):
        length, data = build_advertising_data(URL, tx_power=-21)

        assert len(data) == 31
        assert length == 14 + len(b"example\x00talk")
        assert data[:7] == bytes([0x02, 0x01, 0x06, 0x03, 0x03, 0xAA, 0xFE])
        assert data[7] == length - 8          # Service data AD length
        assert data[8:12] == bytes([0x16, 0xAA, 0xFE, 0x10])
        assert data[12] == 0xEB               # -21 dBm as a signed byte
        assert data[13] == 0x03
        assert data[length:] == b"\x00" * (31 - length)


def _fake_process(returncode=0, stdout=b"", stderr=b""):
    proc = MagicMock()
    proc.returncode = returncode
    proc.communicate = AsyncMock(return_value=(stdout, stderr))
    return proc


def _hcitool_output(ocf, status):
    return (
        f"< HCI Command: ogf 0x08, ocf {ocf}, plen 1\n"
        f"  01 \n"
        f"> HCI Event: 0x0e plen 4\n"
        f"  01 0A 20 {status:02X} \n"
    ).encode()


class TestHciStatus:
    def test_command_complete_success(self):
        assert parse_hci_status(_hcitool_output("0x000a", 0x00).decode()) == 0

    def test_command_complete_error(self):
        assert parse_hci_status(_hcitool_output("0x000a", 0x0C).decode()) == 0x0C

    def test_command_status_event(self):
        output = "< HCI Command: ogf 0x08, ocf 0x0006, plen 15\n  a0 00 \n> HCI Event: 0x0f plen 4\n  12 01 06 20 \n"

        assert parse_hci_status(output) == 0x12

    def test_no_event_printed(self):
        assert parse_hci_status("") is None
        assert parse_hci_status("< HCI Command: ogf 0x08, ocf 0x000a, plen 1\n  01 \n") is None


class TestEddystoneProvider:
    @pytest.mark.asyncio
    async def test_start_runs_bluez_commands(self):
        provider = EddystoneProvider(hci_device="hci1")
        with patch("slide_beacon.providers.shutil.which", return_value="/usr/bin/tool"), \
             patch("asyncio.create_subprocess_exec", AsyncMock(return_value=_fake_process())) as exec_mock:
            data = await provider.start(URL)

        commands = [c.args for c in exec_mock.call_args_list]
        assert commands[0] == ("hciconfig", "hci1", "up")
        assert [c[5] for c in commands[1:]] == ["0x0006", "0x0008", "0x000a"]
        assert commands[-1][-1] == "01"
        assert len(data) == 31
        assert provider.advertising is True

    @pytest.mark.asyncio
    async def test_missing_tools(self):
        with patch("slide_beacon.providers.shutil.which", return_value=None):
            with pytest.raises(ProviderError, match="not found in PATH"):
                await EddystoneProvider().start(URL)

    @pytest.mark.asyncio
    async def test_command_failure(self):
        failing = _fake_process(returncode=1, stderr=b"Can't init device hci0")
        with patch("slide_beacon.providers.shutil.which", return_value="/usr/bin/tool"), \
             patch("asyncio.create_subprocess_exec", AsyncMock(return_value=failing)):
            with pytest.raises(ProviderError, match="Can't init device"):
                await EddystoneProvider().start(URL)

    @pytest.mark.asyncio
    async def test_invalid_url_fails_before_touching_adapter(self):
        with patch("asyncio.create_subprocess_exec", AsyncMock()) as exec_mock:
            with pytest.raises(ProviderError):
                await EddystoneProvider().start("example.com")

        exec_mock.assert_not_called()

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self):
        provider = EddystoneProvider()
        with patch("slide_beacon.providers.shutil.which", return_value="/usr/bin/tool"), \
             patch("asyncio.create_subprocess_exec", AsyncMock(return_value=_fake_process())) as exec_mock:
            await provider.stop()
            assert exec_mock.call_count == 0

            await provider.start(URL)
            await provider.stop()
            await provider.stop()

        disable_calls = [c.args for c in exec_mock.call_args_list
                         if c.args[0] == "hcitool" and c.args[5] == "0x000a" and c.args[-1] == "00"]
        assert len(disable_calls) == 1
        assert provider.advertising is False

    @pytest.mark.asyncio
    async def test_controller_rejection_raises(self):
        rejected = _fake_process(stdout=_hcitool_output("0x000a", 0x0C))
        provider = EddystoneProvider()
        with patch("slide_beacon.providers.shutil.which", return_value="/usr/bin/tool"), \
             patch("asyncio.create_subprocess_exec", AsyncMock(return_value=rejected)):
            with pytest.raises(ProviderError, match="HCI status 0x0c"):
                await provider.start(URL)

        assert provider.advertising is False

    @pytest.mark.asyncio
    async def test_restart_while_advertising_replaces_data_only(self):
        provider = EddystoneProvider()
        with patch("slide_beacon.providers.shutil.which", return_value="/usr/bin/tool"), \
             patch("asyncio.create_subprocess_exec", AsyncMock(return_value=_fake_process())) as exec_mock:
            await provider.start(URL)
            exec_mock.reset_mock()
            await provider.start("https://example.org/b")

        commands = [c.args for c in exec_mock.call_args_list]
        assert len(commands) == 1
        assert commands[0][:6] == ("hcitool", "-i", "hci0", "cmd", "0x08", "0x0008")
        assert provider.advertising is True


class TestMdnsProvider:
    @pytest.fixture
    def zeroconf(self):
        instance = MagicMock()
        instance.async_register_service = AsyncMock()
        instance.async_unregister_service = AsyncMock()
        instance.async_close = AsyncMock()
        with patch("slide_beacon.providers.AsyncZeroconf", return_value=instance):
            yield instance

    @pytest.fixture
    def provider(self):
        provider = MdnsProvider()
        provider._resolve_addresses = AsyncMock(return_value=[socket.inet_aton("93.184.216.34")])
        return provider

    @pytest.mark.asyncio
    async def test_start_registers_service(self, provider, zeroconf):
        info = await provider.start((URL, decompose(URL)))

        zeroconf.async_register_service.assert_awaited_once_with(info)
        assert info.type == "_https._tcp.local."
        assert info.name.endswith("._https._tcp.local.")
        assert info.port == 443
        assert info.server == "example.com."
        assert provider.service_info is info

    @pytest.mark.asyncio
    async def test_http_uses_port_80(self, provider, zeroconf):
        url = "http://example.org/deck/1"
        info = await provider.start((url, decompose(url)))

        assert info.type == "_http._tcp.local."
        assert info.port == 80

    @pytest.mark.asyncio
    async def test_missing_host(self, provider, zeroconf):
        with pytest.raises(ProviderError, match="no host"):
            await provider.start(("example", decompose("example")))

        zeroconf.async_register_service.assert_not_called()

    @pytest.mark.asyncio
    async def test_registration_failure(self, provider, zeroconf):
        zeroconf.async_register_service.side_effect = OSError("multicast unavailable")

        with pytest.raises(ProviderError, match="multicast unavailable"):
            await provider.start((URL, decompose(URL)))

    @pytest.mark.asyncio
    async def test_stop_unregisters_once(self, provider, zeroconf):
        info = await provider.start((URL, decompose(URL)))

        await provider.stop()
        await provider.stop()

        zeroconf.async_unregister_service.assert_awaited_once_with(info)
        zeroconf.async_close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_stop_before_start(self):
        await MdnsProvider().stop()

    @pytest.mark.asyncio
    async def test_resolve_ip_literal(self):
        addresses = await MdnsProvider()._resolve_addresses("127.0.0.1", 80)

        assert addresses == [socket.inet_aton("127.0.0.1")]

    def test_instance_name_limited_to_dns_label(self):
        name = MdnsProvider._instance_name("https://example.com/" + "x" * 100)

        assert "." not in name
        assert len(name.encode("utf-8")) <= 63
