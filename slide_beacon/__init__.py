"""slide-beacon: broadcast a URL over Eddystone (BLE) and mDNS."""

__version__ = "1.0"
