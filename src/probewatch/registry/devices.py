"""Device identity: MAC normalization, vendor lookup, probe enrollment."""

import asyncio
import logging
import re

from mac_vendor_lookup import AsyncMacLookup, VendorNotFoundError

from probewatch.alerts.notifier import EventNotifier
from probewatch.clock import Clock, SystemClock
from probewatch.liveness.models import Probe
from probewatch.liveness.store import LivenessStore

logger = logging.getLogger(__name__)

# Vendor table is loaded on first lookup and kept for the process lifetime
_mac_lookup = AsyncMacLookup()

_MAC_RE = re.compile(r"^([0-9A-F]{2}:){5}[0-9A-F]{2}$")


def normalize_mac(mac: str) -> str:
    """Normalize a MAC address to uppercase colon-separated format."""
    cleaned = mac.strip().upper().replace("-", ":").replace(".", "")
    # Handle bare hex (e.g. "AABBCCDDEEFF")
    if ":" not in cleaned and len(cleaned) == 12:
        cleaned = ":".join(cleaned[i : i + 2] for i in range(0, 12, 2))
    return cleaned


def is_valid_mac(mac: str) -> bool:
    return bool(_MAC_RE.match(normalize_mac(mac)))


def lookup_vendor(mac: str) -> str | None:
    """Look up the device manufacturer from OUI database.

    Blocking; call from a worker thread, not from the event loop.
    """
    try:
        return asyncio.run(_mac_lookup.lookup(normalize_mac(mac)))
    except (VendorNotFoundError, KeyError):
        return None
    except Exception:
        logger.debug("Vendor lookup failed for %s", mac, exc_info=True)
        return None


def enroll_probe(
    store: LivenessStore,
    mac_address: str,
    wan_ip: str | None = None,
    lan_ip: str | None = None,
    notifier: EventNotifier | None = None,
    clock: Clock | None = None,
) -> Probe:
    """Return the active probe for a MAC, registering device and probe on first contact."""
    mac = normalize_mac(mac_address)
    existing = store.find_device(mac)
    vendor = None if existing else lookup_vendor(mac)

    probe, emitted = store.enroll(
        mac,
        now=(clock or SystemClock()).now(),
        vendor=vendor,
        wan_ip=wan_ip,
        lan_ip=lan_ip,
    )
    if notifier is not None:
        for item in emitted:
            try:
                notifier.publish(item)
            except Exception:
                logger.exception("Failed to publish event %s", item.event.id)
    return probe
