"""
Operating Context Fingerprint

Identifies where an audited action happened (device/network identity) and
how (the running application's name, version and content hash). Every probe
is best-effort: a failure degrades to the next, lower-fidelity identifier and
never raises.
"""

import hashlib
import logging
import socket
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import psutil

from . import __version__

logger = logging.getLogger(__name__)


APP_NAME = "teller-ledger"

_PACKAGE_FILE = Path(__file__).with_name("__init__.py")


@dataclass(frozen=True)
class OperatingContext:
    """Where and how an audited action ran"""
    where: str
    how: str


def get_mac_address() -> Optional[str]:
    """First hardware address of an up, non-loopback interface"""
    try:
        stats = psutil.net_if_stats()
        for name, addresses in psutil.net_if_addrs().items():
            nic = stats.get(name)
            if nic is None or not nic.isup:
                continue
            for address in addresses:
                if address.family != psutil.AF_LINK or not address.address:
                    continue
                octets = address.address.replace("-", ":").split(":")
                if all(octet == "00" for octet in octets):
                    continue  # loopback reports a zero address
                return "-".join(octet.upper().zfill(2) for octet in octets)
    except Exception as e:
        logger.debug(f"MAC address lookup failed: {e}")
    return None


def get_ip_address() -> Optional[str]:
    """First IPv4 address the host name resolves to"""
    try:
        infos = socket.getaddrinfo(socket.gethostname(), None, socket.AF_INET)
        for info in infos:
            return info[4][0]
    except Exception as e:
        logger.debug(f"IP address lookup failed: {e}")
    return None


def get_host_name() -> str:
    try:
        return socket.gethostname() or "UnknownHost"
    except Exception:
        return "UnknownHost"


def sha256_of_file(path: Optional[Path]) -> Optional[str]:
    """Hex SHA-256 of a file, or None if it cannot be read"""
    try:
        if path is None or not path.is_file():
            return None
        digest = hashlib.sha256()
        with open(path, "rb") as f:
            for chunk in iter(lambda: f.read(65536), b""):
                digest.update(chunk)
        return digest.hexdigest().upper()
    except Exception as e:
        logger.debug(f"Hashing {path} failed: {e}")
        return None


def _running_entry_file() -> Optional[Path]:
    try:
        if sys.argv and sys.argv[0]:
            candidate = Path(sys.argv[0])
            if candidate.is_file():
                return candidate
    except Exception:
        pass
    return _PACKAGE_FILE


def get_application_metadata(name: str = APP_NAME) -> str:
    """Name, version and content hash of the running application"""
    file_hash = sha256_of_file(_running_entry_file()) or "UnavailableHash"
    return f"Name={name or 'UnknownApp'}; Version={__version__ or 'UnknownVersion'}; Sha256={file_hash}"


def get_operating_context(app_name: str = APP_NAME) -> OperatingContext:
    """Compute the where/how fingerprint for one audit event"""
    where = get_mac_address() or get_ip_address() or get_host_name()
    return OperatingContext(where=where, how=get_application_metadata(app_name))
