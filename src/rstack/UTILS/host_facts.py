"""
Utilities for discovering host facts used as stack defaults.
"""
import os
import pwd
import socket
from typing import Dict, Optional, Tuple

import psutil

FALLBACK_IP = "127.0.0.1"
FALLBACK_IDS = (1000, 1000)


def detect_host_ip(probe_address: str = "1.1.1.1") -> str:
    """
    Finds the LAN address the default route would use.

    No packet is sent: connecting a UDP socket only selects a source address.
    Falls back to the first non-loopback IPv4 interface address, then to
    127.0.0.1.
    """
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
            s.connect((probe_address, 80))
            address = s.getsockname()[0]
            if address and not address.startswith("127."):
                return address
    except OSError:
        pass

    for addresses in psutil.net_if_addrs().values():
        for addr in addresses:
            if addr.family == socket.AF_INET and not addr.address.startswith("127."):
                return addr.address
    return FALLBACK_IP


def detect_host_ids(home_root: str = "/home") -> Tuple[int, int]:
    """
    Picks the uid/gid that should own user-facing data directories.

    Never silently chooses root: tries the login user, then the first /home
    entry with uid >= 1000, then 1000:1000.
    """
    login = _login_name()
    if login and login != "root":
        ids = _ids_for(login)
        if ids and ids[0] != 0:
            return ids

    if os.path.isdir(home_root):
        for entry in sorted(os.listdir(home_root)):
            ids = _ids_for(entry)
            if ids and ids[0] >= 1000:
                return ids

    return FALLBACK_IDS


def host_facts() -> Dict[str, str]:
    """
    Facts available to ``${VAR}`` interpolation in stack files.
    """
    uid, gid = detect_host_ids()
    return {
        "HOST_IP": detect_host_ip(),
        "HOST_UID": str(uid),
        "HOST_GID": str(gid),
    }


def _login_name() -> Optional[str]:
    for var in ("SUDO_USER", "LOGNAME", "USER"):
        value = os.environ.get(var)
        if value:
            return value
    try:
        return os.getlogin()
    except OSError:
        return None


def _ids_for(user: str) -> Optional[Tuple[int, int]]:
    try:
        entry = pwd.getpwnam(user)
    except KeyError:
        return None
    return entry.pw_uid, entry.pw_gid
