from __future__ import annotations
import ipaddress
import hashlib
from typing import List, Optional, Tuple
from fastapi import Request

from iptrust.core.settings import get_settings

DEFAULT_LABEL_LENGTH = 10


def normalize_ip(value) -> str:
    """Trimmed IP string, or "" for anything unusable (None, non-str, blank)."""
    if not isinstance(value, str):
        return ""
    return value.strip()


class IdentityHasher:
    """
    Salted one-way mapping ip -> opaque profile hash.

    hash = sha256(salt ":" ip), hex encoded. Pure: the same salt and ip always
    produce the same value, across restarts.
    """

    def __init__(self, salt: str):
        self.salt = salt

    def hash(self, ip) -> Optional[str]:
        normalized = normalize_ip(ip)
        if not normalized:
            return None
        return hashlib.sha256(f"{self.salt}:{normalized}".encode("utf-8")).hexdigest()

    @staticmethod
    def short_label(hash_value: Optional[str], length: int = DEFAULT_LABEL_LENGTH) -> Optional[str]:
        # cosmetic only
        if not hash_value:
            return None
        if not isinstance(length, int) or isinstance(length, bool) or length <= 3:
            length = DEFAULT_LABEL_LENGTH
        return hash_value[:length].upper()


def hash_ip(ip, salt: Optional[str] = None) -> Optional[str]:
    if salt is None:
        salt = get_settings().IP_PROFILE_SALT
    return IdentityHasher(salt).hash(ip)


short_label = IdentityHasher.short_label


# --- Client IP extraction (trusted proxy aware) ------------------------------

def parse_cidrs(cidrs: List[str]) -> List[ipaddress._BaseNetwork]:
    nets: List[ipaddress._BaseNetwork] = []
    for part in cidrs:
        p = part.strip()
        if not p:
            continue
        try:
            nets.append(ipaddress.ip_network(p, strict=False))
        except ValueError:
            # ignore invalid cidr token
            continue
    return nets


def _is_trusted(ip: str, trusted: List[ipaddress._BaseNetwork]) -> bool:
    try:
        ipobj = ipaddress.ip_address(ip)
    except ValueError:
        return False
    return any(ipobj in net for net in trusted)


def get_client_ip(request: Request, trusted_cidrs: Optional[List[str]] = None) -> str:
    """
    Socket peer address, or the left-most X-Forwarded-For entry when the peer
    is a trusted proxy.
    """
    if trusted_cidrs is None:
        trusted_cidrs = get_settings().trusted_proxy_cidrs()
    remote = request.client.host if request.client else ""
    xff = request.headers.get("x-forwarded-for")
    if xff and _is_trusted(remote, parse_cidrs(trusted_cidrs)):
        first = xff.split(",")[0].strip()
        try:
            ipaddress.ip_address(first)
            return first
        except ValueError:
            return remote
    return remote


def get_client_info(request: Request, hasher: Optional[IdentityHasher] = None) -> Tuple[str, Optional[str]]:
    settings = get_settings()
    hasher = hasher or IdentityHasher(settings.IP_PROFILE_SALT)
    ip = get_client_ip(request, settings.trusted_proxy_cidrs())
    return ip, hasher.hash(ip)
