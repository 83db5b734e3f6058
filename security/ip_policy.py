import enum
import ipaddress
from typing import Iterable


class PolicyVerdict(str, enum.Enum):
    WHITELISTED = "whitelisted"
    BLACKLISTED = "blacklisted"
    UNLISTED = "unlisted"


def _parse_address(address: str):
    try:
        ip = ipaddress.ip_address((address or "").strip())
    except ValueError:
        return None
    # ::ffff:10.0.0.5 should match a 10.0.0.0/8 entry
    if ip.version == 6 and ip.ipv4_mapped is not None:
        return ip.ipv4_mapped
    return ip


class _AddressList:
    __slots__ = ("_literals", "_networks")

    def __init__(self, entries: Iterable[str]):
        self._literals = set()
        self._networks = []
        for entry in entries or ():
            entry = entry.strip()
            if not entry:
                continue
            self._literals.add(entry)
            try:
                self._networks.append(ipaddress.ip_network(entry, strict=False))
            except ValueError:
                # unparseable entries only ever match literally
                continue

    def __contains__(self, address: str) -> bool:
        if address in self._literals:
            return True
        ip = _parse_address(address)
        if ip is None:
            return False
        return any(ip in net for net in self._networks)


class IPPolicy:
    """
    Whitelist/blacklist evaluation for a single config snapshot.
    Whitelist always wins; blacklist is consulted only for unlisted addresses.
    """

    def __init__(self, whitelist: Iterable[str] = (), blacklist: Iterable[str] = ()):
        self._whitelist = _AddressList(whitelist)
        self._blacklist = _AddressList(blacklist)

    @classmethod
    def from_config(cls, config) -> "IPPolicy":
        return cls(config.ip_whitelist, config.ip_blacklist)

    def evaluate(self, address: str) -> PolicyVerdict:
        if address in self._whitelist:
            return PolicyVerdict.WHITELISTED
        if address in self._blacklist:
            return PolicyVerdict.BLACKLISTED
        return PolicyVerdict.UNLISTED
