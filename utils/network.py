import ipaddress

from flask import current_app, request

UNKNOWN_ADDRESS = "0.0.0.0"


def _valid_ip(value: str) -> bool:
    try:
        ipaddress.ip_address(value)
        return True
    except ValueError:
        return False


def client_address() -> str:
    """
    Address a login attempt is attributed to. Forwarding headers are only
    honored when TRUST_PROXY_HEADERS is set, otherwise any client could
    pick its own address and dodge lockouts.
    """
    if current_app.config.get("TRUST_PROXY_HEADERS", False):
        for header in ("CF-Connecting-IP", "X-Forwarded-For", "X-Real-IP"):
            raw = request.headers.get(header)
            if not raw:
                continue
            # first hop in a proxy chain is the client
            candidate = raw.split(",")[0].strip()
            if _valid_ip(candidate):
                return candidate

    remote = request.remote_addr or ""
    return remote if _valid_ip(remote) else UNKNOWN_ADDRESS
