from ipaddress import ip_address

from fastapi import Request

from download_guard.settings import Config

_FORWARDED_HEADERS = ("cf-connecting-ip", "x-forwarded-for", "x-real-ip")
_MAX_USER_AGENT_LENGTH = 512


def normalize_ip(value: str | None) -> str | None:
    if not value:
        return None

    candidate = value.split(",", 1)[0].strip()
    try:
        return str(ip_address(candidate))
    except ValueError:
        return None


def normalize_user_agent(value: str | None) -> str | None:
    if not value:
        return None
    value = " ".join(value.split())
    return value[:_MAX_USER_AGENT_LENGTH] or None


class RequestIpResolver:
    def __init__(self, config: Config):
        self._trust_forwarded_ip = config.metering.trust_forwarded_ip

    def get_request_ip(self, request: Request) -> str | None:
        if self._trust_forwarded_ip:
            for header in _FORWARDED_HEADERS:
                ip = normalize_ip(request.headers.get(header))
                if ip:
                    return ip

        if request.client and request.client.host:
            return normalize_ip(request.client.host)

        return None


__all__ = (
    "RequestIpResolver",
    "normalize_ip",
    "normalize_user_agent",
)
