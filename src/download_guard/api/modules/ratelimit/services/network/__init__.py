from download_guard.api.modules.ratelimit.services.network.common import (
    RequestIpResolver,
    normalize_ip,
    normalize_user_agent,
)

__all__ = ("RequestIpResolver", "normalize_ip", "normalize_user_agent")
