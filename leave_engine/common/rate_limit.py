"""Per-organization rate limiting (slowapi).

Org-wide jobs are keyed by the caller's ``X-Org-Id`` so one tenant
cannot starve the others; anonymous calls fall back to the client IP.
"""

from fastapi import Request
from slowapi import Limiter
from slowapi.util import get_remote_address


def org_or_remote_address(request: Request) -> str:
    org_id = request.headers.get("X-Org-Id", "").strip()
    if org_id:
        return f"org:{org_id}"
    return get_remote_address(request)


limiter = Limiter(
    key_func=org_or_remote_address,
    default_limits=["60/minute"],
)

# Reconciliation, bulk sync and the sweep touch every row of an org.
HEAVY_JOB_LIMIT = "6/minute"
