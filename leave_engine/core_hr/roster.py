"""Employee roster feed — fetch the external worker directory.

The directory endpoint answers a POST with::

    {"result": "Success", "statuscode": 200, "message": "...",
     "data": {"column": [...], "data": [ {employee}, ... ]}}

Any transport, HTTP or payload problem raises ``RosterUnavailableError``;
callers degrade to fallback joining dates instead of failing.
"""

from __future__ import annotations

import logging
import time
from datetime import date, datetime
from typing import Any, Dict, List, Optional

import requests
from pydantic import ValidationError

from leave_engine.common.constants import ROSTER_DATE_FORMAT
from leave_engine.common.exceptions import RosterUnavailableError
from leave_engine.config import Settings
from leave_engine.core_hr.schemas import RosterEmployee

logger = logging.getLogger(__name__)

WORKER_DIRECTORY_PAYLOAD: Dict[str, Any] = {
    "userBlocks": [1, 3, 4],
    "userWise": 0,
    "workerType": 0,
    "attribute": 0,
    "subAttributeId": 0,
}


def parse_joining_date(raw: Optional[str]) -> Optional[date]:
    """Parse ``07-Apr-2025`` (or ISO ``2025-04-07``); ``None`` if unparseable."""
    if not raw:
        return None
    text = raw.strip()
    for fmt in (ROSTER_DATE_FORMAT, "%Y-%m-%d"):
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return None


class RosterClient:
    """Thin ``requests`` client for the worker-directory endpoint."""

    def __init__(
        self,
        base_url: str,
        token: str = "",
        *,
        timeout: int = 30,
        retries: int = 3,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.retries = retries
        self.session = session or requests.Session()
        self.session.headers.update({
            "Accept": "application/json",
            "Content-Type": "application/json",
            "User-Agent": "LeaveEngine/1.0 RosterSync",
        })
        if token:
            self.session.headers["Authorization"] = f"Bearer {token}"

    @classmethod
    def from_settings(cls, settings: Settings) -> Optional["RosterClient"]:
        if not settings.roster_enabled:
            return None
        return cls(
            settings.ROSTER_API_URL,
            settings.ROSTER_API_TOKEN,
            timeout=settings.ROSTER_TIMEOUT_SECONDS,
        )

    # ── HTTP with retry ───────────────────────────────────────────────

    def _post(self, path: str, payload: Dict[str, Any]) -> Any:
        url = f"{self.base_url}{path}"
        for attempt in range(1, self.retries + 1):
            try:
                resp = self.session.post(url, json=payload, timeout=self.timeout)
                if resp.status_code == 429:
                    wait = int(resp.headers.get("Retry-After", 5))
                    logger.warning("Roster feed rate-limited, waiting %ds", wait)
                    time.sleep(wait)
                    continue
                resp.raise_for_status()
                return resp.json()
            except (requests.RequestException, ValueError) as e:
                if attempt < self.retries:
                    logger.warning(
                        "Roster request failed (attempt %d/%d): %s",
                        attempt, self.retries, e,
                    )
                    time.sleep(attempt)
                    continue
                raise RosterUnavailableError(str(e)) from e
        raise RosterUnavailableError(f"Roster feed kept rate-limiting {url}")

    # ── Public API ────────────────────────────────────────────────────

    def fetch_employees(self) -> List[RosterEmployee]:
        """Return the directory; raises ``RosterUnavailableError``."""
        body = self._post("/reports/worker-master-leave", WORKER_DIRECTORY_PAYLOAD)
        if not isinstance(body, dict) or body.get("result") != "Success":
            message = body.get("message") if isinstance(body, dict) else body
            raise RosterUnavailableError(f"Roster feed returned an error: {message}")

        records = (body.get("data") or {}).get("data") or []
        employees: List[RosterEmployee] = []
        for record in records:
            try:
                employees.append(RosterEmployee.model_validate(record))
            except ValidationError as e:
                logger.warning("Skipping malformed roster record %r: %s", record, e)
        logger.info("Fetched %d employees from roster feed", len(employees))
        return employees

    def try_fetch_employees(self) -> Optional[List[RosterEmployee]]:
        """Like ``fetch_employees`` but logs and returns ``None`` on failure."""
        try:
            return self.fetch_employees()
        except RosterUnavailableError as e:
            logger.warning("Roster feed unavailable, using fallback joining dates: %s", e)
            return None
