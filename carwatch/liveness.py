# carwatch/liveness.py
"""Lightweight HTTP HEAD probes used to tell whether a stale listing is still up."""
from dataclasses import dataclass
from typing import Optional

import requests

from .utils import get_logger, retry

logger = get_logger("carwatch.liveness")

DEAD_STATUSES = (404, 410)


@dataclass(frozen=True)
class ProbeResult:
    http_status: int
    is_alive: bool
    redirect_url: Optional[str] = None
    attempts: int = 1

    @property
    def is_dead(self) -> bool:
        return self.http_status in DEAD_STATUSES


def classify_status(http_status: int) -> bool:
    return 200 <= http_status < 400


class LivenessProbe:
    """HEAD a listing URL, retrying transport failures with exponential backoff.

    A probe that never gets an answer, including one that times out, comes
    back as status 0 and not alive.
    """

    def __init__(self, timeout: float = 10, attempts: int = 3, backoff: float = 5,
                 user_agent: str = "Mozilla/5.0 (compatible; CarwatchBot/1.0)", session: Optional[requests.Session] = None):
        self.timeout = timeout
        self.attempts = max(1, attempts)
        self.backoff = backoff
        self.user_agent = user_agent
        self.session = session or requests.Session()

    @classmethod
    def from_settings(cls, settings) -> "LivenessProbe":
        return cls(
            timeout=settings.HEAD_CHECK_TIMEOUT_SECONDS,
            attempts=settings.HEAD_CHECK_ATTEMPTS,
            backoff=settings.HEAD_CHECK_BACKOFF_SECONDS,
            user_agent=settings.HEAD_CHECK_USER_AGENT,
        )

    def check(self, vehicle_id: str, url: str) -> ProbeResult:
        calls = []

        @retry(requests.RequestException, tries=self.attempts, delay=self.backoff, backoff=2, logger=logger)
        def head():
            calls.append(1)
            return self.session.head(
                url,
                timeout=self.timeout,
                allow_redirects=True,
                headers={"User-Agent": self.user_agent},
            )

        try:
            resp = head()
        except requests.RequestException as e:
            logger.error("HEAD check failed for %s after %d attempts: %s", vehicle_id, len(calls), e)
            return ProbeResult(0, False, None, len(calls))

        redirect_url = resp.url if resp.history else None
        result = ProbeResult(resp.status_code, classify_status(resp.status_code), redirect_url, len(calls))
        logger.info("HEAD check for %s: %s %s", vehicle_id, resp.status_code, "alive" if result.is_alive else "dead")
        return result
