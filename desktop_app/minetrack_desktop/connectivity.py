from __future__ import annotations

import logging

import requests

logger = logging.getLogger(__name__)


class ConnectivityOracle:
    """Answers "are we online" with a fresh probe on every call.

    Any HTTP answer from the API host counts as online, including error
    statuses; only a failure to get a response counts as offline.
    """

    def __init__(self, base_url: str, timeout: float = 3.0) -> None:
        self.base_url = base_url.rstrip("/") + "/"
        self.timeout = timeout

    def is_online(self) -> bool:
        try:
            requests.head(self.base_url, timeout=self.timeout, allow_redirects=False)
        except requests.RequestException as exc:
            logger.info("Connectivity probe failed: %s", exc)
            return False
        return True


__all__ = ["ConnectivityOracle"]
