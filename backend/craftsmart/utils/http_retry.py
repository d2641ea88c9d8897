"""HTTP calls to payment gateways with bounded exponential backoff.

Only transient failures are retried: connection errors, timeouts, HTTP 429
and 5xx. Anything else is returned to the caller on the first attempt.
"""

from __future__ import annotations

import logging
import time

import requests

logger = logging.getLogger(__name__)

TRANSIENT_STATUS = frozenset({429, 500, 502, 503, 504})
TRANSIENT_ERRORS = (requests.ConnectionError, requests.Timeout)


def is_transient_status(status_code: int) -> bool:
    return int(status_code) in TRANSIENT_STATUS or 500 <= int(status_code) < 600


def request_with_retry(
    method: str,
    url: str,
    max_attempts: int = 3,
    base_delay: float = 0.5,
    max_delay: float = 8.0,
    **kwargs,
) -> requests.Response:
    """Send one request, retrying transient failures.

    Returns the last response when the gateway keeps answering 429/5xx.
    The final attempt is made outside the loop, so its connection error or
    timeout reaches the caller unchanged.
    """
    kwargs.setdefault("timeout", 20)
    delay = base_delay
    attempts = max(1, int(max_attempts))

    for attempt in range(1, attempts):
        try:
            r = requests.request(method, url, **kwargs)
        except TRANSIENT_ERRORS as e:
            logger.warning("gateway %s %s failed (%s), attempt %s/%s", method, url, e, attempt, attempts)
        else:
            if not is_transient_status(r.status_code):
                return r
            logger.warning("gateway %s %s returned %s, attempt %s/%s", method, url, r.status_code, attempt, attempts)

        time.sleep(min(delay, max_delay))
        delay *= 2

    return requests.request(method, url, **kwargs)


def outcome_unknown(status_code: int | None = None) -> bool:
    """True when the gateway may have acted on a request we saw fail.

    A timeout or a 5xx after the request was sent does not say whether the
    charge or transfer went through.
    """
    return status_code is None or int(status_code) >= 500


def json_body(r: requests.Response) -> dict:
    if not r.content:
        return {}
    try:
        j = r.json()
    except ValueError:
        return {"raw": r.text[:500]}
    return j if isinstance(j, dict) else {"data": j}
