"""
Harness Helpers

Polling and HTTP probing utilities shared by the verifier and orchestrator.
"""

import time
from typing import Callable, Tuple

import requests


def wait_for_condition(
    condition_func: Callable[[], bool],
    timeout: float = 5.0,
    interval: float = 0.1,
) -> bool:
    """
    Poll a condition function until it returns True or timeout expires.

    Args:
        condition_func: Function that returns True when condition is met
        timeout: Maximum time to wait in seconds
        interval: Time between checks in seconds

    Returns:
        True if condition met before timeout, False otherwise
    """
    deadline = time.monotonic() + timeout
    while True:
        if condition_func():
            return True
        if time.monotonic() >= deadline:
            return False
        time.sleep(interval)


def probe_http(url: str, timeout: float = 2.0) -> Tuple[bool, str]:
    """
    Send one GET to ``url``.

    Returns:
        (reachable, message). Any HTTP status counts as reachable.
    """
    try:
        resp = requests.get(url, timeout=timeout)
    except requests.exceptions.Timeout:
        return False, f"HTTP probe {url} timed out after {timeout:.1f}s"
    except requests.exceptions.RequestException as e:
        return False, f"HTTP probe {url} failed: {type(e).__name__}"
    return True, f"HTTP probe {url} answered {resp.status_code}"
