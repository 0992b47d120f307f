"""
Timestamp window validation against the trusted clock
"""

import time
from typing import Callable

DEFAULT_TOLERANCE_SECONDS = 300  # 5 minutes

Clock = Callable[[], int]


def system_clock() -> int:
    """Trusted wall clock in unix seconds"""
    return int(time.time())


def validate_timestamp(
    client_timestamp: int,
    trusted_now: int,
    tolerance: int = DEFAULT_TOLERANCE_SECONDS
) -> bool:
    """True iff the client timestamp is within tolerance seconds of trusted_now"""
    return abs(int(client_timestamp) - int(trusted_now)) <= tolerance
