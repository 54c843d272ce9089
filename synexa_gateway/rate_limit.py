"""In-memory sliding-window rate limiter for inbound requests."""
import threading
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional


class RateLimiter:
    """Per-account request limiting over a one-minute sliding window."""

    def __init__(self, requests_per_minute: int = 60, clock: Callable[[], datetime] = datetime.utcnow):
        """
        Initialize rate limiter.

        Args:
            requests_per_minute: Maximum requests allowed per minute per account
            clock: Returns the current (naive UTC) time
        """
        self.requests_per_minute = requests_per_minute
        self.clock = clock
        # Format: {account_id: [list of request timestamps]}
        self.account_requests: Dict[str, List[datetime]] = defaultdict(list)
        self._lock = threading.Lock()

    def is_allowed(self, account_id: str) -> bool:
        """
        Record a request and report whether it is within the limit.

        Returns:
            True if request is allowed, False if rate limit exceeded
        """
        if self.requests_per_minute <= 0:
            return True
        now = self.clock()
        cutoff = now - timedelta(minutes=1)

        with self._lock:
            # Clean up old timestamps
            requests = self.account_requests[account_id]
            requests[:] = [ts for ts in requests if ts > cutoff]

            if len(requests) >= self.requests_per_minute:
                return False

            requests.append(now)
            return True

    def reset(self, account_id: Optional[str] = None):
        """Reset rate limits for one account, or all accounts."""
        with self._lock:
            if account_id:
                self.account_requests.pop(account_id, None)
            else:
                self.account_requests.clear()
