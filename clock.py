# clock.py
from datetime import datetime, timedelta, timezone


class SystemClock:
    def now(self):
        # naive UTC, matching the columns in models.py
        return datetime.now(timezone.utc).replace(tzinfo=None)


class FixedClock:
    def __init__(self, at):
        self._at = at

    def now(self):
        return self._at

    def advance(self, **kwargs):
        self._at = self._at + timedelta(**kwargs)
        return self._at
