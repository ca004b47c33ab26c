from datetime import datetime, timezone
from typing import Dict, Optional
import time

from .base import EntryFilter, FilterContext, FilterResult

DAY_NAMES = ('Monday', 'Tuesday', 'Wednesday', 'Thursday', 'Friday', 'Saturday', 'Sunday')


class TimeBasedFilter(EntryFilter):
    """Stateless UTC schedule: blocked weekdays, blocked hours and an allowed-hours band."""

    name = 'time_based'
    label = 'Time-Based Filter'

    def check(self, now: float) -> FilterResult:
        settings = self.settings
        if not settings['enabled']:
            return FilterResult(True, 'Time filter disabled')

        moment = datetime.fromtimestamp(now, tz=timezone.utc)
        weekday = moment.weekday()
        hour = moment.hour

        if weekday in (settings.get('blocked_days') or []):
            return FilterResult(False, f"Trading blocked on {DAY_NAMES[weekday]}")

        if hour in (settings.get('blocked_hours') or []):
            return FilterResult(False, f"Trading blocked at {hour}:00 UTC")

        start = settings.get('allowed_hours_start')
        end = settings.get('allowed_hours_end')
        if start is not None and end is not None:
            if hour < start or hour >= end:
                return FilterResult(False, f"Outside trading hours ({start}:00-{end}:00 UTC)")

        return FilterResult(True, f"Trading allowed ({hour}:00 UTC)")

    def evaluate(self, context: FilterContext) -> FilterResult:
        return self.check(context.now)

    def describe_schedule(self) -> str:
        settings = self.settings
        parts = []
        blocked_days = settings.get('blocked_days') or []
        if blocked_days:
            parts.append('Blocked days: ' + ', '.join(DAY_NAMES[d][:3] for d in blocked_days))
        start = settings.get('allowed_hours_start')
        end = settings.get('allowed_hours_end')
        if start is not None and end is not None:
            parts.append(f"Hours: {start}:00-{end}:00 UTC")
        blocked_hours = settings.get('blocked_hours') or []
        if blocked_hours:
            parts.append('Blocked hours: ' + ', '.join(str(h) for h in blocked_hours) + ' UTC')
        return ' | '.join(parts) if parts else 'No restrictions'

    def status(self, now: Optional[float] = None) -> Dict:
        result = self.check(time.time() if now is None else now)
        return {
            'enabled': self.enabled,
            'allowed': result.allowed,
            'reason': result.reason,
            'schedule': self.describe_schedule(),
        }
