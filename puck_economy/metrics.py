"""Prometheus-style counters for puck-economy.

Rendered as plain text lines by the ``/metrics`` route.
"""

from __future__ import annotations

import time
from collections import Counter
from dataclasses import dataclass, field


@dataclass
class EconomyMetrics:
    started_at: float = field(default_factory=time.time)
    requests: Counter = field(default_factory=Counter)
    errors: Counter = field(default_factory=Counter)
    purchases: Counter = field(default_factory=Counter)
    rewards: Counter = field(default_factory=Counter)
    launches_queued_total: int = 0
    broadcasts_failed_total: int = 0

    @property
    def uptime_seconds(self) -> float:
        return time.time() - self.started_at

    def collect_lines(self) -> list[str]:
        lines = [f"economy_uptime_seconds {self.uptime_seconds:.0f}"]

        for route, count in sorted(self.requests.items()):
            lines.append(f'economy_requests_total{{route="{route}"}} {count}')
        for kind, count in sorted(self.errors.items()):
            lines.append(f'economy_errors_total{{kind="{kind}"}} {count}')
        for result, count in sorted(self.purchases.items()):
            lines.append(f'economy_purchases_total{{result="{result}"}} {count}')
        for result, count in sorted(self.rewards.items()):
            lines.append(f'economy_rewards_total{{result="{result}"}} {count}')

        lines.append(f"economy_launches_queued_total {self.launches_queued_total}")
        lines.append(f"economy_broadcasts_failed_total {self.broadcasts_failed_total}")
        return lines

    def render(self) -> str:
        return "\n".join(self.collect_lines()) + "\n"
