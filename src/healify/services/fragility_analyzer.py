"""
Selector fragility reporting.

Read-only aggregation over persisted runs and healing events. For every
test seen in the trailing window of runs:

    frequency = healing events / observed runs
    recency   = sum of run weights with a healing event / sum of observed run weights
    score     = 0.5 * frequency + 0.5 * recency

Run weights fall off linearly with age, ``w(i) = 1 - i / window`` where
``i = 0`` is the most recent run, so tests that needed healing lately
rank above tests that needed it long ago.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional

from ..core.models import FragilityReport, HealingStatus
from ..data_access.repository import HealingRepository

logger = logging.getLogger(__name__)

HEALING_STATUSES = frozenset({
    HealingStatus.HEALED_AUTO, HealingStatus.HEALED_MANUAL, HealingStatus.NEEDS_REVIEW,
})
FREQUENCY_WEIGHT = 0.5
RECENCY_WEIGHT = 0.5
SCORE_PRECISION = 4


@dataclass
class _TestStats:
    observed_runs: int = 0
    healing_events: int = 0
    observed_weight: float = 0.0
    event_weight: float = 0.0
    last_healed_at: Optional[datetime] = None


class FragilityAnalyzer:
    """Ranks a project's tests by how often their selectors needed healing."""

    def __init__(self, repository: HealingRepository, window: int = 50):
        if window < 1:
            raise ValueError(f"window must be positive, got {window}")
        self.repository = repository
        self.window = window

    async def analyze(self, project_id: str) -> List[FragilityReport]:
        """
        Compute fragility for every test observed in the trailing window.

        Raises:
            ProjectNotFound: If the project does not exist
        """
        await self.repository.get_project(project_id)
        runs = await self.repository.list_runs(project_id, self.window)

        stats: Dict[str, _TestStats] = {}
        for age, run in enumerate(runs):
            weight = 1.0 - age / self.window
            events = {e.test_name: e for e in await self.repository.list_events(run.id)}

            for result in await self.repository.list_results(run.id):
                entry = stats.setdefault(result.test_name, _TestStats())
                entry.observed_runs += 1
                entry.observed_weight += weight

                event = events.get(result.test_name)
                if event is None:
                    continue
                if event.status in HEALING_STATUSES:
                    entry.healing_events += 1
                    entry.event_weight += weight
                if event.status.is_healed:
                    healed_at = event.applied_at or event.created_at
                    if entry.last_healed_at is None or healed_at > entry.last_healed_at:
                        entry.last_healed_at = healed_at

        reports = [self._report(name, entry) for name, entry in stats.items()]
        reports.sort(key=lambda r: (-r.fragility_score, r.test_name))

        logger.debug(f"Fragility computed for {len(reports)} tests over {len(runs)} runs "
                     f"of project {project_id}")
        return reports

    def _report(self, test_name: str, entry: _TestStats) -> FragilityReport:
        frequency = entry.healing_events / entry.observed_runs if entry.observed_runs else 0.0
        recency = entry.event_weight / entry.observed_weight if entry.observed_weight else 0.0
        score = FREQUENCY_WEIGHT * frequency + RECENCY_WEIGHT * recency
        return FragilityReport(
            test_name=test_name,
            fragility_score=round(min(1.0, max(0.0, score)), SCORE_PRECISION),
            observed_runs=entry.observed_runs,
            healing_events=entry.healing_events,
            last_healed_at=entry.last_healed_at,
        )
