# leadflow/core/dispatch/selector.py
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Optional

from leadflow.core.domain import Closer
from leadflow.core.ports import AsyncDispatchRepository
from leadflow.infra.logging_config import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class Selection:
    """A chosen closer plus the active-assignment count it was chosen with"""
    closer: Closer
    active_count: int


class CloserSelector:
    """
    Picks the next closer for a team.

    Order: lowest ``lineup_order`` first, then fewest active assignments,
    then name. Read-only.
    """

    def __init__(self, repo: AsyncDispatchRepository, *, strict_round_robin: bool = False):
        self._repo = repo
        self._strict = strict_round_robin

    async def select(self, team_id: str, *, exclude_uid: Optional[str] = None) -> Optional[Selection]:
        candidates = await self._repo.list_on_duty_closers(team_id)
        if exclude_uid:
            candidates = [c for c in candidates if c.uid != exclude_uid]
        if not candidates:
            logger.info(f"No on-duty closers for team {team_id}", extra={"team_id": team_id})
            return None

        counts = await asyncio.gather(*(self._repo.count_active_assignments(c.uid) for c in candidates))
        ranked = sorted(zip(candidates, counts), key=lambda pair: (pair[0].lineup_order, pair[1], pair[0].name))

        if self._strict:
            ranked = [pair for pair in ranked if pair[1] == 0]
            if not ranked:
                logger.info(f"All on-duty closers busy for team {team_id} (strict round robin)", extra={"team_id": team_id})
                return None

        closer, active = ranked[0]
        logger.debug(
            f"Selected closer {closer.uid} (order={closer.lineup_order}, active={active})",
            extra={"team_id": team_id, "closer_id": closer.uid},
        )
        return Selection(closer=closer, active_count=active)

    async def select_closer(self, team_id: str) -> Optional[Closer]:
        selection = await self.select(team_id)
        return selection.closer if selection else None
