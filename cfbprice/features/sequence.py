"""Per-team chronological game sequences.

"Prior games" are always taken by slicing a sorted sequence at the target
week, so a statistic for week ``w`` can only see rows from weeks ``< w``
of the same season.
"""

from __future__ import annotations

from bisect import bisect_left
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from ..records import TeamGameEfficiency

_FAR_FUTURE = datetime.max.replace(tzinfo=timezone.utc)


@dataclass(frozen=True, order=True)
class SequenceKey:
    season: int
    week: int
    ordinal: int


def _sort_key(row: TeamGameEfficiency) -> Tuple[int, datetime, str]:
    return (row.week, row.game_date or _FAR_FUTURE, row.game_id)


class TeamSequence:
    """One team's games in one season, ordered by (week, date, game id)."""

    def __init__(self, team_id: str, season: int, rows: Iterable[TeamGameEfficiency]) -> None:
        self.team_id = team_id
        self.season = season
        self.rows: List[TeamGameEfficiency] = sorted(
            (r for r in rows if r.team_id == team_id and r.season == season), key=_sort_key
        )
        self.weeks: List[int] = [r.week for r in self.rows]
        self._ordinals: Dict[str, int] = {r.game_id: i for i, r in enumerate(self.rows)}

    def __len__(self) -> int:
        return len(self.rows)

    def key(self, game_id: str) -> SequenceKey:
        ordinal = self._ordinals[game_id]
        return SequenceKey(self.season, self.rows[ordinal].week, ordinal)

    def before_week(self, week: int) -> List[TeamGameEfficiency]:
        """Rows from weeks strictly earlier than ``week``."""

        return self.rows[: bisect_left(self.weeks, week)]

    def previous(self, game_id: str) -> Optional[TeamGameEfficiency]:
        ordinal = self._ordinals.get(game_id)
        if not ordinal:
            return None
        return self.rows[ordinal - 1]

    def season_to_date(self, week: int, side: str, metric: str) -> Optional[float]:
        """Mean of ``{side}_{metric}`` over games before ``week`` (nulls ignored)."""

        values = [r.metric(side, metric) for r in self.before_week(week)]
        present = [v for v in values if v is not None]
        if not present:
            return None
        return float(np.mean(present))


class SeasonLedger:
    """Index of :class:`TeamSequence` objects keyed by (season, team)."""

    def __init__(self, rows: Iterable[TeamGameEfficiency]) -> None:
        grouped: Dict[Tuple[int, str], List[TeamGameEfficiency]] = defaultdict(list)
        for row in rows:
            grouped[(row.season, row.team_id)].append(row)
        self._sequences: Dict[Tuple[int, str], TeamSequence] = {
            (season, team): TeamSequence(team, season, team_rows)
            for (season, team), team_rows in grouped.items()
        }

    def team(self, season: int, team_id: str) -> TeamSequence:
        sequence = self._sequences.get((season, team_id))
        if sequence is None:
            sequence = TeamSequence(team_id, season, ())
        return sequence

    def rows(self) -> List[TeamGameEfficiency]:
        out: List[TeamGameEfficiency] = []
        for key in sorted(self._sequences):
            out.extend(self._sequences[key].rows)
        return out


def recent_first(rows: Sequence[TeamGameEfficiency], window: int) -> List[TeamGameEfficiency]:
    """The last ``window`` rows of a chronological slice, most recent first."""

    return list(reversed(rows[-window:])) if window > 0 else []
