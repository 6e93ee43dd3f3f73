"""Record types persisted or exchanged between pipeline stages.

Every statistic is ``Optional``: ``None`` means "unknown" and is never
interchangeable with a real ``0.0``.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple, Type, TypeVar

T = TypeVar("T")

MARKETS = ("spread", "total", "moneyline")
METRICS = ("epa", "sr", "explosiveness", "ppo", "havoc")


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse ISO strings (``Z`` suffix allowed) into aware UTC datetimes."""

    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        stamp = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            stamp = datetime.fromisoformat(text)
        except ValueError:
            return None
    if stamp.tzinfo is None:
        return stamp.replace(tzinfo=timezone.utc)
    return stamp.astimezone(timezone.utc)


@dataclass(frozen=True)
class RawLineQuote:
    game_id: str
    market: str
    book: str
    line_value: Optional[float] = None
    closing_value: Optional[float] = None
    observed_at: Optional[datetime] = None
    source: str = ""
    # Side the value is quoted for ("home"/"away"); None when the feed omits it.
    side: Optional[str] = None


@dataclass(frozen=True)
class QuoteWindow:
    kind: str  # "pre_kick" or "full_history"
    start: Optional[datetime] = None
    end: Optional[datetime] = None


@dataclass(frozen=True)
class ConsensusLine:
    game_id: str
    market: str
    value: Optional[float]
    book_count: int
    raw_count: int
    excluded_count: int
    window_kind: str
    window_start: Optional[datetime] = None
    window_end: Optional[datetime] = None
    favored_side: Optional[str] = None
    dog_value: Optional[float] = None
    books: Tuple[str, ...] = ()
    version: str = ""

    @property
    def is_priced(self) -> bool:
        return self.value is not None

    @property
    def pre_kick(self) -> bool:
        return self.window_kind == "pre_kick"


@dataclass(frozen=True)
class GameInfo:
    game_id: str
    season: int
    week: int
    home_team: str
    away_team: str
    kickoff: Optional[datetime] = None
    neutral_site: bool = False
    completed: bool = False
    home_points: Optional[float] = None
    away_points: Optional[float] = None
    season_type: str = "regular"

    @property
    def home_margin(self) -> Optional[float]:
        if self.home_points is None or self.away_points is None:
            return None
        return float(self.home_points) - float(self.away_points)


@dataclass(frozen=True)
class TeamGameEfficiency:
    team_id: str
    opponent_id: str
    game_id: str
    season: int
    week: int
    off_epa: Optional[float] = None
    off_sr: Optional[float] = None
    off_explosiveness: Optional[float] = None
    off_ppo: Optional[float] = None
    off_havoc: Optional[float] = None
    def_epa: Optional[float] = None
    def_sr: Optional[float] = None
    def_explosiveness: Optional[float] = None
    def_ppo: Optional[float] = None
    def_havoc: Optional[float] = None
    game_date: Optional[datetime] = None
    is_home: Optional[bool] = None
    neutral_site: bool = False

    def metric(self, side: str, name: str) -> Optional[float]:
        return getattr(self, f"{side}_{name}")


@dataclass(frozen=True)
class TeamPrior:
    season: int
    team_id: str
    talent: Optional[float] = None
    returning_offense: Optional[float] = None
    returning_defense: Optional[float] = None


@dataclass(frozen=True)
class TeamSeasonRating:
    season: int
    team_id: str
    model_version: str
    rating: Optional[float] = None
    offense: Optional[float] = None
    defense: Optional[float] = None
    games: int = 0
    hfa_team: Optional[float] = None
    hfa_raw: Optional[float] = None
    hfa_n_home: int = 0
    hfa_n_away: int = 0
    hfa_shrink_w: Optional[float] = None


@dataclass(frozen=True)
class TeamGameAdjustedFeature:
    game_id: str
    team_id: str
    feature_version: str
    season: int
    week: int
    opponent_id: str
    values: Dict[str, Optional[float]] = field(default_factory=dict)
    low_sample_3g: bool = False
    low_sample_5g: bool = False
    is_home: Optional[bool] = None
    neutral_site: bool = False
    conference_game: Optional[bool] = None
    is_fbs: bool = False
    is_p5: bool = False
    is_g5: bool = False
    is_fcs: bool = False
    rest_days: Optional[float] = None
    bye_week: bool = False

    def to_row(self) -> Dict[str, Any]:
        """Flatten ``values`` into top-level columns for persistence."""

        row = to_record(self)
        row.pop("values")
        row.update(self.values)
        return row

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "TeamGameAdjustedFeature":
        names = {f.name for f in dataclasses.fields(cls)}
        base = {key: value for key, value in row.items() if key in names and key != "values"}
        values = {key: value for key, value in row.items() if key not in names}
        return cls(values=values, **base)


@dataclass(frozen=True)
class ResidualBucket:
    label: str
    n: int
    mean: Optional[float]
    std: Optional[float]


@dataclass(frozen=True)
class CalibrationResult:
    combination: str
    dataset: str
    model_version: str
    sos_weight: float
    shrinkage_base: float
    calibration_factor: float
    rescale_state: str
    n_rows: int
    coefficients: Dict[str, float] = field(default_factory=dict)
    l1_ratio: Optional[float] = None
    penalty: Optional[float] = None
    wf_rmse: Optional[float] = None
    cv_rmse: Optional[float] = None
    r2: Optional[float] = None
    slope: Optional[float] = None
    baseline: Dict[str, Optional[float]] = field(default_factory=dict)
    buckets: Tuple[ResidualBucket, ...] = ()
    gates: Dict[str, bool] = field(default_factory=dict)
    passed: bool = False
    season: Optional[int] = None
    # Weeks covered by the priced games the combination was scored on.
    weeks: Tuple[int, ...] = ()


def _encode(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")
    if isinstance(value, tuple):
        return [_encode(item) for item in value]
    if isinstance(value, list):
        return [_encode(item) for item in value]
    if isinstance(value, dict):
        return {key: _encode(item) for key, item in value.items()}
    return value


def to_record(obj: Any) -> Dict[str, Any]:
    """Convert a record dataclass into a JSON-safe ``dict``."""

    return {key: _encode(value) for key, value in dataclasses.asdict(obj).items()}


def from_record(cls: Type[T], row: Dict[str, Any]) -> T:
    """Rebuild ``cls`` from a stored row, ignoring unknown columns."""

    kwargs: Dict[str, Any] = {}
    for f in dataclasses.fields(cls):  # type: ignore[arg-type]
        if f.name not in row:
            continue
        value = row[f.name]
        type_name = str(f.type)
        if "datetime" in type_name:
            value = parse_timestamp(value)
        elif type_name.startswith("Tuple[ResidualBucket") and value is not None:
            value = tuple(
                item if isinstance(item, ResidualBucket) else ResidualBucket(**item) for item in value
            )
        elif type_name.startswith("Tuple[") and value is not None:
            value = tuple(value)
        kwargs[f.name] = value
    return cls(**kwargs)  # type: ignore[call-arg]
