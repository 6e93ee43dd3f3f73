"""Batch entry points: one callable per pipeline stage.

Every job takes ``(store, season, weeks, version)`` plus ``dry_run`` and
returns a :class:`BatchSummary`. Per-entity problems are counted and the
run continues; report CSVs are written even when some entities fail.
Structural failures (credentials, an unusable store) propagate.
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from .config import build_dataclass, section
from .errors import CFBPriceError, ConfigError, ProviderNotFoundError, ProviderRateLimitError
from .features.engine import FeatureConfig, FeatureEngine
from .features.hygiene import HygieneConfig, apply_hygiene, evaluate_feature_gates
from .io.cfbd import CFBDClient, parse_advanced_game_stats, parse_games, parse_lines, parse_teams
from .io.reports import write_report
from .io.store import Store
from .io.the_odds_api import SOURCE as ODDS_SOURCE, quotes_from_event
from .market.consensus import ConsensusConfig, home_minus_away_spread, resolve_game
from .model.calibration import (
    CalibrationConfig,
    CalibrationEngine,
    CalibrationState,
    CombinationOutcome,
    build_market_games,
    decide,
    failing_gates,
)
from .model.hfa import HFAConfig, estimate_season_hfa
from .model.rating import EfficiencyRatingComputer, RatingComputer, RatingParams
from .names import TeamDirectory
from .records import (
    CalibrationResult,
    ConsensusLine,
    GameInfo,
    RawLineQuote,
    TeamGameAdjustedFeature,
    TeamGameEfficiency,
    TeamPrior,
    TeamSeasonRating,
    from_record,
    parse_timestamp,
    to_record,
)

logger = logging.getLogger(__name__)


@dataclass
class BatchSummary:
    stage: str
    season: int
    version: str
    dry_run: bool = False
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    mismatches: List[Dict[str, Any]] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    artifacts: Dict[str, str] = field(default_factory=dict)
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.failed == 0

    def fail(self, what: str, exc: BaseException) -> None:
        self.failed += 1
        self.errors.append(f"{what}: {exc}")
        logger.warning("%s %s failed: %s", self.stage, what, exc)

    def line(self) -> str:
        tag = "[ok]" if self.ok else "[warn]"
        dry = " (dry run)" if self.dry_run else ""
        return (
            f"{tag} {self.stage} season={self.season} version={self.version}{dry}: "
            f"processed={self.processed} skipped={self.skipped} failed={self.failed}"
        )

    def as_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)


def _week_filter(weeks: Optional[Iterable[int]]) -> Dict[str, Any]:
    return {"week": sorted(set(int(w) for w in weeks))} if weeks else {}


def _record(artifacts: Dict[str, str], path: Path) -> None:
    artifacts[path.name] = str(path)


def load_directory(store: Store) -> TeamDirectory:
    return TeamDirectory.from_records(store.read("teams"))


def load_games(store: Store, season: int, weeks: Optional[Iterable[int]] = None) -> List[GameInfo]:
    rows = store.read("games", season=season, **_week_filter(weeks))
    games = [from_record(GameInfo, row) for row in rows]
    return sorted(games, key=lambda g: (g.week, g.game_id))


def load_quotes(store: Store, game_ids: Iterable[str]) -> Dict[str, List[RawLineQuote]]:
    wanted = set(game_ids)
    quotes: Dict[str, List[RawLineQuote]] = {gid: [] for gid in wanted}
    for row in store.read("market_quotes", game_id=wanted):
        quotes[row["game_id"]].append(from_record(RawLineQuote, row))
    return quotes


def single_version(found: Iterable[Optional[str]], what: str) -> Optional[str]:
    """The only version among ``found``; ``None`` when there is none.

    Versions are never blended, so more than one raises
    :class:`~cfbprice.errors.ConfigError` naming the candidates.
    """

    versions = sorted({str(v) for v in found if v is not None})
    if not versions:
        return None
    if len(versions) > 1:
        raise ConfigError(f"{len(versions)} {what} versions in the store ({', '.join(versions)}); pass one explicitly")
    logger.info("Using %s version %s", what, versions[0])
    return versions[0]


def load_spreads(
    store: Store, game_ids: Iterable[str], version: Optional[str] = None
) -> Dict[str, ConsensusLine]:
    """Spread consensus rows for ``game_ids`` under one consensus version.

    Without ``version`` the store must hold exactly one spread version for
    these games.
    """

    rows = store.read("consensus_lines", game_id=set(game_ids), market="spread")
    if version is None:
        version = single_version((r.get("version") for r in rows), "consensus")
    return {row["game_id"]: from_record(ConsensusLine, row) for row in rows if row.get("version") == version}


# ---------------------------------------------------------------------------
# Ingest
# ---------------------------------------------------------------------------


def ingest_cfbd(
    client: CFBDClient,
    store: Store,
    season: int,
    weeks: Sequence[int],
    *,
    dry_run: bool = False,
    reports_dir: Optional[str | Path] = None,
) -> BatchSummary:
    """Pull teams, games, lines and advanced stats for ``weeks`` into ``store``."""

    summary = BatchSummary("ingest", season, "cfbd", dry_run=dry_run)
    teams = parse_teams(client.teams(season))
    directory = TeamDirectory.from_records(teams)
    if not dry_run:
        store.upsert("teams", teams)

    try:
        for week in weeks:
            try:
                games, unmapped_games = parse_games(client.games(season, week), directory)
                by_id = {g.game_id: g for g in games}
                quotes = parse_lines(client.lines(season, week))
                efficiency, unmapped_eff = parse_advanced_game_stats(
                    client.advanced_game_stats(season, week), directory, by_id
                )
            except ProviderNotFoundError as exc:
                logger.info("No CFBD data for %s week %s: %s", season, week, exc)
                summary.skipped += 1
                continue
            except ProviderRateLimitError as exc:
                summary.fail(f"week {week}", exc)
                continue
            quotes = [q for q in quotes if q.game_id in by_id]
            summary.skipped += unmapped_games + unmapped_eff
            summary.processed += len(games)
            if not dry_run:
                store.upsert("games", (to_record(g) for g in games))
                store.upsert("market_quotes", (to_record(q) for q in quotes))
                store.upsert("team_game_efficiency", (to_record(e) for e in efficiency))
    finally:
        summary.mismatches = directory.mismatch_rows()
        _record(
            summary.artifacts,
            write_report("team_mismatches.csv", summary.mismatches, reports_dir, columns=["name", "source"]),
        )
    return summary


_UNMATCHED_COLUMNS = ["event_id", "home_team", "away_team", "commence_time", "reason"]


def _match_event(
    event: Mapping[str, Any],
    directory: TeamDirectory,
    index: Mapping[tuple, List[GameInfo]],
    max_gap_hours: float,
) -> tuple:
    home = directory.resolve_label(event.get("home_team"), source=ODDS_SOURCE)
    away = directory.resolve_label(event.get("away_team"), source=ODDS_SOURCE)
    if home is None or away is None:
        return None, "unmapped_team"
    candidates = index.get((home, away), [])
    if not candidates:
        return None, "no_scheduled_game"
    commence = parse_timestamp(event.get("commence_time"))
    if commence is None:
        return (candidates[0], None) if len(candidates) == 1 else (None, "ambiguous_game")
    best = None
    best_gap = None
    for game in candidates:
        if game.kickoff is None:
            continue
        gap = abs((game.kickoff - commence).total_seconds()) / 3600.0
        if gap <= max_gap_hours and (best_gap is None or gap < best_gap):
            best, best_gap = game, gap
    if best is None:
        return None, "kickoff_mismatch"
    return best, None


def ingest_odds(
    events: Iterable[Mapping[str, Any]],
    store: Store,
    season: int,
    *,
    dry_run: bool = False,
    reports_dir: Optional[str | Path] = None,
    max_gap_hours: float = 36.0,
) -> BatchSummary:
    """Attach The Odds API events to stored games and upsert their quotes.

    Events are matched on resolved home/away ids and the closest stored
    kickoff within ``max_gap_hours`` of ``commence_time``. Unmatched events
    are skipped and listed in ``odds_unmatched.csv``.
    """

    summary = BatchSummary("odds", season, ODDS_SOURCE, dry_run=dry_run)
    directory = load_directory(store)
    index: Dict[tuple, List[GameInfo]] = {}
    for game in load_games(store, season):
        index.setdefault((game.home_team, game.away_team), []).append(game)

    unmatched: List[Dict[str, Any]] = []
    quotes: List[RawLineQuote] = []
    for event in events:
        game, reason = _match_event(event, directory, index, max_gap_hours)
        if game is None:
            summary.skipped += 1
            unmatched.append(
                {
                    "event_id": event.get("id"),
                    "home_team": event.get("home_team"),
                    "away_team": event.get("away_team"),
                    "commence_time": event.get("commence_time"),
                    "reason": reason,
                }
            )
            continue
        quotes.extend(quotes_from_event(dict(event), game.game_id))
        summary.processed += 1

    if not dry_run and quotes:
        store.upsert("market_quotes", (to_record(q) for q in quotes))
    summary.extra["quotes"] = len(quotes)
    summary.mismatches = directory.mismatch_rows()
    _record(
        summary.artifacts,
        write_report("odds_unmatched.csv", unmatched, reports_dir, columns=_UNMATCHED_COLUMNS),
    )
    return summary


# ---------------------------------------------------------------------------
# Consensus
# ---------------------------------------------------------------------------

_AUDIT_COLUMNS = [
    "game_id", "week", "market", "value", "favored_side", "dog_value", "book_count",
    "raw_count", "excluded_count", "window_kind", "window_start", "window_end",
]


def run_consensus(
    store: Store,
    season: int,
    weeks: Optional[Sequence[int]],
    version: str,
    *,
    dry_run: bool = False,
    reports_dir: Optional[str | Path] = None,
    config: Optional[Mapping[str, Any]] = None,
) -> BatchSummary:
    """Resolve and persist consensus lines for every game in ``weeks``."""

    cfg = ConsensusConfig.from_mapping(section(config, "consensus"))
    summary = BatchSummary("consensus", season, version, dry_run=dry_run)
    games = load_games(store, season, weeks)
    quotes = load_quotes(store, (g.game_id for g in games))
    audit: List[Dict[str, Any]] = []
    rows: List[Dict[str, Any]] = []
    try:
        for game in games:
            try:
                lines = resolve_game(game.game_id, quotes.get(game.game_id, []), game.kickoff,
                                     config=cfg, version=version)
            except (CFBPriceError, ValueError) as exc:
                summary.fail(f"game {game.game_id}", exc)
                continue
            if any(line.is_priced for line in lines.values()):
                summary.processed += 1
            else:
                summary.skipped += 1
            for line in lines.values():
                record = to_record(line)
                rows.append(record)
                audit.append({"week": game.week, **{k: record.get(k) for k in _AUDIT_COLUMNS if k != "week"}})
        if not dry_run and rows:
            store.upsert("consensus_lines", rows)
    finally:
        _record(summary.artifacts, write_report("consensus_audit.csv", audit, reports_dir, columns=_AUDIT_COLUMNS))
    summary.extra["unpriced_markets"] = sum(1 for r in rows if r["value"] is None)
    return summary


def run_ratings(
    store: Store,
    season: int,
    weeks: Optional[Sequence[int]],
    version: str,
    *,
    dry_run: bool = False,
    reports_dir: Optional[str | Path] = None,
    config: Optional[Mapping[str, Any]] = None,
) -> BatchSummary:
    """Compute efficiency ratings through the last requested week under ``version``."""

    params = build_dataclass(RatingParams, section(config, "ratings"))
    summary = BatchSummary("ratings", season, version, dry_run=dry_run)
    games = {g.game_id: g for g in load_games(store, season)}
    through = max(weeks) if weeks else None
    computer = EfficiencyRatingComputer(_efficiency_rows(store, season, games), through_week=through)
    updates: List[Dict[str, Any]] = []
    try:
        updates = _rating_updates(computer, params, season, version)
        summary.processed = len(updates)
        if not dry_run and updates:
            store.upsert("team_season_ratings", updates)
    finally:
        _record(
            summary.artifacts,
            write_report("ratings.csv", updates, reports_dir,
                         columns=["team_id", "rating", "offense", "defense", "games"]),
        )
    return summary


# ---------------------------------------------------------------------------
# HFA
# ---------------------------------------------------------------------------

_HFA_COLUMNS = [
    "team_id", "hfa_raw", "hfa_team", "hfa_n_home", "hfa_n_away", "hfa_shrink_w",
    "league_mean", "capped", "low_sample", "outlier",
]


def run_hfa(
    store: Store,
    season: int,
    weeks: Optional[Sequence[int]],
    version: str,
    *,
    dry_run: bool = False,
    reports_dir: Optional[str | Path] = None,
    config: Optional[Mapping[str, Any]] = None,
) -> BatchSummary:
    """Estimate team HFA against ratings of model ``version`` and merge it into them."""

    cfg = HFAConfig.from_mapping(section(config, "hfa"))
    summary = BatchSummary("hfa", season, version, dry_run=dry_run)
    ratings = {
        row["team_id"]: row.get("rating")
        for row in store.read("team_season_ratings", season=season, model_version=version)
    }
    report: List[Dict[str, Any]] = []
    try:
        if not ratings:
            logger.warning("No ratings for season %s version %s; HFA not estimated", season, version)
            summary.extra["reason"] = "no_ratings"
            return summary
        games = load_games(store, season, weeks)
        estimate = estimate_season_hfa(season, games, ratings, cfg)
        summary.skipped = len(estimate.skipped_teams)
        summary.extra.update(league_mean=estimate.league_mean, skipped_games=estimate.skipped_games)
        updates = []
        for team_id, hfa in sorted(estimate.teams.items()):
            updates.append(
                {
                    "season": season,
                    "team_id": team_id,
                    "model_version": version,
                    "hfa_team": hfa.shrunk,
                    "hfa_raw": hfa.raw,
                    "hfa_n_home": hfa.n_home,
                    "hfa_n_away": hfa.n_away,
                    "hfa_shrink_w": hfa.shrink_weight,
                }
            )
            report.append(
                {
                    **{k: v for k, v in updates[-1].items() if k in _HFA_COLUMNS},
                    "league_mean": hfa.league_mean,
                    "capped": hfa.capped,
                    "low_sample": hfa.low_sample,
                    "outlier": hfa.outlier,
                }
            )
        summary.processed = len(updates)
        if not dry_run and updates:
            store.upsert("team_season_ratings", updates)
    finally:
        _record(summary.artifacts, write_report("hfa_report.csv", report, reports_dir, columns=_HFA_COLUMNS))
    return summary


# ---------------------------------------------------------------------------
# Features
# ---------------------------------------------------------------------------


def _efficiency_rows(store: Store, season: int, games: Mapping[str, GameInfo]) -> List[TeamGameEfficiency]:
    rows = []
    for row in store.read("team_game_efficiency", season=season):
        record = from_record(TeamGameEfficiency, row)
        game = games.get(record.game_id)
        if game is not None:
            record = dataclasses.replace(
                record,
                game_date=record.game_date or game.kickoff,
                is_home=record.is_home if record.is_home is not None else game.home_team == record.team_id,
                neutral_site=record.neutral_site or game.neutral_site,
            )
        rows.append(record)
    return rows


def run_features(
    store: Store,
    season: int,
    weeks: Optional[Sequence[int]],
    version: str,
    *,
    dry_run: bool = False,
    reports_dir: Optional[str | Path] = None,
    config: Optional[Mapping[str, Any]] = None,
    consensus_version: Optional[str] = None,
) -> BatchSummary:
    """Build, clean, gate and persist adjusted features for ``weeks``.

    The whole season's efficiency rows are loaded; week slicing inside the
    engine keeps later games out of every rolling statistic.
    """

    feature_cfg = FeatureConfig.from_mapping(section(config, "features"))
    hygiene_cfg = HygieneConfig.from_mapping(section(config, "hygiene"))
    summary = BatchSummary("features", season, version, dry_run=dry_run)
    games = {g.game_id: g for g in load_games(store, season)}
    priors = {
        row["team_id"]: from_record(TeamPrior, row) for row in store.read("team_priors", season=season)
    }
    engine = FeatureEngine(
        _efficiency_rows(store, season, games),
        priors=priors,
        directory=load_directory(store),
        config=feature_cfg,
    )

    completeness: List[Dict[str, Any]] = []
    stats_rows: List[Dict[str, Any]] = []
    gate_rows: List[Dict[str, Any]] = []
    try:
        raw: List[TeamGameAdjustedFeature] = []
        wanted = set(weeks) if weeks else None
        for row in engine.ledger.rows():
            if wanted is not None and row.week not in wanted:
                continue
            try:
                raw.append(engine.build_row(row, version))
            except (CFBPriceError, ValueError, KeyError) as exc:
                summary.fail(f"{row.team_id}/{row.game_id}", exc)
        cleaned = apply_hygiene(raw, hygiene_cfg)
        spreads = load_spreads(store, {f.game_id for f in raw}, consensus_version)
        market = {gid: home_minus_away_spread(line) for gid, line in spreads.items()}
        report = evaluate_feature_gates(cleaned, hygiene_cfg, raw_features=raw, market_home_spreads=market)
        completeness = report.completeness
        stats_rows = [dataclasses.asdict(s) for s in cleaned.stats]
        summary.processed = len(cleaned.features)

        if not dry_run and cleaned.features:
            store.upsert("team_game_features", (f.to_row() for f in cleaned.features))
            persisted = store.count(
                "team_game_features", season=season, feature_version=version, **_week_filter(weeks)
            )
            expected = len(cleaned.features)
            diff = abs(persisted - expected) / expected
            summary.extra["persisted"] = persisted
            if diff > hygiene_cfg.max_persist_diff:
                report.failures.append(f"persist_count:{persisted}/{expected}")

        summary.extra.update(
            gates_passed=report.passed,
            gate_failures=list(report.failures),
            zero_variance=list(report.zero_variance),
            sign_agreement=report.sign_agreement,
            sign_agreement_n=report.sign_agreement_n,
        )
        gate_rows = [{"gate": failure.split(":", 1)[0], "detail": failure} for failure in report.failures]
        if report.sign_agreement is not None:
            gate_rows.append(
                {"gate": "sign_agreement_diagnostic", "detail": f"{report.sign_agreement:.3f} (n={report.sign_agreement_n})"}
            )
    finally:
        _record(
            summary.artifacts,
            write_report("feature_completeness.csv", completeness, reports_dir,
                         columns=["feature", "week", "total", "nulls", "completeness_pct"]),
        )
        _record(summary.artifacts, write_report("feature_store_stats.csv", stats_rows, reports_dir))
        _record(summary.artifacts, write_report("feature_gates.csv", gate_rows, reports_dir, columns=["gate", "detail"]))
    return summary


# ---------------------------------------------------------------------------
# Calibration
# ---------------------------------------------------------------------------

_GRID_COLUMNS = [
    "combination", "dataset", "rescale_state", "calibration_factor", "n_rows", "wf_rmse", "cv_rmse",
    "r2", "slope", "l1_ratio", "penalty", "rating_coef", "hfa_coef", "passed", "failing",
]


def _grid_row(result: CalibrationResult) -> Dict[str, Any]:
    return {
        "combination": result.combination,
        "dataset": result.dataset,
        "rescale_state": result.rescale_state,
        "calibration_factor": result.calibration_factor,
        "n_rows": result.n_rows,
        "wf_rmse": result.wf_rmse,
        "cv_rmse": result.cv_rmse,
        "r2": result.r2,
        "slope": result.slope,
        "l1_ratio": result.l1_ratio,
        "penalty": result.penalty,
        "rating_coef": result.coefficients.get("rating_diff"),
        "hfa_coef": result.coefficients.get("hfa"),
        "passed": result.passed,
        "failing": ";".join(failing_gates(result.gates)),
    }


def _rating_updates(
    computer: RatingComputer, params: RatingParams, season: int, model_version: str
) -> List[Dict[str, Any]]:
    """Rating rows without HFA columns, so an upsert keeps any HFA already merged in."""

    if isinstance(computer, EfficiencyRatingComputer):
        rows = computer.rating_rows(params, season=season, model_version=model_version)
    else:
        rows = [
            TeamSeasonRating(season, team, model_version, rating=value)
            for team, value in sorted(computer(params).items())
        ]
    return [{k: v for k, v in to_record(row).items() if not k.startswith("hfa_")} for row in rows]


def _team_hfa(store: Store, season: int, hfa_version: Optional[str]) -> Dict[str, Optional[float]]:
    rows = [r for r in store.read("team_season_ratings", season=season) if r.get("hfa_team") is not None]
    if hfa_version is None:
        hfa_version = single_version((r.get("model_version") for r in rows), "HFA")
    return {row["team_id"]: row["hfa_team"] for row in rows if row.get("model_version") == hfa_version}


def run_calibration(
    store: Store,
    season: int,
    weeks: Optional[Sequence[int]],
    version: str,
    *,
    dry_run: bool = False,
    reports_dir: Optional[str | Path] = None,
    config: Optional[Mapping[str, Any]] = None,
    rating_computer: Optional[RatingComputer] = None,
    consensus_version: Optional[str] = None,
    hfa_version: Optional[str] = None,
) -> BatchSummary:
    """Sweep the calibration grid; ``version`` prefixes every combination's model version."""

    cal_section = section(config, "calibration")
    cal_cfg = CalibrationConfig.from_mapping(cal_section)
    cal_cfg = dataclasses.replace(cal_cfg, grid=dataclasses.replace(cal_cfg.grid, base_version=version))
    summary = BatchSummary("calibration", season, version, dry_run=dry_run)

    games = load_games(store, season, weeks)
    directory = load_directory(store)
    spreads = load_spreads(store, (g.game_id for g in games), consensus_version)
    market_games, skipped = build_market_games(
        games, spreads, _team_hfa(store, season, hfa_version), directory=directory, filters=cal_cfg.filters
    )
    summary.skipped = sum(skipped.values())
    summary.extra["market_skips"] = skipped

    if rating_computer is None:
        game_map = {g.game_id: g for g in load_games(store, season)}
        through = max(weeks) if weeks else None
        rating_computer = EfficiencyRatingComputer(_efficiency_rows(store, season, game_map), through_week=through)

    def load_checkpoint(combination: str) -> Dict[str, CalibrationResult]:
        return {
            row["dataset"]: from_record(CalibrationResult, row)
            for row in store.read("calibration_results", season=season, combination=combination)
        }

    def save_checkpoint(results: List[CalibrationResult]) -> None:
        store.upsert("calibration_results", (to_record(r) for r in results))

    engine = CalibrationEngine(
        rating_computer,
        market_games,
        cal_cfg,
        load_checkpoint=load_checkpoint,
        save_checkpoint=None if dry_run else save_checkpoint,
        season=season,
    )

    outcomes: List[CombinationOutcome] = []
    grid_rows: List[Dict[str, Any]] = []
    bucket_rows: List[Dict[str, Any]] = []
    try:
        for combination, params in cal_cfg.grid.combinations():
            try:
                outcome = engine.run_combination(combination, params)
            except (CFBPriceError, ValueError) as exc:
                summary.fail(combination, exc)
                continue
            outcomes.append(outcome)
            if outcome.resumed:
                summary.skipped += 1
            else:
                summary.processed += 1
                if not dry_run and outcome.rescale is not None:
                    tuned = params.with_factor(outcome.rescale.factor)
                    store.upsert("team_season_ratings", _rating_updates(rating_computer, tuned, season, combination))
            for result in outcome.results.values():
                grid_rows.append(_grid_row(result))
                for bucket in result.buckets:
                    bucket_rows.append(
                        {"combination": result.combination, "dataset": result.dataset, **dataclasses.asdict(bucket)}
                    )
        names = [d.name for d in cal_cfg.datasets]
        decision = decide(outcomes, names[0], names[1] if len(names) > 1 else names[0])
        summary.extra.update(
            state=CalibrationState.GRID_COMPLETE.value,
            decision=decision.verdict,
            combination=decision.combination,
            confidence=decision.confidence,
            failing=decision.failing,
        )
    finally:
        _record(summary.artifacts, write_report("calibration_grid.csv", grid_rows, reports_dir, columns=_GRID_COLUMNS))
        _record(
            summary.artifacts,
            write_report("residual_buckets.csv", bucket_rows, reports_dir,
                         columns=["combination", "dataset", "label", "n", "mean", "std"]),
        )
    return summary
