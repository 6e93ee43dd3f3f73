"""Team-name normalisation and the provider-name → team-id directory."""

from __future__ import annotations

import logging
import unicodedata
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

from .errors import UnmappableEntityError

logger = logging.getLogger(__name__)

P5_CONFERENCES = frozenset({"ACC", "BIG TEN", "BIG 12", "SEC", "PAC-12"})

# Common provider spellings that differ from the canonical school name.
TEAM_NAME_ALIASES = {
    "MIAMI (FL)": "MIAMI",
    "MIAMI FL": "MIAMI",
    "MIAMI (OH)": "MIAMI OH",
    "OLE MISS": "MISSISSIPPI",
    "USC TROJANS": "USC",
    "SOUTHERN CALIFORNIA": "USC",
    "UCF KNIGHTS": "UCF",
    "CENTRAL FLORIDA": "UCF",
    "LOUISIANA LAFAYETTE": "LOUISIANA",
    "UL MONROE": "LOUISIANA MONROE",
    "ULM": "LOUISIANA MONROE",
    "APP STATE": "APPALACHIAN STATE",
    "HAWAI'I": "HAWAII",
    "SAN JOSE STATE": "SAN JOSE STATE",
    "UTSA ROADRUNNERS": "UTSA",
    "TEXAS-SAN ANTONIO": "UTSA",
    "FIU": "FLORIDA INTERNATIONAL",
    "FLA INTERNATIONAL": "FLORIDA INTERNATIONAL",
    "UCONN": "CONNECTICUT",
    "UMASS": "MASSACHUSETTS",
    "SMU MUSTANGS": "SMU",
    "SOUTHERN METHODIST": "SMU",
    "BYU COUGARS": "BYU",
    "BRIGHAM YOUNG": "BYU",
    "NC STATE": "NORTH CAROLINA STATE",
    "N.C. STATE": "NORTH CAROLINA STATE",
    "PITT": "PITTSBURGH",
}


def normalize_ascii(text: str | None) -> str:
    """Return an upper-case ASCII string (empty string if input is falsy)."""

    if not text:
        return ""
    normalized = (
        unicodedata.normalize("NFKD", str(text))
        .encode("ascii", "ignore")
        .decode("ascii")
        .upper()
        .strip()
    )
    return " ".join(normalized.split())


def normalize_team(text: str | None) -> str:
    key = normalize_ascii(text)
    return TEAM_NAME_ALIASES.get(key, key)


def normalize_conference(text: str | None) -> str:
    key = normalize_ascii(text)
    if key in {"BIG 10", "B1G"}:
        return "BIG TEN"
    if key in {"BIG XII", "BIG12"}:
        return "BIG 12"
    if key in {"PAC 12", "PAC12"}:
        return "PAC-12"
    return key


@dataclass(frozen=True)
class TeamInfo:
    team_id: str
    name: str
    conference: Optional[str] = None
    classification: Optional[str] = None
    aliases: Tuple[str, ...] = ()

    @property
    def is_fbs(self) -> bool:
        return (self.classification or "").lower() == "fbs"

    @property
    def is_fcs(self) -> bool:
        return (self.classification or "").lower() == "fcs"

    @property
    def is_p5(self) -> bool:
        return self.is_fbs and normalize_conference(self.conference) in P5_CONFERENCES

    @property
    def is_g5(self) -> bool:
        return self.is_fbs and not self.is_p5

    @property
    def tier(self) -> Optional[str]:
        if self.is_p5:
            return "P5"
        if self.is_g5:
            return "G5"
        if self.is_fcs:
            return "FCS"
        return None


@dataclass
class TeamDirectory:
    """Resolve provider team names to internal ids.

    Unresolvable names are remembered in :attr:`mismatches` so batch jobs can
    report them instead of failing.
    """

    teams: Dict[str, TeamInfo] = field(default_factory=dict)
    _by_name: Dict[str, str] = field(default_factory=dict, repr=False)
    mismatches: List[Tuple[str, str]] = field(default_factory=list)

    @classmethod
    def from_teams(cls, teams: Iterable[TeamInfo]) -> "TeamDirectory":
        directory = cls()
        for team in teams:
            directory.add(team)
        return directory

    @classmethod
    def from_records(cls, rows: Iterable[dict]) -> "TeamDirectory":
        teams = []
        for row in rows:
            teams.append(
                TeamInfo(
                    team_id=str(row["team_id"]),
                    name=str(row.get("name") or row["team_id"]),
                    conference=row.get("conference"),
                    classification=row.get("classification"),
                    aliases=tuple(row.get("aliases") or ()),
                )
            )
        return cls.from_teams(teams)

    def add(self, team: TeamInfo) -> None:
        self.teams[team.team_id] = team
        for name in (team.team_id, team.name, *team.aliases):
            key = normalize_team(name)
            if key:
                self._by_name[key] = team.team_id

    def get(self, team_id: Optional[str]) -> Optional[TeamInfo]:
        if team_id is None:
            return None
        return self.teams.get(team_id)

    def resolve(self, name: Optional[str], *, source: str = "", strict: bool = False) -> Optional[str]:
        """Return the team id for ``name`` or ``None`` (recorded as a mismatch)."""

        team_id = self._by_name.get(normalize_team(name))
        if team_id is not None:
            return team_id
        entry = (str(name), source)
        if entry not in self.mismatches:
            self.mismatches.append(entry)
            logger.warning("Unmapped team name %r (source=%s)", name, source or "?")
        if strict:
            raise UnmappableEntityError(str(name), source)
        return None

    def resolve_label(self, label: Optional[str], *, source: str = "") -> Optional[str]:
        """Resolve a display label such as ``"Ohio State Buckeyes"``.

        Tries the full label first, then drops trailing words (mascots) one at
        a time, so the longest matching school name wins.
        """

        words = normalize_ascii(label).split(" ")
        for end in range(len(words), 0, -1):
            team_id = self._by_name.get(normalize_team(" ".join(words[:end])))
            if team_id is not None:
                return team_id
        return self.resolve(label, source=source)

    def tier(self, team_id: Optional[str]) -> Optional[str]:
        info = self.get(team_id)
        return info.tier if info else None

    def conference(self, team_id: Optional[str]) -> Optional[str]:
        info = self.get(team_id)
        if info is None or not info.conference:
            return None
        return normalize_conference(info.conference)

    def mismatch_rows(self) -> List[dict]:
        return [{"name": name, "source": source} for name, source in self.mismatches]
