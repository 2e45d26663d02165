"""
Entity matching between legislators and campaign-finance candidates.

FEC candidate records share no identifier with the members table, so members
are resolved by name and jurisdiction:

1. Last name must agree exactly after normalization (hard filter)
2. First name is scored: exact > nickname equivalence > prefix containment
   > shared three-letter prefix
3. Small bonuses for matching state, office (H/S) and a recent cycle
4. The best candidate at or above the threshold wins; otherwise no match

A member whose FEC id is already cached bypasses scoring entirely. Cached
ids are not re-validated; clearing one is an operator action.

Usage:
    matcher = EntityMatcher()
    result = matcher.match(MatchEntity.from_member(member_row), candidates)
    if result:
        cache(result.external_id)
"""

import logging
import re
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, Tuple

logger = logging.getLogger(__name__)

CACHED_MATCH_SCORE = 100
MAX_COMPUTED_SCORE = 99
DEFAULT_THRESHOLD = 70

# Nickname -> legal first names
DEFAULT_NICKNAMES: Dict[str, List[str]] = {
    "ted": ["rafael", "edward", "theodore"],
    "bernie": ["bernard"],
    "chuck": ["charles"],
    "mike": ["michael"],
    "bill": ["william"],
    "bob": ["robert"],
    "dick": ["richard"],
    "jim": ["james"],
    "joe": ["joseph"],
    "tom": ["thomas"],
    "dan": ["daniel"],
    "dave": ["david"],
    "ben": ["benjamin"],
    "ed": ["edward", "edwin"],
    "al": ["albert", "alan", "alfred"],
    "pete": ["peter"],
    "tim": ["timothy"],
    "matt": ["matthew"],
    "rick": ["richard", "eric", "frederick"],
    "ron": ["ronald"],
    "don": ["donald"],
    "andy": ["andrew"],
    "tony": ["anthony"],
    "steve": ["steven", "stephen"],
    "chris": ["christopher", "christian"],
    "nick": ["nicholas"],
    "pat": ["patrick", "patricia"],
    "ken": ["kenneth"],
    "larry": ["lawrence"],
    "jerry": ["gerald", "jerome"],
    "jeff": ["jeffrey"],
    "greg": ["gregory"],
    "sam": ["samuel"],
    "max": ["maxwell", "maximilian"],
    "jack": ["john", "jackson"],
    "marty": ["martin"],
    "mitch": ["mitchell"],
    "josh": ["joshua"],
    "will": ["william"],
    "charlie": ["charles"],
    "liz": ["elizabeth"],
    "beth": ["elizabeth"],
    "debbie": ["deborah"],
    "nancy": ["ann"],
    "sue": ["susan"],
    "cathy": ["catherine"],
    "kate": ["katherine", "catherine"],
    "maggie": ["margaret"],
    "meg": ["margaret"],
}

STATE_ABBREVS: Dict[str, str] = {
    "Alabama": "AL", "Alaska": "AK", "Arizona": "AZ", "Arkansas": "AR",
    "California": "CA", "Colorado": "CO", "Connecticut": "CT", "Delaware": "DE",
    "Florida": "FL", "Georgia": "GA", "Hawaii": "HI", "Idaho": "ID",
    "Illinois": "IL", "Indiana": "IN", "Iowa": "IA", "Kansas": "KS",
    "Kentucky": "KY", "Louisiana": "LA", "Maine": "ME", "Maryland": "MD",
    "Massachusetts": "MA", "Michigan": "MI", "Minnesota": "MN", "Mississippi": "MS",
    "Missouri": "MO", "Montana": "MT", "Nebraska": "NE", "Nevada": "NV",
    "New Hampshire": "NH", "New Jersey": "NJ", "New Mexico": "NM", "New York": "NY",
    "North Carolina": "NC", "North Dakota": "ND", "Ohio": "OH", "Oklahoma": "OK",
    "Oregon": "OR", "Pennsylvania": "PA", "Rhode Island": "RI", "South Carolina": "SC",
    "South Dakota": "SD", "Tennessee": "TN", "Texas": "TX", "Utah": "UT",
    "Vermont": "VT", "Virginia": "VA", "Washington": "WA", "West Virginia": "WV",
    "Wisconsin": "WI", "Wyoming": "WY", "District of Columbia": "DC",
    "Puerto Rico": "PR", "Guam": "GU", "American Samoa": "AS",
    "U.S. Virgin Islands": "VI", "Northern Mariana Islands": "MP",
}

_NAME_NOISE = {"mr", "mrs", "ms", "dr", "hon", "jr", "sr", "ii", "iii", "iv"}


def current_cycle(today: Optional[datetime] = None) -> int:
    """FEC cycles are even years; an odd year belongs to the next cycle."""
    year = (today or datetime.now(timezone.utc)).year
    return year if year % 2 == 0 else year + 1


def state_abbrev(state: Optional[str]) -> str:
    """Return the USPS code for a state name; two-letter input passes through."""
    if not state:
        return ""
    state = state.strip()
    if len(state) == 2:
        return state.upper()
    return STATE_ABBREVS.get(state, state)


def normalize_token(value: Optional[str]) -> str:
    """Lowercase and keep letters only ("O'Rourke" -> "orourke")."""
    return re.sub(r"[^a-z]", "", (value or "").lower())


def _first_token(value: Optional[str]) -> str:
    for word in re.split(r"[\s.]+", (value or "").lower()):
        token = normalize_token(word)
        if token and token not in _NAME_NOISE:
            return token
    return ""


def parse_candidate_name(name: str) -> Tuple[str, str]:
    """
    Split an FEC candidate name into normalized (first, last).

    FEC uses "LAST, FIRST MIDDLE SUFFIX"; a name without a comma is read as
    "FIRST ... LAST".
    """
    if not name:
        return "", ""
    if "," in name:
        last_part, _, rest = name.partition(",")
        return _first_token(rest), normalize_token(last_part)

    words = [w for w in name.split() if normalize_token(w) not in _NAME_NOISE]
    if not words:
        return "", ""
    if len(words) == 1:
        return "", normalize_token(words[0])
    return normalize_token(words[0]), normalize_token(words[-1])


# =============================================================================
# Nickname Alias Graph
# =============================================================================


class NicknameGraph:
    """
    Canonical first names mapped to their aliases, queryable both ways.

    Example:
        graph = NicknameGraph()
        graph.add("william", "bill", "will")
        graph.are_equivalent("bill", "william")   # True
        graph.are_equivalent("bill", "will")      # True (shared canonical)
    """

    def __init__(self):
        self._aliases: Dict[str, Set[str]] = defaultdict(set)
        self._canonicals: Dict[str, Set[str]] = defaultdict(set)

    @classmethod
    def from_nickname_table(cls, table: Mapping[str, Iterable[str]]) -> "NicknameGraph":
        """Build from a nickname -> legal names table."""
        graph = cls()
        for nickname, legal_names in table.items():
            for legal in legal_names:
                graph.add(legal, nickname)
        return graph

    @classmethod
    def default(cls) -> "NicknameGraph":
        return cls.from_nickname_table(DEFAULT_NICKNAMES)

    def add(self, canonical: str, *aliases: str) -> None:
        canonical = normalize_token(canonical)
        for alias in aliases:
            alias = normalize_token(alias)
            if alias and alias != canonical:
                self._aliases[canonical].add(alias)
                self._canonicals[alias].add(canonical)

    def aliases_of(self, canonical: str) -> Set[str]:
        return set(self._aliases.get(normalize_token(canonical), set()))

    def canonicals_of(self, alias: str) -> Set[str]:
        return set(self._canonicals.get(normalize_token(alias), set()))

    def are_equivalent(self, first: str, second: str) -> bool:
        a, b = normalize_token(first), normalize_token(second)
        if not a or not b:
            return False
        if a == b:
            return True
        if b in self._aliases.get(a, ()) or a in self._aliases.get(b, ()):
            return True
        return bool(self._canonicals.get(a, set()) & self._canonicals.get(b, set()))

    def __len__(self) -> int:
        return sum(len(v) for v in self._aliases.values())


# =============================================================================
# Matcher
# =============================================================================


@dataclass(frozen=True)
class MatchWeights:
    """Integer score components (0-100 scale)."""

    last_name: int = 40
    exact_first: int = 40
    nickname_first: int = 35
    prefix_first: int = 25
    initial_three: int = 15
    state: int = 10
    office: int = 5
    recent_cycle: int = 5
    recent_cycle_span: int = 4


@dataclass
class MatchEntity:
    """The internal side of a match: one member row."""

    entity_id: str
    first_name: str
    last_name: str
    state: str = ""
    office: str = ""
    cached_external_id: Optional[str] = None

    @classmethod
    def from_member(cls, member: Dict[str, Any]) -> "MatchEntity":
        chamber = (member.get("chamber") or "").lower()
        office = {"house": "H", "senate": "S"}.get(chamber, "")
        first = member.get("first_name") or ""
        last = member.get("last_name") or ""
        if not last and member.get("full_name"):
            first, last = parse_candidate_name(member["full_name"])
        return cls(
            entity_id=str(member.get("id")),
            first_name=first,
            last_name=last,
            state=state_abbrev(member.get("state")),
            office=office,
            cached_external_id=member.get("fec_candidate_id"),
        )


@dataclass
class MatchResult:
    external_id: str
    score: int
    method: str
    cached: bool = False
    candidate: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "external_id": self.external_id,
            "score": self.score,
            "method": self.method,
            "cached": self.cached,
        }


class EntityMatcher:
    """
    Score-based resolver from a member to an FEC candidate.

    Args:
        nicknames: Alias graph used for first-name equivalence
        weights: Score components
        threshold: Minimum accepted score (inclusive)
        cycle: Current election cycle, for the recency bonus
    """

    def __init__(
        self,
        nicknames: Optional[NicknameGraph] = None,
        weights: Optional[MatchWeights] = None,
        threshold: int = DEFAULT_THRESHOLD,
        cycle: Optional[int] = None,
    ):
        self.nicknames = nicknames or NicknameGraph.default()
        self.weights = weights or MatchWeights()
        self.threshold = threshold
        self.cycle = cycle or current_cycle()

    def first_name_score(self, ours: str, theirs: str) -> Tuple[int, str]:
        a, b = _first_token(ours), _first_token(theirs)
        w = self.weights
        if not a or not b:
            return 0, "last_name"
        if a == b:
            return w.exact_first, "exact"
        if self.nicknames.are_equivalent(a, b):
            return w.nickname_first, "nickname"
        if a.startswith(b) or b.startswith(a):
            return w.prefix_first, "prefix"
        if len(a) >= 3 and len(b) >= 3 and a[:3] == b[:3]:
            return w.initial_three, "initials"
        return 0, "last_name"

    def score(self, entity: MatchEntity, candidate: Dict[str, Any]) -> Optional[Tuple[int, str]]:
        """Score one candidate, or None if its last name disagrees."""
        cand_first, cand_last = parse_candidate_name(candidate.get("name", ""))
        if not cand_last or cand_last != normalize_token(entity.last_name):
            return None

        w = self.weights
        first_points, method = self.first_name_score(entity.first_name, cand_first)
        total = w.last_name + first_points

        if entity.state and state_abbrev(candidate.get("state")) == entity.state:
            total += w.state
        if entity.office and (candidate.get("office") or "").upper() == entity.office:
            total += w.office

        cycles = candidate.get("cycles") or candidate.get("election_years") or []
        recent_floor = self.cycle - w.recent_cycle_span
        if any(isinstance(c, int) and c >= recent_floor for c in cycles):
            total += w.recent_cycle

        return min(total, MAX_COMPUTED_SCORE), method

    def match(
        self, entity: MatchEntity, candidates: Iterable[Dict[str, Any]]
    ) -> Optional[MatchResult]:
        """
        Resolve an entity against a candidate pool.

        Returns:
            The best candidate scoring at least the threshold, the cached id
            (score 100) if one is present, or None when nothing qualifies
        """
        if entity.cached_external_id:
            return MatchResult(
                external_id=entity.cached_external_id,
                score=CACHED_MATCH_SCORE,
                method="cached",
                cached=True,
            )

        best: Optional[MatchResult] = None
        for candidate in candidates:
            scored = self.score(entity, candidate)
            if scored is None:
                continue
            points, method = scored
            if best is None or points > best.score:
                best = MatchResult(
                    external_id=candidate.get("candidate_id", ""),
                    score=points,
                    method=method,
                    candidate=candidate,
                )

        if best is None or best.score < self.threshold:
            logger.debug(
                f"No match for {entity.first_name} {entity.last_name} "
                f"({entity.state}); best score {best.score if best else 0}"
            )
            return None
        return best
