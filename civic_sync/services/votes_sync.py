"""
Roll-Call Votes Sync

House votes come from the Clerk's per-roll XML files, Senate votes from the
senate.gov LIS XML files. Both feeds are walked roll by roll from the last
stored roll number; a 404 means the feed has no further rolls and ends the
epoch for that chamber.

Member resolution:
- House XML carries the bioguide id (name-id attribute), matched exactly
- Senate XML carries only names and state; members are matched on
  normalized last name + state, with first name breaking ties

Usage:
    outcome = await VotesSync(deps).run(SyncRequest(chamber="house"))
"""

import re
import xml.etree.ElementTree as ET
from collections import defaultdict
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from civic_sync.lib.base_sync import BaseSyncOrchestrator, SyncContext, SyncRequest
from civic_sync.lib.matching import NicknameGraph, normalize_token, state_abbrev
from civic_sync.lib.registry import SyncRegistry
from civic_sync.services.bills_sync import current_congress

HOUSE_CLERK_BASE = "https://clerk.house.gov/evs"
SENATE_LIS_BASE = "https://www.senate.gov/legislative/LIS/roll_call_votes"

HOUSE_DATASET = "votes_house"
SENATE_DATASET = "votes_senate"

FULL_MAX_ROLLS = 500
DELTA_MAX_ROLLS = 50

SUPPORT = {"yea", "yes", "aye", "for"}
OPPOSE = {"nay", "no", "against"}


class VoteParseError(Exception):
    """Raised when a roll-call XML document is missing required fields."""


def normalize_position(raw: Optional[str]) -> Tuple[str, int]:
    """Map a recorded position to (normalized, weight)."""
    position = (raw or "").strip().lower()
    if position in SUPPORT:
        return "support", 1
    if position in OPPOSE:
        return "oppose", -1
    if position == "present":
        return "neutral", 0
    return "absent", 0


def position_code(raw: Optional[str]) -> str:
    """Map a recorded position to yea / nay / present / not_voting."""
    normalized, _ = normalize_position(raw)
    return {"support": "yea", "oppose": "nay", "neutral": "present"}.get(
        normalized, "not_voting"
    )


def _int(value: Optional[str], default: int = 0) -> int:
    digits = re.sub(r"\D", "", value or "")
    return int(digits) if digits else default


def _text(root: ET.Element, path: str) -> Optional[str]:
    value = root.findtext(path)
    if value is None:
        return None
    value = value.strip()
    return value or None


def parse_clerk_date(value: Optional[str]) -> Optional[str]:
    """'3-Jan-2025' -> '2025-01-03'."""
    if not value:
        return None
    try:
        return datetime.strptime(value.strip(), "%d-%b-%Y").date().isoformat()
    except ValueError:
        return None


def parse_senate_date(value: Optional[str]) -> Optional[str]:
    """'January 9, 2025,  12:07 PM' -> '2025-01-09'."""
    match = re.search(r"([A-Za-z]+)\s+(\d{1,2}),\s*(\d{4})", value or "")
    if not match:
        return None
    try:
        parsed = datetime.strptime(" ".join(match.groups()), "%B %d %Y")
    except ValueError:
        return None
    return parsed.date().isoformat()


def parse_house_roll(xml_text: str, roll_number: int, source_url: str) -> Dict[str, Any]:
    """Parse a Clerk roll-call document into a vote row plus raw positions.

    Raises:
        VoteParseError: If the XML is malformed or has no usable date
    """
    try:
        root = ET.fromstring(xml_text)
    except ET.ParseError as e:
        raise VoteParseError(f"House roll {roll_number}: invalid XML ({e})") from e

    vote_date = parse_clerk_date(_text(root, ".//action-date"))
    if not vote_date:
        raise VoteParseError(f"House roll {roll_number}: unparseable action-date")

    totals = root.find(".//totals-by-vote")
    totals = totals if totals is not None else root

    positions = []
    for recorded in root.iter("recorded-vote"):
        legislator = recorded.find("legislator")
        if legislator is None or not legislator.get("name-id"):
            continue
        positions.append(
            {"bioguide_id": legislator.get("name-id"), "position": recorded.findtext("vote")}
        )

    return {
        "vote": {
            "congress": _int(_text(root, ".//congress"), 0),
            "chamber": "house",
            "session": _int(_text(root, ".//session"), 1),
            "roll_number": roll_number,
            "vote_date": vote_date,
            "question": _text(root, ".//vote-question"),
            "description": _text(root, ".//vote-desc"),
            "result": _text(root, ".//vote-result"),
            "total_yea": _int(_text(totals, ".//yea-total")),
            "total_nay": _int(_text(totals, ".//nay-total")),
            "total_present": _int(_text(totals, ".//present-total")),
            "total_not_voting": _int(_text(totals, ".//not-voting-total")),
            "raw": {"source": "house_clerk", "url": source_url},
        },
        "positions": positions,
    }


def parse_senate_roll(xml_text: str, roll_number: int, source_url: str) -> Dict[str, Any]:
    """Parse a senate.gov LIS roll-call document.

    Raises:
        VoteParseError: If the XML is malformed or has no usable date
    """
    try:
        root = ET.fromstring(xml_text)
    except ET.ParseError as e:
        raise VoteParseError(f"Senate roll {roll_number}: invalid XML ({e})") from e

    vote_date = parse_senate_date(_text(root, "vote_date"))
    if not vote_date:
        raise VoteParseError(f"Senate roll {roll_number}: unparseable vote_date")

    positions = []
    for member in root.iter("member"):
        positions.append(
            {
                "last_name": member.findtext("last_name") or "",
                "first_name": member.findtext("first_name") or "",
                "state": member.findtext("state") or "",
                "lis_member_id": member.findtext("lis_member_id"),
                "position": member.findtext("vote_cast"),
            }
        )

    return {
        "vote": {
            "congress": _int(_text(root, "congress"), 0),
            "chamber": "senate",
            "session": _int(_text(root, "session"), 1),
            "roll_number": _int(_text(root, "vote_number"), roll_number),
            "vote_date": vote_date,
            "question": _text(root, "vote_question_text"),
            "description": _text(root, "vote_document_text"),
            "result": _text(root, "vote_result_text"),
            "total_yea": _int(_text(root, "count/yeas")),
            "total_nay": _int(_text(root, "count/nays")),
            "total_present": _int(_text(root, "count/present")),
            "total_not_voting": _int(_text(root, "count/absent")),
            "raw": {"source": "senate_gov", "url": source_url},
        },
        "positions": positions,
    }


class SenateRoster:
    """Resolve senate.gov name/state entries to member ids."""

    def __init__(self, members: List[Dict[str, Any]], nicknames: Optional[NicknameGraph] = None):
        self.nicknames = nicknames or NicknameGraph.default()
        self._by_key: Dict[Tuple[str, str], List[Dict[str, Any]]] = defaultdict(list)
        for member in members:
            key = (normalize_token(member.get("last_name")), state_abbrev(member.get("state")))
            self._by_key[key].append(member)

    def resolve(self, last_name: str, state: str, first_name: str = "") -> Optional[str]:
        candidates = self._by_key.get((normalize_token(last_name), state_abbrev(state)), [])
        if len(candidates) == 1:
            return candidates[0]["id"]
        first = normalize_token(first_name)
        for member in candidates:
            theirs = normalize_token(member.get("first_name"))
            if first and theirs and (
                theirs == first
                or theirs.startswith(first)
                or first.startswith(theirs)
                or self.nicknames.are_equivalent(first, theirs)
            ):
                return member["id"]
        return None


@SyncRegistry.register
class VotesSync(BaseSyncOrchestrator):
    """House and Senate roll-call votes with per-member positions."""

    job_id = "votes"
    job_name = "Roll-call votes"
    provider = "house_clerk"
    dataset = HOUSE_DATASET
    job_type = "votes"
    description = "House Clerk and senate.gov roll-call XML, walked roll by roll"
    frequency_minutes = 120
    priority = 90

    def datasets(self, request: SyncRequest) -> Dict[str, str]:
        chamber = request.chamber or "both"
        streams = {}
        if chamber in ("house", "both"):
            streams[HOUSE_DATASET] = "house_clerk"
        if chamber in ("senate", "both"):
            streams[SENATE_DATASET] = "senate_gov"
        return streams

    def cursor_from_offset(self, offset: int) -> Dict[str, Any]:
        return {"last_roll_number": offset}

    def _max_rolls(self, ctx: SyncContext) -> int:
        if ctx.request.limit:
            return ctx.request.limit
        return FULL_MAX_ROLLS if ctx.is_full else DELTA_MAX_ROLLS

    async def sync(self, ctx: SyncContext) -> None:
        today = self._clock()
        if HOUSE_DATASET in ctx.streams:
            members = self.deps.data.select("members", columns="id,bioguide_id")
            by_bioguide = {m["bioguide_id"]: m["id"] for m in members if m.get("bioguide_id")}
            await self._sync_house(ctx, today, by_bioguide)
        if SENATE_DATASET in ctx.streams and ctx.should_continue():
            members = self.deps.data.select(
                "members", match={"chamber": "senate"}, columns="id,first_name,last_name,state"
            )
            await self._sync_senate(ctx, today, SenateRoster(members))

    # =========================================================================
    # House
    # =========================================================================

    async def _sync_house(
        self, ctx: SyncContext, today: datetime, by_bioguide: Dict[str, str]
    ) -> None:
        stream = ctx.stream(HOUSE_DATASET)
        cursor = stream.start_cursor or {}
        year = int(cursor.get("year") or today.year)
        roll = int(cursor.get("last_roll_number") or 0)

        for _ in range(self._max_rolls(ctx)):
            if not ctx.should_continue():
                return
            next_roll = roll + 1
            url = f"{HOUSE_CLERK_BASE}/{year}/roll{next_roll:03d}.xml"
            response = await ctx.fetch(url, provider="house_clerk")

            if response.status_code == 404:
                self.logger.info(f"House {year} feed ends after roll {roll}")
                ctx.finish(HOUSE_DATASET)
                return
            if not response.ok:
                ctx.result.add_error(f"House roll {next_roll}: HTTP {response.status_code}")
                return

            ctx.result.records_fetched += 1
            try:
                parsed = parse_house_roll(response.text, next_roll, url)
            except VoteParseError as e:
                ctx.result.records_failed += 1
                ctx.result.add_error(str(e))
            else:
                positions = [
                    (by_bioguide.get(p["bioguide_id"]), p["position"]) for p in parsed["positions"]
                ]
                self._write_roll(ctx, HOUSE_DATASET, parsed["vote"], positions)

            roll = next_roll
            ctx.checkpoint({"year": year, "last_roll_number": roll}, dataset=HOUSE_DATASET)

    # =========================================================================
    # Senate
    # =========================================================================

    async def _sync_senate(self, ctx: SyncContext, today: datetime, roster: SenateRoster) -> None:
        stream = ctx.stream(SENATE_DATASET)
        cursor = stream.start_cursor or {}
        congress = int(cursor.get("congress") or current_congress(today))
        session = int(cursor.get("session") or (1 if today.year % 2 else 2))
        roll = int(cursor.get("last_roll_number") or 0)

        for _ in range(self._max_rolls(ctx)):
            if not ctx.should_continue():
                return
            next_roll = roll + 1
            url = (
                f"{SENATE_LIS_BASE}/vote{congress}{session}/"
                f"vote_{congress}_{session}_{next_roll:05d}.xml"
            )
            response = await ctx.fetch(url, provider="senate_gov")

            if response.status_code == 404:
                self.logger.info(f"Senate {congress}-{session} feed ends after roll {roll}")
                ctx.finish(SENATE_DATASET)
                return
            if not response.ok:
                ctx.result.add_error(f"Senate roll {next_roll}: HTTP {response.status_code}")
                return

            ctx.result.records_fetched += 1
            try:
                parsed = parse_senate_roll(response.text, next_roll, url)
            except VoteParseError as e:
                ctx.result.records_failed += 1
                ctx.result.add_error(str(e))
            else:
                positions = []
                unmatched = 0
                for p in parsed["positions"]:
                    member_id = roster.resolve(p["last_name"], p["state"], p["first_name"])
                    unmatched += member_id is None
                    positions.append((member_id, p["position"]))
                if unmatched:
                    self.logger.debug(f"Senate roll {next_roll}: {unmatched} senators unmatched")
                self._write_roll(ctx, SENATE_DATASET, parsed["vote"], positions)

            roll = next_roll
            ctx.checkpoint(
                {"congress": congress, "session": session, "last_roll_number": roll},
                dataset=SENATE_DATASET,
            )

    # =========================================================================
    # Writes
    # =========================================================================

    def _write_roll(
        self,
        ctx: SyncContext,
        dataset: str,
        vote: Dict[str, Any],
        positions: List[Tuple[Optional[str], Optional[str]]],
    ) -> None:
        written = self.reconciler.upsert("votes", [vote], "congress,chamber,roll_number")
        vote_id = written[0]["id"]

        rows = []
        seen = set()
        for member_id, raw in positions:
            if not member_id or member_id in seen:
                continue
            seen.add(member_id)
            normalized, weight = normalize_position(raw)
            rows.append(
                {
                    "vote_id": vote_id,
                    "member_id": member_id,
                    "position": position_code(raw),
                    "position_normalized": normalized,
                    "weight": weight,
                }
            )
        self.reconciler.upsert("member_votes", rows, "vote_id,member_id")
        ctx.add_upserted(1, dataset=dataset)
        member_votes = ctx.result.metadata.get("member_votes", 0) + len(rows)
        ctx.result.metadata["member_votes"] = member_votes
        ctx.result.records_skipped += len(positions) - len(rows)
