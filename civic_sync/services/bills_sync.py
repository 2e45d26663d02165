"""
Congress.gov Bills Sync

Pages through the bill lists of recent congresses and stores each bill with
its sponsor and cosponsors.

Flow per list page:
1. GET /v3/bill/{congress}/{type}?limit&offset (delta: fromDateTime)
2. Fetch every bill's detail concurrently (read-only, bounded pool)
3. Per bill, read every cosponsor page, then upsert the bill on
   (congress, bill_type, bill_number) and its sponsorships on
   (bill_id, member_id). A bill whose reads fail is not written at all.
4. Checkpoint {congress, bill_type, offset}

A page interrupted by the time budget is not checkpointed; the next run
re-reads it and the upserts make the repeat harmless.
"""

import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

from civic_sync.lib.base_sync import BaseSyncOrchestrator, SyncContext
from civic_sync.lib.registry import SyncRegistry

CONGRESS_API_BASE = "https://api.congress.gov/v3"
BILL_TYPES = ("hr", "s", "hjres", "sjres")
PAGE_SIZE = 250
DETAIL_CONCURRENCY = 4
COSPONSOR_PAGE_SIZE = 250


def current_congress(today: Optional[datetime] = None) -> int:
    """The 1st Congress began in 1789; each lasts two years."""
    year = (today or datetime.now(timezone.utc)).year
    return (year - 1789) // 2 + 1


def build_bill_record(
    congress: int, bill_type: str, listing: Dict[str, Any], detail: Dict[str, Any]
) -> Dict[str, Any]:
    """Map a list entry plus its detail payload to a bills row."""
    latest_action = detail.get("latestAction") or listing.get("latestAction") or {}
    laws = detail.get("laws") or []
    return {
        "congress": congress,
        "bill_type": bill_type,
        "bill_number": int(listing.get("number") or detail.get("number")),
        "title": detail.get("title") or listing.get("title") or "Untitled",
        "short_title": detail.get("shortTitle"),
        "introduced_date": detail.get("introducedDate"),
        "latest_action_date": latest_action.get("actionDate"),
        "latest_action_text": latest_action.get("text"),
        "policy_area": (detail.get("policyArea") or {}).get("name"),
        "url": listing.get("url"),
        "enacted": len(laws) > 0,
        "enacted_date": laws[0].get("date") if laws else None,
        "updated_at": detail.get("updateDate") or listing.get("updateDate"),
    }


def sponsorship_rows(
    bill_id: str,
    detail: Dict[str, Any],
    cosponsors: Sequence[Dict[str, Any]],
    member_ids: Dict[str, str],
) -> List[Dict[str, Any]]:
    """Sponsor and cosponsor rows for members we know; others are dropped."""
    rows = []
    sponsors = detail.get("sponsors") or []
    if sponsors:
        member_id = member_ids.get(sponsors[0].get("bioguideId"))
        if member_id:
            rows.append(
                {
                    "bill_id": bill_id,
                    "member_id": member_id,
                    "is_sponsor": True,
                    "is_original_cosponsor": False,
                    "cosponsored_date": detail.get("introducedDate"),
                }
            )

    for cosponsor in cosponsors:
        member_id = member_ids.get(cosponsor.get("bioguideId"))
        if member_id:
            rows.append(
                {
                    "bill_id": bill_id,
                    "member_id": member_id,
                    "is_sponsor": False,
                    "is_original_cosponsor": bool(cosponsor.get("isOriginalCosponsor")),
                    "cosponsored_date": cosponsor.get("sponsorshipDate"),
                }
            )
    return rows


@SyncRegistry.register
class BillsSync(BaseSyncOrchestrator):
    """Bills and sponsorships from the Congress.gov API."""

    job_id = "bills"
    job_name = "Congress.gov bills"
    provider = "congress"
    dataset = "bills"
    job_type = "bills"
    description = "Bills of the current and previous congress with sponsors and cosponsors"
    frequency_minutes = 360
    priority = 80

    def __init__(self, *args: Any, **kwargs: Any):
        self.congresses: Optional[List[int]] = kwargs.pop("congresses", None)
        self.bill_types: Tuple[str, ...] = tuple(kwargs.pop("bill_types", BILL_TYPES))
        super().__init__(*args, **kwargs)

    def _slices(self) -> List[Tuple[int, str]]:
        congresses = self.congresses
        if not congresses:
            latest = current_congress()
            congresses = [latest - 1, latest]
        return [(c, t) for c in congresses for t in self.bill_types]

    async def sync(self, ctx: SyncContext) -> None:
        api_key = os.getenv("CONGRESS_GOV_API_KEY")
        if not api_key:
            raise RuntimeError("CONGRESS_GOV_API_KEY is not configured")

        # Congress.gov caps list pages at 250; a larger page would look final
        page_size = min(ctx.request.limit or PAGE_SIZE, PAGE_SIZE)
        member_ids = self._member_ids()
        slices = self._slices()

        start_index, offset = 0, 0
        cursor = ctx.cursor or {}
        if cursor.get("bill_type"):
            position = (cursor.get("congress"), cursor.get("bill_type"))
            if position in slices:
                start_index = slices.index(position)
                offset = int(cursor.get("offset") or 0)
        elif cursor.get("offset"):
            offset = int(cursor["offset"])

        for index in range(start_index, len(slices)):
            congress, bill_type = slices[index]
            if index > start_index:
                offset = 0

            while True:
                if not ctx.should_continue():
                    self.logger.info(f"Budget reached at {congress}/{bill_type} offset {offset}")
                    return

                params: Dict[str, Any] = {
                    "format": "json",
                    "limit": page_size,
                    "offset": offset,
                    "api_key": api_key,
                }
                if ctx.since is not None:
                    params["fromDateTime"] = ctx.since.astimezone(timezone.utc).strftime(
                        "%Y-%m-%dT%H:%M:%SZ"
                    )

                page = await ctx.fetch_json(
                    f"{CONGRESS_API_BASE}/bill/{congress}/{bill_type}", params=params
                )
                bills = page.get("bills") or []
                ctx.result.records_fetched += len(bills)

                if bills:
                    finished_page = await self._process_page(
                        ctx, congress, bill_type, bills, member_ids, api_key
                    )
                    if not finished_page:
                        return

                offset += len(bills)
                has_next = bool((page.get("pagination") or {}).get("next"))
                if bills and has_next and len(bills) >= page_size:
                    ctx.checkpoint({"congress": congress, "bill_type": bill_type, "offset": offset})
                    continue

                self.logger.info(f"Finished {congress}/{bill_type}: {offset} bills listed")
                if index + 1 < len(slices):
                    next_congress, next_type = slices[index + 1]
                    ctx.checkpoint(
                        {"congress": next_congress, "bill_type": next_type, "offset": 0}
                    )
                else:
                    ctx.checkpoint({"congress": congress, "bill_type": bill_type, "offset": offset})
                break

        ctx.finish()

    async def _fetch_cosponsors(
        self, ctx: SyncContext, url: str, api_key: str
    ) -> List[Dict[str, Any]]:
        """Every cosponsor of one bill, following pagination."""
        cosponsors: List[Dict[str, Any]] = []
        while True:
            payload = await ctx.fetch_json(
                url,
                params={
                    "format": "json",
                    "api_key": api_key,
                    "limit": COSPONSOR_PAGE_SIZE,
                    "offset": len(cosponsors),
                },
            )
            page = payload.get("cosponsors") or []
            cosponsors.extend(page)
            if not page or not (payload.get("pagination") or {}).get("next"):
                return cosponsors

    def _member_ids(self) -> Dict[str, str]:
        rows = self.deps.data.select("members", columns="id,bioguide_id")
        return {r["bioguide_id"]: r["id"] for r in rows if r.get("bioguide_id")}

    async def _process_page(
        self,
        ctx: SyncContext,
        congress: int,
        bill_type: str,
        bills: List[Dict[str, Any]],
        member_ids: Dict[str, str],
        api_key: str,
    ) -> bool:
        """Fetch details and write one page. Returns False if cut short."""

        async def fetch_detail(listing: Dict[str, Any]) -> Dict[str, Any]:
            payload = await ctx.fetch_json(
                f"{CONGRESS_API_BASE}/bill/{congress}/{bill_type}/{listing.get('number')}",
                params={"format": "json", "api_key": api_key},
            )
            return payload.get("bill") or {}

        details = await self.batch.run_pool(
            bills, fetch_detail, concurrency=DETAIL_CONCURRENCY, budget=ctx.budget
        )
        if details.stopped_early:
            return False
        for listing, error in details.errors:
            ctx.result.records_failed += 1
            ctx.result.add_error(
                f"Detail fetch failed for {bill_type}{listing.get('number')}: {error}"
            )

        fetched = [
            (listing, detail)
            for listing, detail in zip(bills, details.results)
            if detail is not None
        ]

        async def write_bill(pair: Tuple[Dict[str, Any], Dict[str, Any]]) -> int:
            listing, detail = pair
            cosponsors: List[Dict[str, Any]] = []
            info = detail.get("cosponsors") or {}
            if info.get("count") and info.get("url"):
                cosponsors = await self._fetch_cosponsors(ctx, info["url"], api_key)

            record = build_bill_record(congress, bill_type, listing, detail)
            written = self.reconciler.upsert(
                "bills", [record], "congress,bill_type,bill_number"
            )
            bill_id = written[0]["id"]
            rows = sponsorship_rows(bill_id, detail, cosponsors, member_ids)
            self.reconciler.upsert(
                "bill_sponsorships", rows, "bill_id,member_id", ignore_duplicates=True
            )
            ctx.add_upserted(1)
            return len(rows)

        outcome = await self.batch.run_tolerant(
            fetched, write_bill, batch_size=10, delay_seconds=0, budget=ctx.budget
        )
        for (listing, _), error in outcome.errors:
            ctx.result.records_failed += 1
            ctx.result.add_error(f"Write failed for {bill_type}{listing.get('number')}: {error}")
        sponsorships = ctx.result.metadata.get("sponsorships", 0) + sum(outcome.results)
        ctx.result.metadata["sponsorships"] = sponsorships

        return not outcome.stopped_early
