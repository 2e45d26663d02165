"""
FEC Campaign Finance Sync

For each in-office member (ordered by id, resumable by offset):

1. Resolve the member's FEC candidate id (cached on the member row, else
   scored against /candidates/search/ results; no match is a skip)
2. Find the principal campaign committee (designation "P")
3. Per election cycle:
   - /candidate/{id}/totals/ + /schedules/schedule_a/by_state/
     -> funding_metrics, upserted on (member_id, cycle)
   - /schedules/schedule_a/by_contributor/
     -> member_contributions, partition (member_id, cycle) replaced
   - /schedules/schedule_a/ itemized receipts
     -> member_receipts, inserted with a derived dedupe id

Members run in error-tolerant batches of 8: one member's failure is recorded
and the rest continue.
"""

import os
from typing import Any, Dict, List, Optional, Set

from civic_sync.lib.base_sync import BaseSyncOrchestrator, SyncContext, SyncRequest
from civic_sync.lib.classification import classify_contributor, infer_industry
from civic_sync.lib.matching import EntityMatcher, MatchEntity, current_cycle, state_abbrev
from civic_sync.lib.reconcile import derive_dedupe_id
from civic_sync.lib.registry import SyncRegistry
from civic_sync.lib.time_budget import BudgetExhaustedError

FEC_API_BASE = "https://api.open.fec.gov/v1"
MEMBER_BATCH_SIZE = 8
CANDIDATE_SEARCH_SIZE = 20
CONTRIBUTOR_PAGE_SIZE = 20
RECEIPTS_PAGE_SIZE = 50
BY_STATE_PAGE_SIZE = 100
NEUTRAL_SCORE = 50


def cycles_for(mode: str, cycle: int) -> List[int]:
    """Delta covers the current cycle; full covers the rolling window.

    Senators not up for re-election file under the next cycle, hence +2.
    """
    if mode == "full":
        return [cycle + 2, cycle, cycle - 2, cycle - 4, cycle - 6, cycle - 8]
    return [cycle]


def principal_committee(committees: List[Dict[str, Any]]) -> Optional[str]:
    """Designation P first, then a House/Senate campaign committee."""
    for committee in committees:
        if committee.get("designation") == "P":
            return committee.get("committee_id")
    for committee in committees:
        if committee.get("committee_type") in ("H", "S"):
            return committee.get("committee_id")
    return committees[0].get("committee_id") if committees else None


def _pct(part: float, whole: float) -> Optional[float]:
    return (part / whole) * 100 if whole > 0 else None


def funding_metrics_row(
    member_id: str,
    cycle: int,
    totals: Dict[str, Any],
    in_state: float,
    out_of_state: float,
    itemized: float,
) -> Dict[str, Any]:
    """Percentages and derived 0-100 scores for one member and cycle.

    Unitemized individual money (individual total minus itemized) is taken
    as small-donor money. Missing percentages score as 50.
    """
    receipts = float(totals.get("receipts") or 0)
    individuals = float(totals.get("individual_contributions") or 0)
    committees = float(totals.get("other_political_committee_contributions") or 0)

    pct_individuals = _pct(individuals, receipts)
    pct_committees = _pct(committees, receipts)
    pct_small = _pct(max(individuals - itemized, 0), individuals)
    basis = itemized or individuals
    pct_in_state = _pct(in_state, basis)
    pct_out_of_state = _pct(out_of_state, basis)

    def score(value: Optional[float]) -> float:
        return NEUTRAL_SCORE if value is None else value

    return {
        "member_id": member_id,
        "cycle": cycle,
        "total_receipts": receipts,
        "pct_from_individuals": pct_individuals,
        "pct_from_committees": pct_committees,
        "pct_from_small_donors": pct_small,
        "pct_from_in_state": pct_in_state,
        "pct_from_out_of_state": pct_out_of_state,
        "grassroots_support_score": round(
            0.4 * score(pct_individuals) + 0.3 * score(pct_small) + 0.3 * score(pct_in_state)
        ),
        "pac_dependence_score": round(score(pct_committees)),
        "local_money_score": round(score(pct_in_state)),
    }


def contribution_rows(member_id: str, cycle: int, results: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    rows = []
    for c in results:
        amount = float(c.get("total") or 0)
        if amount <= 0:
            continue
        employer = c.get("contributor_employer")
        occupation = c.get("contributor_occupation")
        rows.append(
            {
                "member_id": member_id,
                "cycle": cycle,
                "contributor_name": c.get("contributor_name") or "Unknown",
                "contributor_type": classify_contributor(employer, occupation),
                "industry": infer_industry(employer, occupation),
                "amount": amount,
            }
        )
    return rows


def receipt_rows(member_id: str, cycle: int, results: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    rows = []
    for r in results:
        amount = r.get("contribution_receipt_amount")
        if amount is None:
            continue
        employer = r.get("contributor_employer")
        occupation = r.get("contributor_occupation")
        rows.append(
            {
                "dedupe_id": derive_dedupe_id(
                    member_id,
                    r.get("sub_id") or r.get("transaction_id"),
                    r.get("contribution_receipt_date"),
                    amount,
                    r.get("contributor_name"),
                    r.get("contributor_zip"),
                ),
                "member_id": member_id,
                "cycle": cycle,
                "contributor_name": r.get("contributor_name"),
                "contributor_state": r.get("contributor_state"),
                "contributor_zip": r.get("contributor_zip"),
                "contributor_employer": employer,
                "contributor_occupation": occupation,
                "contributor_type": classify_contributor(employer, occupation),
                "industry": infer_industry(employer, occupation),
                "amount": float(amount),
                "receipt_date": r.get("contribution_receipt_date"),
            }
        )
    return rows


@SyncRegistry.register
class FecFinanceSync(BaseSyncOrchestrator):
    """Campaign-finance totals, top contributors and itemized receipts."""

    job_id = "fec-finance"
    job_name = "FEC campaign finance"
    provider = "fec"
    dataset = "finance"
    job_type = "finance"
    description = "OpenFEC totals, contributors and receipts for in-office members"
    frequency_minutes = 300
    priority = 60

    def scope_for(self, request: SyncRequest) -> Optional[str]:
        return request.member_id

    async def sync(self, ctx: SyncContext) -> None:
        api_key = os.getenv("FEC_API_KEY", "DEMO_KEY")
        cycle = current_cycle(self._clock())
        cycles = cycles_for(ctx.request.mode, cycle)
        matcher = EntityMatcher(cycle=cycle)

        if ctx.request.member_id:
            members = self.deps.data.select("members", match={"id": ctx.request.member_id})
            if not members:
                raise LookupError(f"Member {ctx.request.member_id} not found")
            start = 0
        else:
            members = self.deps.data.select("members", match={"in_office": True}, order_by="id")
            start = int((ctx.cursor or {}).get("offset") or 0)

        pending = members[start:]
        if ctx.request.limit:
            pending = pending[: ctx.request.limit]
        self.logger.info(
            f"{len(pending)} members to sync from offset {start} "
            f"of {len(members)}, cycles {cycles}"
        )

        incomplete: Set[int] = set()

        async def process(item) -> str:
            position, member = item
            try:
                finished = await self._sync_member(ctx, member, matcher, cycles, api_key)
            except BudgetExhaustedError as e:
                # Not a failure: the member is retried from this offset next run
                self.logger.info(f"Budget cut {member.get('id')}: {e}")
                finished = False
            if not finished:
                incomplete.add(position)
            return "done" if finished else "incomplete"

        def on_progress(processed: int, total: int) -> None:
            if ctx.request.member_id:
                return
            resume_at = start + (min(incomplete) if incomplete else processed)
            ctx.checkpoint({"offset": resume_at})

        outcome = await self.batch.run_tolerant(
            list(enumerate(pending)),
            process,
            batch_size=MEMBER_BATCH_SIZE,
            delay_seconds=0,
            on_progress=on_progress,
            budget=ctx.budget,
        )
        for (_, member), error in outcome.errors:
            ctx.result.records_failed += 1
            ctx.result.add_error(f"Member {member.get('id')} ({member.get('full_name')}): {error}")

        if outcome.stopped_early or incomplete:
            return
        if start + len(pending) >= len(members):
            ctx.finish()

    async def _sync_member(
        self,
        ctx: SyncContext,
        member: Dict[str, Any],
        matcher: EntityMatcher,
        cycles: List[int],
        api_key: str,
    ) -> bool:
        """Sync one member. Returns False if the budget cut it short."""
        entity = MatchEntity.from_member(member)
        if not entity.cached_external_id:
            params: Dict[str, Any] = {
                "api_key": api_key,
                "name": entity.last_name,
                "per_page": CANDIDATE_SEARCH_SIZE,
                "sort": "-election_years",
            }
            if entity.state:
                params["state"] = entity.state
            if entity.office:
                params["office"] = entity.office
            payload = await ctx.fetch_json(f"{FEC_API_BASE}/candidates/search/", params=params)
            candidates = payload.get("results") or []
            ctx.result.records_fetched += len(candidates)

            match = matcher.match(entity, candidates)
            if match is None:
                ctx.result.records_skipped += 1
                self.logger.info(f"No FEC match for {member.get('full_name')} ({entity.state})")
                return True
            self.deps.data.update(
                "members",
                {"fec_candidate_id": match.external_id, "fec_match_score": match.score},
                {"id": member["id"]},
            )
            self.logger.info(
                f"Matched {member.get('full_name')} -> {match.external_id} "
                f"({match.method}, score {match.score})"
            )
            candidate_id = match.external_id
        else:
            candidate_id = entity.cached_external_id

        committee_ids = list(member.get("fec_committee_ids") or [])
        if not committee_ids:
            payload = await ctx.fetch_json(
                f"{FEC_API_BASE}/candidate/{candidate_id}/committees/",
                params={"api_key": api_key, "per_page": CANDIDATE_SEARCH_SIZE},
            )
            committees = payload.get("results") or []
            principal = principal_committee(committees)
            committee_ids = [principal] if principal else []
            committee_ids += [
                c["committee_id"] for c in committees
                if c.get("committee_id") and c.get("committee_id") != principal
            ]
            self.deps.data.update(
                "members", {"fec_committee_ids": committee_ids}, {"id": member["id"]}
            )
        committee_id = committee_ids[0] if committee_ids else None

        found_data = False
        for cycle in cycles:
            if not ctx.should_continue():
                return False
            found_data |= await self._sync_cycle(
                ctx, member, candidate_id, committee_id, cycle, api_key
            )

        if found_data:
            self.deps.data.update(
                "members", {"fec_last_synced_at": self._clock().isoformat()}, {"id": member["id"]}
            )
        return True

    async def _sync_cycle(
        self,
        ctx: SyncContext,
        member: Dict[str, Any],
        candidate_id: str,
        committee_id: Optional[str],
        cycle: int,
        api_key: str,
    ) -> bool:
        member_id = member["id"]
        payload = await ctx.fetch_json(
            f"{FEC_API_BASE}/candidate/{candidate_id}/totals/",
            params={"api_key": api_key, "cycle": cycle},
        )
        results = payload.get("results") or []
        totals = results[0] if results else None
        if not totals or not totals.get("receipts"):
            self.logger.debug(f"No receipts for {member_id} in {cycle}")
            return False
        ctx.result.records_fetched += 1

        in_state = out_of_state = itemized = 0.0
        if committee_id:
            by_state = await ctx.fetch_json(
                f"{FEC_API_BASE}/schedules/schedule_a/by_state/",
                params={
                    "api_key": api_key,
                    "committee_id": committee_id,
                    "cycle": cycle,
                    "per_page": BY_STATE_PAGE_SIZE,
                },
            )
            home = state_abbrev(member.get("state"))
            for row in by_state.get("results") or []:
                amount = float(row.get("total") or 0)
                itemized += amount
                if row.get("state") == home:
                    in_state += amount
                else:
                    out_of_state += amount

        self.reconciler.upsert(
            "funding_metrics",
            [funding_metrics_row(member_id, cycle, totals, in_state, out_of_state, itemized)],
            "member_id,cycle",
        )
        ctx.add_upserted(1)

        if not committee_id:
            return True

        contributors = await ctx.fetch_json(
            f"{FEC_API_BASE}/schedules/schedule_a/by_contributor/",
            params={
                "api_key": api_key,
                "committee_id": committee_id,
                "cycle": cycle,
                "sort": "-total",
                "per_page": CONTRIBUTOR_PAGE_SIZE,
            },
        )
        rows = contribution_rows(member_id, cycle, contributors.get("results") or [])
        ctx.result.records_fetched += len(rows)
        rewritten = self.reconciler.replace_partition(
            "member_contributions", {"member_id": member_id, "cycle": cycle}, rows
        )
        ctx.add_upserted(rewritten)

        receipts = await ctx.fetch_json(
            f"{FEC_API_BASE}/schedules/schedule_a/",
            params={
                "api_key": api_key,
                "committee_id": committee_id,
                "two_year_transaction_period": cycle,
                "sort": "-contribution_receipt_date",
                "per_page": RECEIPTS_PAGE_SIZE,
            },
        )
        receipt_records = receipt_rows(member_id, cycle, receipts.get("results") or [])
        ctx.result.records_fetched += len(receipt_records)
        if receipt_records:
            ctx.add_upserted(self.reconciler.insert_deduped("member_receipts", receipt_records))
        return True
