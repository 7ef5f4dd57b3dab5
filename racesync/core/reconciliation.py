"""
reconciliation.py — Merge timing-provider data into local campaign state.

Pipeline pieces:
- event resolver: provider event id → local event, rebuilt on every run
- import_from_provider: events, categories, runners, checkpoints, start times, scores
- sync_runners: full paged biography sync
- sync_timing_only: lightweight score/status merge (used by the scheduler)
- preview_provider_data: raw diagnostic fetch of one page

Every run that touches a campaign is bracketed by a sync log row
(pending → success|error).
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, AsyncIterator, Awaitable, Callable, NamedTuple, Optional

from racesync.core import database as db
from racesync.core import provider_fields as pf
from racesync.core.config import settings
from racesync.core.errors import (
    ConfigurationError, NotFoundError, RaceSyncError, UpstreamError,
)
from racesync.core.provider_client import ProviderClient

logger = logging.getLogger("racesync.sync")

PREVIEW_KINDS = ("info", "bio", "split", "score", "passed_time")
SNIPPET_LIMIT = 5000
BIO_SOURCE = "provider bio sync"
RACE_FINISHED_AFTER = timedelta(days=2)

# not_started < in_progress < terminal. Terminal states may replace each
# other; nothing moves back below a terminal state.
STATUS_RANK = {"not_started": 0, "in_progress": 1, "finished": 2, "dnf": 2, "dns": 2}


# ======================================================================
# PRECONDITIONS + SYNC LOG
# ======================================================================

def get_sync_enabled_campaign(conn: sqlite3.Connection, campaign_id: int) -> sqlite3.Row:
    """Campaign row if sync is allowed and credentials are present."""
    campaign = db.get_campaign(conn, campaign_id)
    if campaign is None:
        raise NotFoundError("Campaign", campaign_id)
    if not campaign["allow_sync"]:
        raise ConfigurationError("Provider sync is disabled for this campaign")
    if not (campaign["token"] or "").strip() or not (campaign["race_id"] or "").strip():
        raise ConfigurationError("Missing token or race id for this campaign")
    return campaign


class RunOutcome(NamedTuple):
    result: Any
    message: str
    processed: int = 0
    failed: int = 0
    detail: Optional[dict] = None
    status: str = "success"


async def _run_logged(conn: sqlite3.Connection, campaign_id: int, label: str,
                      body: Callable[[], Awaitable[RunOutcome]]) -> Any:
    if db.get_campaign(conn, campaign_id) is None:
        raise NotFoundError("Campaign", campaign_id)

    log_id = db.create_sync_log(conn, campaign_id, f"Provider {label} started")
    try:
        outcome = await body()
    except RaceSyncError as e:
        _finalize_error(conn, log_id, label, e.message, type(e).__name__)
        raise
    except Exception as e:
        logger.exception("Provider %s failed for campaign %s", label, campaign_id)
        message = str(e) or f"Provider {label} failed"
        _finalize_error(conn, log_id, label, message, type(e).__name__)
        raise UpstreamError(message) from e

    db.finalize_sync_log(conn, log_id, outcome.status, outcome.message,
                         records_processed=outcome.processed,
                         records_failed=outcome.failed,
                         detail=outcome.detail)
    return outcome.result


def _finalize_error(conn: sqlite3.Connection, log_id: int, label: str,
                    message: str, name: str) -> None:
    db.finalize_sync_log(
        conn, log_id, "error", f"Provider {label} failed: {message}",
        records_processed=0, records_failed=1,
        detail={"error": {"message": message, "name": name}},
    )


def _cap(errors: list[str]) -> list[str]:
    return errors[:settings.ERROR_SAMPLE_CAP]


# ======================================================================
# EVENT RESOLVER
# ======================================================================

@dataclass
class EventResolver:
    """Provider event id → local event id for one campaign."""

    event_id_by_remote: dict[int, int] = field(default_factory=dict)
    fallback_event_id: Optional[int] = None
    category_by_event_id: dict[int, str] = field(default_factory=dict)

    def resolve(self, remote_event_id: Optional[int],
                forced_event_id: Optional[int] = None) -> Optional[int]:
        if remote_event_id is not None and remote_event_id in self.event_id_by_remote:
            return self.event_id_by_remote[remote_event_id]
        if forced_event_id is not None:
            return forced_event_id
        return self.fallback_event_id

    def local_event_ids(self) -> list[int]:
        ids = list(dict.fromkeys(self.event_id_by_remote.values()))
        if self.fallback_event_id is not None and self.fallback_event_id not in ids:
            ids.append(self.fallback_event_id)
        return ids


def build_event_resolver(conn: sqlite3.Connection, campaign_id: int) -> EventResolver:
    events = [dict(e) for e in db.get_campaign_events(conn, campaign_id)]
    if not events:
        raise ConfigurationError("Campaign has no events for runner mapping")
    categories = [dict(c) for c in db.get_campaign_categories(conn, campaign_id)]

    resolver = EventResolver()
    for index, event in enumerate(events):
        remote = pf.parse_int(event.get("remote_event_id"))
        if remote is None:
            remote = pf.infer_remote_event_id(event, categories, index)
        if remote is not None:
            resolver.event_id_by_remote[remote] = event["id"]

    # Multi-event campaigns leave unmapped rows unresolved
    if len(events) == 1:
        resolver.fallback_event_id = events[0]["id"]

    for event in events:
        name = pf.to_safe_string(event.get("category") or event.get("name"))
        if name:
            resolver.category_by_event_id[event["id"]] = name
    return resolver


def _campaign_remote_eids(conn: sqlite3.Connection, campaign_id: int) -> list[Optional[int]]:
    """Distinct provider event ids of the campaign, or [None] to fetch unfiltered."""
    eids = []
    for event in db.get_campaign_events(conn, campaign_id):
        eid = pf.parse_int(event["remote_event_id"])
        if eid is not None and eid not in eids:
            eids.append(eid)
    return eids or [None]


# ======================================================================
# ROW MAPPING
# ======================================================================

NATIONALITY_ALIASES = (
    "CountryRegion", "countryRegion", "Country", "country", "Nation", "nation",
    "Nationality", "nationality", "Nat", "nat", "CountryCode", "countryCode",
)
NATIONALITY_KEYS = ("country", "nation", "nationality", "countryregion", "countrycode", "nat")
ID_NO_ALIASES = ("IDNo", "IdNo", "idNo", "IDNO", "CardId", "cardId", "CardID")
ID_NO_KEYS = ("idno", "cardid", "cardno", "identityno")
EMAIL_ALIASES = ("Email", "email", "EMAIL")
EMAIL_KEYS = ("email", "mail")


def _bib_or_athlete_id(row: Any) -> str:
    return pf.to_safe_string(pf.pick(row, "BIB", "Bib", "bib", "AthleteId", "athleteId"))


def map_bio_row(row: Any, resolver: EventResolver,
                forced_event_id: Optional[int] = None) -> Optional[dict]:
    """Convert one biography row into runner fields, or None to skip."""
    event_id = resolver.resolve(pf.resolve_remote_event_id(row), forced_event_id)
    if event_id is None:
        return None

    bib = _bib_or_athlete_id(row)
    if not bib:
        return None

    explicit_first = pf.to_safe_string(pf.pick(row, "FirstName", "firstName"))
    explicit_last = pf.to_safe_string(pf.pick(row, "LastName", "lastName"))
    english_name = pf.to_safe_string(pf.pick(row, "EnName", "enName"))
    local_name = pf.to_safe_string(pf.pick(row, "Name", "name"))
    base_name = english_name or local_name
    split_first, split_last = pf.split_name(base_name)
    first_local = last_local = None
    if local_name and local_name != base_name:
        first_local, last_local = pf.split_name(local_name)

    raw_category = pf.to_safe_string(pf.pick(row, "Category", "category"))
    raw_category2 = pf.to_safe_string(pf.pick(row, "Category2", "category2"))
    category_is_age_group = pf.looks_like_age_group(raw_category)

    # Provider "Category" often carries the age group; the distance label
    # comes from the local event.
    category = resolver.category_by_event_id.get(event_id)
    if not category:
        if raw_category and not category_is_age_group and not raw_category.isdigit():
            category = raw_category
        else:
            category = "General"

    age_group = (raw_category2
                 or pf.to_safe_string(pf.pick(row, "AgeGroup", "ageGroup"))
                 or (raw_category if category_is_age_group else ""))

    age = pf.parse_distance(pf.pick(row, "Age", "age"))
    chip_code = pf.to_safe_string(pf.pick(row, "ChipCode", "chipCode"))
    team = pf.to_safe_string(pf.pick(row, "TeamName", "teamName"))
    athlete_id = pf.row_athlete_id(row)

    return {
        "event_id": event_id,
        "bib": bib,
        "first_name": explicit_first or split_first,
        "last_name": explicit_last or split_last,
        "first_name_local": first_local or None,
        "last_name_local": last_local or None,
        "gender": pf.normalize_gender(pf.pick(row, "Gender", "gender")),
        "category": category,
        "age": int(age) if age is not None else None,
        "age_group": age_group or None,
        "birth_date": pf.parse_optional_date(pf.pick(row, "Birthday", "birthday")),
        "nationality": pf.to_safe_string(
            pf.pick_or_scan(row, NATIONALITY_ALIASES, NATIONALITY_KEYS)) or None,
        "team": team or None,
        "email": pf.to_safe_string(pf.pick_or_scan(row, EMAIL_ALIASES, EMAIL_KEYS)) or None,
        "phone": pf.to_safe_string(pf.pick(row, "Phone", "phone")) or None,
        "id_no": pf.to_safe_string(pf.pick_or_scan(row, ID_NO_ALIASES, ID_NO_KEYS)) or None,
        "chip_code": chip_code or None,
        "athlete_id": athlete_id or None,
        "source": BIO_SOURCE,
    }


def skip_reason(row: Any, resolver: EventResolver,
                forced_event_id: Optional[int] = None) -> str:
    """Reason code for a biography row that map_bio_row rejected."""
    if not _bib_or_athlete_id(row):
        return "no_bib"
    remote = pf.resolve_remote_event_id(row)
    if remote is None:
        return "no_event_id_in_row"
    if (remote not in resolver.event_id_by_remote and forced_event_id is None
            and resolver.fallback_event_id is None):
        return f"unmapped_eid_{remote}"
    return "resolve_failed"


# ======================================================================
# SCORE ROWS
# ======================================================================

def next_status(current: str, status_text: str, net_ms: Optional[int],
                gun_ms: Optional[int]) -> Optional[str]:
    """New runner status implied by a score row, or None to keep the current one."""
    text = status_text.lower()
    if "dnf" in text or "did not finish" in text:
        new = "dnf"
    elif "dns" in text or "did not start" in text:
        new = "dns"
    elif "finish" in text or "completed" in text or (net_ms or 0) > 0:
        new = "finished"
    elif (gun_ms or 0) > 0 and current == "not_started":
        new = "in_progress"
    else:
        return None

    if new == current:
        return None
    if STATUS_RANK.get(new, 0) < STATUS_RANK.get(current, 0):
        return None
    return new


def _positive_int(row: Any, *aliases: str) -> Optional[int]:
    value = pf.parse_int(pf.pick(row, *aliases))
    return value if value is not None and value > 0 else None


def score_row_updates(row: Any, runner: dict) -> tuple[dict, bool]:
    """Timing/rank/status fields a score row sets on a runner.

    Returns (fields, status_changed). Biographical fields are never touched.
    """
    fields: dict = {}

    net_raw = pf.pick(row, "NetTime", "netTime", "FinishTime", "finishTime")
    if net_raw:
        net_ms = pf.parse_time_to_ms(net_raw)
        if net_ms is not None and net_ms > 0:
            fields["net_time"] = net_ms

    gun_raw = pf.pick(row, "GunTime", "gunTime", "ElapsedTime", "elapsedTime",
                      "RealTime", "realTime", "Time", "time")
    if gun_raw:
        gun_ms = pf.parse_time_to_ms(gun_raw)
        if gun_ms is not None and gun_ms > 0:
            fields["gun_time"] = gun_ms
            fields["elapsed_time"] = gun_ms

    status_text = pf.to_safe_string(pf.pick(row, "Status", "status", "Result", "result"))
    new_status = next_status(runner.get("status") or "not_started", status_text,
                             fields.get("net_time"), fields.get("gun_time"))
    if new_status:
        fields["status"] = new_status

    ranks = {
        "overall_rank": ("OverallPosition", "overallPosition", "Rank", "rank",
                         "OverallRank", "overallRank", "Place", "place"),
        "gender_rank": ("GenderPosition", "genderPosition", "GenderRank", "genderRank",
                        "SexRank", "sexRank"),
        "gender_net_rank": ("NetTimeGenderPosition", "netTimeGenderPosition",
                            "GenderNetRank", "genderNetRank", "SexNetRank", "sexNetRank"),
        "category_rank": ("CategoryPosition", "categoryPosition", "CategoryRank",
                          "categoryRank"),
        "age_group_rank": ("CategoryGenderPosition", "categoryGenderPosition",
                           "AgeGroupRank", "ageGroupRank"),
        "total_finishers": ("TotalFinishers", "totalFinishers", "FinishCount", "finishCount"),
        "gender_finishers": ("GenderFinishers", "genderFinishers", "SexFinishCount",
                             "sexFinishCount"),
    }
    for column, aliases in ranks.items():
        value = _positive_int(row, *aliases)
        if value is not None:
            fields[column] = value

    gun_pace = pf.to_safe_string(pf.pick(row, "GunPace", "gunPace", "Pace", "pace"))
    if gun_pace:
        fields["gun_pace"] = gun_pace
    net_pace = pf.to_safe_string(pf.pick(row, "NetPace", "netPace", "ChipPace", "chipPace"))
    if net_pace:
        fields["net_pace"] = net_pace

    latest = pf.to_safe_string(pf.pick(row, "TpName", "tpName", "LastStation",
                                       "lastStation", "LatestCheckpoint"))
    if latest:
        fields["latest_checkpoint"] = latest

    return fields, new_status is not None


class RunnerIndex:
    """In-memory lookup of a campaign's runners by (event, bib) and (event, athlete id)."""

    def __init__(self, runners: list[dict], event_ids: list[int]):
        self.event_ids = event_ids
        self.by_bib: dict[tuple[int, str], dict] = {}
        self.by_athlete: dict[tuple[int, str], dict] = {}
        for runner in runners:
            if runner.get("bib"):
                self.by_bib[(runner["event_id"], runner["bib"])] = runner
            if runner.get("athlete_id"):
                self.by_athlete[(runner["event_id"], runner["athlete_id"])] = runner

    def _lookup(self, event_id: int, bib: str, athlete_id: str) -> Optional[dict]:
        runner = None
        if bib:
            runner = self.by_bib.get((event_id, bib))
        if runner is None and athlete_id:
            runner = self.by_athlete.get((event_id, athlete_id))
        if runner is None and athlete_id and athlete_id != bib:
            runner = self.by_bib.get((event_id, athlete_id))
        return runner

    def find(self, event_id: int, bib: str, athlete_id: str) -> Optional[dict]:
        runner = self._lookup(event_id, bib, athlete_id)
        if runner is not None:
            return runner
        # Runner registered under a different event of the campaign
        for other in self.event_ids:
            if other == event_id:
                continue
            runner = self._lookup(other, bib, athlete_id)
            if runner is not None:
                return runner
        return None


# ======================================================================
# PAGING
# ======================================================================

async def _iter_pages(client: ProviderClient, campaign: sqlite3.Row, kind: str,
                      eid: Optional[int] = None,
                      strict: bool = True) -> AsyncIterator[tuple[int, list]]:
    """Yield (page, rows) until an empty page, the declared total, or a page/row ceiling.

    strict: a non-2xx or non-JSON page raises UpstreamError; otherwise it ends paging.
    """
    total_expected: Optional[float] = None
    fetched = 0
    eid_label = eid if eid is not None else "all"
    for page in range(1, settings.PROVIDER_MAX_PAGES + 1):
        resp = await client.request(campaign, kind, page, eid)
        if not resp.ok:
            if strict:
                raise UpstreamError(
                    f"Provider {kind} eid={eid_label} page {page} returned status {resp.status_code}")
            logger.warning("Provider %s eid=%s page %d returned %d, stopping",
                           kind, eid_label, page, resp.status_code)
            return
        if not resp.is_json_object:
            if strict:
                raise UpstreamError(
                    f"Provider {kind} eid={eid_label} page {page} returned invalid JSON")
            return

        rows = pf.extract_rows(resp.body)
        if not rows:
            return
        if isinstance(resp.body, dict):
            total = pf.parse_numeric(resp.body.get("total"))
            if total is not None and total > 0:
                total_expected = total
        remaining = settings.PROVIDER_MAX_ROWS - fetched
        if len(rows) > remaining:
            rows = rows[:remaining]
        fetched += len(rows)
        yield page, rows
        if total_expected is not None and fetched >= total_expected:
            return
        if fetched >= settings.PROVIDER_MAX_ROWS:
            logger.warning("Provider %s eid=%s reached the %d row ceiling, stopping",
                           kind, eid_label, settings.PROVIDER_MAX_ROWS)
            return


# ======================================================================
# TIMING SYNC
# ======================================================================

async def _sync_timing(conn: sqlite3.Connection, client: ProviderClient,
                       campaign_id: int) -> RunOutcome:
    campaign = get_sync_enabled_campaign(conn, campaign_id)
    resolver = build_event_resolver(conn, campaign_id)
    result = {"updated": 0, "status_changes": 0, "errors": []}

    event_ids = resolver.local_event_ids()
    runners = [dict(r) for r in db.get_runners_for_events(
        conn, event_ids, limit=settings.PROVIDER_MAX_ROWS)]
    index = RunnerIndex(runners, event_ids)
    logger.debug("Timing sync: indexed %d runners for campaign %s", len(runners), campaign_id)

    updates: list[tuple[int, dict]] = []
    for eid in _campaign_remote_eids(conn, campaign_id):
        try:
            async for page, rows in _iter_pages(client, campaign, "score", eid):
                for row in rows:
                    bib = pf.row_bib(row)
                    athlete_id = pf.row_athlete_id(row)
                    if not bib and not athlete_id:
                        continue

                    if eid is not None:
                        event_id = resolver.event_id_by_remote.get(eid)
                    else:
                        remote = pf.resolve_remote_event_id(row)
                        event_id = resolver.event_id_by_remote.get(remote) if remote is not None else None
                    if event_id is None:
                        event_id = resolver.fallback_event_id
                    if event_id is None:
                        continue

                    runner = index.find(event_id, bib, athlete_id)
                    if runner is None:
                        continue

                    fields, status_changed = score_row_updates(row, runner)
                    if not fields:
                        continue
                    # Later rows in this run see the new state
                    runner.update(fields)
                    updates.append((runner["id"], fields))
                    result["updated"] += 1
                    if status_changed:
                        result["status_changes"] += 1
        except UpstreamError as e:
            result["errors"].append(f"EID {eid if eid is not None else 'all'}: {e.message}")

    if updates:
        db.bulk_update_runners(conn, updates)
        logger.info("Timing sync campaign %s: %d updates, %d status changes",
                    campaign_id, result["updated"], result["status_changes"])

    result["errors"] = _cap(result["errors"])
    return RunOutcome(
        result=result,
        message=(f"Provider timing sync: {result['updated']} updated, "
                 f"{result['status_changes']} status changes"),
        processed=result["updated"],
        failed=len(result["errors"]),
        detail={"timing": result},
        status="error" if result["errors"] else "success",
    )


async def sync_timing_only(conn: sqlite3.Connection, client: ProviderClient,
                           campaign_id: int) -> dict:
    """Merge score rows (times, ranks, pace, status) into existing runners.

    Returns {"updated", "status_changes", "errors"}. Per-event transport
    failures are collected into errors; configuration problems raise.
    """
    if settings.LOG_TIMING_SYNCS:
        return await _run_logged(conn, campaign_id, "timing sync",
                                 lambda: _sync_timing(conn, client, campaign_id))
    outcome = await _sync_timing(conn, client, campaign_id)
    return outcome.result


# ======================================================================
# FULL RUNNER SYNC
# ======================================================================

async def sync_runners(conn: sqlite3.Connection, client: ProviderClient,
                       campaign_id: int, update_existing: bool = True) -> dict:
    """Page through biography data for every provider event, then merge scores."""

    async def body() -> RunOutcome:
        campaign = get_sync_enabled_campaign(conn, campaign_id)
        resolver = build_event_resolver(conn, campaign_id)
        stats = {"pages_fetched": 0, "rows_fetched": 0, "rows_mapped": 0,
                 "rows_skipped": 0, "inserted": 0, "updated": 0}
        skip_reasons: dict[str, int] = {}
        errors: list[str] = []

        for eid in _campaign_remote_eids(conn, campaign_id):
            forced = resolver.event_id_by_remote.get(eid) if eid is not None else None
            async for page, rows in _iter_pages(client, campaign, "bio", eid, strict=True):
                stats["pages_fetched"] += 1
                stats["rows_fetched"] += len(rows)
                mapped = []
                for row in rows:
                    runner = map_bio_row(row, resolver, forced)
                    if runner is None:
                        reason = skip_reason(row, resolver, forced)
                        skip_reasons[reason] = skip_reasons.get(reason, 0) + 1
                        stats["rows_skipped"] += 1
                    else:
                        mapped.append(runner)
                if not mapped:
                    continue
                stats["rows_mapped"] += len(mapped)
                page_result = db.upsert_runners(conn, mapped, update_existing=update_existing)
                stats["inserted"] += page_result["inserted"]
                stats["updated"] += page_result["updated"]
                errors.extend(page_result["errors"])
                logger.info("Runner sync eid=%s page=%d: fetched=%d mapped=%d inserted=%d updated=%d",
                            eid if eid is not None else "all", page, len(rows), len(mapped),
                            page_result["inserted"], page_result["updated"])

        if skip_reasons:
            logger.warning("Runner sync campaign %s skip reasons: %s", campaign_id, skip_reasons)
        if stats["rows_fetched"] > 0 and stats["rows_mapped"] == 0:
            raise ConfigurationError(
                "Unable to map provider rows to local events. Check that provider "
                "event ids match the events' remote event id or a campaign "
                "category's remote event no.")

        score = await sync_timing_only(conn, client, campaign_id)
        summary = dict(stats, skip_reasons=skip_reasons, errors=_cap(errors),
                       score_updates=score["updated"],
                       score_status_changes=score["status_changes"])
        result = {"fetched_at": datetime.now().isoformat(timespec="seconds"),
                  "summary": summary}
        return RunOutcome(
            result=result,
            message=(f"Provider runner sync success (inserted {stats['inserted']}, "
                     f"updated {stats['updated']})"),
            processed=stats["rows_mapped"],
            failed=stats["rows_skipped"] + len(summary["errors"]),
            detail={"full_sync": result},
        )

    return await _run_logged(conn, campaign_id, "runner sync", body)


# ======================================================================
# PREVIEW
# ======================================================================

async def preview_provider_data(conn: sqlite3.Connection, client: ProviderClient,
                                campaign_id: int, kind: str = "info",
                                page: int = 1) -> dict:
    """Fetch one page of one kind and return a diagnostic payload."""
    if kind not in PREVIEW_KINDS:
        raise ConfigurationError(f"kind must be one of: {', '.join(PREVIEW_KINDS)}")
    try:
        safe_page = max(1, int(page))
    except (TypeError, ValueError):
        safe_page = 1

    async def body() -> RunOutcome:
        campaign = get_sync_enabled_campaign(conn, campaign_id)
        resp = await client.request(campaign, kind, safe_page)
        item_count = len(pf.extract_rows(resp.body))
        preview = {
            "fetched_at": datetime.now().isoformat(timespec="seconds"),
            "request": {
                "kind": kind,
                "page": safe_page,
                "endpoint": resp.endpoint,
                "request_params": resp.request_params,
            },
            "response": {
                "ok": resp.ok,
                "http_status": resp.status_code,
                "content_type": resp.content_type,
                "body_size": len(resp.raw_body),
                "raw_snippet": resp.raw_body[:SNIPPET_LIMIT],
                "raw_snippet_truncated": len(resp.raw_body) > SNIPPET_LIMIT,
                "item_count": item_count,
                "payload_sample": pf.payload_sample(resp.body),
            },
        }
        if not resp.ok:
            raise UpstreamError(f"Provider returned status {resp.status_code}")
        return RunOutcome(
            result=preview,
            message=f"Provider {kind} preview success",
            processed=item_count,
            detail={"preview": preview},
        )

    return await _run_logged(conn, campaign_id, f"{kind} preview", body)


# ======================================================================
# IMPORT
# ======================================================================

INFO_NAME_ALIASES = ("EventName", "eventName", "Name", "name", "ProjectName", "projectName")
INFO_NAME_KEYS = ("eventname", "name", "projectname", "racename")
INFO_DISTANCE_ALIASES = ("Distance", "distance", "Km", "km")
INFO_DISTANCE_KEYS = ("distance", "km", "kilometer", "kilometers")
INFO_WAVE_ALIASES = ("WaveTime", "waveTime", "wavetime", "GunTime", "gunTime", "guntime",
                     "StartTime", "startTime", "starttime")
INFO_WAVE_KEYS = ("wavetime", "guntime", "starttime", "wavestart")
INFO_DATE_ALIASES = ("EventDate", "eventDate", "Date", "date")
INFO_DATE_KEYS = ("eventdate", "date", "racedate", "startdate")

PASSED_NAME_ALIASES = ("TpName", "tpName", "CheckpointName", "checkpointName",
                       "StationName", "stationName", "TimingPointName", "timingPointName")
PASSED_TIME_ALIASES = ("PassTime", "passTime", "Time", "time", "ScanTime", "scanTime",
                       "PassedTime", "passedTime", "GunTime", "gunTime", "WaveTime",
                       "waveTime", "RecordTime", "recordTime")


def _format_distance_label(distance: Optional[float], raw: str) -> str:
    if distance is not None:
        return f"{distance:g} KM"
    return raw


def _import_info_events(conn: sqlite3.Connection, campaign: sqlite3.Row,
                        rows: list) -> tuple[list[dict], int, int]:
    """Create or update one local event per provider info row."""
    campaign_id = campaign["id"]
    fallback_date = campaign["event_date"] or date.today().isoformat()
    imported = updated = 0
    events = []

    for row in rows:
        remote = pf.resolve_remote_event_id(row)
        name = pf.to_safe_string(pf.pick_or_scan(row, INFO_NAME_ALIASES, INFO_NAME_KEYS))
        if not name:
            name = f"Event {remote}" if remote is not None else "Unnamed Event"
        distance_raw = pf.to_safe_string(
            pf.pick_or_scan(row, INFO_DISTANCE_ALIASES, INFO_DISTANCE_KEYS))
        distance = pf.parse_distance(distance_raw)
        wave_time = pf.normalize_provider_time(
            pf.pick_or_scan(row, INFO_WAVE_ALIASES, INFO_WAVE_KEYS))
        date_raw = pf.to_safe_string(pf.pick_or_scan(row, INFO_DATE_ALIASES, INFO_DATE_KEYS))
        event_date = pf.parse_optional_date(date_raw) or fallback_date

        existing = db.find_event_by_remote_id(conn, campaign_id, remote) if remote is not None else None
        if existing is not None:
            fields = {"name": name, "date": event_date}
            if distance is not None:
                fields["distance"] = distance
            db.update_event(conn, existing["id"], **fields)
            event_id = existing["id"]
            updated += 1
            action = "updated"
        else:
            event_id = db.create_event(conn, campaign_id, name, distance=distance,
                                       date=event_date, location=campaign["location"] or "",
                                       remote_event_id=remote)
            imported += 1
            action = "created"

        start_at = pf.clock_to_today(wave_time) if wave_time else None
        if start_at is not None:
            db.update_event(conn, event_id, start_time=start_at.isoformat())

        events.append({
            "action": action,
            "id": event_id,
            "name": name,
            "remote_event_id": remote,
            "distance_label": _format_distance_label(distance, distance_raw),
            "wave_time": wave_time,
            "date": event_date,
        })
    return events, imported, updated


def _upsert_campaign_categories(conn: sqlite3.Connection, campaign_id: int,
                                events: list[dict]) -> None:
    """Keep one campaign category per provider event, keyed by remote event no."""
    by_remote = {
        str(c["remote_event_no"]): c
        for c in db.get_campaign_categories(conn, campaign_id)
        if c["remote_event_no"]
    }
    for ev in events:
        if ev["remote_event_id"] is None:
            continue
        remote_no = str(ev["remote_event_id"])
        start_time = ev["wave_time"]
        if start_time and len(start_time) == 5 and start_time[2] == ":":
            start_time = f"{ev['date']}T{start_time}"

        category = by_remote.get(remote_no)
        if category is not None:
            fields = {}
            if ev["name"]:
                fields["name"] = ev["name"]
            if ev["distance_label"]:
                fields["distance"] = ev["distance_label"]
            if start_time:
                fields["start_time"] = start_time
            db.update_campaign_category(conn, category["id"], **fields)
        else:
            db.create_campaign_category(
                conn, campaign_id, ev["name"] or "Unnamed",
                distance=ev["distance_label"] or "0 KM",
                start_time=start_time or "", cutoff="-",
                remote_event_no=remote_no,
            )


async def _import_bio(conn: sqlite3.Connection, client: ProviderClient,
                      campaign: sqlite3.Row, eids: list[Optional[int]]) -> dict:
    resolver = build_event_resolver(conn, campaign["id"])
    stats = {"inserted": 0, "updated": 0, "skipped": 0}
    for eid in eids:
        forced = resolver.event_id_by_remote.get(eid) if eid is not None else None
        async for _page, rows in _iter_pages(client, campaign, "bio", eid, strict=False):
            mapped = []
            for row in rows:
                runner = map_bio_row(row, resolver, forced)
                if runner is None:
                    stats["skipped"] += 1
                else:
                    mapped.append(runner)
            if mapped:
                page_result = db.upsert_runners(conn, mapped, update_existing=True)
                stats["inserted"] += page_result["inserted"]
                stats["updated"] += page_result["updated"]
    return stats


def should_replace_checkpoints(existing_names: list[str], new_defs: list[dict]) -> bool:
    """Whether the provider's timing points supersede the stored checkpoint set."""
    if not existing_names:
        return True
    if len(new_defs) > len(existing_names):
        return True
    existing = {pf.normalize_comparable(n) for n in existing_names}
    has_new_names = any(pf.normalize_comparable(d["name"]) not in existing for d in new_defs)
    return has_new_names and len(new_defs) >= len(existing_names)


async def _import_checkpoints(conn: sqlite3.Connection, client: ProviderClient,
                              campaign: sqlite3.Row, info_rows: list) -> dict:
    campaign_id = campaign["id"]
    per_event = pf.timing_points_per_event(info_rows)
    defs = pf.merged_timing_points(info_rows)
    source = "info"

    if not defs:
        try:
            resp = await client.request(campaign, "split", 1)
        except UpstreamError as e:
            logger.warning("Split-score fallback unavailable: %s", e.message)
        else:
            if resp.ok and resp.is_json_object:
                defs = pf.timing_points_from_split_rows(pf.extract_rows(resp.body))
                source = "split"
    if not defs:
        defs = [dict(d) for d in pf.DEFAULT_CHECKPOINTS]
        source = "default"

    existing = db.get_campaign_checkpoints(conn, campaign_id)
    created = 0
    replaced = False
    if should_replace_checkpoints([cp["name"] for cp in existing], defs):
        if existing:
            logger.warning("Replacing %d checkpoints of campaign %s with %d from provider",
                           len(existing), campaign_id, len(defs))
            db.delete_campaign_checkpoints(conn, campaign_id)
            replaced = True
        created = db.create_checkpoints(conn, campaign_id, defs)
    else:
        logger.info("Checkpoints of campaign %s unchanged (%d stored)", campaign_id, len(existing))

    checkpoints = db.get_campaign_checkpoints(conn, campaign_id)
    cp_id_by_name = {pf.normalize_comparable(cp["name"]): cp["id"] for cp in checkpoints}

    # First event's distances become the checkpoint defaults
    for points in per_event.values():
        for tp in points:
            cp_id = cp_id_by_name.get(pf.normalize_comparable(tp["name"]))
            if cp_id is not None and tp["km"] is not None:
                db.update_checkpoint(conn, cp_id, km_cumulative=tp["km"])
        break

    names_by_checkpoint: dict[int, list[str]] = {}
    for event in db.get_campaign_events(conn, campaign_id):
        points = per_event.get(pf.parse_int(event["remote_event_id"])) if event["remote_event_id"] is not None else None
        mappings = []
        if points:
            for idx, tp in enumerate(points, start=1):
                cp_id = cp_id_by_name.get(pf.normalize_comparable(tp["name"]))
                if cp_id is None:
                    continue
                mappings.append({"checkpoint_id": cp_id, "order_num": idx,
                                 "distance_from_start": tp["km"]})
        else:
            mappings = [{"checkpoint_id": cp["id"], "order_num": idx}
                        for idx, cp in enumerate(checkpoints, start=1)]
        db.replace_event_mappings(conn, event["id"], mappings)

        event_name = pf.to_safe_string(event["category"] or event["name"])
        if event_name:
            for m in mappings:
                names = names_by_checkpoint.setdefault(m["checkpoint_id"], [])
                if event_name not in names:
                    names.append(event_name)

    if names_by_checkpoint:
        db.set_checkpoint_event_names(conn, names_by_checkpoint)

    return {"created": created, "replaced": replaced, "source": source,
            "names": [cp["name"] for cp in checkpoints]}


def _is_start_point(name: str) -> bool:
    upper = name.upper()
    return "START" in upper or "GUN" in upper


async def _import_start_times(conn: sqlite3.Connection, client: ProviderClient,
                              campaign: sqlite3.Row, eids: list[Optional[int]]) -> dict[str, str]:
    """Earliest START pass per provider event, written to categories and events."""
    start_by_eid: dict[str, str] = {}
    for eid in eids:
        try:
            resp = await client.request(campaign, "passed_time", 1, eid)
        except UpstreamError as e:
            logger.warning("Passed-time eid=%s unavailable: %s",
                           eid if eid is not None else "all", e.message)
            continue
        if not resp.ok or not resp.is_json_object:
            continue
        for row in pf.extract_rows(resp.body):
            tp_name = pf.to_safe_string(pf.pick(row, *PASSED_NAME_ALIASES))
            if not _is_start_point(tp_name):
                continue
            time_str = pf.to_safe_string(pf.pick(row, *PASSED_TIME_ALIASES))
            if not time_str:
                continue
            if eid is not None:
                row_eid = str(eid)
            else:
                remote = pf.resolve_remote_event_id(row)
                row_eid = str(remote) if remote is not None else "unknown"
            start_by_eid.setdefault(row_eid, time_str)

    if not start_by_eid:
        return start_by_eid

    campaign_id = campaign["id"]
    for category in db.get_campaign_categories(conn, campaign_id):
        found = start_by_eid.get(str(category["remote_event_no"] or ""))
        if not found:
            continue
        try:
            parsed = datetime.fromisoformat(found.replace(" ", "T"))
        except ValueError:
            db.update_campaign_category(conn, category["id"], start_time=found)
            continue
        db.update_campaign_category(conn, category["id"],
                                    start_time=parsed.strftime("%Y-%m-%dT%H:%M"))
        event = db.find_event_by_remote_id(conn, campaign_id, pf.parse_int(category["remote_event_no"]))
        if event is not None:
            db.update_event(conn, event["id"], start_time=parsed.isoformat())
    return start_by_eid


def _race_finished(info_body: Any, now: datetime) -> bool:
    data = info_body.get("data") if isinstance(info_body, dict) else None
    if not isinstance(data, dict):
        return False
    raw = pf.to_safe_string(pf.pick(data, "RaceTime", "raceTime"))
    if not raw:
        return False
    try:
        race_time = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return False
    if race_time.tzinfo is not None:
        race_time = race_time.astimezone().replace(tzinfo=None)
    return now - race_time > RACE_FINISHED_AFTER


async def import_from_provider(conn: sqlite3.Connection, client: ProviderClient,
                               campaign_id: int,
                               publisher: Optional[Callable[[int, str, dict], None]] = None) -> dict:
    """Import events, categories, runners, checkpoints and scores for a campaign.

    Returns {"imported", "updated", "events", "runner_stats",
    "checkpoint_stats", "score"}.
    """

    async def body() -> RunOutcome:
        campaign = get_sync_enabled_campaign(conn, campaign_id)
        logger.info("Import from provider: campaign %s race=%s token=%s",
                    campaign_id, campaign["race_id"], pf.mask_token(campaign["token"]))

        info = await client.request(campaign, "info", 1)
        if not info.ok:
            raise UpstreamError(f"Provider INFO returned status {info.status_code}")
        if not info.is_json_object:
            raise UpstreamError("Provider INFO returned invalid JSON")

        rows = pf.extract_rows(info.body)
        result = {
            "imported": 0, "updated": 0, "events": [],
            "runner_stats": {"inserted": 0, "updated": 0, "skipped": 0},
            "checkpoint_stats": {"created": 0, "replaced": False, "names": []},
            "score": None,
        }
        if not rows:
            logger.warning("No event rows in provider INFO response for campaign %s", campaign_id)
            return RunOutcome(result=result, message="Provider import: no events found")

        events, imported, updated = _import_info_events(conn, campaign, rows)
        result.update(imported=imported, updated=updated, events=events)
        _upsert_campaign_categories(conn, campaign_id, events)

        remote_eids = list(dict.fromkeys(
            ev["remote_event_id"] for ev in events if ev["remote_event_id"] is not None
        )) or [None]

        result["runner_stats"] = await _import_bio(conn, client, campaign, remote_eids)
        result["checkpoint_stats"] = await _import_checkpoints(conn, client, campaign, rows)
        await _import_start_times(conn, client, campaign, remote_eids)

        try:
            result["score"] = await sync_timing_only(conn, client, campaign_id)
        except RaceSyncError as e:
            logger.warning("Score sync after import failed: %s", e.message)
            result["score"] = {"error": e.message}

        if _race_finished(info.body, datetime.now()):
            for event in db.get_campaign_events(conn, campaign_id):
                if event["status"] == "finished":
                    continue
                db.update_event(conn, event["id"], status="finished")
                if publisher is not None:
                    try:
                        publisher(event["id"], "event_status_changed",
                                  {"event_id": event["id"], "status": "finished"})
                    except Exception as e:
                        logger.warning("Publish event_status_changed failed: %s", e)

        runner_stats = result["runner_stats"]
        return RunOutcome(
            result=result,
            message=(f"Provider import success ({imported} events created, {updated} updated, "
                     f"{runner_stats['inserted']} runners inserted)"),
            processed=runner_stats["inserted"] + runner_stats["updated"],
            failed=runner_stats["skipped"],
            detail={"import": {k: v for k, v in result.items() if k != "events"}},
        )

    return await _run_logged(conn, campaign_id, "import", body)
