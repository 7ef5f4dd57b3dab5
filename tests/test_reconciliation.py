"""
Provider reconciliation tests.

Provider traffic goes through httpx.MockTransport (see conftest.FakeProvider),
so every request the engine makes is visible in fake_provider.calls.
"""

import httpx
import pytest

from racesync.core import database as db
from racesync.core import reconciliation as rec
from racesync.core.config import settings
from racesync.core.errors import ConfigurationError, NotFoundError, UpstreamError
from racesync.core.provider_client import kind_path

from conftest import paged

INFO_BODY = {
    "code": 0,
    "data": {
        "Events": [
            {"EventId": 101, "EventName": "21K", "Distance": "21 KM", "WaveTime": "06:00",
             "TimingPoints": [
                 {"TpName": "START", "SortOrder": 1, "Km": 0},
                 {"TpName": "CP1", "SortOrder": 2, "Km": 10.5},
                 {"TpName": "FINISH", "SortOrder": 9999, "Km": 21},
             ]},
            {"EventId": 102, "EventName": "10K", "Distance": "10 KM",
             "TimingPoints": [
                 {"TpName": "START", "SortOrder": 1},
                 {"TpName": "FINISH", "SortOrder": 9999, "Km": 10},
             ]},
        ],
    },
}

BIO_ROWS = {
    "101": [
        {"BIB": "1001", "Name": "Somchai Jaidee", "Gender": "M", "Category": "45-49",
         "EventId": 101},
        {"BIB": "1002", "EnName": "Jane Doe", "Name": "เจน โด", "Gender": "Female",
         "Category": "F 30-39"},
    ],
    "102": [
        {"BIB": "2001", "Name": "Alex", "Gender": "2"},
    ],
}

SCORE_ROWS = {
    "101": [
        {"BIB": "1001", "NetTime": "01:45:30.5", "GunTime": "01:46:00", "Status": "Finished",
         "OverallPosition": "1", "GenderPosition": 1, "Pace": "5:00"},
    ],
}

PASSED_ROWS = {
    "101": [
        {"TpName": "CP1", "PassTime": "2026-03-01 06:40:00"},
        {"TpName": "START", "PassTime": "2026-03-01 06:00:05"},
    ],
}


@pytest.fixture
def provider_race(conn, fake_provider):
    """Campaign with no local events yet, and a provider serving two events."""
    fake_provider.routes.update({
        "/Dif/info": lambda form: INFO_BODY,
        "/Dif/bio": paged(BIO_ROWS),
        "/Dif/score": paged(SCORE_ROWS),
        "/Dif/split": paged(PASSED_ROWS),
    })
    return db.create_campaign(conn, "Marathon", race_id="R1", token="secrettoken123",
                              allow_sync=True, event_date="2026-03-01")


def _runner_by_bib(conn, campaign_id, bib):
    for event in db.get_campaign_events(conn, campaign_id):
        runner = db.find_runner_by_bib(conn, event["id"], bib)
        if runner is not None:
            return runner
    return None


# ─── Import ──────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_import_creates_events_runners_and_checkpoints(conn, provider, provider_race):
    cid = provider_race
    result = await rec.import_from_provider(conn, provider, cid)

    assert result["imported"] == 2
    assert result["updated"] == 0
    assert result["runner_stats"] == {"inserted": 3, "updated": 0, "skipped": 0}
    assert result["checkpoint_stats"]["created"] == 3
    assert result["checkpoint_stats"]["source"] == "info"
    assert result["checkpoint_stats"]["names"] == ["START", "CP1", "FINISH"]
    assert result["score"] == {"updated": 1, "status_changes": 1, "errors": []}

    events = {e["remote_event_id"]: e for e in db.get_campaign_events(conn, cid)}
    assert events[101]["name"] == "21K"
    assert events[101]["distance"] == 21.0
    assert events[102]["distance"] == 10.0

    categories = {c["remote_event_no"]: c for c in db.get_campaign_categories(conn, cid)}
    assert set(categories) == {"101", "102"}
    assert categories["101"]["start_time"] == "2026-03-01T06:00"

    somchai = _runner_by_bib(conn, cid, "1001")
    assert somchai["event_id"] == events[101]["id"]
    assert somchai["category"] == "21K"
    assert somchai["age_group"] == "45-49"
    assert (somchai["first_name"], somchai["last_name"]) == ("Somchai", "Jaidee")
    assert somchai["status"] == "finished"
    assert somchai["net_time"] == 6_330_500
    assert somchai["gun_time"] == 6_360_000
    assert somchai["overall_rank"] == 1
    assert somchai["gun_pace"] == "5:00"

    jane = _runner_by_bib(conn, cid, "1002")
    assert jane["event_id"] == events[101]["id"]
    assert (jane["first_name"], jane["last_name"]) == ("Jane", "Doe")
    assert (jane["first_name_local"], jane["last_name_local"]) == ("เจน", "โด")
    assert jane["gender"] == "F"
    assert jane["age_group"] == "F 30-39"
    assert jane["status"] == "not_started"

    alex = _runner_by_bib(conn, cid, "2001")
    assert alex["event_id"] == events[102]["id"]
    assert alex["category"] == "10K"
    assert alex["last_name"] == "-"

    checkpoints = {cp["name"]: cp for cp in db.get_campaign_checkpoints(conn, cid)}
    assert checkpoints["CP1"]["km_cumulative"] == 10.5
    assert checkpoints["FINISH"]["type"] == "finish"
    assert len(db.get_event_mappings(conn, events[101]["id"])) == 3
    assert [m["checkpoint_name"] for m in db.get_event_mappings(conn, events[102]["id"])] == [
        "START", "FINISH"]


@pytest.mark.asyncio
async def test_reimport_is_idempotent(conn, provider, provider_race):
    cid = provider_race
    await rec.import_from_provider(conn, provider, cid)
    second = await rec.import_from_provider(conn, provider, cid)

    assert second["imported"] == 0
    assert second["updated"] == 2
    assert second["runner_stats"] == {"inserted": 0, "updated": 3, "skipped": 0}
    assert second["checkpoint_stats"]["created"] == 0
    assert second["checkpoint_stats"]["replaced"] is False
    assert second["score"]["status_changes"] == 0

    assert len(db.get_campaign_events(conn, cid)) == 2
    assert len(db.get_campaign_checkpoints(conn, cid)) == 3
    assert _runner_by_bib(conn, cid, "1001")["status"] == "finished"

    stats = db.get_sync_stats(conn, cid)["statistics"]
    # One import log and one timing-sync log per run
    assert stats == {"total": 4, "success": 4, "error": 0}


@pytest.mark.asyncio
async def test_import_marks_old_race_finished(conn, fake_provider, provider, provider_race):
    cid = provider_race
    body = {"data": dict(INFO_BODY["data"], RaceTime="2020-01-01 06:00:00")}
    fake_provider.routes["/Dif/info"] = lambda form: body
    published = []

    await rec.import_from_provider(conn, provider, cid,
                                   publisher=lambda e, t, p: published.append((e, t, p)))

    assert {e["status"] for e in db.get_campaign_events(conn, cid)} == {"finished"}
    assert [t for _, t, _ in published] == ["event_status_changed"] * 2


@pytest.mark.asyncio
async def test_import_without_timing_points_uses_defaults(conn, fake_provider, provider,
                                                          provider_race):
    cid = provider_race
    fake_provider.routes["/Dif/info"] = lambda form: {"data": [{"EventId": 5, "EventName": "5K"}]}
    result = await rec.import_from_provider(conn, provider, cid)

    # Split-score fallback was tried and returned nothing usable
    assert "/Dif/splitScore" in fake_provider.paths()
    assert result["checkpoint_stats"]["source"] == "default"
    assert result["checkpoint_stats"]["names"] == ["START", "FINISH"]


@pytest.mark.asyncio
async def test_import_config_error_makes_no_request(conn, fake_provider, provider):
    cid = db.create_campaign(conn, "Closed", race_id="R9", token="secrettoken123",
                             allow_sync=False)
    with pytest.raises(ConfigurationError):
        await rec.import_from_provider(conn, provider, cid)

    assert fake_provider.calls == []
    assert db.was_last_sync_error(conn, cid)
    stats = db.get_sync_stats(conn, cid)
    assert stats["statistics"]["error"] == 1
    assert stats["recent_logs"][0]["detail"]["error"]["name"] == "ConfigurationError"


@pytest.mark.asyncio
async def test_missing_credentials_is_config_error(conn, fake_provider, provider):
    cid = db.create_campaign(conn, "No token", race_id="R9", allow_sync=True)
    with pytest.raises(ConfigurationError):
        await rec.sync_timing_only(conn, provider, cid)
    assert fake_provider.calls == []


@pytest.mark.asyncio
async def test_unknown_campaign_is_not_found_without_log(conn, provider):
    with pytest.raises(NotFoundError):
        await rec.sync_runners(conn, provider, 999)
    assert db.get_sync_stats(conn, 999)["statistics"]["total"] == 0


@pytest.mark.asyncio
async def test_info_failure_is_upstream_error(conn, fake_provider, provider, provider_race):
    fake_provider.routes["/Dif/info"] = lambda form: httpx.Response(503, text="maintenance")
    with pytest.raises(UpstreamError):
        await rec.import_from_provider(conn, provider, provider_race)
    assert db.was_last_sync_error(conn, provider_race)


# ─── Runner sync ─────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_sync_runners_single_event(conn, fake_provider, provider, race):
    rows = {"": [
        {"BIB": "1", "Name": "Ann Lee", "Gender": "F", "Category": "45-49"},
        {"BIB": "2", "Name": "Bo Kim", "Category": "Fun Run"},
        {"Name": "No Bib"},
    ]}
    fake_provider.routes.update({
        "/Dif/bio": paged(rows),
        "/Dif/score": paged({"": [{"BIB": "1", "GunTime": "00:20:00"}]}),
    })

    result = await rec.sync_runners(conn, provider, race["campaign_id"])
    summary = result["summary"]
    assert summary["pages_fetched"] == 1
    assert summary["rows_fetched"] == 3
    assert summary["rows_mapped"] == 2
    assert summary["rows_skipped"] == 1
    assert summary["skip_reasons"] == {"no_bib": 1}
    assert summary["inserted"] == 2
    assert summary["score_updates"] == 1
    assert summary["score_status_changes"] == 1

    ann = db.find_runner_by_bib(conn, race["event_id"], "1")
    # Local event category wins over the provider's category column
    assert ann["category"] == "10K"
    assert ann["age_group"] == "45-49"
    assert ann["status"] == "in_progress"
    assert ann["gun_time"] == 20 * 60 * 1000
    # Unfiltered requests carry no eid
    assert all("eid" not in form for _, form in fake_provider.calls)


@pytest.mark.asyncio
async def test_sync_runners_insert_only_reports_duplicates(conn, fake_provider, provider, race):
    rows = {"": [{"BIB": "1", "Name": "Ann Lee"}]}
    fake_provider.routes["/Dif/bio"] = paged(rows)
    fake_provider.routes["/Dif/score"] = paged({})

    await rec.sync_runners(conn, provider, race["campaign_id"], update_existing=False)
    again = await rec.sync_runners(conn, provider, race["campaign_id"], update_existing=False)
    assert again["summary"]["inserted"] == 0
    assert again["summary"]["errors"] == ["1 duplicate BIB(s) skipped"]
    assert db.count_runners(conn, race["event_id"]) == 1


@pytest.mark.asyncio
async def test_sync_runners_keeps_race_state(conn, fake_provider, provider, race):
    rid = db.create_runner(conn, race["event_id"], "1", first_name="Old", status="finished")
    db.update_runner(conn, rid, net_time=1234, overall_rank=1)
    fake_provider.routes["/Dif/bio"] = paged({"": [{"BIB": "1", "Name": "New Name"}]})
    fake_provider.routes["/Dif/score"] = paged({})

    result = await rec.sync_runners(conn, provider, race["campaign_id"])
    assert result["summary"]["updated"] == 1
    runner = db.get_runner(conn, rid)
    assert runner["first_name"] == "New"
    assert runner["status"] == "finished"
    assert runner["net_time"] == 1234
    assert runner["overall_rank"] == 1


@pytest.mark.asyncio
async def test_sync_runners_pages_until_total(conn, fake_provider, provider, race):
    rows = {"": [{"BIB": str(n), "Name": f"Runner {n}"} for n in range(5)]}
    fake_provider.routes["/Dif/bio"] = paged(rows, page_size=2)
    fake_provider.routes["/Dif/score"] = paged({})

    result = await rec.sync_runners(conn, provider, race["campaign_id"])
    assert result["summary"]["pages_fetched"] == 3
    assert db.count_runners(conn, race["event_id"]) == 5
    bio_pages = [form["page"] for path, form in fake_provider.calls if path == "/Dif/bio"]
    assert bio_pages == ["1", "2", "3"]


@pytest.mark.asyncio
async def test_sync_runners_stops_at_row_ceiling(conn, fake_provider, provider, race, monkeypatch):
    monkeypatch.setattr(settings, "PROVIDER_MAX_ROWS", 3)
    rows = {"": [{"BIB": str(n), "Name": f"Runner {n}"} for n in range(5)]}
    fake_provider.routes["/Dif/bio"] = paged(rows, page_size=2)
    fake_provider.routes["/Dif/score"] = paged({})

    result = await rec.sync_runners(conn, provider, race["campaign_id"])
    assert result["summary"]["pages_fetched"] == 2
    assert result["summary"]["rows_fetched"] == 3
    assert db.count_runners(conn, race["event_id"]) == 3
    bio_pages = [form["page"] for path, form in fake_provider.calls if path == "/Dif/bio"]
    assert bio_pages == ["1", "2"]


@pytest.mark.asyncio
async def test_sync_runners_multi_event_unmapped_rows_are_skipped(conn, fake_provider, provider):
    cid = db.create_campaign(conn, "Two Races", race_id="R2", token="tok", allow_sync=True)
    ten = db.create_event(conn, cid, "10K")
    half = db.create_event(conn, cid, "21K")
    fake_provider.routes["/Dif/bio"] = paged({"": [{"BIB": "7", "Name": "A B"}]})

    with pytest.raises(ConfigurationError):
        await rec.sync_runners(conn, provider, cid)
    assert db.count_runners(conn, ten) == 0
    assert db.count_runners(conn, half) == 0


@pytest.mark.asyncio
async def test_sync_runners_nothing_mappable_is_config_error(conn, fake_provider, provider, race):
    fake_provider.routes["/Dif/bio"] = paged({"": [{"Name": "x"}, {"Name": "y"}]})
    with pytest.raises(ConfigurationError):
        await rec.sync_runners(conn, provider, race["campaign_id"])
    assert db.was_last_sync_error(conn, race["campaign_id"])


@pytest.mark.asyncio
async def test_sync_runners_bio_failure_is_upstream_error(conn, fake_provider, provider, race):
    fake_provider.routes["/Dif/bio"] = lambda form: httpx.Response(500, text="boom")
    with pytest.raises(UpstreamError):
        await rec.sync_runners(conn, provider, race["campaign_id"])


# ─── Timing sync ─────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_timing_sync_never_regresses_status(conn, fake_provider, provider, race):
    eid = race["event_id"]
    finished = db.create_runner(conn, eid, "A", status="finished")
    in_progress = db.create_runner(conn, eid, "B", status="in_progress")
    waiting = db.create_runner(conn, eid, "C")
    dnf = db.create_runner(conn, eid, "D", status="dnf")
    fake_provider.routes["/Dif/score"] = paged({"": [
        {"BIB": "A", "GunTime": "00:50:00", "Status": "Started"},
        {"BIB": "B", "GunTime": "00:30:00"},
        {"BIB": "C", "GunTime": "00:10:00"},
        {"BIB": "D", "GunTime": "00:15:00"},
        {"BIB": "ZZZ", "GunTime": "00:15:00"},
    ]})

    result = await rec.sync_timing_only(conn, provider, race["campaign_id"])
    assert result["updated"] == 4
    assert result["status_changes"] == 1
    assert db.get_runner(conn, finished)["status"] == "finished"
    assert db.get_runner(conn, in_progress)["status"] == "in_progress"
    assert db.get_runner(conn, waiting)["status"] == "in_progress"
    assert db.get_runner(conn, dnf)["status"] == "dnf"
    assert db.get_runner(conn, finished)["gun_time"] == 50 * 60 * 1000


@pytest.mark.asyncio
async def test_timing_sync_collects_per_event_errors(conn, fake_provider, provider):
    cid = db.create_campaign(conn, "Two events", race_id="R2", token="secrettoken123",
                             allow_sync=True)
    e1 = db.create_event(conn, cid, "21K", remote_event_id=1)
    e2 = db.create_event(conn, cid, "10K", remote_event_id=2)
    db.create_runner(conn, e1, "1")
    r2 = db.create_runner(conn, e2, "2")

    def score(form):
        if form.get("eid") == "1":
            return httpx.Response(500, text="down")
        return {"data": [{"BIB": "2", "NetTime": "00:45:00"}], "total": 1}

    fake_provider.routes["/Dif/score"] = score
    result = await rec.sync_timing_only(conn, provider, cid)

    assert result["updated"] == 1
    assert len(result["errors"]) == 1
    assert result["errors"][0].startswith("EID 1:")
    assert db.get_runner(conn, r2)["status"] == "finished"
    assert db.was_last_sync_error(conn, cid)


@pytest.mark.asyncio
async def test_timing_sync_finds_runner_in_other_event(conn, fake_provider, provider):
    cid = db.create_campaign(conn, "Moved", race_id="R3", token="secrettoken123",
                             allow_sync=True)
    db.create_event(conn, cid, "21K", remote_event_id=1)
    e2 = db.create_event(conn, cid, "10K", remote_event_id=2)
    rid = db.create_runner(conn, e2, "77")
    fake_provider.routes["/Dif/score"] = paged({"1": [{"BIB": "77", "NetTime": "01:00:00"}]})

    result = await rec.sync_timing_only(conn, provider, cid)
    assert result["updated"] == 1
    assert db.get_runner(conn, rid)["net_time"] == 3_600_000


@pytest.mark.parametrize("current,text,net,gun,expected", [
    ("not_started", "", None, 5000, "in_progress"),
    ("in_progress", "", None, 5000, None),
    ("finished", "", None, 5000, None),
    ("in_progress", "", 1000, None, "finished"),
    ("not_started", "DNS", None, None, "dns"),
    ("in_progress", "Did Not Finish", None, None, "dnf"),
    ("dnf", "DNF", None, None, None),
    ("dnf", "Finished", None, None, "finished"),
    ("finished", "in progress", None, None, None),
])
def test_next_status(current, text, net, gun, expected):
    assert rec.next_status(current, text, net, gun) == expected


def test_score_row_updates_ignores_bio_fields():
    fields, changed = rec.score_row_updates(
        {"BIB": "1", "Name": "Other", "Gender": "F", "NetTime": "-", "Rank": "0",
         "CategoryRank": "3", "NetPace": "4:30"},
        {"status": "in_progress"},
    )
    assert fields == {"category_rank": 3, "net_pace": "4:30"}
    assert changed is False


# ─── Preview ─────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_preview_logs_payload(conn, fake_provider, provider, race):
    fake_provider.routes["/Dif/info"] = lambda form: {"data": {"Events": [{"EventId": 1},
                                                                          {"EventId": 2}]}}
    preview = await rec.preview_provider_data(conn, provider, race["campaign_id"], "info")

    assert preview["request"]["request_params"]["token"] == "secr...n123"
    assert fake_provider.calls[0][1]["token"] == "secrettoken123"
    assert "page" not in fake_provider.calls[0][1]
    assert preview["response"]["item_count"] == 2
    assert preview["response"]["raw_snippet_truncated"] is False

    latest = db.get_latest_payload(conn, race["campaign_id"])
    assert latest["status"] == "success"
    assert latest["preview"]["response"]["item_count"] == 2


@pytest.mark.asyncio
async def test_preview_truncates_large_bodies(conn, fake_provider, provider, race):
    rows = [{"BIB": str(n), "Name": "x" * 50} for n in range(200)]
    fake_provider.routes["/Dif/bio"] = lambda form: {"data": rows}
    preview = await rec.preview_provider_data(conn, provider, race["campaign_id"], "bio", 2)

    assert fake_provider.calls[0][1]["page"] == "2"
    assert len(preview["response"]["raw_snippet"]) == rec.SNIPPET_LIMIT
    assert preview["response"]["raw_snippet_truncated"] is True
    assert len(preview["response"]["payload_sample"]) == 3


@pytest.mark.asyncio
async def test_preview_rejects_unknown_kind(conn, fake_provider, provider, race):
    with pytest.raises(ConfigurationError):
        await rec.preview_provider_data(conn, provider, race["campaign_id"], "everything")
    assert fake_provider.calls == []
    assert db.get_sync_stats(conn, race["campaign_id"])["statistics"]["total"] == 0


def test_kind_path_covers_every_preview_kind(monkeypatch):
    monkeypatch.setattr(settings, "PROVIDER_SPLIT_PATH", "/custom/split")
    assert kind_path("split") == "/custom/split"
    for kind in rec.PREVIEW_KINDS:
        assert kind_path(kind).startswith("/")
    with pytest.raises(ValueError):
        kind_path("everything")


@pytest.mark.asyncio
async def test_preview_error_status(conn, fake_provider, provider, race):
    fake_provider.routes["/Dif/score"] = lambda form: httpx.Response(503, text="busy")
    with pytest.raises(UpstreamError):
        await rec.preview_provider_data(conn, provider, race["campaign_id"], "score")
    assert db.was_last_sync_error(conn, race["campaign_id"])
    assert db.get_latest_payload(conn, race["campaign_id"]) is None


# ─── Event resolver + row mapping ────────────────────────────────────

def test_resolver_infers_remote_ids_from_categories(conn):
    cid = db.create_campaign(conn, "Inferred")
    half = db.create_event(conn, cid, "Half Marathon")
    mini = db.create_event(conn, cid, "Mini 10K")
    db.create_campaign_category(conn, cid, "Half Marathon", distance="21.1 KM",
                                remote_event_no="5")
    db.create_campaign_category(conn, cid, "Mini", distance="10 KM", remote_event_no="6")

    resolver = rec.build_event_resolver(conn, cid)
    assert resolver.event_id_by_remote == {5: half, 6: mini}
    assert resolver.fallback_event_id is None

    unmapped = {"BIB": "9", "EventId": 7}
    assert rec.map_bio_row(unmapped, resolver) is None
    assert rec.skip_reason(unmapped, resolver) == "unmapped_eid_7"
    assert rec.skip_reason({"BIB": "9"}, resolver) == "no_event_id_in_row"
    assert rec.map_bio_row({"BIB": "9", "EventNo": "6"}, resolver)["event_id"] == mini


def test_resolver_has_no_fallback_for_multi_event_campaign(conn):
    cid = db.create_campaign(conn, "Two Races")
    db.create_event(conn, cid, "10K")
    db.create_event(conn, cid, "21K")

    resolver = rec.build_event_resolver(conn, cid)
    assert resolver.fallback_event_id is None
    assert rec.map_bio_row({"BIB": "7", "Name": "A B"}, resolver) is None
    assert rec.skip_reason({"BIB": "7"}, resolver) == "no_event_id_in_row"
    assert rec.skip_reason({"BIB": "7", "EventId": 9}, resolver) == "unmapped_eid_9"


def test_resolver_falls_back_to_only_event(conn, race):
    resolver = rec.build_event_resolver(conn, race["campaign_id"])
    assert resolver.fallback_event_id == race["event_id"]
    assert rec.map_bio_row({"BIB": "7"}, resolver)["event_id"] == race["event_id"]


def test_resolver_requires_events(conn):
    cid = db.create_campaign(conn, "Empty")
    with pytest.raises(ConfigurationError):
        rec.build_event_resolver(conn, cid)


@pytest.mark.parametrize("raw,expected_category,expected_age_group", [
    ("Full Marathon", "Full Marathon", None),
    ("45-49", "General", "45-49"),
    ("42", "General", None),
    ("", "General", None),
])
def test_map_bio_row_category_heuristics(raw, expected_category, expected_age_group):
    resolver = rec.EventResolver(fallback_event_id=1)
    runner = rec.map_bio_row({"BIB": "5", "Category": raw}, resolver)
    assert runner["category"] == expected_category
    assert runner["age_group"] == expected_age_group


def test_map_bio_row_prefers_category2_for_age_group():
    resolver = rec.EventResolver(fallback_event_id=1, category_by_event_id={1: "42K"})
    runner = rec.map_bio_row(
        {"BIB": "5", "Category": "45-49", "Category2": "M 45-49", "Age": "47",
         "Country": "TH", "Birthday": "1979-02-03T00:00:00Z", "ChipCode": "C5"},
        resolver,
    )
    assert runner["category"] == "42K"
    assert runner["age_group"] == "M 45-49"
    assert runner["age"] == 47
    assert runner["nationality"] == "TH"
    assert runner["birth_date"] == "1979-02-03"
    assert runner["chip_code"] == "C5"
    assert runner["source"] == rec.BIO_SOURCE


# ─── Checkpoint replacement ──────────────────────────────────────────

def _defs(*names):
    return [{"name": n} for n in names]


def test_should_replace_checkpoints():
    assert rec.should_replace_checkpoints([], _defs("START"))
    assert rec.should_replace_checkpoints(["START", "FINISH"], _defs("START", "CP1", "FINISH"))
    assert rec.should_replace_checkpoints(["START", "FINISH"], _defs("Start Line", "Finish"))
    assert not rec.should_replace_checkpoints(["START", "CP1", "FINISH"],
                                              _defs("start", "cp1", "finish"))
    assert not rec.should_replace_checkpoints(["START", "CP1", "FINISH"],
                                              _defs("START", "CP9"))
