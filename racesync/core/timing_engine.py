"""
timing_engine.py — Scan ingestion, runner state transitions, and rankings.

A scan appends to the per-runner ledger, then moves the runner through
not_started → in_progress → finished. Every finish, and every restart of a
finished runner, recomputes the ranks of the runner's (event, category) from scratch.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime
from typing import Callable, Optional, Union

from racesync.core import database as db
from racesync.core.errors import NotFoundError

logger = logging.getLogger("racesync.timing")

START_CHECKPOINT = "START"
FINISH_CHECKPOINT = "FINISH"

RESULT_COLUMNS = (
    "finish_time", "net_time", "overall_rank", "category_rank", "gender_rank",
    "gender_net_rank", "age_group_rank",
)

# publish(event_id, msg_type, payload)
Publisher = Callable[[int, str, dict], None]


def parse_timestamp(ts: Union[str, datetime]) -> datetime:
    """Accept a datetime or an ISO 8601 string (a trailing 'Z' is UTC)."""
    if isinstance(ts, datetime):
        return ts
    text = ts.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return datetime.fromisoformat(text)


def to_epoch_ms(dt: datetime) -> int:
    return int(dt.timestamp() * 1000)


def runner_to_dict(row: sqlite3.Row) -> dict:
    return dict(row) if row is not None else {}


# ---------------------------------------------------------------------------
# Scan ingestion
# ---------------------------------------------------------------------------

def resolve_runner(conn: sqlite3.Connection, event_id: int,
                   bib_or_chip: str) -> sqlite3.Row:
    """Find a runner by bib, then by chip code."""
    key = str(bib_or_chip).strip()
    runner = db.find_runner_by_bib(conn, event_id, key)
    if runner is None:
        runner = db.find_runner_by_chip(conn, event_id, key)
    if runner is None:
        raise NotFoundError("Runner", f"{key} (event {event_id})")
    return runner


def process_scan(conn: sqlite3.Connection, event_id: int, bib_or_chip: str,
                 checkpoint: str, timestamp: Union[str, datetime],
                 note: Optional[str] = None,
                 publisher: Optional[Publisher] = None) -> dict:
    """Record a checkpoint pass and apply its effect on the runner.

    Returns the stored scan record as a dict.
    """
    runner = resolve_runner(conn, event_id, bib_or_chip)
    scan_dt = parse_timestamp(timestamp)
    scan_ms = to_epoch_ms(scan_dt)
    checkpoint = checkpoint.strip()
    cp_upper = checkpoint.upper()

    start_ms = None
    if runner["start_time"]:
        start_ms = to_epoch_ms(parse_timestamp(runner["start_time"]))

    record = db.append_scan(
        conn, event_id, runner["id"], runner["bib"], checkpoint,
        scan_dt.isoformat(), start_ms, scan_ms,
        chip_code=runner["chip_code"], note=note,
    )

    fields: dict = {
        "latest_checkpoint": checkpoint,
        "elapsed_time": record["elapsed_time"],
    }
    finished = False
    rerank = False
    if cp_upper == START_CHECKPOINT:
        fields["start_time"] = scan_dt.isoformat()
        fields["status"] = "in_progress"
        if runner["status"] == "finished":
            # Restart: net/finish time and ranks exist only for finished runners
            fields.update({column: None for column in RESULT_COLUMNS})
            rerank = True
    elif cp_upper == FINISH_CHECKPOINT:
        fields["finish_time"] = scan_dt.isoformat()
        fields["net_time"] = record["elapsed_time"]
        fields["status"] = "finished"
        finished = True
    elif runner["status"] == "not_started":
        fields["status"] = "in_progress"

    db.update_runner(conn, runner["id"], **fields)
    logger.info("Scan %s bib=%s seq=%d elapsed=%dms",
                checkpoint, runner["bib"], record["seq"], record["elapsed_time"])

    if finished or rerank:
        recompute_rankings(conn, event_id, runner["category"])

    scan = dict(record)
    if publisher is not None:
        updated = runner_to_dict(db.get_runner(conn, runner["id"]))
        _publish(publisher, event_id, "runner_updated", updated)
        _publish(publisher, event_id, "new_scan", scan)
    return scan


def _publish(publisher: Publisher, event_id: int, msg_type: str, payload: dict) -> None:
    try:
        publisher(event_id, msg_type, payload)
    except Exception as e:
        logger.warning("Publish %s for event %s failed: %s", msg_type, event_id, e)


# ---------------------------------------------------------------------------
# Rankings
# ---------------------------------------------------------------------------

def compute_ranks(finishers: list[dict]) -> list[dict]:
    """Assign overall, gender and age-group positions.

    finishers must already be sorted fastest first. Runners without an
    age group get no age-group rank.
    """
    gender_pos: dict[str, int] = {}
    age_pos: dict[str, int] = {}
    ranks = []
    for position, runner in enumerate(finishers, start=1):
        gender = runner.get("gender") or "M"
        gender_pos[gender] = gender_pos.get(gender, 0) + 1
        age_rank = None
        age_group = runner.get("age_group")
        if age_group:
            age_pos[age_group] = age_pos.get(age_group, 0) + 1
            age_rank = age_pos[age_group]
        ranks.append({
            "id": runner["id"],
            "overall_rank": position,
            "category_rank": position,
            "gender_rank": gender_pos[gender],
            "age_group_rank": age_rank,
        })
    return ranks


def recompute_rankings(conn: sqlite3.Connection, event_id: int,
                       category: str) -> int:
    """Full recomputation of ranks for one (event, category). Returns finisher count."""
    finishers = [dict(r) for r in db.get_finishers(conn, event_id, category)]
    ranks = compute_ranks(finishers)
    if not ranks:
        return 0

    try:
        conn.executemany(
            """UPDATE runners SET overall_rank=?, category_rank=?, gender_rank=?,
               age_group_rank=?, updated_at=datetime('now') WHERE id=?""",
            [(r["overall_rank"], r["category_rank"], r["gender_rank"],
              r["age_group_rank"], r["id"]) for r in ranks]
        )
        conn.commit()
    except sqlite3.Error:
        conn.rollback()
        raise

    logger.debug("Ranked %d finishers in event %s / %s", len(ranks), event_id, category)
    return len(ranks)
