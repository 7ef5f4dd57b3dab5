"""
database.py — SQLite schema init, migration, and store operations.

Single-file database with WAL mode for concurrent reads. Holds campaigns,
events, checkpoints + per-event mappings, runners, the scan ledger and the
sync log. All functions take an open connection as first argument.
"""

from __future__ import annotations

import json
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Iterable, Optional

from racesync.core.config import settings


def get_db_path() -> Path:
    path = Path(settings.DB_PATH)
    path.parent.mkdir(parents=True, exist_ok=True)
    return path


def get_connection(db_path: Optional[Path] = None) -> sqlite3.Connection:
    """Return a new connection with WAL mode and foreign keys enabled."""
    if db_path is None:
        db_path = get_db_path()
    conn = sqlite3.connect(str(db_path), timeout=10, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS campaigns (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    name            TEXT NOT NULL,
    race_id         TEXT,
    token           TEXT,
    partner_code    TEXT,
    base_url        TEXT,
    allow_sync      INTEGER NOT NULL DEFAULT 0,
    auto_sync       INTEGER NOT NULL DEFAULT 0,
    event_date      TEXT,
    location        TEXT,
    created_at      TEXT DEFAULT (datetime('now')),
    updated_at      TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS campaign_categories (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    campaign_id     INTEGER NOT NULL REFERENCES campaigns(id),
    name            TEXT NOT NULL,
    distance        TEXT,
    start_time      TEXT,
    cutoff          TEXT,
    remote_event_no TEXT
);

CREATE TABLE IF NOT EXISTS events (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    campaign_id     INTEGER NOT NULL REFERENCES campaigns(id),
    name            TEXT NOT NULL,
    category        TEXT,
    distance        REAL,
    date            TEXT,
    location        TEXT,
    status          TEXT NOT NULL DEFAULT 'upcoming',
    remote_event_id INTEGER,
    start_time      TEXT,
    created_at      TEXT DEFAULT (datetime('now')),
    updated_at      TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS checkpoints (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    campaign_id     INTEGER NOT NULL REFERENCES campaigns(id),
    name            TEXT NOT NULL,
    type            TEXT NOT NULL DEFAULT 'checkpoint',
    order_num       INTEGER NOT NULL DEFAULT 0,
    active          INTEGER NOT NULL DEFAULT 1,
    cutoff_time     TEXT,
    km_cumulative   REAL,
    event_names     TEXT NOT NULL DEFAULT '[]'
);

CREATE TABLE IF NOT EXISTS checkpoint_mappings (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    checkpoint_id       INTEGER NOT NULL REFERENCES checkpoints(id) ON DELETE CASCADE,
    event_id            INTEGER NOT NULL REFERENCES events(id),
    order_num           INTEGER NOT NULL,
    distance_from_start REAL,
    cutoff_time         TEXT,
    UNIQUE(checkpoint_id, event_id)
);

CREATE TABLE IF NOT EXISTS runners (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    event_id            INTEGER NOT NULL REFERENCES events(id),
    bib                 TEXT NOT NULL,
    first_name          TEXT NOT NULL DEFAULT '',
    last_name           TEXT NOT NULL DEFAULT '',
    first_name_local    TEXT,
    last_name_local     TEXT,
    gender              TEXT NOT NULL DEFAULT 'M',
    age                 INTEGER,
    age_group           TEXT,
    birth_date          TEXT,
    nationality         TEXT,
    team                TEXT,
    email               TEXT,
    phone               TEXT,
    id_no               TEXT,
    chip_code           TEXT,
    athlete_id          TEXT,
    category            TEXT NOT NULL DEFAULT 'General',
    status              TEXT NOT NULL DEFAULT 'not_started',
    start_time          TEXT,
    finish_time         TEXT,
    net_time            INTEGER,
    gun_time            INTEGER,
    elapsed_time        INTEGER,
    latest_checkpoint   TEXT,
    overall_rank        INTEGER,
    gender_rank         INTEGER,
    gender_net_rank     INTEGER,
    age_group_rank      INTEGER,
    category_rank       INTEGER,
    gun_pace            TEXT,
    net_pace            TEXT,
    total_finishers     INTEGER,
    gender_finishers    INTEGER,
    source              TEXT,
    created_at          TEXT DEFAULT (datetime('now')),
    updated_at          TEXT DEFAULT (datetime('now')),
    UNIQUE(event_id, bib)
);

CREATE TABLE IF NOT EXISTS timing_records (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    event_id        INTEGER NOT NULL REFERENCES events(id),
    runner_id       INTEGER NOT NULL REFERENCES runners(id),
    bib             TEXT NOT NULL,
    checkpoint      TEXT NOT NULL,
    scan_time       TEXT NOT NULL,
    chip_code       TEXT,
    seq             INTEGER NOT NULL,
    note            TEXT,
    split_time      INTEGER NOT NULL DEFAULT 0,
    elapsed_time    INTEGER NOT NULL DEFAULT 0,
    received_at     TEXT DEFAULT (datetime('now')),
    UNIQUE(runner_id, seq)
);

CREATE TABLE IF NOT EXISTS sync_logs (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    campaign_id         INTEGER NOT NULL,
    status              TEXT NOT NULL DEFAULT 'pending',
    message             TEXT,
    records_processed   INTEGER NOT NULL DEFAULT 0,
    records_failed      INTEGER NOT NULL DEFAULT 0,
    start_time          TEXT,
    end_time            TEXT,
    detail_json         TEXT,
    created_at          TEXT DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS idx_events_campaign ON events(campaign_id);
CREATE INDEX IF NOT EXISTS idx_checkpoints_campaign ON checkpoints(campaign_id);
CREATE INDEX IF NOT EXISTS idx_runners_event_category ON runners(event_id, category, status);
CREATE INDEX IF NOT EXISTS idx_runners_chip ON runners(event_id, chip_code);
CREATE INDEX IF NOT EXISTS idx_runners_athlete ON runners(event_id, athlete_id);
CREATE INDEX IF NOT EXISTS idx_timing_runner ON timing_records(runner_id, seq);
CREATE INDEX IF NOT EXISTS idx_timing_event ON timing_records(event_id, scan_time);
CREATE INDEX IF NOT EXISTS idx_sync_logs_campaign ON sync_logs(campaign_id, id);
"""


def init_db(conn: sqlite3.Connection) -> None:
    """Create all tables and indexes if they don't exist."""
    conn.executescript(SCHEMA_SQL)


def migrate_db(conn: sqlite3.Connection) -> None:
    """Add new columns to existing tables (idempotent for upgrades)."""
    def _has_column(table: str, column: str) -> bool:
        cols = conn.execute(f"PRAGMA table_info({table})").fetchall()
        return any(c["name"] == column for c in cols)

    # runners: provider score extras
    if not _has_column("runners", "gender_net_rank"):
        conn.execute("ALTER TABLE runners ADD COLUMN gender_net_rank INTEGER")
    for column in ("gun_pace", "net_pace"):
        if not _has_column("runners", column):
            conn.execute(f"ALTER TABLE runners ADD COLUMN {column} TEXT")
    for column in ("total_finishers", "gender_finishers"):
        if not _has_column("runners", column):
            conn.execute(f"ALTER TABLE runners ADD COLUMN {column} INTEGER")

    # checkpoints: which events use the checkpoint
    if not _has_column("checkpoints", "event_names"):
        conn.execute("ALTER TABLE checkpoints ADD COLUMN event_names TEXT NOT NULL DEFAULT '[]'")

    # events: wave start from provider
    if not _has_column("events", "start_time"):
        conn.execute("ALTER TABLE events ADD COLUMN start_time TEXT")

    conn.commit()


def _now_iso() -> str:
    return datetime.now().isoformat(timespec="seconds")


# ======================================================================
# CAMPAIGNS
# ======================================================================

def create_campaign(conn: sqlite3.Connection, name: str, race_id: str = "",
                    token: str = "", partner_code: str = "",
                    base_url: str = "", allow_sync: bool = False,
                    auto_sync: bool = False, event_date: Optional[str] = None,
                    location: str = "") -> int:
    """Insert a new campaign and return its id."""
    cur = conn.execute(
        """INSERT INTO campaigns (name, race_id, token, partner_code, base_url,
           allow_sync, auto_sync, event_date, location)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (name, race_id, token, partner_code, base_url,
         int(allow_sync), int(auto_sync), event_date, location)
    )
    conn.commit()
    return cur.lastrowid


def get_campaign(conn: sqlite3.Connection, campaign_id: int) -> Optional[sqlite3.Row]:
    return conn.execute("SELECT * FROM campaigns WHERE id=?", (campaign_id,)).fetchone()


def get_auto_sync_campaigns(conn: sqlite3.Connection) -> list[sqlite3.Row]:
    """Campaigns opted into scheduled sync with usable credentials."""
    return conn.execute(
        """SELECT * FROM campaigns
           WHERE auto_sync=1 AND allow_sync=1
             AND race_id IS NOT NULL AND TRIM(race_id) NOT IN ('', '0')
             AND token IS NOT NULL AND TRIM(token) != ''
           ORDER BY id"""
    ).fetchall()


def update_campaign(conn: sqlite3.Connection, campaign_id: int, **kwargs) -> None:
    """Update campaign fields. Pass field=value pairs."""
    if not kwargs:
        return
    sets = ", ".join(f"{k}=?" for k in kwargs)
    vals = list(kwargs.values()) + [campaign_id]
    conn.execute(f"UPDATE campaigns SET {sets}, updated_at=datetime('now') WHERE id=?", vals)
    conn.commit()


def create_campaign_category(conn: sqlite3.Connection, campaign_id: int, name: str,
                             distance: str = "", start_time: str = "",
                             cutoff: str = "-",
                             remote_event_no: Optional[str] = None) -> int:
    cur = conn.execute(
        """INSERT INTO campaign_categories
           (campaign_id, name, distance, start_time, cutoff, remote_event_no)
           VALUES (?, ?, ?, ?, ?, ?)""",
        (campaign_id, name, distance, start_time, cutoff, remote_event_no)
    )
    conn.commit()
    return cur.lastrowid


def get_campaign_categories(conn: sqlite3.Connection,
                            campaign_id: int) -> list[sqlite3.Row]:
    return conn.execute(
        "SELECT * FROM campaign_categories WHERE campaign_id=? ORDER BY id",
        (campaign_id,)
    ).fetchall()


def update_campaign_category(conn: sqlite3.Connection, category_id: int, **kwargs) -> None:
    if not kwargs:
        return
    sets = ", ".join(f"{k}=?" for k in kwargs)
    vals = list(kwargs.values()) + [category_id]
    conn.execute(f"UPDATE campaign_categories SET {sets} WHERE id=?", vals)
    conn.commit()


# ======================================================================
# EVENTS
# ======================================================================

def create_event(conn: sqlite3.Connection, campaign_id: int, name: str,
                 category: Optional[str] = None, distance: Optional[float] = None,
                 date: Optional[str] = None, location: str = "",
                 remote_event_id: Optional[int] = None,
                 status: str = "upcoming") -> int:
    """Insert a new event and return its id."""
    cur = conn.execute(
        """INSERT INTO events (campaign_id, name, category, distance, date,
           location, remote_event_id, status)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
        (campaign_id, name, category, distance, date, location,
         remote_event_id, status)
    )
    conn.commit()
    return cur.lastrowid


def get_event(conn: sqlite3.Connection, event_id: int) -> Optional[sqlite3.Row]:
    return conn.execute("SELECT * FROM events WHERE id=?", (event_id,)).fetchone()


def get_campaign_events(conn: sqlite3.Connection, campaign_id: int) -> list[sqlite3.Row]:
    return conn.execute(
        "SELECT * FROM events WHERE campaign_id=? ORDER BY id", (campaign_id,)
    ).fetchall()


def find_event_by_remote_id(conn: sqlite3.Connection, campaign_id: int,
                            remote_event_id: int) -> Optional[sqlite3.Row]:
    return conn.execute(
        "SELECT * FROM events WHERE campaign_id=? AND remote_event_id=? LIMIT 1",
        (campaign_id, remote_event_id)
    ).fetchone()


def update_event(conn: sqlite3.Connection, event_id: int, **kwargs) -> None:
    """Update event fields. Pass field=value pairs."""
    if not kwargs:
        return
    sets = ", ".join(f"{k}=?" for k in kwargs)
    vals = list(kwargs.values()) + [event_id]
    conn.execute(f"UPDATE events SET {sets}, updated_at=datetime('now') WHERE id=?", vals)
    conn.commit()


# ======================================================================
# CHECKPOINTS + MAPPINGS
# ======================================================================

def create_checkpoint(conn: sqlite3.Connection, campaign_id: int, name: str,
                      cp_type: str = "checkpoint", order_num: int = 0,
                      cutoff_time: Optional[str] = None,
                      km_cumulative: Optional[float] = None,
                      active: bool = True) -> int:
    cur = conn.execute(
        """INSERT INTO checkpoints (campaign_id, name, type, order_num, cutoff_time,
           km_cumulative, active)
           VALUES (?, ?, ?, ?, ?, ?, ?)""",
        (campaign_id, name, cp_type, order_num, cutoff_time, km_cumulative, int(active))
    )
    conn.commit()
    return cur.lastrowid


def create_checkpoints(conn: sqlite3.Connection, campaign_id: int,
                       defs: Iterable[dict]) -> int:
    """Insert checkpoint definitions ({name, type, order_num}) in one batch."""
    rows = [(campaign_id, d["name"], d.get("type", "checkpoint"), d.get("order_num", 0))
            for d in defs]
    conn.executemany(
        "INSERT INTO checkpoints (campaign_id, name, type, order_num) VALUES (?, ?, ?, ?)",
        rows
    )
    conn.commit()
    return len(rows)


def get_campaign_checkpoints(conn: sqlite3.Connection,
                             campaign_id: int) -> list[sqlite3.Row]:
    return conn.execute(
        "SELECT * FROM checkpoints WHERE campaign_id=? ORDER BY order_num, id",
        (campaign_id,)
    ).fetchall()


def get_cutoff_checkpoints(conn: sqlite3.Connection) -> list[sqlite3.Row]:
    """Active checkpoints that carry a cutoff value."""
    return conn.execute(
        """SELECT * FROM checkpoints
           WHERE active=1 AND cutoff_time IS NOT NULL
             AND TRIM(cutoff_time) NOT IN ('', '-')
           ORDER BY campaign_id, order_num"""
    ).fetchall()


def update_checkpoint(conn: sqlite3.Connection, checkpoint_id: int, **kwargs) -> None:
    if not kwargs:
        return
    sets = ", ".join(f"{k}=?" for k in kwargs)
    vals = list(kwargs.values()) + [checkpoint_id]
    conn.execute(f"UPDATE checkpoints SET {sets} WHERE id=?", vals)
    conn.commit()


def set_checkpoint_event_names(conn: sqlite3.Connection,
                               names_by_checkpoint: dict[int, list[str]]) -> None:
    conn.executemany(
        "UPDATE checkpoints SET event_names=? WHERE id=?",
        [(json.dumps(names, ensure_ascii=False), cp_id)
         for cp_id, names in names_by_checkpoint.items()]
    )
    conn.commit()


def delete_campaign_checkpoints(conn: sqlite3.Connection, campaign_id: int) -> None:
    """Delete every checkpoint of a campaign together with its mappings."""
    conn.execute(
        """DELETE FROM checkpoint_mappings WHERE checkpoint_id IN
           (SELECT id FROM checkpoints WHERE campaign_id=?)""",
        (campaign_id,)
    )
    conn.execute("DELETE FROM checkpoints WHERE campaign_id=?", (campaign_id,))
    conn.commit()


def replace_event_mappings(conn: sqlite3.Connection, event_id: int,
                           mappings: list[dict]) -> None:
    """Replace all checkpoint mappings of one event (never partially patched)."""
    conn.execute("DELETE FROM checkpoint_mappings WHERE event_id=?", (event_id,))
    conn.executemany(
        """INSERT INTO checkpoint_mappings
           (checkpoint_id, event_id, order_num, distance_from_start, cutoff_time)
           VALUES (?, ?, ?, ?, ?)""",
        [(m["checkpoint_id"], event_id, m["order_num"],
          m.get("distance_from_start"), m.get("cutoff_time")) for m in mappings]
    )
    conn.commit()


def get_event_mappings(conn: sqlite3.Connection, event_id: int) -> list[sqlite3.Row]:
    return conn.execute(
        """SELECT m.*, c.name AS checkpoint_name, c.type AS checkpoint_type
           FROM checkpoint_mappings m
           JOIN checkpoints c ON c.id = m.checkpoint_id
           WHERE m.event_id=? ORDER BY m.order_num""",
        (event_id,)
    ).fetchall()


# ======================================================================
# RUNNERS
# ======================================================================

# Biographical columns written by provider import. Race state is never
# touched by an upsert.
BIO_COLUMNS = (
    "first_name", "last_name", "first_name_local", "last_name_local",
    "gender", "category", "age", "age_group", "birth_date", "nationality",
    "team", "email", "phone", "id_no", "chip_code", "athlete_id", "source",
)

RUNNER_UPDATE_COLUMNS = frozenset(BIO_COLUMNS) | {
    "status", "start_time", "finish_time", "net_time", "gun_time",
    "elapsed_time", "latest_checkpoint", "overall_rank", "gender_rank",
    "gender_net_rank", "age_group_rank", "category_rank", "gun_pace",
    "net_pace", "total_finishers", "gender_finishers",
}


def create_runner(conn: sqlite3.Connection, event_id: int, bib: str,
                  first_name: str = "", last_name: str = "",
                  gender: str = "M", category: str = "General",
                  age_group: Optional[str] = None,
                  chip_code: Optional[str] = None,
                  athlete_id: Optional[str] = None,
                  status: str = "not_started") -> int:
    cur = conn.execute(
        """INSERT INTO runners (event_id, bib, first_name, last_name, gender,
           category, age_group, chip_code, athlete_id, status)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (event_id, bib, first_name, last_name, gender, category, age_group,
         chip_code, athlete_id, status)
    )
    conn.commit()
    return cur.lastrowid


def get_runner(conn: sqlite3.Connection, runner_id: int) -> Optional[sqlite3.Row]:
    return conn.execute("SELECT * FROM runners WHERE id=?", (runner_id,)).fetchone()


def find_runner_by_bib(conn: sqlite3.Connection, event_id: int,
                       bib: str) -> Optional[sqlite3.Row]:
    return conn.execute(
        "SELECT * FROM runners WHERE event_id=? AND bib=?", (event_id, bib)
    ).fetchone()


def find_runner_by_chip(conn: sqlite3.Connection, event_id: int,
                        chip_code: str) -> Optional[sqlite3.Row]:
    return conn.execute(
        "SELECT * FROM runners WHERE event_id=? AND chip_code=? LIMIT 1",
        (event_id, chip_code)
    ).fetchone()


def count_runners(conn: sqlite3.Connection, event_id: int) -> int:
    return conn.execute(
        "SELECT COUNT(*) AS cnt FROM runners WHERE event_id=?", (event_id,)
    ).fetchone()["cnt"]


def list_runners(conn: sqlite3.Connection, event_id: int,
                 category: Optional[str] = None, gender: Optional[str] = None,
                 age_group: Optional[str] = None, status: Optional[str] = None,
                 checkpoint: Optional[str] = None,
                 limit: Optional[int] = None) -> list[sqlite3.Row]:
    """Filtered runner listing, capped at LISTING_CAP rows."""
    cap = min(limit or settings.LISTING_CAP, settings.LISTING_CAP)
    query = "SELECT * FROM runners WHERE event_id=?"
    params: list = [event_id]
    for column, value in (("category", category), ("gender", gender),
                          ("age_group", age_group), ("status", status),
                          ("latest_checkpoint", checkpoint)):
        if value:
            query += f" AND {column}=?"
            params.append(value)
    query += " ORDER BY overall_rank IS NULL, overall_rank, bib LIMIT ?"
    params.append(cap)
    return conn.execute(query, params).fetchall()


def get_runners_for_events(conn: sqlite3.Connection, event_ids: list[int],
                           limit: Optional[int] = None) -> list[sqlite3.Row]:
    """Runners of several events in insertion order, optionally capped."""
    if not event_ids:
        return []
    placeholders = ",".join("?" for _ in event_ids)
    query = f"SELECT * FROM runners WHERE event_id IN ({placeholders}) ORDER BY id"
    params: list = list(event_ids)
    if limit is not None:
        query += " LIMIT ?"
        params.append(limit)
    return conn.execute(query, params).fetchall()


def get_finishers(conn: sqlite3.Connection, event_id: int,
                  category: str) -> list[sqlite3.Row]:
    """Finished runners of one category, fastest first; ties keep insertion order."""
    return conn.execute(
        """SELECT * FROM runners
           WHERE event_id=? AND category=? AND status='finished'
           ORDER BY net_time IS NULL, net_time ASC, id ASC""",
        (event_id, category)
    ).fetchall()


def update_runner(conn: sqlite3.Connection, runner_id: int, **kwargs) -> None:
    """Update runner fields. Pass field=value pairs."""
    if not kwargs:
        return
    unknown = set(kwargs) - RUNNER_UPDATE_COLUMNS
    if unknown:
        raise ValueError(f"Unknown runner fields: {sorted(unknown)}")
    sets = ", ".join(f"{k}=?" for k in kwargs)
    vals = list(kwargs.values()) + [runner_id]
    conn.execute(f"UPDATE runners SET {sets}, updated_at=datetime('now') WHERE id=?", vals)
    conn.commit()


def bulk_update_runners(conn: sqlite3.Connection,
                        updates: list[tuple[int, dict]]) -> int:
    """Apply many (runner_id, fields) updates in a single transaction.

    Updates for the same runner are merged in list order, so a later
    value for a column wins. Returns the number of runners updated.
    """
    if not updates:
        return 0
    merged: dict[int, dict] = {}
    for runner_id, fields in updates:
        unknown = set(fields) - RUNNER_UPDATE_COLUMNS
        if unknown:
            raise ValueError(f"Unknown runner fields: {sorted(unknown)}")
        merged.setdefault(runner_id, {}).update(fields)

    # Group by column set so each group is one executemany
    groups: dict[tuple[str, ...], list[tuple]] = {}
    for runner_id, fields in merged.items():
        if not fields:
            continue
        columns = tuple(sorted(fields))
        groups.setdefault(columns, []).append(
            tuple(fields[c] for c in columns) + (runner_id,)
        )
    try:
        for columns, rows in groups.items():
            sets = ", ".join(f"{c}=?" for c in columns)
            conn.executemany(
                f"UPDATE runners SET {sets}, updated_at=datetime('now') WHERE id=?",
                rows
            )
        conn.commit()
    except sqlite3.Error:
        conn.rollback()
        raise
    return sum(len(rows) for rows in groups.values())


def upsert_runners(conn: sqlite3.Connection, runners: list[dict],
                   update_existing: bool = False) -> dict:
    """Bulk write runners keyed by (event_id, bib).

    update_existing=False: insert only; existing bibs are counted as
    duplicates and skipped. update_existing=True: update biographical
    fields of existing runners, insert the rest.

    Returns {"inserted", "updated", "errors"}.
    """
    result = {"inserted": 0, "updated": 0, "errors": []}
    if not runners:
        return result

    columns = ("event_id", "bib") + BIO_COLUMNS
    placeholders = ", ".join("?" for _ in columns)
    insert_sql = f"INSERT INTO runners ({', '.join(columns)}) VALUES ({placeholders})"
    upsert_sql = (
        insert_sql
        + " ON CONFLICT(event_id, bib) DO UPDATE SET "
        + ", ".join(f"{c}=COALESCE(excluded.{c}, runners.{c})" for c in BIO_COLUMNS)
        + ", updated_at=datetime('now')"
    )

    event_ids = sorted({r["event_id"] for r in runners})
    placeholders_ev = ",".join("?" for _ in event_ids)
    known = {
        (row["event_id"], row["bib"])
        for row in conn.execute(
            f"SELECT event_id, bib FROM runners WHERE event_id IN ({placeholders_ev})",
            event_ids
        )
    }

    duplicates = 0
    for runner in runners:
        key = (runner["event_id"], runner["bib"])
        values = tuple(runner.get(c) for c in columns)
        if update_existing:
            try:
                conn.execute(upsert_sql, values)
            except sqlite3.IntegrityError as e:
                result["errors"].append(f"BIB {runner['bib']}: {e}")
                continue
            if key in known:
                result["updated"] += 1
            else:
                result["inserted"] += 1
                known.add(key)
        else:
            # Unordered: a duplicate does not abort the batch
            try:
                conn.execute(insert_sql, values)
            except sqlite3.IntegrityError:
                duplicates += 1
                continue
            result["inserted"] += 1
            known.add(key)
    conn.commit()

    if duplicates:
        result["errors"].append(f"{duplicates} duplicate BIB(s) skipped")
    return result


def mark_stalled_runners_dnf(conn: sqlite3.Connection, campaign_id: int) -> int:
    """Set in_progress runners with no recorded checkpoint to dnf. Returns count."""
    cur = conn.execute(
        """UPDATE runners SET status='dnf', updated_at=datetime('now')
           WHERE status='in_progress'
             AND (latest_checkpoint IS NULL OR latest_checkpoint='')
             AND event_id IN (SELECT id FROM events WHERE campaign_id=?)""",
        (campaign_id,)
    )
    conn.commit()
    return cur.rowcount


def get_status_counts(conn: sqlite3.Connection, event_id: int) -> list[dict]:
    rows = conn.execute(
        "SELECT status, COUNT(*) AS count FROM runners WHERE event_id=? GROUP BY status",
        (event_id,)
    ).fetchall()
    return [dict(r) for r in rows]


# ======================================================================
# SCAN LEDGER
# ======================================================================

def append_scan(conn: sqlite3.Connection, event_id: int, runner_id: int,
                bib: str, checkpoint: str, scan_time: str,
                start_time_ms: Optional[int], scan_time_ms: int,
                chip_code: Optional[str] = None,
                note: Optional[str] = None) -> sqlite3.Row:
    """Append a scan record for a runner.

    The write lock is taken before reading the previous scan so that the
    sequence number and split time are computed against a stable ledger.
    start_time_ms / scan_time_ms are epoch milliseconds.
    """
    if not conn.in_transaction:
        conn.execute("BEGIN IMMEDIATE")
    try:
        last = conn.execute(
            "SELECT seq, scan_time FROM timing_records WHERE runner_id=? ORDER BY seq DESC LIMIT 1",
            (runner_id,)
        ).fetchone()
        seq = (last["seq"] + 1) if last else 1
        split = 0
        if last:
            split = scan_time_ms - _iso_to_ms(last["scan_time"])
        elapsed = scan_time_ms - start_time_ms if start_time_ms is not None else 0
        cur = conn.execute(
            """INSERT INTO timing_records
               (event_id, runner_id, bib, checkpoint, scan_time, chip_code, seq,
                note, split_time, elapsed_time)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (event_id, runner_id, bib, checkpoint, scan_time, chip_code, seq,
             note, split, elapsed)
        )
        conn.commit()
    except sqlite3.Error:
        conn.rollback()
        raise
    return conn.execute("SELECT * FROM timing_records WHERE id=?", (cur.lastrowid,)).fetchone()


def _iso_to_ms(value: str) -> int:
    return int(datetime.fromisoformat(value).timestamp() * 1000)


def get_runner_scans(conn: sqlite3.Connection, runner_id: int) -> list[sqlite3.Row]:
    return conn.execute(
        "SELECT * FROM timing_records WHERE runner_id=? ORDER BY seq", (runner_id,)
    ).fetchall()


def get_event_scans(conn: sqlite3.Connection, event_id: int,
                    limit: int = 100) -> list[sqlite3.Row]:
    """Most recent scans of an event, newest first."""
    return conn.execute(
        "SELECT * FROM timing_records WHERE event_id=? ORDER BY scan_time DESC, id DESC LIMIT ?",
        (event_id, limit)
    ).fetchall()


# ======================================================================
# SYNC LOG
# ======================================================================

def create_sync_log(conn: sqlite3.Connection, campaign_id: int, message: str,
                    status: str = "pending",
                    start_time: Optional[str] = None) -> int:
    """Record the start of a sync attempt. Returns the log id."""
    cur = conn.execute(
        "INSERT INTO sync_logs (campaign_id, status, message, start_time) VALUES (?, ?, ?, ?)",
        (campaign_id, status, message, start_time or _now_iso())
    )
    conn.commit()
    return cur.lastrowid


def finalize_sync_log(conn: sqlite3.Connection, log_id: int, status: str,
                      message: str, records_processed: int = 0,
                      records_failed: int = 0,
                      detail: Optional[dict] = None) -> None:
    """Close a pending sync log as success or error."""
    conn.execute(
        """UPDATE sync_logs SET status=?, message=?, records_processed=?,
           records_failed=?, end_time=?, detail_json=?
           WHERE id=? AND status='pending'""",
        (status, message, records_processed, records_failed, _now_iso(),
         json.dumps(detail, ensure_ascii=False, default=str) if detail is not None else None,
         log_id)
    )
    conn.commit()


def _sync_log_to_dict(row: sqlite3.Row) -> dict:
    data = dict(row)
    raw = data.pop("detail_json", None)
    data["detail"] = json.loads(raw) if raw else None
    return data


def get_sync_stats(conn: sqlite3.Connection, campaign_id: int,
                   limit: int = 10) -> dict:
    """Recent sync logs plus success/error totals for a campaign."""
    logs = conn.execute(
        "SELECT * FROM sync_logs WHERE campaign_id=? ORDER BY id DESC LIMIT ?",
        (campaign_id, limit)
    ).fetchall()
    counts = conn.execute(
        """SELECT COUNT(*) AS total,
                  SUM(CASE WHEN status='success' THEN 1 ELSE 0 END) AS success,
                  SUM(CASE WHEN status='error' THEN 1 ELSE 0 END) AS error
           FROM sync_logs WHERE campaign_id=?""",
        (campaign_id,)
    ).fetchone()
    return {
        "recent_logs": [_sync_log_to_dict(r) for r in logs],
        "statistics": {
            "total": counts["total"] or 0,
            "success": counts["success"] or 0,
            "error": counts["error"] or 0,
        },
    }


def was_last_sync_error(conn: sqlite3.Connection, campaign_id: int) -> bool:
    row = conn.execute(
        "SELECT status FROM sync_logs WHERE campaign_id=? ORDER BY id DESC LIMIT 1",
        (campaign_id,)
    ).fetchone()
    return bool(row) and row["status"] == "error"


def get_campaign_sync_errors(conn: sqlite3.Connection) -> list[dict]:
    """Latest error log per campaign, with the campaign name."""
    rows = conn.execute(
        """SELECT s.*, c.name AS campaign_name FROM sync_logs s
           LEFT JOIN campaigns c ON c.id = s.campaign_id
           WHERE s.id IN (SELECT MAX(id) FROM sync_logs WHERE status='error'
                          GROUP BY campaign_id)
           ORDER BY s.id DESC"""
    ).fetchall()
    result = []
    for r in rows:
        log = _sync_log_to_dict(r)
        result.append({
            "campaign_id": log["campaign_id"],
            "campaign_name": log.pop("campaign_name"),
            "error": log,
        })
    return result


def get_latest_payload(conn: sqlite3.Connection, campaign_id: int) -> Optional[dict]:
    """The most recent sync log that captured a provider preview."""
    rows = conn.execute(
        """SELECT * FROM sync_logs WHERE campaign_id=? AND detail_json LIKE '%"preview"%'
           ORDER BY id DESC LIMIT 5""",
        (campaign_id,)
    ).fetchall()
    for row in rows:
        log = _sync_log_to_dict(row)
        if log["detail"] and "preview" in log["detail"]:
            return {
                "status": log["status"],
                "message": log["message"],
                "created_at": log["created_at"],
                "preview": log["detail"]["preview"],
            }
    return None
