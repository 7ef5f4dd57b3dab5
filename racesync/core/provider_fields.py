"""
provider_fields.py — Field extraction rules for timing-provider payloads.

Provider rows are plain dicts whose key names drift between endpoints
(BIB/Bib/bib, EventId/EventNo/ProjectNo, ...). Each field is read through
an ordered list of known aliases, then a scan by normalised key
(lowercased, non-alphanumerics stripped).
"""

from __future__ import annotations

import math
import re
from collections import deque
from datetime import datetime
from typing import Any, Iterable, Optional

ENVELOPE_KEYS = frozenset({
    "data", "rows", "list", "items", "result", "records",
    "eventlist", "participantlist",
})

EVENT_ID_ALIASES = (
    "EventId", "eventId", "eventid", "EventNo", "eventNo", "eventno",
    "ProjectNo", "projectNo", "projectno", "RaceNo", "raceNo", "raceno",
)
EVENT_ID_KEYS = ("eventid", "eventno", "projectno", "projectnumber", "raceno")

FEMALE_VALUES = frozenset({"f", "female", "woman", "2", "หญิง", "female(หญิง)"})

_AGE_GROUP_PATTERNS = (
    re.compile(r"^[MF]?\s*\d{1,2}[-+]"),
    re.compile(r"^\d{1,2}\s*-\s*\d{1,2}$"),
    re.compile(r"^[MF]\s+U?\d", re.IGNORECASE),
)

_NON_ALNUM_RE = re.compile(r"[^a-z0-9]+")
_NON_COMPARABLE_RE = re.compile(r"[^a-z0-9ก-๙]+")
_NUMBER_RE = re.compile(r"-?\d+(?:\.\d+)?")
_DURATION_RE = re.compile(r"^(\d{1,2}):(\d{2}):(\d{2})(?:\.(\d+))?$")
_CLOCK_RE = re.compile(r"(\d{1,2}):(\d{2})(?::\d{2})?")

# Values above one day are already milliseconds
_MS_THRESHOLD = 86_400_000


# ---------------------------------------------------------------------------
# Primitive readers
# ---------------------------------------------------------------------------

def normalize_key(key: str) -> str:
    return _NON_ALNUM_RE.sub("", str(key).lower())


def normalize_comparable(value: Any) -> str:
    """Lowercase and strip everything but latin/thai letters and digits."""
    return _NON_COMPARABLE_RE.sub("", to_safe_string(value).lower())


def pick(row: Any, *aliases: str) -> Any:
    """First alias present in row with a non-None value."""
    if not isinstance(row, dict):
        return None
    for alias in aliases:
        value = row.get(alias)
        if value is not None:
            return value
    return None


def find_by_normalized_keys(row: Any, keys: Iterable[str]) -> Any:
    """Value of the first row key whose normalised form is in keys."""
    if not isinstance(row, dict):
        return None
    targets = set(keys)
    for key, value in row.items():
        if normalize_key(key) in targets:
            return value
    return None


def pick_or_scan(row: Any, aliases: Iterable[str], keys: Iterable[str]) -> Any:
    value = pick(row, *aliases)
    if value is None:
        value = find_by_normalized_keys(row, keys)
    return value


def to_safe_string(value: Any) -> str:
    """Trimmed string for str/finite numbers, '' for anything else."""
    if isinstance(value, bool):
        return ""
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float) and math.isfinite(value):
        return str(int(value)) if value.is_integer() else str(value)
    return ""


def parse_numeric(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value if math.isfinite(value) else None
    if isinstance(value, str) and value.strip():
        try:
            parsed = float(value.strip())
        except ValueError:
            return None
        if not math.isfinite(parsed):
            return None
        return int(parsed) if parsed.is_integer() else parsed
    return None


def parse_int(value: Any) -> Optional[int]:
    parsed = parse_numeric(value)
    if parsed is None:
        return None
    return int(parsed)


def parse_distance(value: Any) -> Optional[float]:
    """First number in a distance label ('21 KM', '10.5km', '1,000')."""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value) if math.isfinite(value) else None
    raw = to_safe_string(value).replace(",", "")
    if not raw:
        return None
    m = _NUMBER_RE.search(raw)
    if not m:
        return None
    return float(m.group(0))


# ---------------------------------------------------------------------------
# Envelopes
# ---------------------------------------------------------------------------

def extract_rows(body: Any) -> list:
    """Locate the row collection inside a provider response body.

    Breadth-first over nested objects: at each level an array under a
    known envelope key wins, then the first array at that level.
    """
    if not isinstance(body, (dict, list)):
        return []

    queue: deque = deque([body])
    visited: set[int] = set()
    while queue:
        current = queue.popleft()
        if id(current) in visited:
            continue
        visited.add(id(current))

        if isinstance(current, list):
            return current

        for key, value in current.items():
            if isinstance(value, list) and normalize_key(key) in ENVELOPE_KEYS:
                return value
        for value in current.values():
            if isinstance(value, list):
                return value
        for value in current.values():
            if isinstance(value, dict):
                queue.append(value)
    return []


def payload_sample(body: Any) -> Any:
    """Small excerpt of a response for diagnostics."""
    rows = extract_rows(body)
    if rows:
        return rows[:3]
    data = body.get("data") if isinstance(body, dict) else None
    if isinstance(data, dict):
        return dict(list(data.items())[:12])
    return body


def mask_token(token: Optional[str]) -> str:
    if not token:
        return ""
    if len(token) <= 8:
        return "********"
    return f"{token[:4]}...{token[-4:]}"


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------

def resolve_remote_event_id(row: Any) -> Optional[int]:
    """Provider event id of a row, from known aliases then normalised keys."""
    direct = parse_int(pick(row, *EVENT_ID_ALIASES))
    if direct is not None:
        return direct
    if not isinstance(row, dict):
        return None
    for key, value in row.items():
        if normalize_key(key) in EVENT_ID_KEYS:
            parsed = parse_int(value)
            if parsed is not None:
                return parsed
    return None


def infer_remote_event_id(event: dict, categories: list[dict],
                          index: int) -> Optional[int]:
    """Match a local event to a campaign category carrying a remote event no.

    Tries name (exact or substring), then distance, then position.
    """
    if not categories:
        return None

    event_key = normalize_comparable(event.get("category") or event.get("name"))
    if event_key:
        for category in categories:
            candidate = parse_int(category.get("remote_event_no"))
            if candidate is None:
                continue
            category_key = normalize_comparable(category.get("name"))
            if not category_key:
                continue
            if (category_key == event_key or category_key in event_key
                    or event_key in category_key):
                return candidate

    event_distance = parse_distance(event.get("distance"))
    if event_distance is not None:
        for category in categories:
            candidate = parse_int(category.get("remote_event_no"))
            category_distance = parse_distance(category.get("distance"))
            if candidate is None or category_distance is None:
                continue
            if abs(category_distance - event_distance) < 0.001:
                return candidate

    if index < len(categories):
        return parse_int(categories[index].get("remote_event_no"))
    return None


# ---------------------------------------------------------------------------
# Runners
# ---------------------------------------------------------------------------

def looks_like_age_group(value: Any) -> bool:
    """True for age-group labels such as '45-49', 'M 30-39', 'F U18', '70+'."""
    text = to_safe_string(value)
    if not text:
        return False
    return any(p.search(text) for p in _AGE_GROUP_PATTERNS)


def normalize_gender(value: Any) -> str:
    if to_safe_string(value).lower() in FEMALE_VALUES:
        return "F"
    return "M"


def split_name(full_name: str) -> tuple[str, str]:
    """Split on the last whitespace boundary."""
    cleaned = " ".join(str(full_name or "").split())
    if not cleaned:
        return "Unknown", "Runner"
    parts = cleaned.split(" ")
    if len(parts) == 1:
        return parts[0], "-"
    return " ".join(parts[:-1]), parts[-1]


def row_bib(row: Any) -> str:
    return to_safe_string(pick(row, "BIB", "Bib", "bib"))


def row_athlete_id(row: Any) -> str:
    return to_safe_string(pick(row, "AthleteId", "athleteId", "athleteid", "ATHLETEID"))


def parse_optional_date(value: Any) -> Optional[str]:
    raw = to_safe_string(value)
    if not raw:
        return None
    try:
        return datetime.fromisoformat(raw.replace("Z", "+00:00")).date().isoformat()
    except ValueError:
        return None


# ---------------------------------------------------------------------------
# Times
# ---------------------------------------------------------------------------

def parse_time_to_ms(value: Any) -> Optional[int]:
    """Duration in ms from 'H:MM:SS[.fff]', raw ms or raw seconds.

    '-', '0' and '00:00:00' mean no time.
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, (int, float)):
        if value > _MS_THRESHOLD:
            return int(value)
        return int(value * 1000)

    text = str(value).strip()
    if not text or text in ("-", "0", "00:00:00"):
        return None

    m = _DURATION_RE.match(text)
    if m:
        hours, minutes, seconds = int(m.group(1)), int(m.group(2)), int(m.group(3))
        fraction = int(m.group(4).ljust(3, "0")[:3]) if m.group(4) else 0
        return (hours * 3600 + minutes * 60 + seconds) * 1000 + fraction

    try:
        num = float(text)
    except ValueError:
        return None
    if not math.isfinite(num) or num <= 0:
        return None
    return int(num) if num > _MS_THRESHOLD else int(num * 1000)


def normalize_provider_time(value: Any) -> str:
    """Full datetimes become 'YYYY-MM-DDTHH:MM', clock values 'HH:MM'."""
    raw = to_safe_string(value)
    if not raw:
        return ""

    if len(raw) > 10:
        try:
            parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            parsed = None
        if parsed is not None:
            return parsed.strftime("%Y-%m-%dT%H:%M")

    m = _CLOCK_RE.search(raw)
    if m:
        return f"{m.group(1).zfill(2)}:{m.group(2)}"
    return raw


def clock_to_today(value: Any, now: Optional[datetime] = None) -> Optional[datetime]:
    """'HH:MM' (after normalisation) as a datetime on today's date."""
    text = normalize_provider_time(value)
    m = re.match(r"^(\d{1,2}):(\d{2})$", text)
    if not m:
        return None
    hour, minute = int(m.group(1)), int(m.group(2))
    if hour > 23 or minute > 59:
        return None
    now = now or datetime.now()
    return now.replace(hour=hour, minute=minute, second=0, microsecond=0)


# ---------------------------------------------------------------------------
# Timing points
# ---------------------------------------------------------------------------

DEFAULT_SORT_ORDER = 500


def classify_timing_point_type(name: str, sort_order: Optional[float]) -> str:
    normalized = normalize_key(name)
    if normalized in ("start", "startline") or sort_order == 1:
        return "start"
    if normalized in ("finish", "finishline", "end") or sort_order == 9999:
        return "finish"
    return "checkpoint"


def _ordered_points(by_name: dict[str, dict]) -> list[dict]:
    points = sorted(by_name.values(), key=lambda tp: tp["sort_order"])
    return [
        {
            "name": tp["name"],
            "type": classify_timing_point_type(tp["name"], tp["sort_order"]),
            "order_num": idx,
            "km": tp.get("km"),
        }
        for idx, tp in enumerate(points, start=1)
    ]


def _timing_point_list(row: Any) -> list:
    tps = pick(row, "TimingPoints", "timingPoints", "timingpoints")
    return tps if isinstance(tps, list) else []


def _timing_point_name(tp: Any) -> str:
    return to_safe_string(pick(tp, "TpName", "tpName", "Name", "name"))


def _sort_order(row: Any) -> float:
    value = parse_numeric(pick(row, "SortOrder", "sortOrder"))
    return value if value is not None else DEFAULT_SORT_ORDER


def timing_points_per_event(info_rows: list) -> dict[int, list[dict]]:
    """Timing points of each provider event, deduplicated by name.

    The lowest sort order wins a name collision; a missing km is filled
    from a later duplicate.
    """
    seen: dict[int, dict[str, dict]] = {}
    for row in info_rows:
        row_eid = resolve_remote_event_id(row)
        for tp in _timing_point_list(row):
            name = _timing_point_name(tp)
            if not name:
                continue
            eid = resolve_remote_event_id(tp)
            if eid is None:
                eid = row_eid
            if eid is None:
                continue
            sort_order = _sort_order(tp)
            km = parse_distance(pick(tp, "Km", "km", "Distance", "distance", "TpKm", "tpKm"))

            by_name = seen.setdefault(eid, {})
            key = normalize_comparable(name)
            prev = by_name.get(key)
            if prev is None or sort_order < prev["sort_order"]:
                by_name[key] = {
                    "name": name,
                    "sort_order": sort_order,
                    "km": km if km is not None else (prev or {}).get("km"),
                }
            elif prev.get("km") is None and km is not None:
                prev["km"] = km

    return {eid: _ordered_points(by_name) for eid, by_name in seen.items() if by_name}


def merged_timing_points(info_rows: list) -> list[dict]:
    """All timing points across events, deduplicated by exact name."""
    seen: dict[str, dict] = {}
    for row in info_rows:
        for tp in _timing_point_list(row):
            name = _timing_point_name(tp)
            if not name:
                continue
            sort_order = _sort_order(tp)
            if name not in seen or sort_order < seen[name]["sort_order"]:
                seen[name] = {"name": name, "sort_order": sort_order}
    return _ordered_points(seen)


SPLIT_NAME_ALIASES = (
    "TpName", "tpName", "tpname", "CheckPoint", "Checkpoint", "checkpoint",
    "CheckpointName", "checkpointName", "CPName", "cpName",
    "StationName", "stationName",
)
SPLIT_NAME_KEYS = ("tpname", "checkpoint", "checkpointname", "cpname",
                   "stationname", "station")


def timing_points_from_split_rows(split_rows: list) -> list[dict]:
    """Checkpoint names seen in split-score rows."""
    seen: dict[str, dict] = {}
    for row in split_rows:
        name = to_safe_string(pick_or_scan(row, SPLIT_NAME_ALIASES, SPLIT_NAME_KEYS))
        if not name:
            continue
        sort_order = _sort_order(row)
        if name not in seen or sort_order < seen[name]["sort_order"]:
            seen[name] = {"name": name, "sort_order": sort_order}
    return _ordered_points(seen)


DEFAULT_CHECKPOINTS = (
    {"name": "START", "type": "start", "order_num": 1, "km": None},
    {"name": "FINISH", "type": "finish", "order_num": 2, "km": None},
)
