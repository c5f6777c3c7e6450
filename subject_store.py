import csv
import os
from datetime import datetime
from zoneinfo import ZoneInfo
from threading import Lock
from typing import Any, Dict, Iterable, Optional, Tuple

from models import field_for, normalize_subject


class SubjectValueError(ValueError):
    """Raised when a catalog edit carries an unusable code or value."""
    pass


VALUE_PRECISION_DECIMALS = 2


def parse_number(raw: Any) -> float:
    """Manual price/page input: anything unparsable counts as 0."""
    try:
        v = float(str(raw).strip())
    except (TypeError, ValueError):
        return 0.0
    if v != v:  # NaN
        return 0.0
    return v


def normalize_code(code: Any) -> str:
    return str(code or "").strip().upper()


# -------------------------
# Catalog updates (return new mappings, never mutate the input)
# -------------------------
def with_subject(subjects: Dict[str, Dict[str, float]], code: str, price: Any) -> Dict[str, Dict[str, float]]:
    """Add or replace a subject with the same price for both categories."""
    key = normalize_code(code)
    if not key:
        raise SubjectValueError("Subject code is required.")
    if price is None or str(price).strip() == "":
        raise SubjectValueError("Subject price is required.")
    value = _validate_and_round(parse_number(price))
    return {
        **subjects,
        key: {"price1": value, "price2": value, "page1": 0, "page2": 0, "actualPrice1": 0, "actualPrice2": 0},
    }


def with_field(subjects: Dict[str, Dict[str, float]],
               code: str,
               category: str,
               kind: str,
               value: Any) -> Tuple[Dict[str, Dict[str, float]], Optional[float], float]:
    """
    Set one of price/page/actualPrice for a category.
    Returns (new catalog, old value, new value).
    """
    key = normalize_code(code)
    if key not in subjects:
        raise KeyError(f"Subject '{key}' not found")
    try:
        field = field_for(kind, category)
    except ValueError as e:
        raise SubjectValueError(str(e))
    new_val = _validate_and_round(parse_number(value))
    record = normalize_subject(subjects[key])
    old = record.get(field)
    record[field] = new_val
    return {**subjects, key: record}, old, new_val


def without_subject(subjects: Dict[str, Dict[str, float]], code: str) -> Dict[str, Dict[str, float]]:
    key = normalize_code(code)
    return {k: v for k, v in subjects.items() if k != key}


def _validate_and_round(v: float) -> float:
    if v < 0:
        raise SubjectValueError("Catalog values cannot be negative.")
    return round(v, VALUE_PRECISION_DECIMALS)


class SubjectHistory:
    """
    Appends every catalog mutation to a CSV audit log.

    - Log: data/subject_history.csv
      Columns:
      timestamp_iso, code, field, old_value, new_value, actor, reason

    NOTE: timestamp_iso is logged in Asia/Kolkata local time (ISO 8601), e.g. 2025-09-01T21:30:00+05:30
    """

    DEFAULT_HISTORY_CSV_PATH = "data/subject_history.csv"
    HEADER = ["timestamp_iso", "code", "field", "old_value", "new_value", "actor", "reason"]

    def __init__(self, history_csv_path: str = None):
        self.history_csv_path = history_csv_path or self.DEFAULT_HISTORY_CSV_PATH
        self._lock = Lock()
        self._ensure_file()

    def record(self,
               code: str,
               field: str,
               old: Optional[float],
               new: Optional[float],
               actor: str = "system",
               reason: str = "") -> None:
        self.record_many([(code, field, old, new)], actor=actor, reason=reason)

    def record_many(self,
                    changes: Iterable[Tuple[str, str, Any, Any]],
                    actor: str = "system",
                    reason: str = "") -> None:
        now_iso = self._now_iso()
        with self._lock:
            with open(self.history_csv_path, "a", newline="", encoding="utf-8") as f:
                writer = csv.writer(f)
                for code, field, old, new in changes:
                    writer.writerow([
                        now_iso,
                        code,
                        field,
                        "" if old is None else old,
                        "" if new is None else new,
                        actor,
                        reason,
                    ])

    def read_all(self):
        with self._lock:
            with open(self.history_csv_path, "r", newline="", encoding="utf-8") as f:
                return list(csv.DictReader(f))

    def _ensure_file(self) -> None:
        folder = os.path.dirname(self.history_csv_path)
        if folder:
            os.makedirs(folder, exist_ok=True)
        if not os.path.exists(self.history_csv_path):
            with open(self.history_csv_path, "w", newline="", encoding="utf-8") as f:
                csv.writer(f).writerow(self.HEADER)

    @staticmethod
    def _now_iso() -> str:
        # Kolkata local time (ISO 8601 with +05:30 offset), seconds precision
        return datetime.now(ZoneInfo("Asia/Kolkata")).isoformat(timespec="seconds")
