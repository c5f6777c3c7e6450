# tracker.py
# Application state plus the mutations the UI performs on it.
#
# Every mutation is two-phase: the local state is updated first, then the
# change is written through the gateway and a WriteResult is returned. A
# failed write is reported to the caller and is neither retried nor rolled
# back.
import time
from datetime import datetime
from zoneinfo import ZoneInfo
from typing import Any, Dict, Iterable, List, Optional, Tuple

import aggregator
import persistence
import subject_store
from models import (
    CATEGORIES, DELIVERY_STATUSES, PAYMENT_STATUSES, SubjectSelection,
    default_subjects, normalize_sale, normalize_subjects, product_label,
)
from persistence import WriteResult

SYNC_IDLE_AFTER_SECONDS = 2.0


class SaleValidationError(ValueError):
    """Raised when a sale form is rejected before anything is written."""
    pass


class TrackerState:
    """In-memory copy of both collections plus the sync indicator."""

    def __init__(self, sales: List[Dict[str, Any]] = None, subjects: Dict[str, Dict[str, float]] = None):
        self.sales: List[Dict[str, Any]] = list(sales or [])
        self.subjects: Dict[str, Dict[str, float]] = dict(subjects or {})
        self.sync_status = "idle"
        self.sync_changed_at = 0.0

    def get_sale(self, sale_id: int) -> Optional[Dict[str, Any]]:
        for s in self.sales:
            if s.get("id") == sale_id:
                return s
        return None

    def mark_sync(self, status: str) -> None:
        self.sync_status = status
        self.sync_changed_at = time.monotonic()

    def current_sync_status(self, now: float = None) -> str:
        """'syncing'/'synced' fall back to 'idle' after a fixed delay, whatever happened."""
        now = time.monotonic() if now is None else now
        if self.sync_status != "idle" and now - self.sync_changed_at >= SYNC_IDLE_AFTER_SECONDS:
            return "idle"
        return self.sync_status

    def summary(self) -> Dict[str, Any]:
        return aggregator.summarize(self.sales, self.subjects)


def _finish(state: TrackerState, results: Iterable[WriteResult]) -> WriteResult:
    results = list(results)
    failed = [r for r in results if not r]
    state.mark_sync("idle" if failed else "synced")
    if failed:
        return WriteResult(False, ",".join(r.path for r in failed), "; ".join(r.error for r in failed))
    return WriteResult(True, ",".join(r.path for r in results))


def _now_ms() -> int:
    return int(time.time() * 1000)


def _now_iso() -> str:
    return datetime.now(ZoneInfo("Asia/Kolkata")).isoformat(timespec="seconds")


# =========================
# Loading
# =========================

def load_state(gateway) -> TrackerState:
    """
    Read both collections. A failed or empty read counts as "no data".
    Sales whose stored amount drifted from the catalog are reconciled and the
    reconciled list is written back.
    """
    raw_sales = persistence.load_sales(gateway)
    raw_subjects = persistence.load_subjects(gateway)

    subjects = normalize_subjects(raw_subjects) if raw_subjects is not None else default_subjects()
    sales = [normalize_sale(s) for s in raw_sales]

    state = TrackerState(sales, subjects)
    if raw_subjects is None:
        # placeholder catalog: never reprice stored sales against it
        state.mark_sync("synced")
        return state

    reconciled, changed = aggregator.reconcile_amounts(state.sales, state.subjects)
    if changed:
        print(f"ℹ️ Reconciled amounts for {len(changed)} sale(s): {changed}")
        state.sales = reconciled
        state.mark_sync("syncing")
        _finish(state, [persistence.save_sales(gateway, state.sales)])
    else:
        state.mark_sync("synced")
    return state


# =========================
# Sales
# =========================

def parse_selections(raw: Iterable[Any]) -> List[SubjectSelection]:
    """
    Accept "+1 PHY" strings or (category, code) pairs; drop malformed or
    duplicate picks, unknown categories and empty codes.
    """
    out: List[SubjectSelection] = []
    for item in raw or []:
        if isinstance(item, (tuple, list)) and len(item) >= 2:
            sel = SubjectSelection(str(item[0]).strip(), subject_store.normalize_code(item[1]))
        else:
            sel = SubjectSelection.parse(item)
            if sel is not None:
                sel = SubjectSelection(sel.category, subject_store.normalize_code(sel.code))
        if sel is None or sel.category not in CATEGORIES or not sel.code or sel in out:
            continue
        out.append(sel)
    return out


def save_entry(state: TrackerState, gateway, form: Dict[str, Any], editing_id: int = None) -> Tuple[WriteResult, Dict[str, Any]]:
    """
    Create (editing_id None) or update a sale from form values:
      userName, selections, amount, paymentStatus, deliveryStatus
    `amount` is taken as typed (manual override); when it is missing the
    catalog sum of the selections is used.
    """
    user_name = str(form.get("userName") or "").strip()
    selections = parse_selections(form.get("selections") or [])
    if not user_name:
        raise SaleValidationError("Student name is required.")
    if not selections:
        raise SaleValidationError("Select at least one subject.")

    tokens = [s.encode() for s in selections]
    raw_amount = form.get("amount")
    if raw_amount is None or str(raw_amount).strip() == "":
        amount = aggregator.compute_amount(tokens, state.subjects)
    else:
        amount = subject_store.parse_number(raw_amount)

    payment = form.get("paymentStatus") or "Pending"
    delivery = form.get("deliveryStatus") or "Pending"
    if payment not in PAYMENT_STATUSES:
        raise SaleValidationError(f"Invalid payment status '{payment}'.")
    if delivery not in DELIVERY_STATUSES:
        raise SaleValidationError(f"Invalid delivery status '{delivery}'.")

    fields = {
        "userName": user_name,
        "productName": product_label(selections),
        "subjects": tokens,
        "amount": amount,
        "paymentStatus": payment,
        "deliveryStatus": delivery,
    }

    if editing_id is not None and state.get_sale(editing_id) is None:
        raise KeyError(f"Sale {editing_id} not found")

    state.mark_sync("syncing")
    if editing_id is not None:
        existing = state.get_sale(editing_id)
        updated = {**existing, **fields}
        state.sales = [updated if s.get("id") == editing_id else s for s in state.sales]
        result = persistence.update_sale(gateway, editing_id, fields)
        return _finish(state, [result]), updated

    new_id = _now_ms()
    taken = {s.get("id") for s in state.sales}
    while new_id in taken:
        new_id += 1
    entry = {"id": new_id, **fields, "pdfAccessCount": 0}
    state.sales = [entry, *state.sales]
    result = persistence.add_sale(gateway, entry)
    return _finish(state, [result]), entry


def _update_fields(state: TrackerState, gateway, sale_id: int, updates: Dict[str, Any]) -> WriteResult:
    existing = state.get_sale(sale_id)
    if existing is None:
        raise KeyError(f"Sale {sale_id} not found")
    state.mark_sync("syncing")
    state.sales = [{**s, **updates} if s.get("id") == sale_id else s for s in state.sales]
    return _finish(state, [persistence.update_sale(gateway, sale_id, updates)])


def set_payment_status(state: TrackerState, gateway, sale_id: int, status: str) -> WriteResult:
    if status not in PAYMENT_STATUSES:
        raise SaleValidationError(f"Invalid payment status '{status}'.")
    return _update_fields(state, gateway, sale_id, {"paymentStatus": status})


def set_delivery_status(state: TrackerState, gateway, sale_id: int, status: str) -> WriteResult:
    if status not in DELIVERY_STATUSES:
        raise SaleValidationError(f"Invalid delivery status '{status}'.")
    return _update_fields(state, gateway, sale_id, {"deliveryStatus": status})


def record_pdf_access(state: TrackerState, gateway, sale_id: int) -> WriteResult:
    existing = state.get_sale(sale_id)
    if existing is None:
        raise KeyError(f"Sale {sale_id} not found")
    return _update_fields(state, gateway, sale_id, {
        "pdfAccessCount": int(existing.get("pdfAccessCount") or 0) + 1,
        "lastAccessed": _now_iso(),
    })


def delete_sale(state: TrackerState, gateway, sale_id: int) -> WriteResult:
    if state.get_sale(sale_id) is None:
        raise KeyError(f"Sale {sale_id} not found")
    state.mark_sync("syncing")
    state.sales = [s for s in state.sales if s.get("id") != sale_id]
    return _finish(state, [persistence.delete_sale(gateway, sale_id)])


# =========================
# Subjects
# =========================

def add_subject(state: TrackerState, gateway, code: Any, price: Any, history=None) -> WriteResult:
    key = subject_store.normalize_code(code)
    old = state.subjects.get(key)
    state.subjects = subject_store.with_subject(state.subjects, key, price)
    if history is not None:
        new = state.subjects[key]
        history.record_many(
            [(key, f, (old or {}).get(f), new[f]) for f in ("price1", "price2")],
            reason="add subject",
        )
    state.mark_sync("syncing")
    return _finish(state, [persistence.save_subjects(gateway, state.subjects)])


def update_subject_price(state: TrackerState, gateway, code: Any, category: str, value: Any,
                         history=None) -> Tuple[WriteResult, List[int]]:
    """
    Change a category price and re-price every sale holding that selection.
    Sales are only written when at least one amount changed.
    """
    key = subject_store.normalize_code(code)
    state.subjects, old, new = subject_store.with_field(state.subjects, key, category, "price", value)
    if history is not None:
        history.record(key, f"price{category[1:]}", old, new, reason="price edit")

    updated, changed = aggregator.recalculate_for_subject(state.sales, state.subjects, key, category)
    state.mark_sync("syncing")
    results = [persistence.save_subjects(gateway, state.subjects)]
    if changed:
        state.sales = updated
        results.append(persistence.save_sales(gateway, state.sales))
    return _finish(state, results), changed


def _update_subject_field(state, gateway, code, category, kind, value, history, reason) -> WriteResult:
    key = subject_store.normalize_code(code)
    state.subjects, old, new = subject_store.with_field(state.subjects, key, category, kind, value)
    if history is not None:
        history.record(key, f"{kind}{category[1:]}", old, new, reason=reason)
    state.mark_sync("syncing")
    return _finish(state, [persistence.save_subjects(gateway, state.subjects)])


def update_subject_pages(state: TrackerState, gateway, code: Any, category: str, value: Any, history=None) -> WriteResult:
    return _update_subject_field(state, gateway, code, category, "page", value, history, "page edit")


def update_subject_actual_price(state: TrackerState, gateway, code: Any, category: str, value: Any,
                                history=None) -> WriteResult:
    return _update_subject_field(state, gateway, code, category, "actualPrice", value, history, "actual price edit")


def delete_subject(state: TrackerState, gateway, code: Any, history=None) -> WriteResult:
    """Remove a subject. Sales that reference it are left as they are."""
    key = subject_store.normalize_code(code)
    if key not in state.subjects:
        raise KeyError(f"Subject '{key}' not found")
    old = state.subjects[key]
    state.subjects = subject_store.without_subject(state.subjects, key)
    if history is not None:
        history.record_many([(key, f, old.get(f), None) for f in sorted(old)], reason="delete subject")
    state.mark_sync("syncing")
    return _finish(state, [persistence.save_subjects(gateway, state.subjects)])
