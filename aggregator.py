# aggregator.py
# Derived views over the sale ledger and subject catalog.
# Everything here is pure: callers pass the current lists/mappings in and
# get fresh values back, nothing is cached between calls.
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

from models import CATEGORIES, SubjectSelection, field_for

Sale = Dict[str, Any]
Catalog = Dict[str, Dict[str, float]]


def iter_selections(sale: Sale) -> Iterator[SubjectSelection]:
    """Yield the well-formed selections of a sale; malformed tokens are skipped."""
    for token in sale.get("subjects") or []:
        sel = SubjectSelection.parse(token)
        if sel is not None:
            yield sel


def catalog_value(subjects: Catalog, sel: SubjectSelection, kind: str) -> float:
    """Current catalog value for a selection, 0 for unknown codes or categories."""
    if sel.category not in CATEGORIES:
        return 0
    record = subjects.get(sel.code)
    if not record:
        return 0
    return record.get(field_for(kind, sel.category)) or 0


# =========================
# Revenue / status counts
# =========================

def total_revenue(sales: Iterable[Sale]) -> float:
    return sum((s.get("amount") or 0 for s in sales), 0)


def pending_revenue(sales: Iterable[Sale]) -> float:
    return sum((s.get("amount") or 0 for s in sales if s.get("paymentStatus") == "Pending"), 0)


def delivery_counts(sales: Iterable[Sale]) -> Tuple[int, int]:
    """Return (pending, delivered)."""
    pending = delivered = 0
    for s in sales:
        status = s.get("deliveryStatus")
        if status == "Pending":
            pending += 1
        elif status == "Delivered":
            delivered += 1
    return pending, delivered


def pending_payment_count(sales: Iterable[Sale]) -> int:
    return sum(1 for s in sales if s.get("paymentStatus") == "Pending")


def subject_counts(sales: Iterable[Sale]) -> Dict[str, Dict[str, int]]:
    counts: Dict[str, Dict[str, int]] = {c: {} for c in CATEGORIES}
    for sale in sales:
        for sel in iter_selections(sale):
            if sel.category in counts:
                counts[sel.category][sel.code] = counts[sel.category].get(sel.code, 0) + 1
    return counts


# =========================
# Per-student views
# =========================

def _sum_kind(sale: Sale, subjects: Catalog, kind: str) -> float:
    return sum((catalog_value(subjects, sel, kind) for sel in iter_selections(sale)), 0)


def student_profits(sales: Iterable[Sale], subjects: Catalog) -> List[Dict[str, Any]]:
    """Profit per sale against the current actual prices (not the price at sale time)."""
    rows = []
    for sale in sales:
        actual = _sum_kind(sale, subjects, "actualPrice")
        amount = sale.get("amount") or 0
        rows.append({
            "id": sale.get("id"),
            "name": sale.get("userName", ""),
            "totalActualPrice": actual,
            "amount": amount,
            "profit": amount - actual,
        })
    return rows


def total_profit(sales: Iterable[Sale], subjects: Catalog) -> float:
    return sum((r["profit"] for r in student_profits(sales, subjects)), 0)


def student_pages(sales: Iterable[Sale], subjects: Catalog) -> List[Dict[str, Any]]:
    return [
        {
            "id": sale.get("id"),
            "name": sale.get("userName", ""),
            "subjects": list(sale.get("subjects") or []),
            "pages": _sum_kind(sale, subjects, "page"),
        }
        for sale in sales
    ]


# =========================
# Amount recalculation
# =========================

def compute_amount(tokens: Iterable[Any], subjects: Catalog) -> float:
    """Sum of the current category prices for the given encoded selections."""
    return _sum_kind({"subjects": list(tokens)}, subjects, "price")


def references_code(sale: Sale, code: str, category: Optional[str] = None) -> bool:
    return any(
        sel.code == code and (category is None or sel.category == category)
        for sel in iter_selections(sale)
    )


def recalculate_for_subject(sales: List[Sale],
                            subjects: Catalog,
                            code: str,
                            category: Optional[str] = None) -> Tuple[List[Sale], List[int]]:
    """
    Recompute the amount of every sale that references `code`, restricted to
    selections under `category` when one is given. Returns the new list and
    the ids whose amount actually changed; untouched sales are returned as the
    same objects.
    """
    out: List[Sale] = []
    changed: List[int] = []
    for sale in sales:
        if references_code(sale, code, category):
            new_amount = compute_amount(sale.get("subjects") or [], subjects)
            if new_amount != sale.get("amount"):
                sale = {**sale, "amount": new_amount}
                changed.append(sale.get("id"))
        out.append(sale)
    return out, changed


def reconcile_amounts(sales: List[Sale], subjects: Catalog) -> Tuple[List[Sale], List[int]]:
    """
    Load-time pass. Only overwrite when the recomputed total is positive, so an
    empty or partially deleted catalog never wipes stored amounts.
    """
    out: List[Sale] = []
    changed: List[int] = []
    for sale in sales:
        tokens = sale.get("subjects") or []
        if tokens:
            new_amount = compute_amount(tokens, subjects)
            if new_amount > 0 and new_amount != sale.get("amount"):
                sale = {**sale, "amount": new_amount}
                changed.append(sale.get("id"))
        out.append(sale)
    return out, changed


# =========================
# List view filtering
# =========================

def filter_sales(sales: Iterable[Sale],
                 search: Optional[str] = "",
                 payment: Optional[str] = "All",
                 delivery: Optional[str] = "All") -> List[Sale]:
    needle = (search or "").strip().lower()
    payment = payment or "All"
    delivery = delivery or "All"
    out = []
    for s in sales:
        if needle:
            haystacks = (
                str(s.get("userName") or "").lower(),
                str(s.get("productName") or "").lower(),
                " ".join(s.get("subjects") or []).lower(),
            )
            if not any(needle in h for h in haystacks):
                continue
        if payment != "All" and s.get("paymentStatus") != payment:
            continue
        if delivery != "All" and s.get("deliveryStatus") != delivery:
            continue
        out.append(s)
    return out


def summarize(sales: List[Sale], subjects: Catalog) -> Dict[str, Any]:
    """Every figure the dashboard shows, in one dict."""
    pending_del, delivered = delivery_counts(sales)
    profits = student_profits(sales, subjects)
    return {
        "total_entries": len(sales),
        "total_revenue": total_revenue(sales),
        "pending_revenue": pending_revenue(sales),
        "pending_deliveries": pending_del,
        "delivered_count": delivered,
        "pending_payments": pending_payment_count(sales),
        "subject_counts": subject_counts(sales),
        "student_profits": profits,
        "total_profit": sum((r["profit"] for r in profits), 0),
        "student_pages": student_pages(sales, subjects),
    }
