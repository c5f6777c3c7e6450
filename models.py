# models.py
from typing import Any, Dict, List, NamedTuple, Optional

CATEGORIES = ("+1", "+2")
PAYMENT_STATUSES = ("Paid", "Pending")
DELIVERY_STATUSES = ("Delivered", "Pending")

# collection paths in the document store
SALES_PATH = "sales"
SUBJECTS_PATH = "subjects"

# category -> field suffix; "+1" uses price1/page1/actualPrice1
SUBJECT_FIELDS = ["price1", "price2", "page1", "page2", "actualPrice1", "actualPrice2"]
FIELD_KINDS = ("price", "page", "actualPrice")

# Older catalogs stored a single price per subject and defaulted it to 30.
LEGACY_DEFAULT_PRICE = 30.0
DEFAULT_SUBJECT_CODES = ["ACC", "BSS", "ECO", "ENG", "ARB", "CMP"]


class SubjectSelection(NamedTuple):
    """One (category, code) pick inside a sale."""
    category: str
    code: str

    def encode(self) -> str:
        return f"{self.category} {self.code}"

    @classmethod
    def parse(cls, token: Any) -> Optional["SubjectSelection"]:
        """
        Parse the stored "<category> <code>" form.
        Returns None for malformed tokens (fewer than two parts).
        """
        parts = str(token or "").split()
        if len(parts) < 2:
            return None
        return cls(parts[0], parts[1])


def field_for(kind: str, category: str) -> str:
    """field_for("page", "+2") -> "page2"."""
    if kind not in FIELD_KINDS:
        raise ValueError(f"Unknown subject field kind '{kind}'")
    if category not in CATEGORIES:
        raise ValueError(f"Unknown category '{category}'")
    return f"{kind}{category[1:]}"


def _to_number(v, default=0.0) -> float:
    try:
        s = str(v).strip()
        if s == "" or s.lower() in ("nan", "none"):
            return float(default)
        return float(s)
    except Exception:
        return float(default)


def normalize_subject(raw: Optional[Dict[str, Any]]) -> Dict[str, float]:
    """Fill in the six catalog fields, honouring the legacy single `price`."""
    raw = raw or {}
    legacy = raw.get("price")
    # a zero or unusable legacy price also means "never priced"
    fallback_price = _to_number(legacy, LEGACY_DEFAULT_PRICE) or LEGACY_DEFAULT_PRICE
    out = {}
    for f in ("price1", "price2"):
        out[f] = _to_number(raw[f]) if raw.get(f) is not None else fallback_price
    for f in ("page1", "page2", "actualPrice1", "actualPrice2"):
        out[f] = _to_number(raw.get(f), 0.0)
    return out


def normalize_subjects(raw: Any) -> Dict[str, Dict[str, float]]:
    if not isinstance(raw, dict):
        return {}
    return {str(code).strip().upper(): normalize_subject(val if isinstance(val, dict) else {})
            for code, val in raw.items() if str(code).strip()}


def default_subjects() -> Dict[str, Dict[str, float]]:
    return {code: normalize_subject({}) for code in DEFAULT_SUBJECT_CODES}


def normalize_sale(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Coerce a stored sale record into the expected field types."""
    sale = dict(raw or {})
    try:
        sale["id"] = int(sale.get("id") or 0)
    except (TypeError, ValueError):
        sale["id"] = 0
    sale["userName"] = str(sale.get("userName") or "")
    sale["productName"] = str(sale.get("productName") or "")
    subjects = sale.get("subjects") or []
    sale["subjects"] = [str(s) for s in subjects] if isinstance(subjects, list) else []
    sale["amount"] = _to_number(sale.get("amount"), 0.0)
    if sale.get("paymentStatus") not in PAYMENT_STATUSES:
        sale["paymentStatus"] = "Pending"
    if sale.get("deliveryStatus") not in DELIVERY_STATUSES:
        sale["deliveryStatus"] = "Pending"
    try:
        sale["pdfAccessCount"] = int(sale.get("pdfAccessCount") or 0)
    except (TypeError, ValueError):
        sale["pdfAccessCount"] = 0
    return sale


def product_label(selections: List[SubjectSelection]) -> str:
    return ", ".join(s.encode() for s in selections)
