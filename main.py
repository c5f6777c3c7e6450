from flask import (
    Flask, render_template, request, redirect, send_file, abort,
    url_for, flash, jsonify, session
)
import os
import io
import csv
from datetime import datetime
from urllib.parse import urlparse
from zoneinfo import ZoneInfo
import pandas as pd
import pytz

import aggregator
import tracker
from models import CATEGORIES, DELIVERY_STATUSES, PAYMENT_STATUSES, FIELD_KINDS
from persistence import get_gateway
from report_pdf import build_dashboard_pdf
from subject_store import SubjectHistory, SubjectValueError
from tracker import SaleValidationError

app = Flask(__name__)

# =========================
# Config
# =========================
app.secret_key = os.environ.get("SECRET_KEY", "study-tracker-dev-key")  # Required for flashing messages + gate

ACCESS_CODE = os.environ.get("ACCESS_CODE", "0000")

# Persistence backend: 'json' (default) or 'firebase'
PERSISTENCE_BACKEND = os.environ.get("PERSISTENCE_BACKEND", "json").lower()
gateway = get_gateway(PERSISTENCE_BACKEND)

os.makedirs("data", exist_ok=True)
subject_history = SubjectHistory()

# Loaded lazily on first request, then kept in memory for this process
state = None


def _state() -> tracker.TrackerState:
    global state
    if state is None:
        state = tracker.load_state(gateway)
    return state


# =========================
# Filters / Utilities
# =========================

@app.route("/healthz", methods=["GET", "HEAD"])
def healthz():
    if request.method == "HEAD":
        return ("", 200, {"Content-Type": "text/plain; charset=utf-8", "Cache-Control": "no-store"})
    return ("ok", 200, {"Content-Type": "text/plain; charset=utf-8", "Cache-Control": "no-store"})


@app.template_filter("ist_time")
def ist_time_filter(value):
    """
    Render an ISO timestamp as Asia/Kolkata local time 'YYYY-MM-DD HH:MM'.
    Naive values are treated as Kolkata local; aware ones are converted.
    """
    if not value:
        return "—"
    s = str(value).strip()
    kolkata = pytz.timezone("Asia/Kolkata")
    try:
        dt = datetime.fromisoformat(s)
    except ValueError:
        return s
    if dt.tzinfo is None:
        dt = kolkata.localize(dt)
    else:
        dt = dt.astimezone(kolkata)
    return dt.strftime("%Y-%m-%d %H:%M")


@app.template_filter("money")
def money_filter(value):
    try:
        f = float(value)
    except (TypeError, ValueError):
        return "—"
    return f"{f:,.0f}" if f == int(f) else f"{f:,.2f}"


@app.context_processor
def inject_globals():
    return {
        "categories": CATEGORIES,
        "payment_statuses": PAYMENT_STATUSES,
        "delivery_statuses": DELIVERY_STATUSES,
        "sync_status": state.current_sync_status() if state is not None else "idle",
        "authenticated": _is_authenticated(),
    }


# ===== Tiny CSV-safe audit log =====
AUDIT_PATH = "data/ops_audit_log.csv"
AUDIT_FIELDS = [
    "timestamp", "action", "sale_id",
    "from_status", "to_status",
    "route", "actor_ip", "user_agent", "note"
]


def append_audit(action, sale_id, from_status="", to_status="", note=""):
    os.makedirs(os.path.dirname(AUDIT_PATH), exist_ok=True)
    is_new = not os.path.isfile(AUDIT_PATH)
    try:
        with open(AUDIT_PATH, "a", newline="", encoding="utf-8-sig") as f:
            writer = csv.DictWriter(f, fieldnames=AUDIT_FIELDS)
            if is_new:
                writer.writeheader()
            writer.writerow({
                "timestamp": datetime.now(ZoneInfo("Asia/Kolkata")).isoformat(timespec="seconds"),
                "action": action,
                "sale_id": sale_id,
                "from_status": from_status or "",
                "to_status": to_status or "",
                "route": request.path,
                "actor_ip": request.headers.get("X-Forwarded-For", request.remote_addr),
                "user_agent": request.headers.get("User-Agent", ""),
                "note": note or ""
            })
    except Exception as e:
        print(f"⚠️ Audit log write failed: {e}")


def _flash_result(result, failure_message):
    if not result:
        print(f"❌ {failure_message} ({result.error})")
        flash(failure_message, "error")


def _local_url(candidate, default):
    """Only same-site paths are followed after a form post."""
    candidate = (candidate or "").strip()
    parts = urlparse(candidate)
    if not candidate.startswith("/") or candidate.startswith("//") or "\\" in candidate \
            or parts.scheme or parts.netloc:
        return default
    return candidate


def _back(default="tracker_list"):
    next_url = _local_url(request.form.get("next") or request.args.get("next"), url_for(default))
    return redirect(next_url)


# =========================
# Access gate
# =========================

def _is_authenticated():
    return bool(session.get("authenticated"))


def _require_access():
    """Redirect to the gate unless the access code was entered this session."""
    if not _is_authenticated():
        return redirect(url_for("login", next=request.path))
    return None


@app.route("/login", methods=["GET", "POST"])
def login():
    next_url = _local_url(request.values.get("next"), url_for("dashboard"))
    if request.method == "POST":
        if (request.form.get("access_code") or "").strip() == ACCESS_CODE:
            session["authenticated"] = True
            return redirect(next_url)
        flash("Incorrect ID", "error")
    return render_template("login.html", next_url=next_url)


@app.route("/logout")
def logout():
    session.pop("authenticated", None)
    return redirect(url_for("tracker_list"))


# =========================
# Tracker (sale list)
# =========================

def _list_filters():
    return {
        "search": (request.args.get("q") or "").strip(),
        "payment": request.args.get("payment") or "All",
        "delivery": request.args.get("delivery") or "All",
    }


@app.route("/")
def tracker_list():
    st = _state()
    filters = _list_filters()
    rows = aggregator.filter_sales(st.sales, **filters)
    return render_template(
        "index.html",
        sales=rows,
        filters=filters,
        stats=st.summary(),
    )


def _sale_form_values():
    return {
        "userName": request.form.get("userName", ""),
        "selections": request.form.getlist("subject"),
        "amount": request.form.get("amount"),
        "paymentStatus": request.form.get("paymentStatus") or "Pending",
        "deliveryStatus": request.form.get("deliveryStatus") or "Pending",
    }


def _render_sale_form(sale=None, form_values=None, status=200):
    st = _state()
    return render_template(
        "sale_form.html",
        sale=sale,
        subjects=st.subjects,
        form_values=form_values or {},
    ), status


@app.route("/sales/new", methods=["GET", "POST"])
def sale_new():
    if request.method == "GET":
        return _render_sale_form()

    values = _sale_form_values()
    try:
        result, entry = tracker.save_entry(_state(), gateway, values)
    except SaleValidationError as e:
        flash(str(e), "error")
        return _render_sale_form(form_values=values, status=400)

    append_audit("sale_create", entry["id"], "", entry["paymentStatus"], note=entry["productName"])
    _flash_result(result, "Failed to save new entry.")
    return redirect(url_for("tracker_list"))


@app.route("/sales/<int:sale_id>/edit", methods=["GET", "POST"])
def sale_edit(sale_id):
    st = _state()
    sale = st.get_sale(sale_id)
    if sale is None:
        return abort(404)
    if request.method == "GET":
        return _render_sale_form(sale=sale)

    values = _sale_form_values()
    try:
        result, entry = tracker.save_entry(st, gateway, values, editing_id=sale_id)
    except SaleValidationError as e:
        flash(str(e), "error")
        return _render_sale_form(sale=sale, form_values=values, status=400)

    append_audit("sale_update", sale_id, sale.get("paymentStatus"), entry["paymentStatus"], note=entry["productName"])
    _flash_result(result, "Failed to update entry.")
    return redirect(url_for("tracker_list"))


def _set_status(sale_id, kind):
    st = _state()
    sale = st.get_sale(sale_id)
    if sale is None:
        return abort(404)
    new_status = (request.form.get("status") or "").strip()
    field = "paymentStatus" if kind == "payment" else "deliveryStatus"
    setter = tracker.set_payment_status if kind == "payment" else tracker.set_delivery_status
    prev = sale.get(field)
    try:
        result = setter(st, gateway, sale_id, new_status)
    except SaleValidationError as e:
        flash(str(e), "error")
        return _back()
    append_audit(f"{kind}_status", sale_id, prev, new_status)
    _flash_result(result, f"Failed to update {kind} status.")
    return _back()


@app.route("/sales/<int:sale_id>/payment", methods=["POST"])
def sale_payment(sale_id):
    return _set_status(sale_id, "payment")


@app.route("/sales/<int:sale_id>/delivery", methods=["POST"])
def sale_delivery(sale_id):
    return _set_status(sale_id, "delivery")


@app.route("/sales/<int:sale_id>/delete", methods=["POST"])
def sale_delete(sale_id):
    st = _state()
    sale = st.get_sale(sale_id)
    if sale is None:
        return abort(404)
    result = tracker.delete_sale(st, gateway, sale_id)
    append_audit("sale_delete", sale_id, sale.get("paymentStatus"), "", note=sale.get("productName", ""))
    _flash_result(result, "Failed to delete sale.")
    return _back()


@app.route("/sales/<int:sale_id>/pdf-access", methods=["POST"])
def sale_pdf_access(sale_id):
    st = _state()
    if st.get_sale(sale_id) is None:
        return jsonify({"ok": False, "error": "not_found"}), 404
    result = tracker.record_pdf_access(st, gateway, sale_id)
    sale = st.get_sale(sale_id)
    return jsonify({
        "ok": result.ok,
        "id": sale_id,
        "pdfAccessCount": sale.get("pdfAccessCount"),
        "lastAccessed": sale.get("lastAccessed"),
    }), (200 if result else 502)


# =========================
# Dashboard (behind the access gate)
# =========================

@app.route("/dashboard")
def dashboard():
    gate = _require_access()
    if gate:
        return gate
    st = _state()
    return render_template("dashboard.html", stats=st.summary(), sales=st.sales)


@app.route("/dashboard/pages")
def dashboard_pages():
    gate = _require_access()
    if gate:
        return gate
    st = _state()
    return render_template("student_pages.html", rows=aggregator.student_pages(st.sales, st.subjects))


@app.route("/dashboard.pdf")
def dashboard_pdf():
    gate = _require_access()
    if gate:
        return gate
    st = _state()
    pdf_bytes = build_dashboard_pdf(sales=st.sales, subjects=st.subjects)
    dated = datetime.now(ZoneInfo("Asia/Kolkata")).strftime("%b-%d-%Y")
    return send_file(
        io.BytesIO(pdf_bytes),
        mimetype="application/pdf",
        as_attachment=True,
        download_name=f"Sales_Dashboard_{dated}.pdf",
    )


# =========================
# Subject catalog
# =========================

@app.route("/subjects")
def subjects_admin():
    gate = _require_access()
    if gate:
        return gate
    st = _state()
    counts = aggregator.subject_counts(st.sales)
    return render_template("subjects.html", subjects=dict(sorted(st.subjects.items())), counts=counts,
                           field_kinds=FIELD_KINDS)


@app.route("/subjects/add", methods=["POST"])
def subjects_add():
    gate = _require_access()
    if gate:
        return gate
    code = (request.form.get("code") or "").strip()
    price = (request.form.get("price") or "").strip()
    try:
        result = tracker.add_subject(_state(), gateway, code, price, history=subject_history)
    except SubjectValueError as e:
        flash(str(e), "error")
        return redirect(url_for("subjects_admin"))
    if result:
        flash(f"Saved subject {code.upper()}.", "success")
    _flash_result(result, "Failed to save subjects.")
    return redirect(url_for("subjects_admin"))


@app.route("/subjects/update", methods=["POST"])
def subjects_update():
    """
    JSON body: {"code": "PHY", "category": "+1", "kind": "price|page|actualPrice", "value": 40}
    A price edit re-prices every sale holding that selection.
    """
    if not _is_authenticated():
        return jsonify({"ok": False, "error": "forbidden"}), 403
    payload = request.get_json(silent=True) or {}
    code = str(payload.get("code", "")).strip()
    category = str(payload.get("category", "")).strip()
    kind = str(payload.get("kind", "")).strip()
    value = payload.get("value")
    st = _state()
    try:
        changed = []
        if kind == "price":
            result, changed = tracker.update_subject_price(st, gateway, code, category, value, history=subject_history)
        elif kind == "page":
            result = tracker.update_subject_pages(st, gateway, code, category, value, history=subject_history)
        elif kind == "actualPrice":
            result = tracker.update_subject_actual_price(st, gateway, code, category, value, history=subject_history)
        else:
            return jsonify({"ok": False, "error": f"unknown kind '{kind}'"}), 400
    except KeyError as e:
        return jsonify({"ok": False, "error": str(e)}), 404
    except SubjectValueError as e:
        return jsonify({"ok": False, "error": str(e)}), 400

    return jsonify({
        "ok": result.ok,
        "error": result.error,
        "code": code.upper(),
        "subject": st.subjects.get(code.upper()),
        "changed_sales": changed,
    }), (200 if result else 502)


@app.route("/subjects/<code>/delete", methods=["POST"])
def subjects_delete(code):
    gate = _require_access()
    if gate:
        return gate
    try:
        result = tracker.delete_subject(_state(), gateway, code, history=subject_history)
    except KeyError:
        return abort(404)
    _flash_result(result, "Failed to save subjects.")
    return redirect(url_for("subjects_admin"))


# =========================
# Read-only JSON API
# =========================

@app.route("/api/v1/sales", methods=["GET"])
def api_sales_list():
    st = _state()
    return jsonify({"sales": aggregator.filter_sales(st.sales, **_list_filters())})


@app.route("/api/v1/subjects", methods=["GET"])
def api_subjects_list():
    return jsonify({"subjects": _state().subjects})


@app.route("/api/v1/stats", methods=["GET"])
def api_stats():
    gate = _require_access()
    if gate:
        return jsonify({"ok": False, "error": "forbidden"}), 403
    return jsonify(_state().summary())


@app.route("/api/v1/sync", methods=["GET"])
def api_sync():
    return jsonify({"status": _state().current_sync_status()})


# =========================
# CSV export
# =========================
EXPORT_PATH = "data/sales_export.csv"
EXPORT_COLUMNS = ["ID", "Student", "Product", "Subjects", "Amount", "Payment", "Delivery",
                  "PDF Opens", "Last Accessed", "Actual Price", "Profit", "Pages"]


@app.route("/export_sales_csv")
def export_sales_csv():
    gate = _require_access()
    if gate:
        return gate
    st = _state()
    profits = {r["id"]: r for r in aggregator.student_profits(st.sales, st.subjects)}
    pages = {r["id"]: r["pages"] for r in aggregator.student_pages(st.sales, st.subjects)}

    out_rows = []
    for s in st.sales:
        p = profits.get(s.get("id"), {})
        out_rows.append({
            "ID": s.get("id"),
            "Student": s.get("userName", ""),
            "Product": s.get("productName", ""),
            "Subjects": " | ".join(s.get("subjects") or []),
            "Amount": s.get("amount", 0),
            "Payment": s.get("paymentStatus", ""),
            "Delivery": s.get("deliveryStatus", ""),
            "PDF Opens": s.get("pdfAccessCount", 0),
            "Last Accessed": ist_time_filter(s.get("lastAccessed")) if s.get("lastAccessed") else "",
            "Actual Price": p.get("totalActualPrice", 0),
            "Profit": p.get("profit", 0),
            "Pages": pages.get(s.get("id"), 0),
        })

    os.makedirs(os.path.dirname(EXPORT_PATH), exist_ok=True)
    pd.DataFrame(out_rows, columns=EXPORT_COLUMNS).to_csv(EXPORT_PATH, index=False, encoding="utf-8-sig")
    return send_file(os.path.abspath(EXPORT_PATH), as_attachment=True, download_name="sales_export.csv")


# =========================
# Entrypoint
# =========================
if __name__ == "__main__":
    # Useful for local debugging
    app.run(host="0.0.0.0", port=5000, debug=True)
