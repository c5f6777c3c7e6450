# tests/test_tracker.py
import pytest

import persistence
import tracker
from subject_store import SubjectValueError
from tracker import SaleValidationError

from conftest import FailingGateway, make_sale


# ---------- Loading ----------

def test_load_state_reads_both_collections(state, catalog):
    assert [s["id"] for s in state.sales] == [3, 2, 1]
    assert state.subjects == catalog
    assert state.sync_status == "synced"


def test_load_state_reconciles_drifted_amounts(gateway, catalog):
    gateway.write_collection("subjects", catalog)
    gateway.write_collection("sales", [make_sale(1, "A", ["+1 PHY"], 12), make_sale(2, "B", ["+1 CHEM"], 25)])
    st = tracker.load_state(gateway)
    assert [s["amount"] for s in st.sales] == [40, 25]
    stored = persistence.load_sales(gateway)
    assert [s["amount"] for s in stored] == [40, 25]


def test_load_state_normalizes_legacy_subjects(gateway):
    gateway.write_collection("subjects", {"acc": {"price": 45}, "BSS": {}})
    st = tracker.load_state(gateway)
    assert st.subjects["ACC"]["price1"] == 45
    assert st.subjects["ACC"]["price2"] == 45
    assert st.subjects["BSS"]["price1"] == 30
    assert st.subjects["BSS"]["page1"] == 0


def test_failed_reads_give_empty_ledger_and_default_catalog():
    st = tracker.load_state(FailingGateway())
    assert st.sales == []
    assert set(st.subjects) == {"ACC", "BSS", "ECO", "ENG", "ARB", "CMP"}



def test_unreadable_catalog_does_not_reprice_stored_sales(gateway, monkeypatch):
    gateway.write_collection("subjects", {"ACC": {"price1": 55, "price2": 60}})
    gateway.write_collection("sales", [make_sale(1, "A", ["+1 ACC"], 55)])
    read = gateway.load_collection
    monkeypatch.setattr(gateway, "load_collection", lambda path: None if path == "subjects" else read(path))

    st = tracker.load_state(gateway)
    assert st.subjects["ACC"]["price1"] == 30  # defaults shown until the catalog loads
    assert st.sales[0]["amount"] == 55
    assert persistence.load_sales(gateway)[0]["amount"] == 55
    assert read("subjects") == {"ACC": {"price1": 55, "price2": 60}}


# ---------- Sales ----------

def test_save_entry_creates_and_prepends(state, seeded_gateway):
    result, entry = tracker.save_entry(state, seeded_gateway, {
        "userName": "  Dev ",
        "selections": ["+1 PHY", "+2 eco"],
        "amount": "",
    })
    assert result
    assert entry["userName"] == "Dev"
    assert entry["subjects"] == ["+1 PHY", "+2 ECO"]
    assert entry["productName"] == "+1 PHY, +2 ECO"
    assert entry["amount"] == 40 + 35
    assert entry["pdfAccessCount"] == 0
    assert entry["paymentStatus"] == "Pending"
    assert state.sales[0] is entry
    assert persistence.load_sales(seeded_gateway)[0]["id"] == entry["id"]
    assert state.sync_status == "synced"


def test_save_entry_keeps_manual_amount(state, seeded_gateway):
    _, entry = tracker.save_entry(state, seeded_gateway, {
        "userName": "Dev", "selections": [("+1", "PHY")], "amount": "55",
    })
    assert entry["amount"] == 55


def test_save_entry_ids_are_unique(state, seeded_gateway, monkeypatch):
    monkeypatch.setattr(tracker, "_now_ms", lambda: 3)
    _, entry = tracker.save_entry(state, seeded_gateway, {"userName": "Dev", "selections": ["+1 PHY"]})
    assert entry["id"] == 4


@pytest.mark.parametrize("form", [
    {"userName": "", "selections": ["+1 PHY"]},
    {"userName": "Dev", "selections": []},
    {"userName": "Dev", "selections": ["PHY"]},
    {"userName": "Dev", "selections": ["+3 PHY"]},
    {"userName": "Dev", "selections": [("+1", "  ")]},
])
def test_save_entry_rejects_incomplete_forms(state, seeded_gateway, form):
    before = list(state.sales)
    with pytest.raises(SaleValidationError):
        tracker.save_entry(state, seeded_gateway, form)
    assert state.sales == before
    assert len(persistence.load_sales(seeded_gateway)) == 3


def test_parse_selections_keeps_only_known_categories_and_codes():
    picks = tracker.parse_selections(["+3 PHY", "+1 phy", ("+2", ""), ("+2", "eco"), "+1 PHY"])
    assert picks == [("+1", "PHY"), ("+2", "ECO")]


def test_save_entry_edits_in_place(state, seeded_gateway):
    result, entry = tracker.save_entry(state, seeded_gateway, {
        "userName": "Bilal K",
        "selections": ["+1 ECO", "+1 PHY"],
        "amount": "70",
        "paymentStatus": "Paid",
        "deliveryStatus": "Delivered",
    }, editing_id=2)
    assert result
    assert entry["id"] == 2
    assert entry["pdfAccessCount"] == 0
    stored = {s["id"]: s for s in persistence.load_sales(seeded_gateway)}
    assert stored[2]["userName"] == "Bilal K"
    assert stored[2]["subjects"] == ["+1 ECO", "+1 PHY"]
    assert stored[2]["paymentStatus"] == "Paid"
    assert [s["id"] for s in state.sales] == [3, 2, 1]


def test_edit_unknown_sale_raises(state, seeded_gateway):
    with pytest.raises(KeyError):
        tracker.save_entry(state, seeded_gateway, {"userName": "X", "selections": ["+1 PHY"]}, editing_id=99)


def test_status_updates_write_through(state, seeded_gateway):
    assert tracker.set_payment_status(state, seeded_gateway, 2, "Paid")
    assert tracker.set_delivery_status(state, seeded_gateway, 2, "Delivered")
    stored = {s["id"]: s for s in persistence.load_sales(seeded_gateway)}
    assert stored[2]["paymentStatus"] == "Paid"
    assert stored[2]["deliveryStatus"] == "Delivered"
    assert state.get_sale(2)["paymentStatus"] == "Paid"


def test_status_update_rejects_unknown_value(state, seeded_gateway):
    with pytest.raises(SaleValidationError):
        tracker.set_payment_status(state, seeded_gateway, 2, "Refunded")


def test_delete_sale(state, seeded_gateway):
    assert tracker.delete_sale(state, seeded_gateway, 3)
    assert [s["id"] for s in state.sales] == [2, 1]
    assert [s["id"] for s in persistence.load_sales(seeded_gateway)] == [2, 1]
    with pytest.raises(KeyError):
        tracker.delete_sale(state, seeded_gateway, 3)


def test_record_pdf_access(state, seeded_gateway):
    tracker.record_pdf_access(state, seeded_gateway, 1)
    tracker.record_pdf_access(state, seeded_gateway, 1)
    sale = state.get_sale(1)
    assert sale["pdfAccessCount"] == 2
    assert sale["lastAccessed"]


def test_failed_write_keeps_optimistic_state():
    gw = FailingGateway()
    st = tracker.TrackerState([make_sale(1, "A", ["+1 PHY"], 40)], {})
    result = tracker.set_payment_status(st, gw, 1, "Paid")
    assert not result
    assert result.error
    assert st.get_sale(1)["paymentStatus"] == "Paid"
    assert st.sync_status == "idle"


def test_sync_status_reverts_to_idle_after_delay(state):
    state.mark_sync("synced")
    at = state.sync_changed_at
    assert state.current_sync_status(now=at + 1) == "synced"
    assert state.current_sync_status(now=at + tracker.SYNC_IDLE_AFTER_SECONDS) == "idle"


# ---------- Subjects ----------

def test_add_subject(state, seeded_gateway, history):
    assert tracker.add_subject(state, seeded_gateway, "chem", "45", history=history)
    assert state.subjects["CHEM"] == {
        "price1": 45, "price2": 45, "page1": 0, "page2": 0, "actualPrice1": 0, "actualPrice2": 0,
    }
    assert "CHEM" in persistence.load_subjects(seeded_gateway)
    assert [r["field"] for r in history.read_all()] == ["price1", "price2"]


@pytest.mark.parametrize("code,price", [("", "10"), ("CHEM", ""), ("CHEM", "-5")])
def test_add_subject_rejects_bad_input(state, seeded_gateway, code, price):
    with pytest.raises(SubjectValueError):
        tracker.add_subject(state, seeded_gateway, code, price)


def test_price_edit_reprices_matching_sales_only(state, seeded_gateway, history):
    result, changed = tracker.update_subject_price(state, seeded_gateway, "PHY", "+1", "60", history=history)
    assert result
    assert sorted(changed) == [1, 3]
    stored = {s["id"]: s for s in persistence.load_sales(seeded_gateway)}
    assert stored[3]["amount"] == 110
    assert stored[1]["amount"] == 95
    assert stored[2]["amount"] == 30
    assert persistence.load_subjects(seeded_gateway)["PHY"]["price1"] == 60
    row = history.read_all()[-1]
    assert (row["code"], row["field"], row["old_value"], row["new_value"]) == ("PHY", "price1", "40.0", "60.0")


def test_price_edit_leaves_other_category_sales_alone(state, seeded_gateway):
    state.sales.append(make_sale(4, "Dev", ["+2 PHY"], 1))
    result, changed = tracker.update_subject_price(state, seeded_gateway, "PHY", "+1", "60")
    assert result
    assert 4 not in changed
    assert state.get_sale(4)["amount"] == 1
    stored = {s["id"]: s for s in persistence.load_sales(seeded_gateway)}
    assert stored[4]["amount"] == 1


def test_price_edit_without_effect_skips_sales_write(state, monkeypatch, seeded_gateway):
    calls = []
    monkeypatch.setattr(persistence, "save_sales", lambda gw, sales: calls.append(sales))
    result, changed = tracker.update_subject_price(state, seeded_gateway, "PHY", "+1", "40")
    assert result
    assert changed == []
    assert calls == []


def test_unparsable_price_counts_as_zero(state, seeded_gateway):
    tracker.update_subject_price(state, seeded_gateway, "ECO", "+1", "abc")
    assert state.subjects["ECO"]["price1"] == 0
    # Bilal only bought +1 ECO
    assert state.get_sale(2)["amount"] == 0


def test_page_and_actual_price_edits_leave_sales_alone(state, seeded_gateway):
    before = [dict(s) for s in state.sales]
    assert tracker.update_subject_pages(state, seeded_gateway, "PHY", "+2", "200")
    assert tracker.update_subject_actual_price(state, seeded_gateway, "PHY", "+1", "22.5")
    assert state.subjects["PHY"]["page2"] == 200
    assert state.subjects["PHY"]["actualPrice1"] == 22.5
    assert state.sales == before


def test_edit_unknown_subject_raises(state, seeded_gateway):
    with pytest.raises(KeyError):
        tracker.update_subject_pages(state, seeded_gateway, "BIO", "+1", "10")


def test_delete_subject_keeps_sale_references(state, seeded_gateway, history):
    assert tracker.delete_subject(state, seeded_gateway, "PHY", history=history)
    assert "PHY" not in state.subjects
    assert state.get_sale(3)["subjects"] == ["+1 PHY", "+2 PHY"]
    assert state.get_sale(3)["amount"] == 90
    stats = state.summary()
    assert stats["student_profits"][0]["totalActualPrice"] == 0
    assert stats["student_pages"][0]["pages"] == 0
    assert len(history.read_all()) == 6
