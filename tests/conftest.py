# tests/conftest.py
# ---------------------------------------------------------------------
# Ground rules:
# - Every test gets its own JSON document store under tmp_path
# - The Flask app is driven through its test client; module globals
#   (gateway, state, history and CSV paths) are swapped per test
# ---------------------------------------------------------------------

import pytest

import main
import tracker
from models import normalize_subject
from persistence import JSONGateway
from subject_store import SubjectHistory


class FailingGateway:
    """Gateway whose reads find nothing and whose writes are always refused."""

    def __init__(self):
        self.writes = []

    def load_collection(self, path):
        return None

    def write_collection(self, path, value):
        self.writes.append(path)
        return False


@pytest.fixture()
def catalog():
    return {
        "PHY": normalize_subject({
            "price1": 40, "price2": 50,
            "page1": 120, "page2": 140,
            "actualPrice1": 20, "actualPrice2": 25,
        }),
        "ECO": normalize_subject({
            "price1": 30, "price2": 35,
            "page1": 80, "page2": 90,
            "actualPrice1": 10, "actualPrice2": 12,
        }),
    }


def make_sale(sale_id, name, subjects, amount, payment="Pending", delivery="Pending"):
    return {
        "id": sale_id,
        "userName": name,
        "productName": ", ".join(subjects),
        "subjects": list(subjects),
        "amount": amount,
        "paymentStatus": payment,
        "deliveryStatus": delivery,
        "pdfAccessCount": 0,
    }


@pytest.fixture()
def sales():
    return [
        make_sale(3, "Asha", ["+1 PHY", "+2 PHY"], 90, payment="Paid", delivery="Delivered"),
        make_sale(2, "Bilal", ["+1 ECO"], 30),
        make_sale(1, "Chitra", ["+2 ECO", "+1 PHY"], 75, delivery="Delivered"),
    ]


@pytest.fixture()
def gateway(tmp_path):
    return JSONGateway(str(tmp_path / "store.json"))


@pytest.fixture()
def seeded_gateway(gateway, catalog, sales):
    gateway.write_collection("subjects", catalog)
    gateway.write_collection("sales", sales)
    return gateway


@pytest.fixture()
def state(seeded_gateway):
    return tracker.load_state(seeded_gateway)


@pytest.fixture()
def history(tmp_path):
    return SubjectHistory(str(tmp_path / "subject_history.csv"))


@pytest.fixture()
def client(monkeypatch, tmp_path, seeded_gateway, history):
    monkeypatch.setattr(main, "gateway", seeded_gateway)
    monkeypatch.setattr(main, "state", None)
    monkeypatch.setattr(main, "subject_history", history)
    monkeypatch.setattr(main, "AUDIT_PATH", str(tmp_path / "ops_audit_log.csv"))
    monkeypatch.setattr(main, "EXPORT_PATH", str(tmp_path / "sales_export.csv"))
    monkeypatch.setattr(main, "ACCESS_CODE", "1234")
    main.app.config["TESTING"] = True
    with main.app.test_client() as c:
        yield c


@pytest.fixture()
def authed_client(client):
    with client.session_transaction() as sess:
        sess["authenticated"] = True
    return client
