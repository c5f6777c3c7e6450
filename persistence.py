# persistence.py
# Whole-collection document store behind two paths: "sales" and "subjects".
import os
import json
from threading import Lock
from typing import Any, Dict, List, Optional

import firebase_admin
from firebase_admin import credentials, db

from models import SALES_PATH, SUBJECTS_PATH

DATA_DIR = "data"
STORE_JSON = os.path.join(DATA_DIR, "tracker_store.json")


def get_gateway(backend: str, **kwargs):
    backend = (backend or "json").lower()
    if backend == "firebase":
        return FirebaseGateway(**kwargs)
    return JSONGateway(**kwargs)


class WriteResult:
    """Outcome of a write-through; truthy when the gateway accepted the write."""

    def __init__(self, ok: bool, path: str = "", error: str = ""):
        self.ok = bool(ok)
        self.path = path
        self.error = error

    def __bool__(self):
        return self.ok

    def __repr__(self):
        return f"WriteResult(ok={self.ok}, path={self.path!r}, error={self.error!r})"


class JSONGateway:
    """
    Local stand-in for the hosted database: both collections live in one JSON
    document, e.g.
      {"sales": [...], "subjects": {"PHY": {...}}}
    """

    def __init__(self, json_path: str = None):
        self.json_path = json_path or STORE_JSON
        self._lock = Lock()
        self._ensure_file()

    # ===== API =====

    def load_collection(self, path: str) -> Optional[Any]:
        try:
            with self._lock:
                return self._load().get(path)
        except Exception as e:
            print(f"❌ Error loading '{path}' from {self.json_path}: {e}")
            return None

    def write_collection(self, path: str, value: Any) -> bool:
        try:
            with self._lock:
                data = self._load()
                data[path] = value
                self._save(data)
            print(f"✅ '{path}' saved to {self.json_path}")
            return True
        except Exception as e:
            print(f"❌ Error saving '{path}' to {self.json_path}: {e}")
            return False

    # ===== internals =====

    def _ensure_file(self) -> None:
        folder = os.path.dirname(self.json_path)
        if folder:
            os.makedirs(folder, exist_ok=True)
        if not os.path.exists(self.json_path):
            with open(self.json_path, "w", encoding="utf-8") as f:
                json.dump({}, f, indent=2)

    def _load(self) -> Dict[str, Any]:
        if not os.path.exists(self.json_path):
            return {}
        with open(self.json_path, "r", encoding="utf-8") as f:
            return json.load(f) or {}

    def _save(self, data: Dict[str, Any]) -> None:
        # Write atomically: write to tmp then move
        tmp_path = f"{self.json_path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, ensure_ascii=False, indent=2)
        os.replace(tmp_path, self.json_path)


class FirebaseGateway:
    """Firebase Realtime Database backend (firebase_admin)."""

    def __init__(self, database_url: str = None, credentials_path: str = None, app_name: str = "tracker"):
        database_url = database_url or os.environ.get("FIREBASE_DATABASE_URL", "")
        credentials_path = credentials_path or os.environ.get("FIREBASE_CREDENTIALS", "firebase_key.json")
        try:
            self._app = firebase_admin.get_app(app_name)
        except ValueError:
            cred = credentials.Certificate(credentials_path)
            self._app = firebase_admin.initialize_app(cred, {"databaseURL": database_url}, name=app_name)

    def load_collection(self, path: str) -> Optional[Any]:
        try:
            val = db.reference(path, app=self._app).get()
            if val is None:
                print(f"ℹ️ No data found in Firebase at '{path}'")
            else:
                print(f"✅ '{path}' loaded from Firebase")
            return val
        except Exception as e:
            print(f"❌ Error loading '{path}' from Firebase: {e}")
            return None

    def write_collection(self, path: str, value: Any) -> bool:
        try:
            db.reference(path, app=self._app).set(value)
            print(f"✅ '{path}' saved to Firebase")
            return True
        except Exception as e:
            print(f"❌ Error saving '{path}' to Firebase: {e}")
            return False


# =========================
# Collection helpers (read-modify-write of the whole collection)
# =========================

def _as_sale_list(val: Any) -> List[Dict[str, Any]]:
    # RTDB hands back arrays with holes as {"0": {...}, "2": {...}}
    if isinstance(val, dict):
        val = [val[k] for k in sorted(val, key=lambda k: int(k) if str(k).isdigit() else 0)]
    if not isinstance(val, list):
        return []
    return [s for s in val if isinstance(s, dict)]


def load_sales(gateway) -> List[Dict[str, Any]]:
    return _as_sale_list(gateway.load_collection(SALES_PATH))


def load_subjects(gateway) -> Optional[Dict[str, Any]]:
    """Raw catalog mapping, or None if nothing has been stored yet."""
    val = gateway.load_collection(SUBJECTS_PATH)
    return val if isinstance(val, dict) else None


def save_sales(gateway, sales: List[Dict[str, Any]]) -> WriteResult:
    ok = gateway.write_collection(SALES_PATH, sales)
    return WriteResult(ok, SALES_PATH, "" if ok else "Failed to save sales.")


def save_subjects(gateway, subjects: Dict[str, Any]) -> WriteResult:
    ok = gateway.write_collection(SUBJECTS_PATH, subjects)
    return WriteResult(ok, SUBJECTS_PATH, "" if ok else "Failed to save subjects.")


def add_sale(gateway, sale: Dict[str, Any]) -> WriteResult:
    """Prepend one sale to the stored list."""
    current = load_sales(gateway)
    result = save_sales(gateway, [sale, *current])
    if result:
        print(f"✅ Sale added: id={sale.get('id')} next_length={len(current) + 1}")
    return result


def update_sale(gateway, sale_id: int, updates: Dict[str, Any]) -> WriteResult:
    current = load_sales(gateway)
    nxt = [{**s, **updates} if s.get("id") == sale_id else s for s in current]
    return save_sales(gateway, nxt)


def delete_sale(gateway, sale_id: int) -> WriteResult:
    current = load_sales(gateway)
    nxt = [s for s in current if s.get("id") != sale_id]
    return save_sales(gateway, nxt)
