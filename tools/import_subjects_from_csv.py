#!/usr/bin/env python3
# Replace (or merge into) the subject catalog from a CSV.
#
#   python tools/import_subjects_from_csv.py data/subjects.csv [--merge]
#
# Columns: code, and any of price / price1 / price2 / page1 / page2 /
# actualPrice1 / actualPrice2. A lone `price` column fills both categories.
import os
import sys
import json

import pandas as pd

import persistence
from models import SUBJECT_FIELDS, normalize_subject, normalize_subjects
from subject_store import normalize_code

CSV_PATH = "data/subjects.csv"


def read_catalog(csv_path: str):
    df = pd.read_csv(csv_path, encoding="utf-8-sig")
    cols = {c.strip().lower(): c for c in df.columns}
    code_col = cols.get("code") or cols.get("subject")
    if not code_col:
        raise SystemExit("CSV must include a 'code' (or 'subject') column")

    known = {f.lower(): f for f in SUBJECT_FIELDS + ["price"]}
    records = {}
    for _, row in df.iterrows():
        code = normalize_code(row[code_col])
        if not code or code == "NAN":
            continue
        raw = {}
        for low, original in cols.items():
            if low in known and not pd.isna(row[original]):
                raw[known[low]] = row[original]
        records[code] = normalize_subject(raw)
    return records


def main(argv=None):
    argv = list(sys.argv[1:] if argv is None else argv)
    merge = "--merge" in argv
    args = [a for a in argv if a != "--merge"]
    csv_path = args[0] if args else CSV_PATH
    if not os.path.isfile(csv_path):
        raise SystemExit(f"Cannot find {csv_path}")

    gateway = persistence.get_gateway(os.environ.get("PERSISTENCE_BACKEND", "json"))
    incoming = read_catalog(csv_path)

    current = normalize_subjects(persistence.load_subjects(gateway) or {})
    if current:
        backup = os.path.join("data", "subjects_backup.json")
        os.makedirs(os.path.dirname(backup), exist_ok=True)
        with open(backup, "w", encoding="utf-8") as f:
            json.dump(current, f, indent=2, ensure_ascii=False)
        print(f"Backed up existing catalog to {backup}")

    catalog = {**current, **incoming} if merge else incoming
    result = persistence.save_subjects(gateway, catalog)
    if not result:
        raise SystemExit(f"Failed to write catalog: {result.error}")
    print(f"Wrote {len(catalog)} subjects ({len(incoming)} from {csv_path})")


if __name__ == "__main__":
    main()
