"""Weekly support case report: counts per status, title and company."""

from __future__ import annotations

import argparse
import json
import os
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import matplotlib.pyplot as plt
import polars as pl
from pymongo import MongoClient

MONGO_URI = os.environ.get("MONGO_URI", "mongodb://localhost:27017/")
MONGO_DB = os.environ.get("MONGO_DB", "driver_support")
CASES_COLLECTION = os.environ.get("CASES_COLLECTION", "cases")
SCRIPT_DIR = Path(__file__).resolve().parent
OUTPUT_BASE_PATH = SCRIPT_DIR / "case_report_vault"

REPORT_COLUMNS = ("id", "status", "title", "company", "driver_id")


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Summarise support cases stored in MongoDB.")
    parser.add_argument("--days", type=int, default=7, help="How many days back to include.")
    parser.add_argument("--output-dir", type=Path, default=OUTPUT_BASE_PATH, help="Where to write the report.")
    parser.add_argument("--mongo-uri", default=MONGO_URI)
    parser.add_argument("--database", default=MONGO_DB)
    return parser.parse_args()


def load_cases(collection, since: Optional[datetime] = None) -> List[Dict[str, Any]]:
    query: Dict[str, Any] = {}
    if since is not None:
        query["created_at"] = {"$gte": since}
    rows = []
    for doc in collection.find(query, {"_id": 0}).sort("created_at", 1):
        rows.append({column: str(doc.get(column) or "") for column in REPORT_COLUMNS})
    return rows


def summarize(rows: List[Dict[str, Any]]) -> Dict[str, pl.DataFrame]:
    df = pl.DataFrame(rows, schema={column: pl.Utf8 for column in REPORT_COLUMNS})
    by_status = df.group_by("status").len().sort("status")
    by_title = df.group_by("title").len().sort(["len", "title"], descending=[True, False])
    by_company = df.group_by("company").len().sort(["len", "company"], descending=[True, False])
    return {"status": by_status, "title": by_title, "company": by_company}


def plot_status(by_status: pl.DataFrame, path: Path) -> Path:
    plt.figure(figsize=(7, 5))
    plt.bar(by_status["status"].to_list(), by_status["len"].to_list(), color="cornflowerblue")
    plt.title("Support cases by status")
    plt.xlabel("Status")
    plt.ylabel("Cases")
    plt.tight_layout()
    plt.savefig(path, dpi=200)
    plt.close()
    return path


def write_report(summary: Dict[str, pl.DataFrame], output_dir: Path, *, since: Optional[datetime] = None) -> Path:
    output_dir.mkdir(parents=True, exist_ok=True)
    chart_path = plot_status(summary["status"], output_dir / "cases_by_status.png")
    document = {
        "run_date": datetime.now(timezone.utc).isoformat(),
        "since": since.isoformat() if since else None,
        "total": int(summary["status"]["len"].sum()),
        "by_status": summary["status"].to_dicts(),
        "by_title": summary["title"].to_dicts(),
        "by_company": summary["company"].to_dicts(),
        "outputs": {"status_chart": str(chart_path)},
    }
    report_path = output_dir / "case_report.json"
    with report_path.open("w", encoding="utf-8") as handle:
        json.dump(document, handle, indent=2)
    return report_path


def main() -> None:
    args = parse_args()
    since = datetime.now(timezone.utc) - timedelta(days=args.days)
    with MongoClient(args.mongo_uri) as client:
        rows = load_cases(client[args.database][CASES_COLLECTION], since)
    if not rows:
        print(f"WARNING: no cases created since {since.date()}.")
        raise SystemExit(0)
    summary = summarize(rows)
    print(summary["status"])
    print(summary["title"])
    report_path = write_report(summary, args.output_dir, since=since)
    print(f"Report saved to {report_path}")


if __name__ == "__main__":
    main()
