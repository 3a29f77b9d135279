# utils.py
"""
Utility helpers: JSON loading, report generation, and console output.

- Loads resource inventories from JSON files.
- Saves JSON, CSV, and HTML reports of an engine run.
- Uses Rich for colorful, wrapped tables in the terminal.
"""

from dataclasses import asdict
from html import escape
from typing import List, Dict, Optional
import json
import csv
import os
from json import JSONDecodeError

from rich.console import Console
from rich.table import Table
from rich.text import Text

from config import SEVERITY_SCORES
from models import BatchStats, Finding, Resource, ResourceAggregation, utc_timestamp

_console = Console()

def load_json_file(path: str) -> dict:
    """
    Load JSON from a file and return a Python dict.
    """
    if not os.path.exists(path):
        raise FileNotFoundError(f"Input JSON file not found: {path}.")
    try:
        with open(path, "r", encoding="utf-8-sig") as fh:
            return json.load(fh)
    except JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in {path}: {e.msg} (line {e.lineno} column {e.colno})") from e

def load_resources(path: str) -> List[Resource]:
    """
    Load a resource inventory.

    Accepts either {"resources": [...]} or a bare list of resource objects.
    """
    data = load_json_file(path)
    entries = data.get("resources", []) if isinstance(data, dict) else data
    if not isinstance(entries, list):
        raise ValueError(f"Expected a list of resources in {path}")
    return [Resource.from_dict(entry) for entry in entries]

def ensure_reports_dir(path: str = "reports") -> str:
    os.makedirs(path, exist_ok=True)
    return path

def all_findings(results: List[ResourceAggregation]) -> List[Finding]:
    return [f for agg in results for f in agg.findings]

def findings_to_table_rows(findings: List[Finding]) -> List[List[str]]:
    rows: List[List[str]] = []
    for f in findings:
        rows.append([f.resource_arn, f.control_id, f.severity, f.title])
    return rows

def save_report(results: List[ResourceAggregation], stats: BatchStats, mode: str,
                extra: Optional[dict] = None, out_dir: str = "reports") -> Dict[str, str]:
    """
    Save JSON, CSV, and HTML reports and return their paths.

    JSON holds the full run; CSV and HTML list one row per finding.
    """
    out_dir = ensure_reports_dir(out_dir)
    now = utc_timestamp()
    report = {
        "scan_time": now,
        "mode": mode,
        "summary": asdict(stats),
        "resources": [asdict(agg) for agg in results],
    }
    if extra:
        report["extra"] = extra

    base_ts = now.replace(":", "-")
    json_path = os.path.join(out_dir, f"scan-{base_ts}-{mode}.json")
    csv_path = os.path.join(out_dir, f"scan-{base_ts}-{mode}.csv")
    html_path = os.path.join(out_dir, f"scan-{base_ts}-{mode}.html")

    # JSON
    with open(json_path, "w", encoding="utf-8") as fh:
        json.dump(report, fh, indent=2, default=str)

    findings = all_findings(results)

    # CSV
    fieldnames = ["resource_arn", "control_id", "framework", "severity", "title", "recommendation"]
    with open(csv_path, "w", encoding="utf-8", newline="") as fh:
        writer = csv.DictWriter(fh, fieldnames=fieldnames)
        writer.writeheader()
        for f in findings:
            row = asdict(f)
            writer.writerow({k: row.get(k, "") for k in fieldnames})

    # HTML
    html_rows: List[str] = []
    html_rows.append("<!doctype html>")
    html_rows.append("<html><head><meta charset='utf-8'><title>Compliance Report</title>")
    html_rows.append("<style>body{font-family:Arial,Helvetica,sans-serif;margin:20px}table{border-collapse:collapse;width:100%}th,td{border:1px solid #ddd;padding:8px}th{background:#f2f2f2;text-align:left}tr:nth-child(even){background:#fafafa}pre{white-space:pre-wrap;word-wrap:break-word}</style>")
    html_rows.append("</head><body>")
    html_rows.append(f"<h2>Compliance Report - {now} - mode: {escape(mode)}</h2>")
    html_rows.append(f"<p>Total findings: {len(findings)}</p>")
    html_rows.append(
        f"<p>Rules: {stats.total_rules} total, {stats.passed_rules} passed, "
        f"{stats.failed_rules} failed, {stats.skipped_rules} skipped</p>"
    )
    if extra:
        html_rows.append("<div><strong>Metadata:</strong><ul>")
        for k, v in extra.items():
            html_rows.append(f"<li>{escape(str(k))}: {escape(str(v))}</li>")
        html_rows.append("</ul></div>")
    html_rows.append("<table id='resources'><thead><tr><th>Resource</th><th>Score</th><th>Severity</th><th>Summary</th></tr></thead><tbody>")
    for agg in results:
        html_rows.append(
            f"<tr><td>{escape(agg.resource_arn)}</td><td>{agg.compliance_score:.1f}</td>"
            f"<td>{agg.overall_severity}</td><td>{escape(agg.summary)}</td></tr>"
        )
    html_rows.append("</tbody></table>")
    html_rows.append("<table id='findings'><thead><tr><th>Resource</th><th>Rule</th><th>Severity</th><th>Title</th><th>Recommendation</th></tr></thead><tbody>")
    for f in findings:
        html_rows.append(
            f"<tr><td>{escape(f.resource_arn)}</td><td>{escape(f.control_id)}</td><td>{f.severity}</td>"
            f"<td>{escape(f.title)}</td><td><pre>{escape(f.recommendation)}</pre></td></tr>"
        )
    html_rows.append("</tbody></table></body></html>")
    with open(html_path, "w", encoding="utf-8") as fh:
        fh.write("\n".join(html_rows))

    return {"json": json_path, "csv": csv_path, "html": html_path}

# --- Console printing with color/wrapping ---

def _rich_severity_text(severity: str):
    """
    Return a Rich Text object styled by severity.
    """
    score = SEVERITY_SCORES.get(severity, 0)
    if score >= 8:
        return Text(severity, style="bold red")
    if score >= 5:
        return Text(severity, style="bold yellow")
    return Text(severity, style="green")

def print_summary_and_report_path(results: List[ResourceAggregation], stats: BatchStats,
                                  report_paths: Dict[str, str], show_top: int = 5,
                                  print_full_table: bool = False):
    """
    Print a compact summary and a colorful table of findings.
    """
    findings = all_findings(results)
    print("\nScan summary:")
    print(f"- Resources evaluated: {len(results)}")
    print(f"- Rules: {stats.passed_rules} passed, {stats.failed_rules} failed, {stats.skipped_rules} skipped")
    print(f"- Total findings: {len(findings)}")
    if findings:
        rows = findings_to_table_rows(findings)
        table = Table(show_header=True, header_style="bold cyan")
        table.add_column("Resource", style="cyan", overflow="fold")
        table.add_column("Rule", style="magenta")
        table.add_column("Severity", justify="right")
        table.add_column("Title", overflow="fold")
        for r in (rows if print_full_table else rows[:show_top]):
            table.add_row(r[0], r[1], _rich_severity_text(r[2]), r[3])
        _console.print(table)
    print("\nSaved reports:")
    print(f"- JSON: {report_paths.get('json')}")
    print(f"- CSV:  {report_paths.get('csv')}")
    print(f"- HTML: {report_paths.get('html')}\n")

def print_rules_table(entries) -> None:
    """Print the registered rules as a Rich table."""
    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("Rule", style="magenta")
    table.add_column("Name")
    table.add_column("Service", style="cyan")
    table.add_column("Severity", justify="right")
    table.add_column("Frameworks")
    for entry in entries:
        rule = entry.rule
        table.add_row(rule.rule_id, rule.name, rule.service,
                      _rich_severity_text(rule.severity), ", ".join(rule.frameworks))
    _console.print(table)
