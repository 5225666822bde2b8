import json
import os
from typing import Any, Dict, Iterable, List, Sequence, Tuple

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

# Environment variable controlling CLI output mode
# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "LIB_CLI_OUTPUT"

_console = Console()

Column = Tuple[str, str]


def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode


def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()


def print_rows(
    title: str,
    rows: List[Dict[str, Any]],
    columns: Sequence[Column],
    empty_message: str,
    plain_format: str,
) -> None:
    """Print records in the current output mode.

    - plain: one ``plain_format`` line per row, or ``empty_message``
    - json: JSON array of the full records
    - rich: Rich table limited to ``columns``
    """
    mode = get_output_mode()

    if not rows:
        print(empty_message)
        return

    if mode == "json":
        print(json.dumps(rows, ensure_ascii=False, default=str))
    elif mode == "rich":
        table = Table(title=title, show_lines=True, header_style="bold cyan")
        for key, label in columns:
            table.add_column(label, style="white")
        for row in rows:
            table.add_row(*[str(row.get(key, "") if row.get(key) is not None else "") for key, _ in columns])
        _console.print(table)
    else:
        for row in rows:
            print(plain_format.format(**row))


def print_record(title: str, record: Dict[str, Any], fields: Iterable[Column]) -> None:
    mode = get_output_mode()
    if mode == "json":
        print(json.dumps(record, ensure_ascii=False, default=str))
        return
    lines = [f"{label}: {record.get(key) if record.get(key) is not None else '-'}" for key, label in fields]
    if mode == "rich":
        _console.print(Panel.fit("\n".join(lines), title=title, border_style="blue"))
    else:
        print(title)
        for line in lines:
            print(line)


def print_stats_result(stats: Dict[str, Any]) -> None:
    """Print dashboard statistics in the current output mode."""
    mode = get_output_mode()

    if not stats:
        print("No statistics available.")
        return

    if mode == "json":
        print(json.dumps(stats, ensure_ascii=False))
        return

    by_role = stats.get("users_by_role", {})
    lines = [
        ("Titles", stats.get("total_titles", 0)),
        ("Copies", f"{stats.get('available_copies', 0)}/{stats.get('total_copies', 0)} available"),
        ("Pending Requests", stats.get("pending_requests", 0)),
        ("Active Loans", stats.get("active_loans", 0)),
        ("Overdue Loans", stats.get("overdue_loans", 0)),
        ("Outstanding Fines", f"{stats.get('outstanding_fines', 0):.2f}"),
        ("Users", ", ".join(f"{role}={n}" for role, n in by_role.items())),
    ]
    if mode == "rich":
        content = "\n".join(f"[bold]{label}:[/] {value}" for label, value in lines)
        _console.print(Panel.fit(content, title="📊 Stats", border_style="blue"))
    else:
        for label, value in lines:
            print(f"{label}: {value}")
