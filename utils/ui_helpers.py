import os
import json
from typing import List, Any, Dict
from rich.console import Console
from rich.table import Table
from rich.panel import Panel

# Environment variable to control CLI output mode
# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "LIB_CLI_OUTPUT"

_console = Console()

def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode

def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()

def _day(stamp: str | None) -> str:
    return (stamp or "")[:10]

def print_json(payload: Any) -> None:
    print(json.dumps(payload, ensure_ascii=False, default=str))

def print_message(message: str, payload: Dict[str, Any]) -> None:
    """One-line confirmation in plain/rich mode, the full payload in json mode."""
    mode = get_output_mode()
    if mode == "json":
        print_json(payload)
    elif mode == "rich":
        _console.print(f"[green]{message}[/]")
    else:
        print(message)

def print_loans(loans: List[Dict[str, Any]], empty: str = "No loans.") -> None:
    """Print loan views (dicts with an is_overdue flag).
    - plain: 'loan_id  copy_id  title  card  due YYYY-MM-DD' lines, overdue ones tagged
    - json: JSON array
    - rich: table with overdue rows in red
    """
    mode = get_output_mode()

    if mode == "json":
        print_json(loans)
        return
    if not loans:
        print(empty)
        return

    if mode == "rich":
        table = Table(title="Loans", show_lines=False, header_style="bold cyan")
        table.add_column("Loan", style="magenta", no_wrap=True)
        table.add_column("Copy", no_wrap=True)
        table.add_column("Title")
        table.add_column("Card")
        table.add_column("Due")
        table.add_column("Renewals", justify="right")
        table.add_column("Status")
        for loan in loans:
            if loan.get("returned_at"):
                status = f"returned {_day(loan['returned_at'])}"
            elif loan.get("is_overdue"):
                status = f"[bold red]overdue {loan.get('days_overdue', 0)}d[/]"
            else:
                status = "open"
            table.add_row(
                loan["loan_id"], loan["copy_id"], loan.get("title") or "", loan.get("card_number") or "",
                _day(loan["due_at"]), str(loan.get("renewal_count", 0)), status,
            )
        _console.print(table)
    else:
        for loan in loans:
            line = (f"{loan['loan_id']}  {loan['copy_id']}  {loan.get('title') or ''}  "
                    f"{loan.get('card_number') or ''}  due {_day(loan['due_at'])}")
            if loan.get("returned_at"):
                line += f"  returned {_day(loan['returned_at'])}"
            elif loan.get("is_overdue"):
                line += f"  OVERDUE ({loan.get('days_overdue', 0)} days)"
            print(line)

def print_copy_status(status: Dict[str, Any]) -> None:
    mode = get_output_mode()
    loan = status.get("current_loan")

    if mode == "json":
        print_json(status)
    elif mode == "rich":
        content = f"[bold]Title:[/] {status.get('title') or ''}\n[bold]State:[/] {status['state']}"
        if loan:
            content += f"\n[bold]Borrower:[/] {loan['member_id']}\n[bold]Due:[/] {_day(loan['due_at'])}"
            if status.get("is_late"):
                content += "\n[bold red]Overdue[/]"
        _console.print(Panel.fit(content, title=f"Copy {status['copy_id']}", border_style="blue"))
    else:
        print(f"Copy {status['copy_id']}: {status['state']}")
        if loan:
            print(f"Loan {loan['loan_id']} to {loan['member_id']}, due {_day(loan['due_at'])}")
            if status.get("is_late"):
                print("Overdue")

def print_member_sheet(sheet: Dict[str, Any]) -> None:
    mode = get_output_mode()

    if mode == "json":
        print_json(sheet)
        return

    lines = [
        f"Member: {sheet['name']} ({sheet['member_id']})",
        f"Card: {sheet['card_number']}",
        f"Membership: {sheet['membership_start']} to {sheet['membership_end']}"
        + ("" if sheet["membership_valid"] else " (not valid)"),
        f"Banned: {'yes, ' + (sheet.get('ban_cause') or '') if sheet['banned'] else 'no'}",
        f"Open loans: {len(sheet['open_loans'])}, overdue: {len(sheet['overdue_loans'])}",
        f"Late: {'yes' if sheet.get('is_late') else 'no'}",
        f"Can borrow: {'yes' if sheet['can_borrow'] else 'no'}",
    ]
    if mode == "rich":
        _console.print(Panel.fit("\n".join(lines), title="Member", border_style="blue"))
    else:
        for line in lines:
            print(line)

def print_policy(policy: Dict[str, Any]) -> None:
    mode = get_output_mode()

    if mode == "json":
        print_json(policy)
        return

    duration = policy["loan_duration_days"]
    renewals = policy["max_renewals"]
    cap = policy["max_concurrent_loans"]
    if mode == "rich":
        content = (f"[bold]Loan duration:[/] {duration} days\n[bold]Max renewals:[/] {renewals}\n"
                   f"[bold]Max concurrent loans:[/] {cap}\n[dim]version {policy['version']}[/]")
        _console.print(Panel.fit(content, title="Loan policy", border_style="blue"))
    else:
        print(f"Loan duration: {duration} days")
        print(f"Max renewals: {renewals}")
        print(f"Max concurrent loans: {cap}")
        print(f"Version: {policy['version']}")

def print_audit_entries(entries: List[Dict[str, Any]]) -> None:
    mode = get_output_mode()

    if mode == "json":
        print_json(entries)
        return
    if not entries:
        print("No log entries.")
        return

    if mode == "rich":
        table = Table(title="Audit log", header_style="bold cyan")
        table.add_column("Time", no_wrap=True)
        table.add_column("Operator")
        table.add_column("Action", style="magenta")
        table.add_column("Target")
        for entry in entries:
            table.add_row(entry["timestamp"][:19].replace("T", " "), entry["actor"], entry["action"], entry["target"])
        _console.print(table)
    else:
        for entry in entries:
            print(f"{entry['timestamp'][:19].replace('T', ' ')}  {entry['actor']}  {entry['action']}  {entry['target']}")
