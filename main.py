import logging
import os
import subprocess
import sys
import webbrowser
from datetime import date, datetime, time, timedelta, timezone
from functools import wraps
from typing import Optional

import typer

from circulation.engine import CirculationEngine
from circulation.errors import CirculationError
from circulation.models import format_ts
from circulation.seed import seed_demo_data
from config import settings
from utils.ui_helpers import (
    print_audit_entries,
    print_copy_status,
    print_loans,
    print_member_sheet,
    print_message,
    print_policy,
    set_output_mode,
)

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

app = typer.Typer(help="Library circulation desk")

OperatorOption = typer.Option("cli", "--operator", "-u", help="Operator id recorded in the audit log")


def get_engine() -> CirculationEngine:
    """Engine over the database selected by LIBRARY_DB_FILE (read on every call)."""
    return CirculationEngine()


def handle_errors(func):
    """Print engine refusals as 'Error: <message>' and exit with status 1."""
    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except CirculationError as e:
            print(f"Error: {e.message}")
            raise typer.Exit(code=1)
    return wrapper


@app.callback()
def _global_options(
    output: Optional[str] = typer.Option(
        None,
        "--output",
        "-o",
        help="Output format: plain | json | rich (default: plain)",
    )
):
    """Global CLI options (output mode)."""
    if output:
        set_output_mode(output)


@app.command("checkout")
@handle_errors
def cli_checkout(copy_id: str, member_id: str, operator: str = OperatorOption):
    """Lend a copy to a member."""
    result = get_engine().checkout(copy_id, member_id, operator)
    print_message(
        f"Checked out {copy_id} to {member_id}: loan {result.loan_id}, due {result.due_date.date()}",
        {"loan_id": result.loan_id, "due_date": format_ts(result.due_date)},
    )


@app.command("return")
@handle_errors
def cli_return(copy_id: str, operator: str = OperatorOption):
    """Take a copy back and close its open loan."""
    result = get_engine().return_copy(copy_id, operator)
    message = f"Returned {copy_id} (loan {result.loan_id})"
    if result.was_late:
        message += ", returned late"
    print_message(message, {"loan_id": result.loan_id, "was_late": result.was_late})


@app.command("renew")
@handle_errors
def cli_renew(loan_id: str, operator: str = OperatorOption):
    """Extend an open loan by one loan period."""
    result = get_engine().renew(loan_id, operator)
    print_message(
        f"Renewed {loan_id} until {result.new_due_date.date()} ({result.renewals_remaining} renewal(s) left)",
        {"new_due_date": format_ts(result.new_due_date), "renewals_remaining": result.renewals_remaining},
    )


@app.command("ban")
@handle_errors
def cli_ban(member_id: str, cause: str, operator: str = OperatorOption):
    """Block a member from borrowing."""
    ack = get_engine().ban(member_id, cause, operator)
    print_message(f"Member {member_id} banned: {cause}", {"member_id": ack.member_id, "action": ack.action})


@app.command("unban")
@handle_errors
def cli_unban(member_id: str, operator: str = OperatorOption):
    """Lift a member's ban."""
    ack = get_engine().unban(member_id, operator)
    message = f"Member {member_id} unbanned" if ack.changed else f"Member {member_id} was not banned"
    print_message(message, {"member_id": ack.member_id, "action": ack.action, "changed": ack.changed})


@app.command("loans")
@handle_errors
def cli_loans(member_id: str, open_only: bool = typer.Option(False, "--open", help="Only open loans")):
    """List a member's loans, newest first."""
    views = get_engine().query_member_loans(member_id, open_only=open_only)
    print_loans([view.to_dict() for view in views], empty=f"No loans for {member_id}.")


@app.command("status")
@handle_errors
def cli_status(copy_id: str):
    """Show whether a copy is on the shelf or out, and with whom."""
    print_copy_status(get_engine().query_copy_status(copy_id).to_dict())


@app.command("overdue")
@handle_errors
def cli_overdue():
    """List every open loan past its due date."""
    views = get_engine().overdue_loans()
    print_loans([view.to_dict() for view in views], empty="No overdue loans.")


@app.command("member")
@handle_errors
def cli_member(card_number: str):
    """Look a member up by card number."""
    print_member_sheet(get_engine().member_sheet(card_number).to_dict())


@app.command("policy")
@handle_errors
def cli_policy(
    duration: Optional[int] = typer.Option(None, "--duration", help="Loan duration in days"),
    renewals: Optional[int] = typer.Option(None, "--renewals", help="Maximum renewals per loan"),
    max_loans: Optional[int] = typer.Option(None, "--max", help="Maximum concurrent loans per member"),
    operator: str = OperatorOption,
):
    """Show the loan policy, or change it when any value is given."""
    engine = get_engine()
    if duration is None and renewals is None and max_loans is None:
        policy = engine.current_policy()
    else:
        policy = engine.update_policy(
            operator, loan_duration_days=duration, max_renewals=renewals, max_concurrent_loans=max_loans,
        )
    print_policy(policy.to_dict())


@app.command("logs")
@handle_errors
def cli_logs(
    action: Optional[str] = typer.Option(None, "--action", "-a", help="checkout, return, renew, ban, unban, policy_update"),
    operator: Optional[str] = typer.Option(None, "--operator", "-u", help="Operator id (partial match)"),
    day: Optional[str] = typer.Option(None, "--day", help="YYYY-MM-DD"),
    query: Optional[str] = typer.Option(None, "--query", "-q", help="Text in the target or payload"),
    limit: int = typer.Option(15, "--limit", "-n"),
):
    """Show the audit log, newest first."""
    start = end = None
    if day:
        try:
            start_dt = datetime.combine(date.fromisoformat(day), time.min, tzinfo=timezone.utc)
        except ValueError:
            print(f"Error: invalid date {day}, expected YYYY-MM-DD")
            raise typer.Exit(code=1)
        start, end = format_ts(start_dt), format_ts(start_dt + timedelta(days=1))
    entries = get_engine().audit_search(
        action=action, actor=operator, start=start, end=end, query=query, limit=limit,
    )
    print_audit_entries([entry.to_dict() for entry in entries])


@app.command("seed")
@handle_errors
def cli_seed():
    """Load demo books, members and loans into an empty database."""
    created = seed_demo_data(get_engine())
    print_message(
        f"Seeded {len(created['copies'])} copies, {len(created['members'])} members, {len(created['loans'])} loans",
        created,
    )


@app.command("serve")
def cli_serve(timeout: int = typer.Option(0, "--timeout", help="Seconds to run before stopping (0 = no timeout)")):
    """Start the HTTP API with uvicorn."""
    host = settings.api_host
    port = int(settings.api_port)
    url = f"http://{host}:{port}/docs"
    print(f"Starting API on {url}")
    try:
        webbrowser.open(url)
    except webbrowser.Error:
        logger.debug("No browser available")
    args = [
        sys.executable,
        "-m", "uvicorn",
        "api:app",
        "--host", host,
        "--port", str(port),
    ]
    try:
        if timeout and timeout > 0:
            start_new_session = os.name != "nt"
            proc = subprocess.Popen(args, start_new_session=start_new_session)
            try:
                proc.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                proc.terminate()
                try:
                    proc.wait(timeout=5)
                except subprocess.TimeoutExpired:
                    proc.kill()
        else:
            subprocess.run(args, check=False)
    except FileNotFoundError:
        print("Error: `uvicorn` was not found. Make sure it is installed in this environment.")
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
