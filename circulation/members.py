import logging
import sqlite3
from datetime import date, datetime
from typing import Optional

from circulation.database import connect, transaction
from circulation.errors import InvalidRequest
from circulation.models import Member, format_ts, parse_day

logger = logging.getLogger(__name__)


class MemberDirectory:
    """Adherent records.

    Provisioning (creating members, setting their validity window) belongs
    to the member import tooling; ``register_member`` is the hook it calls.
    Inside the engine only two things change a member: the ban fields
    (Ban Manager) and the lifetime counters (loan lifecycle).
    """

    def __init__(self, db_file: str) -> None:
        self.db_file = db_file

    def register_member(self, member_id: str, card_number: str, name: str,
                        membership_start: date, membership_end: date) -> Member:
        if not member_id.strip() or not card_number.strip() or not name.strip():
            raise InvalidRequest("A member needs an id, a card number and a name.")
        membership_start, membership_end = parse_day(membership_start), parse_day(membership_end)
        if membership_end < membership_start:
            raise InvalidRequest("Membership end must not be before its start.")
        member = Member(member_id.strip(), card_number, name, membership_start, membership_end)
        with transaction(self.db_file) as conn:
            try:
                conn.execute(
                    """
                    INSERT INTO members (member_id, card_number, name, membership_start, membership_end)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (member.member_id, member.card_number, member.name,
                     member.membership_start.isoformat(), member.membership_end.isoformat()),
                )
            except sqlite3.IntegrityError as exc:
                raise InvalidRequest(
                    f"Member {member.member_id} or card {member.card_number} already exists."
                ) from exc
        logger.debug("Registered member %s (card %s)", member.member_id, member.card_number)
        return member

    # ------------------------- Reads ------------------------- #
    def get(self, conn: sqlite3.Connection, member_id: str) -> Optional[Member]:
        row = conn.execute("SELECT * FROM members WHERE member_id = ?", (member_id,)).fetchone()
        return Member.from_dict(dict(row)) if row else None

    def find(self, member_id: str) -> Optional[Member]:
        with connect(self.db_file) as conn:
            return self.get(conn, member_id)

    def find_by_card(self, card_number: str) -> Optional[Member]:
        with connect(self.db_file) as conn:
            row = conn.execute(
                "SELECT * FROM members WHERE card_number = ?", (card_number.strip(),)
            ).fetchone()
        return Member.from_dict(dict(row)) if row else None

    # ------------------------- Mutations (inside a caller's transaction) ------------------------- #
    def set_ban(self, conn: sqlite3.Connection, member_id: str, cause: str, when: datetime) -> None:
        conn.execute(
            "UPDATE members SET banned = 1, ban_cause = ?, banned_at = ? WHERE member_id = ?",
            (cause, format_ts(when), member_id),
        )

    def clear_ban(self, conn: sqlite3.Connection, member_id: str) -> None:
        conn.execute(
            "UPDATE members SET banned = 0, ban_cause = NULL, banned_at = NULL WHERE member_id = ?",
            (member_id,),
        )

    def increment_total_loans(self, conn: sqlite3.Connection, member_id: str) -> None:
        conn.execute("UPDATE members SET total_loans = total_loans + 1 WHERE member_id = ?", (member_id,))

    def increment_late_returns(self, conn: sqlite3.Connection, member_id: str) -> None:
        conn.execute(
            "UPDATE members SET late_return_count = late_return_count + 1 WHERE member_id = ?",
            (member_id,),
        )
