import logging
from datetime import datetime
from typing import Callable

from circulation.audit import AuditLog
from circulation.database import transaction
from circulation.errors import InvalidRequest, NotFound
from circulation.locks import KeyedLocks, member_key
from circulation.members import MemberDirectory
from circulation.models import Ack

logger = logging.getLogger(__name__)


class BanManager:
    """Applies and lifts administrative bans.

    A ban blocks new checkouts and renewals. It never touches open loans:
    they stay open and returnable. Bans are only ever set by an operator;
    late returns are counted but do not ban anyone.
    """

    def __init__(self, db_file: str, members: MemberDirectory, audit: AuditLog,
                 locks: KeyedLocks, clock: Callable[[], datetime]) -> None:
        self.db_file = db_file
        self.members = members
        self.audit = audit
        self.locks = locks
        self.clock = clock

    def ban(self, member_id: str, cause: str, operator_id: str) -> Ack:
        cause = (cause or "").strip()
        if not cause:
            raise InvalidRequest("A ban needs a cause.")

        with self.locks.hold(member_key(member_id)):
            now = self.clock()
            with transaction(self.db_file) as conn:
                member = self.members.get(conn, member_id)
                if member is None:
                    raise NotFound("member", member_id)
                self.members.set_ban(conn, member_id, cause, now)
                self.audit.record(
                    conn, operator_id, "ban", f"member:{member_id}", now,
                    before={"banned": member.banned, "ban_cause": member.ban_cause},
                    after={"banned": True, "ban_cause": cause},
                )

        logger.info("Member %s banned by %s: %s", member_id, operator_id, cause)
        return Ack(member_id=member_id, action="ban")

    def unban(self, member_id: str, operator_id: str) -> Ack:
        with self.locks.hold(member_key(member_id)):
            now = self.clock()
            with transaction(self.db_file) as conn:
                member = self.members.get(conn, member_id)
                if member is None:
                    raise NotFound("member", member_id)
                if not member.banned:
                    return Ack(member_id=member_id, action="unban", changed=False)
                self.members.clear_ban(conn, member_id)
                self.audit.record(
                    conn, operator_id, "unban", f"member:{member_id}", now,
                    before={"banned": True, "ban_cause": member.ban_cause},
                    after={"banned": False, "ban_cause": None},
                )

        logger.info("Member %s unbanned by %s", member_id, operator_id)
        return Ack(member_id=member_id, action="unban")
