import logging
from datetime import timedelta

from circulation.engine import CirculationEngine

logger = logging.getLogger(__name__)

DEMO_BOOKS = [
    ("9780441172719", "Dune", "Frank Herbert", 2),
    ("9782070360024", "L'Étranger", "Albert Camus", 1),
    ("9780132350884", "Clean Code", "Robert C. Martin", 3),
]

DEMO_MEMBERS = [
    ("m-alice", "C-0001", "Alice Reader"),
    ("m-bob", "C-0002", "Bob Borrower"),
    ("m-chloe", "C-0003", "Chloé Martin"),
]


def seed_demo_data(engine: CirculationEngine, operator_id: str = "seed") -> dict:
    """Load a small catalog, three members and a couple of loans.

    Meant for an empty database; a second run fails on the duplicate ids.
    Returns the ids created so callers can print or assert on them.
    """
    today = engine.clock().date()
    copies = []
    for isbn, title, author, count in DEMO_BOOKS:
        engine.register_book(isbn, title, author)
        for n in range(1, count + 1):
            copy_id = f"{isbn[-4:]}-{n}"
            engine.register_copy(copy_id, isbn)
            copies.append(copy_id)

    members = []
    for member_id, card, name in DEMO_MEMBERS:
        engine.register_member(member_id, card, name, today - timedelta(days=30), today + timedelta(days=335))
        members.append(member_id)

    loans = [
        engine.checkout(copies[0], "m-alice", operator_id).loan_id,
        engine.checkout(copies[3], "m-alice", operator_id).loan_id,
        engine.checkout(copies[2], "m-bob", operator_id).loan_id,
    ]
    logger.info("Seeded %s copies, %s members, %s loans", len(copies), len(members), len(loans))
    return {"copies": copies, "members": members, "loans": loans}
