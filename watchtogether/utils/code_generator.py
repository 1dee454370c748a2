"""
Room id generation.

Room ids double as the join code people read out to each other, so they
are short, grouped and drawn from an alphabet without look-alike characters.
"""
import secrets
import string

ALPHABET = "".join(c for c in string.ascii_uppercase + string.digits if c not in "01OIL")
MAX_ATTEMPTS = 10


def generate_code(groups: int = 2, group_size: int = 3) -> str:
    """Random id such as ``"9QK-X7M"``."""
    return "-".join(
        "".join(secrets.choice(ALPHABET) for _ in range(group_size))
        for _ in range(groups)
    )


async def ensure_unique_room_id(db) -> str:
    """Draw ids until one is not taken by an existing watch room."""
    for _ in range(MAX_ATTEMPTS):
        room_id = generate_code()
        cursor = await db.execute("SELECT 1 FROM watch_rooms WHERE id = ?", (room_id,))
        if await cursor.fetchone() is None:
            return room_id
    raise RuntimeError(f"No free room id after {MAX_ATTEMPTS} attempts")
