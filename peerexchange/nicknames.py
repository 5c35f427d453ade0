"""Display names: random ones for presence, stable ones for rooms."""

from __future__ import annotations

import hashlib
import secrets


ADJECTIVES = (
    "admiring", "bold", "brave", "clever", "cool", "eager", "elegant",
    "focused", "gallant", "happy", "jolly", "keen", "kind", "lucid",
    "modest", "nifty", "quirky", "serene", "sharp", "vibrant", "wise",
    "zealous",
)

SURNAMES = (
    "babbage", "bohr", "curie", "darwin", "euler", "fermat", "gauss",
    "hopper", "hypatia", "kepler", "lamport", "lovelace", "meitner",
    "noether", "pascal", "ritchie", "shannon", "tesla", "turing",
    "wozniak",
)


def random_nickname() -> str:
    return f"{secrets.choice(ADJECTIVES)}_{secrets.choice(SURNAMES)}"


def room_nickname(room_id: str, with_hash: bool = False) -> str:
    """Stable, human-readable label for ``room_id``.

    Both words are picked from the SHA-256 of the id, so every device in the
    room shows the same name without exchanging it.
    """
    digest = hashlib.sha256(room_id.encode("utf-8")).hexdigest()
    first = int(digest[0:8], 16)
    second = int(digest[8:16], 16)
    words = [ADJECTIVES[first % len(ADJECTIVES)], SURNAMES[second % len(SURNAMES)]]
    if with_hash:
        words.append(digest[-8:])
    return " ".join(words)
