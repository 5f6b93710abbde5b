# services/seeded_prng.py
import hashlib


class SeededPRNG:
    """SHA-256 counter-mode generator.

    Every value is derived from ``sha256("<seed>:<counter>")`` so a stored
    seed replays the exact same stream. Nothing here touches the system
    entropy source.
    """

    def __init__(self, seed):
        if not seed:
            raise ValueError("A seed is required")
        self.seed = seed
        self.counter = 0

    def next(self):
        digest = hashlib.sha256(f"{self.seed}:{self.counter}".encode("utf-8")).hexdigest()
        self.counter += 1
        # leading 32 bits
        return int(digest[:8], 16) / 0x100000000

    def next_int(self, max_value):
        return int(self.next() * max_value)

    def shuffle(self, items):
        """Fisher-Yates shuffle of ``items`` in place; also returns it."""
        for i in range(len(items) - 1, 0, -1):
            j = self.next_int(i + 1)
            items[i], items[j] = items[j], items[i]
        return items
