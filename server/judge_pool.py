"""Judge pool and judge selection.

The pool is a dense list plus a reverse index, so add / contains / remove
are all O(1). Removal swaps the last judge into the freed slot; order is not
meaningful, only membership and the list used for sampling.

Selection hashes a recent block hash together with the request's identity
fields and reduces modulo the pool size. Whoever can choose which block is
"recent" (a block producer) can bias the pick. Known weakness.
"""

from crypto import judge_selection_digest


class JudgePool:
    def __init__(self, judges: list[str] | None = None):
        self._judges: list[str] = []
        self._index: dict[str, int] = {}
        for judge in judges or []:
            self.add(judge)

    def add(self, judge: str) -> bool:
        """Register a judge. Returns False if already present."""
        if judge in self._index:
            return False
        self._index[judge] = len(self._judges)
        self._judges.append(judge)
        return True

    def remove(self, judge: str) -> bool:
        """Swap-remove a judge. Returns False if not present."""
        pos = self._index.pop(judge, None)
        if pos is None:
            return False
        last = self._judges.pop()
        if pos < len(self._judges):
            self._judges[pos] = last
            self._index[last] = pos
        return True

    def at(self, position: int) -> str:
        return self._judges[position]

    def members(self) -> list[str]:
        return list(self._judges)

    def __contains__(self, judge: str) -> bool:
        return judge in self._index

    def __len__(self) -> int:
        return len(self._judges)

    def __iter__(self):
        return iter(list(self._judges))


def select_judge(pool: JudgePool, block_hash: bytes, request) -> str:
    """Deterministically sample one judge for ``request`` from a non-empty pool."""
    if not len(pool):
        raise ValueError("cannot select from an empty judge pool")
    digest = judge_selection_digest(
        block_hash,
        request.id,
        request.terms.requester,
        request.terms.commit_deadline,
        request.commit_count,
        len(pool),
    )
    return pool.at(digest % len(pool))
