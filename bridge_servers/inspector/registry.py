"""Element handles.

The elements themselves live in a table inside the remote page; this process
only tracks how many slots that table has and which epoch it belongs to.
Every reset (fresh find, navigation) bumps the epoch, so handles minted
earlier are recognisably stale instead of silently pointing at new nodes.
"""

from __future__ import annotations

from dataclasses import dataclass

from .errors import NotFound


@dataclass(frozen=True)
class ElementHandle:
    index: int
    epoch: int

    def to_json(self) -> dict[str, str]:
        return {"ELEMENT": str(self.index)}


ElementRef = ElementHandle | int | str


class ElementRegistry:
    def __init__(self) -> None:
        self._epoch = 0
        self._count = 0

    @property
    def epoch(self) -> int:
        return self._epoch

    @property
    def count(self) -> int:
        return self._count

    def handles(self) -> list[ElementHandle]:
        return [ElementHandle(i, self._epoch) for i in range(self._count)]

    def begin_reset(self) -> int:
        """Start a replacement; returns the epoch the remote table must adopt."""
        self._epoch += 1
        self._count = 0
        return self._epoch

    def complete_reset(self, count: int) -> list[ElementHandle]:
        self._count = max(0, int(count))
        return self.handles()

    def extend(self, start: int, count: int) -> list[ElementHandle]:
        """Record ``count`` slots appended remotely at ``start``."""
        if start != self._count:
            # The remote table diverged from ours; nothing we hold is trustworthy.
            self.invalidate()
            raise NotFound(f"element table out of sync (expected start {self._count}, got {start})")
        self._count += max(0, int(count))
        return [ElementHandle(i, self._epoch) for i in range(start, self._count)]

    def invalidate(self) -> None:
        self._epoch += 1
        self._count = 0

    def resolve(self, ref: ElementRef) -> int:
        """Return the remote index for ``ref`` or raise NotFound.

        Bare ints/strings (as sent by WebDriver clients) are read against the
        current epoch.
        """
        if isinstance(ref, ElementHandle):
            if ref.epoch != self._epoch:
                raise NotFound(f"stale element handle {ref.index} (epoch {ref.epoch}, current {self._epoch})")
            index = ref.index
        else:
            try:
                index = int(ref)
            except (TypeError, ValueError) as exc:
                raise NotFound(f"invalid element handle {ref!r}") from exc
        if index < 0 or index >= self._count:
            raise NotFound(f"no element with handle {index}")
        return index


__all__ = ["ElementHandle", "ElementRef", "ElementRegistry"]
