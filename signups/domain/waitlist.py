"""Ordered per-event waitlist with dense positions."""

from __future__ import annotations

from collections.abc import Iterable, Iterator

from signups.domain.models import Rsvp


class Waitlist:
    """The waitlisted rsvps of one event, kept at positions ``1..k``.

    Positions are only ever changed through :meth:`insert_at_end`,
    :meth:`promote` and :meth:`remove_and_compact`, so callers cannot
    leave gaps or duplicates behind.
    """

    def __init__(self, rsvps: Iterable[Rsvp] = ()) -> None:
        self._entries = sorted(
            (r for r in rsvps if r.is_waitlisted),
            key=lambda r: (r.waitlist_position, r.created_at),
        )

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[Rsvp]:
        return iter(self._entries)

    def next_position(self) -> int:
        return max((r.waitlist_position or 0 for r in self._entries), default=0) + 1

    def insert_at_end(self, rsvp: Rsvp) -> int:
        rsvp.waitlist_position = self.next_position()
        self._entries.append(rsvp)
        return rsvp.waitlist_position

    def promote(self) -> Rsvp | None:
        """Confirm the head of the queue and shift everybody else up one."""
        if not self._entries:
            return None
        head = self._entries.pop(0)
        head.waitlist_position = None
        self._compact()
        return head

    def remove_and_compact(self, rsvp: Rsvp) -> None:
        self._entries = [r for r in self._entries if r.id != rsvp.id]
        rsvp.waitlist_position = None
        self._compact()

    def _compact(self) -> None:
        for position, entry in enumerate(self._entries, start=1):
            entry.waitlist_position = position
