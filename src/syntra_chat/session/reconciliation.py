"""Merging confirmed history with optimistic messages.

While a stream is running the optimistic pair is always shown as is. Once it
has ended, every optimistic message is looked up in the confirmed history:
a confirmed message with the same role and the same content after trimming
whitespace counts as its confirmation. When both messages are confirmed the
pair is retired; otherwise the unconfirmed ones stay visible so nothing
flickers out while the backend is still persisting the turn.

Matching on trimmed content breaks down if the backend rewrites whitespace,
markdown or punctuation; an echoed correlation id would be sturdier.
"""

from dataclasses import dataclass
from typing import Iterable, List, Sequence, Set

from ..domain.models import ROLE_RANK, Message


@dataclass(frozen=True)
class Reconciliation:
    """Result of one merge."""

    messages: List[Message]
    subsumed: bool


def sort_messages(messages: Iterable[Message]) -> List[Message]:
    """Order by timestamp, user before assistant on ties."""
    return sorted(messages, key=lambda m: (m.timestamp, ROLE_RANK[m.role]))


def reconcile(
    server_messages: Sequence[Message],
    overlay_messages: Sequence[Message],
    is_streaming: bool,
    baseline_ids: Iterable[str] = (),
) -> Reconciliation:
    """Build the view the UI renders.

    ``subsumed`` is true only when the stream has ended and every overlay
    message was found in ``server_messages``; the caller should then clear
    the overlay.
    """
    if not overlay_messages:
        return Reconciliation(sort_messages(server_messages), subsumed=False)

    if is_streaming:
        return Reconciliation(sort_messages([*server_messages, *overlay_messages]), subsumed=False)

    excluded = set(baseline_ids)
    used: Set[str] = set()
    unmatched: List[Message] = []
    for pending in overlay_messages:
        wanted = pending.content.strip()
        match = next(
            (
                confirmed
                for confirmed in server_messages
                if confirmed.id not in excluded
                and confirmed.id not in used
                and confirmed.role == pending.role
                and confirmed.content.strip() == wanted
            ),
            None,
        )
        if match is None:
            unmatched.append(pending)
        else:
            used.add(match.id)

    if not unmatched:
        return Reconciliation(sort_messages(server_messages), subsumed=True)
    return Reconciliation(sort_messages([*server_messages, *unmatched]), subsumed=False)
