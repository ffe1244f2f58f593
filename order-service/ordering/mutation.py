"""Order edits.

An edit never patches lines in place. The old lines are dropped and the
validated draft is snapshotted again from scratch, with fresh line ids. That
way a reused item id with a new quantity, or an item removed from the draft,
cannot leave a stale price or an orphaned line behind.

Ownership is not checked here; the caller must already know the requester
owns `existing`.
"""

from __future__ import annotations

from .assembler import OrderAssembler
from .errors import InvalidOutcomeError
from .models import DraftOrder, Order, utc_now
from .validation import ValidationOutcome


class OrderMutationCoordinator:
    def __init__(self, assembler: OrderAssembler | None = None) -> None:
        self._assembler = assembler or OrderAssembler()

    def apply_update(
        self, existing: Order, draft: DraftOrder, outcome: ValidationOutcome
    ) -> Order:
        if not outcome.is_valid():
            raise InvalidOutcomeError(
                f"cannot update order {existing.id} from an invalid outcome "
                f"({outcome.reason.value})"
            )

        lines = self._assembler.snapshot_lines(draft, outcome)
        # id, ownerAccountId and createdAt carry over untouched.
        updated = existing.model_copy(update={"lines": lines, "updatedAt": utc_now()})
        print(
            f"[Orders] Replaced lines of order {existing.id}: "
            f"{len(existing.lines)} -> {len(lines)}, total {updated.total}"
        )
        return updated
