"""Build an `Order` from a draft and a valid `ValidationOutcome`.

Each line pins the item's name, price, category and image as they were at
validation time. Later catalog changes do not touch existing orders.
"""

from __future__ import annotations

from .errors import InvalidDraftError, InvalidOutcomeError
from .models import DraftOrder, Order, OrderLineSnapshot, utc_now
from .validation import ValidationOutcome, draft_problems


class OrderAssembler:
    def assemble(self, draft: DraftOrder, outcome: ValidationOutcome) -> Order:
        """Create a new order owned by the validated account."""
        lines = self.snapshot_lines(draft, outcome)
        order = Order(ownerAccountId=outcome.account.id, createdAt=utc_now(), lines=lines)
        print(f"[Orders] Assembled order {order.id}: {len(lines)} lines, total {order.total}")
        return order

    def snapshot_lines(
        self, draft: DraftOrder, outcome: ValidationOutcome
    ) -> tuple[OrderLineSnapshot, ...]:
        """Snapshot every draft line, in draft order.

        Raises:
            InvalidOutcomeError: `outcome` is not valid (caller bug).
            InvalidDraftError: a line has a non-positive quantity, or was not
                part of what `outcome` validated.
        """
        if not outcome.is_valid() or outcome.account is None:
            raise InvalidOutcomeError(
                f"cannot assemble from an invalid outcome ({outcome.reason.value})"
            )

        problems = draft_problems(draft)
        if problems:
            raise InvalidDraftError("; ".join(problems))

        lines = []
        for line in draft.lines:
            item = outcome.item(line.itemId)
            if item is None:
                raise InvalidDraftError(f"item {line.itemId} was not validated for this draft")
            lines.append(OrderLineSnapshot.capture(item, line.quantity))
        return tuple(lines)


def owned_by(order: Order | None, outcome: ValidationOutcome) -> bool:
    """True if the validated caller owns `order`."""
    return (
        order is not None
        and outcome.account is not None
        and order.ownerAccountId == outcome.account.id
    )
