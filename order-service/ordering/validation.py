"""Draft order validation against the local replicas.

`ValidationEngine.validate` answers one question: can this caller place this
draft, given what the replicas hold right now?

It fans out two resolution tasks on a small worker pool, one for the
caller's account and one for every referenced item. It then waits for both
(a join with a timeout, never a race) and folds the results into a single
`ValidationOutcome`:

- account missing          -> invalid, account message (items are not looked at)
- one or more items missing -> invalid, one message listing every missing id
- otherwise                -> valid, with the account and the resolved items

Missing records are data, not exceptions: replicas lag behind their topics and
the caller is expected to retry later. A task that hits the timeout is treated
the same as a missing record. Only unexpected failures (an unreachable or
corrupted store) propagate.

Reads only; nothing here writes to a replica.
"""

from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor, wait
from enum import Enum
from typing import Callable

from pydantic import BaseModel, ConfigDict

from .config import VALIDATION_TIMEOUT_SECONDS, VALIDATION_WORKERS
from .models import (
    CallerIdentity,
    DraftOrder,
    EntityType,
    ReplicatedAccount,
    ReplicatedItem,
)
from .replica_store import ReplicaStore

StaleReplicaCallback = Callable[[EntityType, str], None]


class OutcomeReason(str, Enum):
    VALID = "VALID"
    MALFORMED_DRAFT = "MALFORMED_DRAFT"
    ACCOUNT_NOT_FOUND = "ACCOUNT_NOT_FOUND"
    ITEMS_NOT_FOUND = "ITEMS_NOT_FOUND"


class ValidationOutcome(BaseModel):
    """Result of `ValidationEngine.validate`.

    `errorMessage` is meant to be shown to the client as is.
    """

    model_config = ConfigDict(frozen=True)

    valid: bool
    reason: OutcomeReason
    account: ReplicatedAccount | None = None
    items: tuple[ReplicatedItem, ...] | None = None
    errorMessage: str | None = None
    missingItemIds: tuple[int, ...] = ()

    def is_valid(self) -> bool:
        return self.valid

    def item(self, item_id: int) -> ReplicatedItem | None:
        for item in self.items or ():
            if item.id == item_id:
                return item
        return None

    @classmethod
    def ok(cls, account: ReplicatedAccount, items: list[ReplicatedItem]) -> "ValidationOutcome":
        return cls(valid=True, reason=OutcomeReason.VALID, account=account, items=tuple(items))

    @classmethod
    def malformed(cls, problems: list[str]) -> "ValidationOutcome":
        return cls(
            valid=False,
            reason=OutcomeReason.MALFORMED_DRAFT,
            errorMessage="; ".join(problems),
        )

    @classmethod
    def account_not_found(cls, caller: CallerIdentity) -> "ValidationOutcome":
        return cls(
            valid=False,
            reason=OutcomeReason.ACCOUNT_NOT_FOUND,
            errorMessage=f"Account not found: {caller.describe()}",
        )

    @classmethod
    def items_not_found(cls, account: ReplicatedAccount, missing: list[int]) -> "ValidationOutcome":
        return cls(
            valid=False,
            reason=OutcomeReason.ITEMS_NOT_FOUND,
            account=account,
            errorMessage="Items not found: " + ", ".join(str(i) for i in missing),
            missingItemIds=tuple(missing),
        )


def draft_problems(draft: DraftOrder) -> list[str]:
    """Local checks on a draft, before any replica lookup. Empty list = fine."""
    if not draft.lines:
        return ["Order must contain at least one line"]
    return [
        f"Invalid quantity {line.quantity} for item {line.itemId}: must be a positive integer"
        for line in draft.lines
        if line.quantity <= 0
    ]


class ValidationEngine:
    """Validates drafts against the item and account replicas.

    Args:
        items: Item replica, keyed by item id.
        accounts: Account replica, keyed by account id, indexed by email.
        executor: Pool for the resolution tasks. If omitted, the engine owns
            one with `VALIDATION_WORKERS` threads and shuts it down in `close`.
        timeout: Seconds to wait for both tasks.
        on_stale: Called with (entity type, reason) when a replica looks
            stale. Typically a `ResyncRequester`.
    """

    def __init__(
        self,
        items: ReplicaStore[int, ReplicatedItem],
        accounts: ReplicaStore[int, ReplicatedAccount],
        executor: ThreadPoolExecutor | None = None,
        timeout: float = VALIDATION_TIMEOUT_SECONDS,
        on_stale: StaleReplicaCallback | None = None,
    ) -> None:
        self._items = items
        self._accounts = accounts
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=VALIDATION_WORKERS, thread_name_prefix="OrderValidation"
        )
        self._timeout = timeout
        self._on_stale = on_stale

    def validate(self, draft: DraftOrder, caller: CallerIdentity) -> ValidationOutcome:
        problems = draft_problems(draft)
        if problems:
            print(f"[Validation] Malformed draft from {caller.describe()}: {problems}")
            return ValidationOutcome.malformed(problems)

        self._check_freshness()

        item_ids = draft.distinct_item_ids()
        account_task: Future = self._executor.submit(self.resolve_account, caller)
        items_task: Future = self._executor.submit(self.resolve_items, item_ids)

        done, pending = wait([account_task, items_task], timeout=self._timeout)
        if pending:
            print(
                f"[Validation] {len(pending)} resolution task(s) still running after "
                f"{self._timeout}s for {caller.describe()}; treating as not found"
            )

        account = account_task.result() if account_task in done else None
        if account is None:
            print(f"[Validation] Account not found: {caller.describe()}")
            return ValidationOutcome.account_not_found(caller)

        if items_task in done:
            resolved, missing = items_task.result()
        else:
            resolved, missing = [], item_ids

        if missing:
            print(f"[Validation] Items not found for {caller.describe()}: {missing}")
            return ValidationOutcome.items_not_found(account, missing)

        return ValidationOutcome.ok(account, resolved)

    def resolve_account(self, caller: CallerIdentity) -> ReplicatedAccount | None:
        if caller.email is not None:
            return self._accounts.find_by("email", caller.email)
        return self._accounts.get(caller.accountId)

    def resolve_items(self, item_ids: list[int]) -> tuple[list[ReplicatedItem], list[int]]:
        """Look up every id. Returns (found, missing), both in input order."""
        found: list[ReplicatedItem] = []
        missing: list[int] = []
        for item_id, item in self._items.get_many(item_ids).items():
            if item is None:
                missing.append(item_id)
            else:
                found.append(item)
        return found, missing

    def _check_freshness(self) -> None:
        for entity_type, store in (
            (EntityType.ITEM, self._items),
            (EntityType.ACCOUNT, self._accounts),
        ):
            if store.count() == 0:
                reason = f"{store.name} replica is empty"
                print(f"[Validation] WARNING: {reason}; replica may be out of sync")
                if self._on_stale is not None:
                    self._on_stale(entity_type, reason)

    def close(self) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=True)
