"""Sync gateway: batched push with idempotent replay, and delta pull."""

import logging
from typing import Any

from pydantic import ValidationError

from ..sync.schemas import (
    ChangeIn,
    PayloadValidationError,
    PullChanges,
    PullRequest,
    PullResponse,
    PushError,
    PushRequest,
    PushResponse,
    PushResults,
)
from ..time_utils import to_timestamp
from .shared_store import ChangeRejectedError, SharedStore

logger = logging.getLogger(__name__)


def _describe_validation_error(e: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(p) for p in err['loc']) or 'change'}: {err['msg']}"
        for err in e.errors()
    )


class SyncGateway:
    """Applies pushed changes to the shared store and answers pulls.

    Callers are expected to have passed the authorization gate already.
    """

    def __init__(self, store: SharedStore):
        self.store = store

    def push(self, request: PushRequest) -> PushResponse:
        """Apply a batch of changes in array order.

        Each change is its own transaction: a failure is reported for
        that change only and never rolls back earlier ones. Changes whose
        id is already in the ledger count as successes without being
        re-applied. The batch is never re-sorted.

        Args:
            request: Push envelope.

        Returns:
            PushResponse with success/failure counts and per-change errors.
        """
        store_id = str(request.store_id)
        results = PushResults()
        replayed = 0

        for raw in request.changes:
            if not isinstance(raw, dict):
                self._record_failure(results, raw, "Change must be a JSON object")
                continue

            try:
                change = ChangeIn.model_validate(raw)
                applied = self.store.apply_change(store_id, change)
            except ValidationError as e:
                self._record_failure(results, raw, _describe_validation_error(e))
                continue
            except (PayloadValidationError, ChangeRejectedError) as e:
                self._record_failure(results, raw, str(e))
                continue
            except Exception as e:
                logger.error(
                    f"Failed to process change {raw.get('changeId')} for store {store_id}: {e}",
                    exc_info=True,
                )
                self._record_failure(results, raw, str(e))
                continue

            results.success += 1
            if not applied:
                replayed += 1

        logger.info(
            f"Sync push completed for store {store_id}: "
            f"success={results.success}, failed={results.failed}, replayed={replayed}"
        )
        return PushResponse(results=results)

    @staticmethod
    def _record_failure(results: PushResults, raw: Any, error: str) -> None:
        results.failed += 1
        results.errors.append(PushError(change=raw, error=error))
        change_id = raw.get("changeId") if isinstance(raw, dict) else None
        logger.warning(f"Rejected change {change_id}: {error}")

    def pull(self, request: PullRequest) -> PullResponse:
        """Return every row changed since the client's watermark.

        The response timestamp is the server's as-of time captured before
        the query ran; clients must store it as their next watermark.
        """
        store_id = str(request.store_id)
        since = to_timestamp(request.last_sync_time) if request.last_sync_time else None

        as_of, grouped = self.store.changes_since(store_id, since)
        changes = PullChanges(**grouped)

        logger.info(
            f"Sync pull completed for store {store_id}: "
            + ", ".join(f"{group}={len(rows)}" for group, rows in grouped.items())
        )
        return PullResponse(timestamp=as_of, changes=changes)
