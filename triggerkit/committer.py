from __future__ import annotations

import logging
from dataclasses import dataclass, field

from .batch import WriteBatch, WriteKind
from .db.tx import DbTx
from .db.writer import RecordWriter, WriteResult
from .error_handler import ErrorHandler, Errors
from .errors import BatchWriteError

logger = logging.getLogger(__name__)

COMMIT_CONTEXT = "BatchCommitter"


@dataclass
class CommitResult:
    results: list[WriteResult] = field(default_factory=list)
    errors: Errors = field(default_factory=Errors)
    rolled_back: bool = False

    @property
    def success(self) -> bool:
        return not self.errors.errors_exist


class BatchCommitter:
    """
    Commits an aggregated WriteBatch as one all-or-nothing unit.

    Kinds are written in fixed order (insert, update, delete, undelete). Each
    kind is a best-effort batch: every record is attempted even if a sibling
    fails. If any record failed:

    - error handling enabled: everything written since the commit savepoint is
      rolled back, including records that succeeded, and the failures are
      persisted through ErrorHandler.
    - error handling disabled: successful writes are kept and BatchWriteError
      is raised with the collected Errors.

    Usage:
        committer = BatchCommitter(ErrorHandler(db_config, dispatch_config))
        result = committer.commit(batch, session)
    """

    def __init__(self, error_handler: ErrorHandler) -> None:
        self.error_handler = error_handler

    def commit(self, batch: WriteBatch, session: DbTx) -> CommitResult:
        batch.group_by_type()
        if batch.is_empty:
            return CommitResult()

        logger.debug("Committing %s", batch.summary())

        savepoint = session.savepoint()
        writer = RecordWriter(session)
        results: list[WriteResult] = []
        try:
            for kind, records in batch.items():
                if records:
                    results.extend(writer.write_all(kind, records))
        except Exception:
            savepoint.rollback()
            _forget_inserted_ids(results)
            raise

        errors = self.error_handler.get_errors(results, COMMIT_CONTEXT)
        if not errors.errors_exist:
            savepoint.release()
            return CommitResult(results=results, errors=errors)

        if not self.error_handler.enabled:
            savepoint.release()
            raise BatchWriteError(
                f"{len(errors)} of {len(results)} record writes failed: {errors.summary()}",
                errors=errors,
            )

        savepoint.rollback()
        _forget_inserted_ids(results)
        logger.warning(
            "Rolled back batch (%s): %d of %d record writes failed",
            batch.summary(),
            len(errors),
            len(results),
        )
        self.error_handler.process_errors(errors.records, COMMIT_CONTEXT, session)
        return CommitResult(results=results, errors=errors, rolled_back=True)


def _forget_inserted_ids(results: list[WriteResult]) -> None:
    # Rolled-back inserts no longer exist
    for result in results:
        if result.kind == WriteKind.INSERT and result.success:
            result.record.id = None
