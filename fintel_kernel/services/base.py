"""
BaseService -- common base for the intelligence services.

Responsibility:
    Holds the session, the clock and the unit-of-work policy every
    service shares.  A service either owns its transaction
    (``auto_commit=True``, the default: commit on success, rollback and
    re-raise on failure) or only flushes inside a caller-owned one.

Architecture position:
    Kernel > Services -- imperative shell infrastructure.  Extended by
    every service in ``fintel_services``.

Invariants enforced:
    - A failed unit of work is never partially committed: ``_finish``
      is only reached on success, ``_abort`` rolls everything back.
    - With ``auto_commit=False`` the service never calls ``commit()`` or
      ``rollback()``; the caller controls transaction boundaries.

Failure modes:
    - Errors from ``session.commit()`` (e.g. OperationalError on a lock
      timeout) propagate after rollback.
"""

from abc import ABC

from sqlalchemy.orm import Session

from fintel_kernel.domain.clock import Clock, SystemClock


class BaseService(ABC):
    """
    Abstract base class for services.

    Contract:
        Accepts a SQLAlchemy ``Session`` from the caller.  Reads go through
        selectors; writes are flushed and, with ``auto_commit``, committed
        at the end of each public operation.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        auto_commit: bool = True,
    ):
        self.session = session
        self.clock = clock or SystemClock()
        self.auto_commit = auto_commit

    def _finish(self) -> None:
        if self.auto_commit:
            self.session.commit()
        else:
            self.session.flush()

    def _abort(self) -> None:
        if self.auto_commit:
            self.session.rollback()
