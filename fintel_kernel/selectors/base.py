"""
Module: fintel_kernel.selectors.base
Responsibility: Abstract base class for all read-only query selectors.
Architecture position: Kernel > Selectors.  May import from db/base.py and
    models/.  MUST NOT import from services/ or outer layers.

Invariants enforced:
    - Read-only access: Selectors accept a Session from the caller but MUST NOT
      call session.add(), session.delete(), session.commit(), or session.flush().
    - DTO return convention: Selectors return frozen DTOs, never ORM instances.
    - Tenant filtering: every query takes a TenantScope and filters on it.

Failure modes:
    - Returns None or an empty list on absence of data (never raises).
"""

from abc import ABC

from sqlalchemy.orm import Session


class BaseSelector(ABC):
    """
    Abstract base class for all selectors.

    Contract:
        Selectors accept a Session from the caller, perform read-only queries,
        and return DTOs.  The caller owns the session and its transaction.
    """

    def __init__(self, session: Session):
        self.session = session
