"""
BaseService -- base for services that write ledger records.

Services receive a caller-owned ``Session`` and persist with
``session.flush()``; they never commit or roll back the outer transaction.
Nested SAVEPOINTs (``session.begin_nested()``) are the one exception a
service may open and close itself.
"""

from abc import ABC

from sqlalchemy.orm import Session


class BaseService(ABC):
    """Flush-only write access through a caller-owned session."""

    def __init__(self, session: Session):
        self.session = session
