"""
Services Package
================

Business logic layer for the cash desk.

Membership, deposit and statistics operations are handled here.
Callers should go through the ledger, not manipulate models directly.
"""

from cashdesk.services.ledger_service import (
    MembershipLedger,
    LedgerError,
    NotInitializedError,
    AlreadyInitializedError,
    InvalidArgumentError,
    DuplicateNameError,
    MemberNotFoundError,
    AlreadyMemberError,
    NotMemberError
)
