"""
MEMBERSHIP LEDGER SERVICE
=========================

Handles:
- Registering/removing members
- Opening (join) and closing (cancel) membership periods
- Recording deposits against the active membership
- Per-member, per-year deposit statistics

BUSINESS RULES:
1. A member has at most ONE active membership at any instant
   (active = begin <= now <= end, an open membership has no end)
2. Deposits are only accepted while a membership is active
3. Deposit amounts are never negative
4. Every operation commits one logical change or nothing
"""

import logging
import threading
from contextlib import contextmanager
from datetime import date, datetime
from decimal import Decimal, InvalidOperation

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from cashdesk.extensions import db
from cashdesk.models import (
    Member, Membership, Deposit, DepositStatistics, NAME_MAX_LENGTH,
    AMOUNT_PRECISION, AMOUNT_SCALE, utcnow
)

logger = logging.getLogger(__name__)

AMOUNT_QUANTUM = Decimal(1).scaleb(-AMOUNT_SCALE)
AMOUNT_LIMIT = Decimal(10) ** (AMOUNT_PRECISION - AMOUNT_SCALE)


# ============================================================
# CUSTOM EXCEPTIONS
# ============================================================

class LedgerError(Exception):
    """Base exception for ledger operations"""
    pass


class NotInitializedError(LedgerError):
    """Raised when the ledger is used before initialize()"""
    pass


class AlreadyInitializedError(LedgerError):
    """Raised when initialize() is called on an open ledger"""
    pass


class InvalidArgumentError(LedgerError, ValueError):
    """Raised for malformed input (empty name, negative amount, ...)"""
    pass


class DuplicateNameError(LedgerError):
    """Raised when a member with the same last name already exists"""
    pass


class MemberNotFoundError(LedgerError, LookupError):
    """Raised when the referenced member does not exist"""
    pass


class AlreadyMemberError(LedgerError):
    """Raised when joining while a membership is still active"""
    pass


class NotMemberError(LedgerError):
    """Raised when an operation needs an active membership and there is none"""
    pass


# ============================================================
# VALIDATION HELPERS
# ============================================================

def _validate_name(value, field):
    if value is None or not isinstance(value, str) or value == '':
        raise InvalidArgumentError(f"{field} is required")
    if len(value) > NAME_MAX_LENGTH:
        raise InvalidArgumentError(
            f"{field} must be at most {NAME_MAX_LENGTH} characters"
        )
    return value


def _validate_amount(amount):
    """
    Coerce amount to Decimal. Rejects missing, negative or out-of-range
    values and anything finer than a cent, which the column cannot hold.
    """
    if amount is None or isinstance(amount, bool):
        raise InvalidArgumentError("Deposit amount is required")
    try:
        value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
    except (InvalidOperation, ValueError):
        raise InvalidArgumentError(f"Invalid deposit amount: {amount!r}")
    if not value.is_finite():
        raise InvalidArgumentError(f"Invalid deposit amount: {amount!r}")
    if value < 0:
        raise InvalidArgumentError("Deposit amount must not be negative")
    if value >= AMOUNT_LIMIT:
        raise InvalidArgumentError(f"Deposit amount must be below {AMOUNT_LIMIT}")
    if value != value.quantize(AMOUNT_QUANTUM):
        raise InvalidArgumentError(
            f"Deposit amount must have at most {AMOUNT_SCALE} decimal places"
        )
    return value.quantize(AMOUNT_QUANTUM)


# ============================================================
# LEDGER
# ============================================================

class MembershipLedger:
    """
    Service over members, memberships and deposits.

    Works on the Flask-SQLAlchemy session of the current application
    context. `clock` returns the current (naive, UTC) timestamp and can be
    replaced in tests.
    """

    def __init__(self, clock=None):
        self._clock = clock or utcnow
        self._initialized = False
        # member id -> [lock, number of callers holding or waiting for it]
        self._locks = {}
        self._locks_guard = threading.Lock()

    def init_app(self, app):
        """Register the ledger on a Flask app as app.extensions['ledger']."""
        app.extensions['ledger'] = self
        if app.config.get('LEDGER_AUTO_INITIALIZE', False):
            with app.app_context():
                self.initialize()

    @property
    def is_initialized(self):
        return self._initialized

    def now(self):
        return self._clock()

    # ------------------------------------------------------------
    # LIFECYCLE
    # ------------------------------------------------------------

    def initialize(self):
        """Create the schema and open the ledger for use."""
        if self._initialized:
            raise AlreadyInitializedError("Ledger is already initialized")

        db.create_all()
        self._initialized = True
        logger.info("Ledger initialized on %s", db.engine.url)

    def shutdown(self):
        """
        Release the session and connection pool.

        Safe to call more than once. Failures while releasing are logged,
        never raised.
        """
        if not self._initialized:
            return

        self._initialized = False
        try:
            db.session.remove()
            db.engine.dispose()
        except Exception:
            logger.warning("Error while releasing ledger resources", exc_info=True)
        logger.info("Ledger shut down")

    def _require_initialized(self):
        if not self._initialized:
            raise NotInitializedError("Ledger is not initialized")

    @contextmanager
    def _member_lock(self, member_id):
        """Serialize read-then-write sequences on one member."""
        with self._locks_guard:
            entry = self._locks.get(member_id)
            if entry is None:
                entry = self._locks[member_id] = [threading.Lock(), 0]
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            # Drop the entry once nobody holds or waits for it
            with self._locks_guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[member_id]

    def _lock_member_row(self, member_id):
        # FOR UPDATE is ignored by SQLite, honoured by server databases
        return Member.query.filter_by(id=member_id).with_for_update().first()

    def _find_active_membership(self, member_id, now):
        return Membership.query.filter(
            Membership.member_id == member_id,
            Membership.active_at(now)
        ).first()

    # ============================================================
    # MEMBER MANAGEMENT
    # ============================================================

    def add_member(self, first_name, last_name, birthday):
        """Register a new member and return its id."""
        self._require_initialized()

        try:
            _validate_name(first_name, "First name")
            _validate_name(last_name, "Last name")
            if not isinstance(birthday, date):
                raise InvalidArgumentError("Birthday is required")
            if isinstance(birthday, datetime):
                birthday = birthday.date()

            # Exact, case-sensitive match; the unique index has the last word
            if Member.query.filter_by(last_name=last_name).first():
                raise DuplicateNameError(f"A member named '{last_name}' already exists")

            member = Member(first_name=first_name, last_name=last_name, birthday=birthday)
            db.session.add(member)
            db.session.commit()

            logger.info("Added member %s (%s %s)", member.id, first_name, last_name)
            return member.id

        except IntegrityError as e:
            db.session.rollback()
            logger.warning("Rejected add_member: unique index on last name (%s)", last_name)
            raise DuplicateNameError(
                f"A member named '{last_name}' already exists"
            ) from e
        except LedgerError as e:
            db.session.rollback()
            logger.warning("Rejected add_member: %s", e)
            raise
        except Exception as e:
            db.session.rollback()
            logger.exception("add_member failed")
            raise LedgerError(f"Failed to add member: {str(e)}") from e

    def get_member(self, member_id):
        self._require_initialized()

        member = db.session.get(Member, member_id)
        if member is None:
            raise MemberNotFoundError(f"Member {member_id} not found")
        return member

    def list_members(self):
        self._require_initialized()
        return Member.query.order_by(Member.id).all()

    def delete_member(self, member_id):
        """
        Delete a member together with its memberships and their deposits.

        Children are removed explicitly before the parent so the cascade
        does not depend on the store enforcing foreign keys.
        """
        self._require_initialized()

        with self._member_lock(member_id):
            try:
                member = self._lock_member_row(member_id)
                if member is None:
                    raise MemberNotFoundError(f"Member {member_id} not found")

                membership_ids = select(Membership.id) \
                    .where(Membership.member_id == member_id)
                deposits_removed = Deposit.query \
                    .filter(Deposit.membership_id.in_(membership_ids)) \
                    .delete(synchronize_session=False)
                memberships_removed = Membership.query \
                    .filter_by(member_id=member_id) \
                    .delete(synchronize_session=False)

                db.session.delete(member)
                db.session.commit()

                logger.info(
                    "Deleted member %s with %d membership(s) and %d deposit(s)",
                    member_id, memberships_removed, deposits_removed
                )

            except LedgerError as e:
                db.session.rollback()
                logger.warning("Rejected delete_member: %s", e)
                raise
            except Exception as e:
                db.session.rollback()
                logger.exception("delete_member failed")
                raise LedgerError(f"Failed to delete member: {str(e)}") from e

    # ============================================================
    # MEMBERSHIP LIFECYCLE
    # ============================================================

    def join_member(self, member_id):
        """Open a new membership starting now."""
        self._require_initialized()

        with self._member_lock(member_id):
            try:
                now = self.now()

                member = self._lock_member_row(member_id)
                if member is None:
                    raise MemberNotFoundError(f"Member {member_id} not found")

                if self._find_active_membership(member_id, now):
                    raise AlreadyMemberError(
                        f"Member {member_id} already has an active membership"
                    )

                membership = Membership(member_id=member_id, begin=now, end=None)
                db.session.add(membership)
                db.session.commit()

                logger.info("Member %s joined (membership %s)", member_id, membership.id)
                return membership

            except LedgerError as e:
                db.session.rollback()
                logger.warning("Rejected join_member: %s", e)
                raise
            except Exception as e:
                db.session.rollback()
                logger.exception("join_member failed")
                raise LedgerError(f"Failed to join member: {str(e)}") from e

    def cancel_membership(self, member_id):
        """Close the active membership by setting its end to now."""
        self._require_initialized()

        with self._member_lock(member_id):
            try:
                now = self.now()

                self._lock_member_row(member_id)
                membership = self._find_active_membership(member_id, now)
                if membership is None:
                    raise NotMemberError(
                        f"Member {member_id} has no active membership"
                    )

                membership.end = now
                db.session.commit()

                logger.info("Member %s cancelled membership %s", member_id, membership.id)
                return membership

            except LedgerError as e:
                db.session.rollback()
                logger.warning("Rejected cancel_membership: %s", e)
                raise
            except Exception as e:
                db.session.rollback()
                logger.exception("cancel_membership failed")
                raise LedgerError(f"Failed to cancel membership: {str(e)}") from e

    def get_active_membership(self, member_id):
        self._require_initialized()
        return self._find_active_membership(member_id, self.now())

    # ============================================================
    # DEPOSITS
    # ============================================================

    def deposit(self, member_id, amount):
        """
        Record a deposit against the member's active membership.

        Returns: Deposit
        """
        self._require_initialized()

        with self._member_lock(member_id):
            try:
                value = _validate_amount(amount)
                now = self.now()

                member = self._lock_member_row(member_id)
                if member is None:
                    raise MemberNotFoundError(f"Member {member_id} not found")

                membership = self._find_active_membership(member_id, now)
                if membership is None:
                    raise NotMemberError(
                        f"Member {member_id} has no active membership"
                    )

                deposit = Deposit(membership_id=membership.id, amount=value, created_at=now)
                db.session.add(deposit)
                db.session.commit()

                logger.info(
                    "Deposit of %s recorded for member %s (membership %s)",
                    value, member_id, membership.id
                )
                return deposit

            except LedgerError as e:
                db.session.rollback()
                logger.warning("Rejected deposit: %s", e)
                raise
            except Exception as e:
                db.session.rollback()
                logger.exception("deposit failed")
                raise LedgerError(f"Deposit failed: {str(e)}") from e

    # ============================================================
    # STATISTICS
    # ============================================================

    def get_deposit_statistics(self):
        """
        One record per membership that has at least one deposit:
        (member, year of the membership's begin, total deposited).
        """
        self._require_initialized()

        totals = db.session.query(
            Deposit.membership_id,
            db.func.sum(Deposit.amount).label('total')
        ).group_by(Deposit.membership_id).subquery()

        # Members come back in the same row, no lazy load per membership
        rows = db.session.query(Member, Membership, totals.c.total) \
            .join(Membership, Membership.member_id == Member.id) \
            .join(totals, totals.c.membership_id == Membership.id) \
            .order_by(Member.id, Membership.begin) \
            .all()

        return [
            DepositStatistics(
                member=member,
                year=membership.begin.year,
                total_amount=Decimal(str(total)).quantize(AMOUNT_QUANTUM)
            )
            for member, membership, total in rows
        ]

    def get_member_summary(self, member_id):
        """
        Overview of one member, for display by a front end.
        """
        member = self.get_member(member_id)
        now = self.now()

        memberships = member.memberships.order_by(Membership.begin).all()
        active = next((m for m in memberships if m.is_active(now)), None)
        total = sum((m.get_total_deposited() for m in memberships), Decimal('0.00'))

        return {
            'member_id': member.id,
            'first_name': member.first_name,
            'last_name': member.last_name,
            'birthday': member.birthday,
            'is_active': active is not None,
            'active_since': active.begin if active else None,
            'membership_count': len(memberships),
            'total_deposited': total,
        }

    def __repr__(self):
        state = 'initialized' if self._initialized else 'closed'
        return f'<MembershipLedger {state}>'
