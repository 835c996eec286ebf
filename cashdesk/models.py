from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import and_, or_

from cashdesk.extensions import db


NAME_MAX_LENGTH = 100

# Deposit.amount is Numeric(AMOUNT_PRECISION, AMOUNT_SCALE)
AMOUNT_PRECISION = 12
AMOUNT_SCALE = 2


def utcnow():
    """Current UTC time as a naive datetime, the form stored in the database."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ============================================================
# MEMBER MODEL
# ============================================================
class Member(db.Model):
    """
    Represents a registered club member.
    Members are identified by a unique last name and can hold
    any number of (non-overlapping) memberships over time.
    """
    __tablename__ = 'members'

    id = db.Column(db.Integer, primary_key=True)
    first_name = db.Column(db.String(NAME_MAX_LENGTH), nullable=False)
    last_name = db.Column(db.String(NAME_MAX_LENGTH), unique=True, nullable=False)
    birthday = db.Column(db.Date, nullable=False)

    # Deleting a member removes its memberships (and their deposits)
    memberships = db.relationship('Membership', backref='member', lazy='dynamic',
                                  cascade='all, delete-orphan',
                                  passive_deletes=True)

    def __repr__(self):
        return f'<Member {self.id} {self.first_name} {self.last_name}>'


# ============================================================
# MEMBERSHIP MODEL
# ============================================================
class Membership(db.Model):
    """
    A period during which a member belongs to the club.

    `end` is NULL while the membership is open. Cancelling sets `end`
    to the cancellation time; the row is never deleted on its own.
    """
    __tablename__ = 'memberships'

    id = db.Column(db.Integer, primary_key=True)
    member_id = db.Column(db.Integer, db.ForeignKey('members.id', ondelete='CASCADE'),
                          nullable=False, index=True)
    begin = db.Column(db.DateTime, nullable=False)
    end = db.Column(db.DateTime, nullable=True)

    deposits = db.relationship('Deposit', backref='membership', lazy='dynamic',
                               cascade='all, delete-orphan',
                               passive_deletes=True)

    @staticmethod
    def active_at(now):
        """SQL criterion: begin <= now <= end, with an open end as infinity."""
        return and_(
            Membership.begin <= now,
            or_(Membership.end.is_(None), Membership.end >= now)
        )

    @property
    def is_open(self):
        return self.end is None

    def is_active(self, now):
        return self.begin <= now and (self.end is None or now <= self.end)

    def get_total_deposited(self):
        """Sum of all deposits recorded against this membership."""
        total = db.session.query(db.func.sum(Deposit.amount)) \
            .filter_by(membership_id=self.id).scalar()
        return total or Decimal('0.00')

    def __repr__(self):
        end = 'open' if self.end is None else self.end.isoformat()
        return f'<Membership member={self.member_id} {self.begin.isoformat()}..{end}>'


# ============================================================
# DEPOSIT MODEL
# ============================================================
class Deposit(db.Model):
    """
    Money paid in by a member against its active membership.
    Deposits are immutable once recorded.
    """
    __tablename__ = 'deposits'

    id = db.Column(db.Integer, primary_key=True)
    membership_id = db.Column(db.Integer, db.ForeignKey('memberships.id', ondelete='CASCADE'),
                              nullable=False, index=True)
    amount = db.Column(db.Numeric(AMOUNT_PRECISION, AMOUNT_SCALE), nullable=False)  # Must be >= 0
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        db.CheckConstraint('amount >= 0', name='ck_deposit_amount_non_negative'),
    )

    def __repr__(self):
        return f'<Deposit membership={self.membership_id} amount={self.amount}>'


# ============================================================
# DEPOSIT STATISTICS (derived, not persisted)
# ============================================================
@dataclass(frozen=True)
class DepositStatistics:
    member: Member
    year: int
    total_amount: Decimal
