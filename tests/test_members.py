from datetime import date, datetime

import pytest

from cashdesk.models import Member, Membership, Deposit
from cashdesk.services import (
    DuplicateNameError, InvalidArgumentError, MemberNotFoundError
)


def test_add_member_then_lookup(ledger):
    member_id = ledger.add_member('Ada', 'Lovelace', date(1815, 12, 10))

    member = ledger.get_member(member_id)
    assert member.first_name == 'Ada'
    assert member.last_name == 'Lovelace'
    assert member.birthday == date(1815, 12, 10)


def test_add_member_assigns_distinct_ids(ledger):
    first = ledger.add_member('Ada', 'Lovelace', date(1815, 12, 10))
    second = ledger.add_member('Grace', 'Hopper', date(1906, 12, 9))

    assert first != second
    assert [m.id for m in ledger.list_members()] == [first, second]


def test_add_member_accepts_datetime_birthday(ledger):
    member_id = ledger.add_member('Alan', 'Turing', datetime(1912, 6, 23, 8, 30))
    assert ledger.get_member(member_id).birthday == date(1912, 6, 23)


@pytest.mark.parametrize('first_name, birthday', [
    ('Ada', date(1815, 12, 10)),
    ('Augusta', date(1990, 1, 1)),
])
def test_duplicate_last_name_rejected(ledger, member_id, first_name, birthday):
    with pytest.raises(DuplicateNameError):
        ledger.add_member(first_name, 'Lovelace', birthday)

    assert Member.query.count() == 1


def test_last_name_uniqueness_is_case_sensitive(ledger, member_id):
    other = ledger.add_member('Ada', 'LOVELACE', date(1815, 12, 10))
    assert other != member_id


@pytest.mark.parametrize('first_name, last_name', [
    ('', 'Lovelace'),
    (None, 'Lovelace'),
    ('Ada', ''),
    ('Ada', None),
    ('A' * 101, 'Lovelace'),
    ('Ada', 'L' * 101),
])
def test_invalid_names_rejected(ledger, first_name, last_name):
    with pytest.raises(InvalidArgumentError):
        ledger.add_member(first_name, last_name, date(1815, 12, 10))

    assert Member.query.count() == 0


def test_names_at_max_length_accepted(ledger):
    member_id = ledger.add_member('A' * 100, 'L' * 100, date(2000, 1, 1))
    assert ledger.get_member(member_id).last_name == 'L' * 100


def test_missing_birthday_rejected(ledger):
    with pytest.raises(InvalidArgumentError):
        ledger.add_member('Ada', 'Lovelace', None)


def test_get_unknown_member(ledger):
    with pytest.raises(MemberNotFoundError):
        ledger.get_member(42)


def test_delete_unknown_member(ledger):
    with pytest.raises(MemberNotFoundError):
        ledger.delete_member(42)


def test_delete_member_cascades(ledger, clock, member_id):
    ledger.join_member(member_id)
    ledger.deposit(member_id, 50)
    clock.advance(days=1)
    ledger.cancel_membership(member_id)
    clock.advance(days=1)
    ledger.join_member(member_id)
    ledger.deposit(member_id, 20)

    other = ledger.add_member('Grace', 'Hopper', date(1906, 12, 9))
    ledger.join_member(other)
    ledger.deposit(other, 5)

    ledger.delete_member(member_id)

    with pytest.raises(MemberNotFoundError):
        ledger.get_member(member_id)
    assert Membership.query.filter_by(member_id=member_id).count() == 0
    assert Deposit.query.count() == 1
    stats = ledger.get_deposit_statistics()
    assert [s.member.id for s in stats] == [other]


def test_deleted_last_name_can_be_reused(ledger, member_id):
    ledger.delete_member(member_id)
    assert ledger.add_member('Ada', 'Lovelace', date(1815, 12, 10))
