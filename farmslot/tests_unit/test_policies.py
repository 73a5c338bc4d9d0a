"""
Tests for booking authorization policies and quantity parsing.

Pure functions: no database, no HTTP.
"""
import pytest
from decimal import Decimal

from farmslot.app.core.exceptions import ValidationError
from farmslot.app.services.policies import (
    Relationship,
    can_cancel,
    can_change_quantity,
    can_modify,
    can_read,
    can_set_status,
    is_valid_transition,
)
from farmslot.app.services.reservations import parse_quantity

ADMIN, CLIENT, PRODUCER = "ADMIN", "CLIENT", "PRODUCER"


# --- can_read ---


def test_can_read():
    assert can_read(ADMIN, Relationship.NONE) is True
    assert can_read(CLIENT, Relationship.OWNER) is True
    assert can_read(PRODUCER, Relationship.PRODUCER) is True
    assert can_read(CLIENT, Relationship.NONE) is False
    assert can_read(PRODUCER, Relationship.NONE) is False


# --- can_modify ---


@pytest.mark.parametrize("status,expected", [
    ("TEMPORARY", True),
    ("PENDING", True),
    ("CONFIRMED", False),
    ("CANCELLED", False),
])
def test_owner_can_modify_until_confirmed(status, expected):
    assert can_modify(CLIENT, Relationship.OWNER, status) is expected


def test_admin_can_modify_anything_live():
    assert can_modify(ADMIN, Relationship.NONE, "CONFIRMED") is True
    assert can_modify(ADMIN, Relationship.NONE, "CANCELLED") is False


def test_stranger_cannot_modify():
    assert can_modify(CLIENT, Relationship.NONE, "TEMPORARY") is False


# --- can_change_quantity ---


def test_producer_changes_status_only():
    """Producers move bookings through their lifecycle but never resize them."""
    assert can_change_quantity(PRODUCER, Relationship.PRODUCER) is False
    assert can_change_quantity(CLIENT, Relationship.OWNER) is True
    assert can_change_quantity(ADMIN, Relationship.NONE) is True


# --- transitions ---


@pytest.mark.parametrize("current,target,expected", [
    ("TEMPORARY", "PENDING", True),
    ("TEMPORARY", "CONFIRMED", True),
    ("TEMPORARY", "CANCELLED", True),
    ("PENDING", "CONFIRMED", True),
    ("PENDING", "TEMPORARY", False),
    ("CONFIRMED", "CANCELLED", True),
    ("CONFIRMED", "PENDING", False),
    ("CANCELLED", "TEMPORARY", False),
    ("CANCELLED", "CONFIRMED", False),
])
def test_is_valid_transition(current, target, expected):
    assert is_valid_transition(current, target) is expected


def test_can_set_status():
    assert can_set_status(CLIENT, Relationship.OWNER, "TEMPORARY", "PENDING") is False
    assert can_set_status(CLIENT, Relationship.OWNER, "PENDING", "CANCELLED") is True
    assert can_set_status(CLIENT, Relationship.OWNER, "TEMPORARY", "CONFIRMED") is False
    assert can_set_status(PRODUCER, Relationship.PRODUCER, "PENDING", "CONFIRMED") is True
    assert can_set_status(PRODUCER, Relationship.PRODUCER, "CONFIRMED", "CANCELLED") is False
    assert can_set_status(ADMIN, Relationship.NONE, "CONFIRMED", "CANCELLED") is True
    assert can_set_status(CLIENT, Relationship.NONE, "TEMPORARY", "PENDING") is False


def test_confirmed_cancel_is_admin_only():
    assert can_cancel(CLIENT, Relationship.OWNER, "CONFIRMED") is False
    assert can_cancel(PRODUCER, Relationship.PRODUCER, "CONFIRMED") is False
    assert can_cancel(ADMIN, Relationship.NONE, "CONFIRMED") is True
    assert can_cancel(CLIENT, Relationship.OWNER, "PENDING") is True
    assert can_cancel(CLIENT, Relationship.NONE, "TEMPORARY") is False


# --- parse_quantity ---


@pytest.mark.parametrize("value,expected", [
    (1, Decimal("1.000")),
    ("2.5", Decimal("2.500")),
    (Decimal("0.001"), Decimal("0.001")),
    ("1000", Decimal("1000.000")),
])
def test_parse_quantity_valid(value, expected):
    assert parse_quantity(value, Decimal("1000")) == expected


@pytest.mark.parametrize("value", [0, -3, "0.0001", "x", "Infinity", None, "1000.001"])
def test_parse_quantity_invalid(value):
    with pytest.raises(ValidationError):
        parse_quantity(value, Decimal("1000"))
