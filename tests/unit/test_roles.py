import pytest

from evently.domain.auth import ROLE_CAPABILITIES, Capability, Principal, Role
from evently.domain.exceptions import ForbiddenError


def test_every_role_has_a_capability_set():
    assert set(ROLE_CAPABILITIES) == set(Role)


def test_admin_holds_every_capability():
    assert ROLE_CAPABILITIES[Role.ADMIN] == frozenset(Capability)


def test_customers_cannot_settle_on_their_own():
    for role in (Role.USER, Role.ORGANIZER):
        capabilities = ROLE_CAPABILITIES[role]
        assert Capability.CREATE_BOOKING in capabilities
        assert Capability.CONFIRM_BOOKING not in capabilities
        assert Capability.FAIL_PAYMENT not in capabilities
        assert Capability.REFUND_PAYMENT not in capabilities
        assert Capability.ACT_FOR_ANY_USER not in capabilities


def test_only_organizers_and_admins_see_event_bookings():
    assert Capability.VIEW_EVENT_BOOKINGS in ROLE_CAPABILITIES[Role.ORGANIZER]
    assert Capability.VIEW_EVENT_BOOKINGS in ROLE_CAPABILITIES[Role.ADMIN]
    assert Capability.VIEW_EVENT_BOOKINGS not in ROLE_CAPABILITIES[Role.USER]
    assert Capability.VIEW_EVENT_BOOKINGS not in ROLE_CAPABILITIES[Role.SERVICE]


def test_service_role_drives_transitions():
    capabilities = ROLE_CAPABILITIES[Role.SERVICE]
    assert Capability.CONFIRM_BOOKING in capabilities
    assert Capability.FAIL_PAYMENT in capabilities
    assert Capability.VIEW_OUTBOX not in capabilities


def test_parse_role():
    assert Role.parse(" organizer ") is Role.ORGANIZER
    with pytest.raises(ValueError):
        Role.parse("root")


def test_principal_require():
    principal = Principal(user_id="u1", role=Role.USER)

    principal.require(Capability.VIEW_BOOKING)
    with pytest.raises(ForbiddenError):
        principal.require(Capability.REFUND_PAYMENT)


def test_principal_require_owner():
    user = Principal(user_id="u1", role=Role.USER)
    admin = Principal(user_id="root", role=Role.ADMIN)

    user.require_owner("u1")
    admin.require_owner("u1")
    with pytest.raises(ForbiddenError):
        user.require_owner("u2")
