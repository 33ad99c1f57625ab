import pytest

from database import SessionLocal
from error_handler import DeviceNotFound
from identity_resolver import IdentityHints, IdentityResolver


def test_resolves_serial_number(seed):
    with SessionLocal() as db:
        identity = IdentityResolver().resolve(db, IdentityHints(serial_number="WAT-001"))

    assert identity.device_id == seed.device_id
    assert identity.tenant_id == seed.tenant_id
    assert identity.device_type_id == seed.device_type_id
    assert identity.matched_by == "serial_number"
    assert not identity.is_partial


def test_resolves_legacy_device_id(seed):
    with SessionLocal() as db:
        identity = IdentityResolver().resolve(db, IdentityHints(legacy_device_id="1001"))

    assert identity.device_id == seed.device_id
    assert identity.matched_by == "legacy_device_id"


def test_device_reference_wins(seed):
    with SessionLocal() as db:
        identity = IdentityResolver().resolve(
            db, IdentityHints(device_ref=str(seed.device_id), serial_number="WAT-002")
        )

    assert identity.device_id == seed.device_id
    assert identity.matched_by == "device_ref"


def test_non_numeric_device_reference_falls_through(seed):
    with SessionLocal() as db:
        identity = IdentityResolver().resolve(db, IdentityHints(device_ref="tank-a", serial_number="WAT-001"))

    assert identity.matched_by == "serial_number"


def test_unknown_identifier_raises(seed):
    with SessionLocal() as db, pytest.raises(DeviceNotFound):
        IdentityResolver().resolve(db, IdentityHints(serial_number="NOPE-999"))


def test_unassigned_unit_is_partial(seed):
    with SessionLocal() as db:
        identity = IdentityResolver().resolve(db, IdentityHints(serial_number="WAT-002"))

    assert identity.is_partial
    assert identity.device_id is None
    assert identity.tenant_id is None
    assert identity.inventory_id == seed.spare_inventory_id


def test_unassigned_unit_uses_tenant_hint(seed):
    with SessionLocal() as db:
        by_code = IdentityResolver().resolve(db, IdentityHints(serial_number="WAT-002", tenant_hint="other"))
        by_id = IdentityResolver().resolve(
            db, IdentityHints(serial_number="WAT-002", tenant_hint=str(seed.tenant_id))
        )

    assert by_code.tenant_id == seed.other_tenant_id
    assert by_id.tenant_id == seed.tenant_id
    assert by_code.is_partial


def test_unassigned_unit_falls_back_to_configured_tenant(seed):
    resolver = IdentityResolver(unassigned_tenant_id=seed.other_tenant_id)

    with SessionLocal() as db:
        identity = resolver.resolve(db, IdentityHints(serial_number="WAT-002", tenant_hint="missing"))

    assert identity.tenant_id == seed.other_tenant_id
    assert identity.device_id is None
