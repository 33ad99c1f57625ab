"""Resolve inbound device identifiers to a (tenant, device) pair."""
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session, joinedload

from config import settings
from error_handler import DeviceNotFound
from models import Device, DeviceInventory, DeviceStatus, Tenant

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IdentityHints:
    """Identifiers supplied with a message. At least one of the first three is required."""

    device_ref: Optional[str] = None
    serial_number: Optional[str] = None
    legacy_device_id: Optional[str] = None
    tenant_hint: Optional[str] = None

    def has_identifier(self) -> bool:
        return bool(self.device_ref or self.serial_number or self.legacy_device_id)

    def describe(self) -> str:
        return self.serial_number or self.legacy_device_id or self.device_ref or "unknown"


@dataclass(frozen=True)
class ResolvedIdentity:
    """Outcome of resolution.

    ``device_id`` is None for a partial result: the physical unit is known but
    has no active tenant assignment. ``tenant_id`` may then come from the hint
    or the configured unassigned tenant, or stay None.
    """

    tenant_id: Optional[int]
    device_id: Optional[int]
    inventory_id: Optional[int]
    device_type_id: Optional[int]
    matched_by: str

    @property
    def is_partial(self) -> bool:
        return self.device_id is None or self.tenant_id is None


class IdentityResolver:
    """Maps serial numbers, legacy IDs and device references to devices.

    Resolution order, first match wins:
    explicit device reference, serial number, legacy device ID.
    """

    def __init__(self, unassigned_tenant_id: Optional[int] = None):
        self.unassigned_tenant_id = unassigned_tenant_id

    def resolve(self, db: Session, hints: IdentityHints) -> ResolvedIdentity:
        if hints.device_ref:
            device = self._find_device_by_ref(db, hints.device_ref)
            if device is not None:
                return self._from_device(db, device, hints, "device_ref")

        inventory = None
        matched_by = None
        if hints.serial_number:
            inventory = self._find_inventory(db, DeviceInventory.serial_number, hints.serial_number)
            matched_by = "serial_number"
        if inventory is None and hints.legacy_device_id:
            inventory = self._find_inventory(db, DeviceInventory.legacy_device_id, hints.legacy_device_id)
            matched_by = "legacy_device_id"

        if inventory is None:
            logger.warning(f"Unknown device identifier: {hints.describe()}")
            raise DeviceNotFound()

        device = db.query(Device).filter(
            Device.inventory_id == inventory.id,
            Device.status == DeviceStatus.ACTIVE,
        ).first()
        if device is not None:
            return self._from_device(db, device, hints, matched_by)

        tenant_id = self._tenant_from_hint(db, hints.tenant_hint)
        logger.info(
            f"Device {inventory.serial_number} has no active assignment; "
            f"recording against tenant {tenant_id}"
        )
        return ResolvedIdentity(
            tenant_id=tenant_id,
            device_id=None,
            inventory_id=inventory.id,
            device_type_id=inventory.device_type_id,
            matched_by=matched_by,
        )

    def _find_device_by_ref(self, db: Session, device_ref: str) -> Optional[Device]:
        try:
            ref = int(device_ref)
        except (TypeError, ValueError):
            return None
        return db.query(Device).options(joinedload(Device.inventory)).filter(Device.id == ref).first()

    def _find_inventory(self, db: Session, column, value: str) -> Optional[DeviceInventory]:
        return db.query(DeviceInventory).filter(column == value.strip()).first()

    def _from_device(self, db: Session, device: Device, hints: IdentityHints, matched_by: str) -> ResolvedIdentity:
        tenant_id = device.tenant_id
        if tenant_id is None:
            tenant_id = self._tenant_from_hint(db, hints.tenant_hint)
            device_id = None
        else:
            device_id = device.id
        inventory = device.inventory
        return ResolvedIdentity(
            tenant_id=tenant_id,
            device_id=device_id,
            inventory_id=device.inventory_id,
            device_type_id=inventory.device_type_id if inventory is not None else None,
            matched_by=matched_by,
        )

    def _tenant_from_hint(self, db: Session, tenant_hint: Optional[str]) -> Optional[int]:
        """Numeric hints are tenant IDs, anything else a tenant code."""
        hint = (tenant_hint or "").strip()
        if not hint:
            return self.unassigned_tenant_id

        if hint.isdigit():
            tenant = db.query(Tenant).filter(Tenant.id == int(hint)).first()
        else:
            tenant = db.query(Tenant).filter(Tenant.tenant_code == hint).first()

        if tenant is None:
            logger.debug(f"Tenant hint {hint!r} did not match a tenant")
            return self.unassigned_tenant_id
        return tenant.id


identity_resolver = IdentityResolver(unassigned_tenant_id=settings.unassigned_tenant_id)
