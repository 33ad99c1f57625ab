"""Database initialization script to create sample data."""
from database import SessionLocal, engine
from models import (
    AlertRule, AlertSeverity, Base, Device, DeviceInventory, DeviceStatus, DeviceType,
    RuleOperator, Tenant
)

# Create tables
Base.metadata.create_all(bind=engine)

db = SessionLocal()

try:
    tenant = db.query(Tenant).filter(Tenant.tenant_code == "demo").first()
    if not tenant:
        tenant = Tenant(
            name="Demo Water Utility",
            tenant_code="demo",
            email="operations@demo-utility.local",
            phone="+962790000000",
            notification_channels=["email"],
        )
        db.add(tenant)
        db.commit()
        print(f"Created tenant: {tenant.name} ({tenant.tenant_code})")

    device_types = [
        {"name": "Water Level Monitor", "type_code": "WAT", "communication_protocol": "http", "manufacturer": "Generic"},
        {"name": "SMS Tank Sensor", "type_code": "SMS-TANK", "communication_protocol": "sms", "manufacturer": "Generic"},
        {"name": "MQTT Valve Controller", "type_code": "VALVE", "communication_protocol": "mqtt", "manufacturer": "Generic"},
    ]
    types_by_code = {}
    for type_data in device_types:
        device_type = db.query(DeviceType).filter(DeviceType.type_code == type_data["type_code"]).first()
        if not device_type:
            device_type = DeviceType(**type_data)
            db.add(device_type)
            db.commit()
            print(f"Created device type: {device_type.name}")
        types_by_code[device_type.type_code] = device_type

    sample_devices = [
        {"serial_number": "WAT-001", "legacy_device_id": "1001", "type_code": "WAT", "nickname": "Reservoir Tank A"},
        {"serial_number": "WAT-002", "legacy_device_id": "1002", "type_code": "WAT", "nickname": None},
        {"serial_number": "TANK-SMS-001", "legacy_device_id": None, "type_code": "SMS-TANK", "nickname": "Hilltop Tank"},
        {"serial_number": "VALVE-001", "legacy_device_id": None, "type_code": "VALVE", "nickname": "Main Valve"},
    ]
    for device_data in sample_devices:
        inventory = db.query(DeviceInventory).filter(
            DeviceInventory.serial_number == device_data["serial_number"]
        ).first()
        if inventory:
            continue
        inventory = DeviceInventory(
            serial_number=device_data["serial_number"],
            legacy_device_id=device_data["legacy_device_id"],
            device_type_id=types_by_code[device_data["type_code"]].id,
        )
        db.add(inventory)
        db.commit()

        # WAT-002 stays unassigned to exercise assignment-pending ingestion
        if device_data["nickname"]:
            device = Device(
                tenant_id=tenant.id,
                inventory_id=inventory.id,
                nickname=device_data["nickname"],
                status=DeviceStatus.ACTIVE,
            )
            db.add(device)
            db.commit()
            print(f"Created device: {inventory.serial_number} (device id {device.id})")
        else:
            print(f"Created unassigned inventory unit: {inventory.serial_number}")

    water_type = types_by_code["WAT"]
    rule = db.query(AlertRule).filter(
        AlertRule.device_type_id == water_type.id,
        AlertRule.variable_code == "W",
        AlertRule.tenant_id.is_(None),
    ).first()
    if not rule:
        rule = AlertRule(
            tenant_id=None,
            device_type_id=water_type.id,
            variable_code="W",
            rule_name="Low water level",
            operator=RuleOperator.LTE,
            threshold1=20,
            severity=AlertSeverity.WARNING,
            message_template="Water level dropped to {value}%",
        )
        db.add(rule)
        db.commit()
        print(f"Created alert rule: {rule.rule_name} (W <= 20)")

    print("Database initialization complete!")

except Exception as e:
    print(f"Error initializing database: {e}")
    db.rollback()
finally:
    db.close()
