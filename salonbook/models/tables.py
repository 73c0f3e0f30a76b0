from sqlalchemy import CheckConstraint, Column, Float, ForeignKey, Integer, Table, Text, UniqueConstraint, text
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()
metadata = Base.metadata


class Tenants(Base):
    __tablename__ = 'tenants'

    slug = Column(Text, nullable=False, unique=True)
    name = Column(Text, nullable=False)
    timezone = Column(Text, nullable=False, server_default=text("'Europe/Istanbul'"))
    slot_step_minutes = Column(Integer, nullable=False, server_default=text('30'))
    min_advance_minutes = Column(Integer, nullable=False, server_default=text('0'))
    work_schedule = Column(Text)  # JSON, NULL = default schedule
    is_active = Column(Integer, nullable=False, server_default=text('1'))
    id = Column(Integer, primary_key=True)
    created_at = Column(Text, nullable=False, server_default=text('CURRENT_TIMESTAMP'))

    staff = relationship('Staff', back_populates='tenant')
    services = relationship('Services', back_populates='tenant')
    customers = relationship('Customers', back_populates='tenant')


class Staff(Base):
    __tablename__ = 'staff'

    tenant_id = Column(ForeignKey('tenants.id', ondelete='CASCADE'), nullable=False)
    display_name = Column(Text, nullable=False)
    is_active = Column(Integer, nullable=False, server_default=text('1'))
    id = Column(Integer, primary_key=True)
    work_schedule = Column(Text)  # JSON, NULL = tenant schedule

    tenant = relationship('Tenants', back_populates='staff')
    appointments = relationship('Appointments', back_populates='staff')


class Services(Base):
    __tablename__ = 'services'

    tenant_id = Column(ForeignKey('tenants.id', ondelete='CASCADE'), nullable=False)
    name = Column(Text, nullable=False)
    duration_min = Column(Integer, nullable=False)
    price = Column(Float, nullable=False, server_default=text('0'))
    is_active = Column(Integer, nullable=False, server_default=text('1'))
    id = Column(Integer, primary_key=True)
    description = Column(Text)

    tenant = relationship('Tenants', back_populates='services')
    appointments = relationship('Appointments', back_populates='service')


t_staff_services = Table(
    'staff_services', metadata,
    Column('staff_id', ForeignKey('staff.id', ondelete='CASCADE'), nullable=False),
    Column('service_id', ForeignKey('services.id', ondelete='CASCADE'), nullable=False),
    Column('is_active', Integer, nullable=False, server_default=text('1')),
    UniqueConstraint('staff_id', 'service_id')
)


class Customers(Base):
    __tablename__ = 'customers'
    __table_args__ = (
        UniqueConstraint('tenant_id', 'phone'),
    )

    tenant_id = Column(ForeignKey('tenants.id', ondelete='CASCADE'), nullable=False)
    phone = Column(Text, nullable=False)
    first_name = Column(Text, nullable=False)
    is_blacklisted = Column(Integer, nullable=False, server_default=text('0'))
    no_show_count = Column(Integer, nullable=False, server_default=text('0'))
    created_at = Column(Text, nullable=False, server_default=text('CURRENT_TIMESTAMP'))
    id = Column(Integer, primary_key=True)
    last_name = Column(Text)
    email = Column(Text)
    blacklisted_at = Column(Text)

    tenant = relationship('Tenants', back_populates='customers')
    customer_packages = relationship('CustomerPackages', back_populates='customer')
    appointments = relationship('Appointments', back_populates='customer')


class ServicePackages(Base):
    __tablename__ = 'service_packages'

    tenant_id = Column(ForeignKey('tenants.id', ondelete='CASCADE'), nullable=False)
    name = Column(Text, nullable=False)
    price = Column(Float, nullable=False, server_default=text('0'))
    is_active = Column(Integer, nullable=False, server_default=text('1'))
    id = Column(Integer, primary_key=True)

    customer_packages = relationship('CustomerPackages', back_populates='package')


class CustomerPackages(Base):
    __tablename__ = 'customer_packages'

    tenant_id = Column(ForeignKey('tenants.id', ondelete='CASCADE'), nullable=False)
    customer_id = Column(ForeignKey('customers.id', ondelete='CASCADE'), nullable=False)
    package_id = Column(ForeignKey('service_packages.id', ondelete='CASCADE'), nullable=False)
    status = Column(Text, nullable=False, server_default=text("'active'"))  # active / completed
    assigned_at = Column(Text, nullable=False, server_default=text('CURRENT_TIMESTAMP'))
    id = Column(Integer, primary_key=True)
    expires_at = Column(Text)  # YYYY-MM-DD, NULL = never

    customer = relationship('Customers', back_populates='customer_packages')
    package = relationship('ServicePackages', back_populates='customer_packages')
    usages = relationship('PackageUsages', back_populates='customer_package')


class PackageUsages(Base):
    __tablename__ = 'package_usages'
    __table_args__ = (
        CheckConstraint('remaining_quantity >= 0', name='ck_usage_remaining_non_negative'),
        CheckConstraint('remaining_quantity <= total_quantity', name='ck_usage_remaining_le_total'),
    )

    customer_package_id = Column(ForeignKey('customer_packages.id', ondelete='CASCADE'), nullable=False)
    service_id = Column(ForeignKey('services.id', ondelete='CASCADE'), nullable=False)
    total_quantity = Column(Integer, nullable=False)
    used_quantity = Column(Integer, nullable=False, server_default=text('0'))
    remaining_quantity = Column(Integer, nullable=False)
    id = Column(Integer, primary_key=True)

    customer_package = relationship('CustomerPackages', back_populates='usages')


class Appointments(Base):
    __tablename__ = 'appointments'

    tenant_id = Column(ForeignKey('tenants.id', ondelete='CASCADE'), nullable=False)
    staff_id = Column(ForeignKey('staff.id', ondelete='CASCADE'), nullable=False)
    service_id = Column(ForeignKey('services.id'), nullable=False)
    customer_id = Column(ForeignKey('customers.id', ondelete='CASCADE'), nullable=False)
    date = Column(Text, nullable=False)  # YYYY-MM-DD
    time = Column(Text, nullable=False)  # HH:MM
    duration_minutes = Column(Integer, nullable=False)
    status = Column(Text, nullable=False, server_default=text("'pending'"))
    payment_type = Column(Text, nullable=False)  # package / card / cash
    payment_status = Column(Text, nullable=False)  # package / paid / pending_payment
    created_at = Column(Text, nullable=False, server_default=text('CURRENT_TIMESTAMP'))
    id = Column(Integer, primary_key=True)
    price = Column(Float)
    customer_name = Column(Text)
    customer_phone = Column(Text)
    customer_email = Column(Text)
    contact_channel = Column(Text)
    notes = Column(Text)
    package_usage_id = Column(ForeignKey('package_usages.id', ondelete='SET NULL'))
    payment_id = Column(ForeignKey('payments.id', ondelete='SET NULL'))

    customer = relationship('Customers', back_populates='appointments')
    service = relationship('Services', back_populates='appointments')
    staff = relationship('Staff', back_populates='appointments')
    slot_claims = relationship('SlotClaims', back_populates='appointment', cascade='all, delete-orphan')


class SlotClaims(Base):
    """One row per 5-minute instant held by a non-cancelled appointment."""
    __tablename__ = 'slot_claims'
    __table_args__ = (
        UniqueConstraint('staff_id', 'date', 'minute', name='uq_slot_claim'),
    )

    appointment_id = Column(ForeignKey('appointments.id', ondelete='CASCADE'), nullable=False)
    staff_id = Column(ForeignKey('staff.id', ondelete='CASCADE'), nullable=False)
    date = Column(Text, nullable=False)
    minute = Column(Integer, nullable=False)  # minutes since midnight
    id = Column(Integer, primary_key=True)

    appointment = relationship('Appointments', back_populates='slot_claims')


class Payments(Base):
    __tablename__ = 'payments'

    tenant_id = Column(ForeignKey('tenants.id', ondelete='CASCADE'), nullable=False)
    session_id = Column(Text, nullable=False)
    merchant_oid = Column(Text, nullable=False, unique=True)
    amount = Column(Float, nullable=False)
    currency = Column(Text, nullable=False, server_default=text("'TL'"))
    status = Column(Text, nullable=False, server_default=text("'pending'"))
    created_at = Column(Text, nullable=False)  # ISO-8601 UTC
    id = Column(Integer, primary_key=True)
    checkout_token = Column(Text)
    payment_type = Column(Text)
    failed_reason = Column(Text)
    paid_at = Column(Text)
    appointment_id = Column(Integer)
