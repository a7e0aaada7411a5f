"""initial schema: businesses, appointments, billing and the payment ledger

Revision ID: 0001_initial_schema
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '0001_initial_schema'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _ts(name: str, nullable: bool = True) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade() -> None:
    op.create_table(
        'users',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('email', sa.String(255), nullable=False, unique=True),
        sa.Column('full_name', sa.String(120)),
        _ts('created_at', nullable=False),
    )

    op.create_table(
        'businesses',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('owner_id', sa.String(36), sa.ForeignKey('users.id', ondelete='SET NULL')),
        sa.Column('name', sa.String(160), nullable=False),
        sa.Column('email', sa.String(255)),
        sa.Column('timezone', sa.String(64)),
        sa.Column('working_hours', sa.JSON),
        sa.Column('auto_assign_employees', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('balance', sa.Numeric(14, 2), nullable=False, server_default='0'),
        sa.Column('currency', sa.String(3)),
        _ts('updated_at', nullable=False),
    )

    op.create_table(
        'services',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('business_id', sa.String(36), sa.ForeignKey('businesses.id', ondelete='CASCADE'), nullable=False),
        sa.Column('name', sa.String(160), nullable=False),
        sa.Column('duration_minutes', sa.Integer, nullable=False),
        sa.Column('price', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('is_active', sa.Boolean, nullable=False, server_default=sa.true()),
        sa.CheckConstraint('duration_minutes > 0', name='ck_services_duration_positive'),
        sa.CheckConstraint('price >= 0', name='ck_services_price_non_negative'),
    )
    op.create_index('ix_services_business_id', 'services', ['business_id'])

    op.create_table(
        'employees',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('business_id', sa.String(36), sa.ForeignKey('businesses.id', ondelete='CASCADE'), nullable=False),
        sa.Column('name', sa.String(120), nullable=False),
        sa.Column('is_active', sa.Boolean, nullable=False, server_default=sa.true()),
    )
    op.create_index('ix_employees_business_id', 'employees', ['business_id'])

    op.create_table(
        'appointments',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('business_id', sa.String(36), sa.ForeignKey('businesses.id', ondelete='CASCADE'), nullable=False),
        sa.Column('service_id', sa.String(36), sa.ForeignKey('services.id'), nullable=False),
        sa.Column('employee_id', sa.String(36), sa.ForeignKey('employees.id', ondelete='SET NULL')),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('users.id', ondelete='SET NULL')),
        sa.Column('client_ref', sa.String(64), nullable=False),
        sa.Column('client_name', sa.String(120)),
        sa.Column('client_email', sa.String(255)),
        sa.Column('client_whatsapp', sa.String(32)),
        _ts('start_time', nullable=False),
        _ts('end_time', nullable=False),
        sa.Column('status', sa.String(16), nullable=False, server_default='pending'),
        sa.Column('notes', sa.Text),
        _ts('created_at', nullable=False),
        _ts('updated_at', nullable=False),
        sa.CheckConstraint('end_time > start_time', name='ck_appointments_interval'),
    )
    op.create_index('ix_appointments_business_start', 'appointments', ['business_id', 'start_time'])
    op.create_index('ix_appointments_employee_id', 'appointments', ['employee_id'])

    op.create_table(
        'appointment_status_changes',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('appointment_id', sa.String(36), sa.ForeignKey('appointments.id', ondelete='CASCADE'), nullable=False),
        sa.Column('from_status', sa.String(16)),
        sa.Column('to_status', sa.String(16), nullable=False),
        sa.Column('is_override', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('actor', sa.String(120)),
        sa.Column('reason', sa.Text),
        _ts('changed_at', nullable=False),
    )
    op.create_index('ix_status_changes_appointment_id', 'appointment_status_changes', ['appointment_id'])

    op.create_table(
        'subscriptions',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('plan_name', sa.String(120), nullable=False),
        sa.Column('price', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending_payment'),
        sa.Column('is_trial', sa.Boolean, nullable=False, server_default=sa.false()),
        _ts('trial_ends_at'),
        _ts('renewal_at'),
        _ts('created_at', nullable=False),
        _ts('updated_at', nullable=False),
    )
    op.create_index('ix_subscriptions_user_created', 'subscriptions', ['user_id', 'created_at'])

    op.create_table(
        'payments',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('users.id', ondelete='SET NULL')),
        sa.Column('business_id', sa.String(36), sa.ForeignKey('businesses.id', ondelete='SET NULL')),
        sa.Column('appointment_id', sa.String(36), sa.ForeignKey('appointments.id', ondelete='SET NULL')),
        sa.Column('subscription_id', sa.String(36), sa.ForeignKey('subscriptions.id', ondelete='SET NULL')),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='confirmed'),
        sa.Column('payment_type', sa.String(20), nullable=False),
        sa.Column('method', sa.String(20), nullable=False),
        sa.Column('transaction_id', sa.String(128), nullable=False, unique=True),
        sa.Column('notes', sa.Text),
        _ts('payment_date', nullable=False),
    )

    op.create_table(
        'processed_payments',
        sa.Column('external_transaction_id', sa.String(128), primary_key=True),
        sa.Column('gateway_source', sa.String(32), nullable=False),
        sa.Column('kind', sa.String(32), nullable=False),
        sa.Column('resulting_entity_id', sa.String(36)),
        _ts('applied_at', nullable=False),
    )

    # Storage-level overlap guard: no two blocking appointments of the same
    # business (and employee lane) may share any instant.
    if op.get_bind().dialect.name == 'postgresql':
        op.execute('CREATE EXTENSION IF NOT EXISTS btree_gist')
        op.execute(
            """
            ALTER TABLE appointments
            ADD CONSTRAINT ex_appointments_no_overlap
            EXCLUDE USING gist (
                business_id WITH =,
                (coalesce(employee_id, '')) WITH =,
                tstzrange(start_time, end_time, '[)') WITH &&
            )
            WHERE (status IN ('pending', 'confirmed', 'completed'))
            """
        )


def downgrade() -> None:
    if op.get_bind().dialect.name == 'postgresql':
        op.execute('ALTER TABLE appointments DROP CONSTRAINT IF EXISTS ex_appointments_no_overlap')
    op.drop_table('processed_payments')
    op.drop_table('payments')
    op.drop_index('ix_subscriptions_user_created', table_name='subscriptions')
    op.drop_table('subscriptions')
    op.drop_index('ix_status_changes_appointment_id', table_name='appointment_status_changes')
    op.drop_table('appointment_status_changes')
    op.drop_index('ix_appointments_employee_id', table_name='appointments')
    op.drop_index('ix_appointments_business_start', table_name='appointments')
    op.drop_table('appointments')
    op.drop_index('ix_employees_business_id', table_name='employees')
    op.drop_table('employees')
    op.drop_index('ix_services_business_id', table_name='services')
    op.drop_table('services')
    op.drop_table('businesses')
    op.drop_table('users')
