"""initial workflow schema

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19

Creates the quote workflow, RFQ negotiation and post-booking tables.
Status columns are plain VARCHAR holding the lowercase enum values.
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '001_initial'
down_revision = None
branch_labels = None
depends_on = None


def _status(default: str):
    return sa.Column('status', sa.String(40), nullable=False, server_default=default)


def upgrade() -> None:
    # Users
    op.create_table('users',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('email', sa.String(255), unique=True, nullable=False, index=True),
        sa.Column('full_name', sa.String(255)),
        sa.Column('company_name', sa.String(255)),
        sa.Column('role', sa.String(40), nullable=False, server_default='customer'),
        sa.Column('is_active', sa.Boolean(), server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # Warehouses
    op.create_table('warehouses',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('owner_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=True, index=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('location', sa.String(255), nullable=False),
        sa.Column('city', sa.String(100)),
        sa.Column('state', sa.String(100)),
        sa.Column('storage_type', sa.String(100)),
        sa.Column('total_space', sa.Float()),
        sa.Column('available_space', sa.Float()),
        sa.Column('price_per_sq_ft', sa.Float()),
        sa.Column('is_active', sa.Boolean(), server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # Quotes
    op.create_table('quotes',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('customer_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False, index=True),
        sa.Column('storage_type', sa.String(100), nullable=False),
        sa.Column('required_space', sa.Float(), nullable=False),
        sa.Column('preferred_location', sa.String(255), nullable=False),
        sa.Column('duration', sa.String(100), nullable=False),
        sa.Column('special_requirements', sa.Text()),
        sa.Column('status', sa.String(40), nullable=False, server_default='pending', index=True),
        sa.Column('assigned_to', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('warehouse_id', sa.Integer(), sa.ForeignKey('warehouses.id'), nullable=True),
        sa.Column('final_price', sa.Float()),
        sa.Column('current_workflow_step', sa.String(8), nullable=False, index=True),
        sa.Column('flow_type', sa.String(50)),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True)),
    )

    # Workflow history (append-only)
    op.create_table('workflow_events',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('quote_id', sa.Integer(), sa.ForeignKey('quotes.id'), nullable=False),
        sa.Column('sequence', sa.Integer(), nullable=False),
        sa.Column('from_step', sa.String(8)),
        sa.Column('to_step', sa.String(8), nullable=False),
        sa.Column('action', sa.String(50), nullable=False, server_default='transition'),
        sa.Column('actor_role', sa.String(40), nullable=False),
        sa.Column('actor_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('details', sa.JSON()),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint('quote_id', 'sequence', name='uq_workflow_event_quote_sequence'),
    )

    # RFQs
    op.create_table('rfqs',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('quote_id', sa.Integer(), sa.ForeignKey('quotes.id'), nullable=False, index=True),
        sa.Column('warehouse_id', sa.Integer(), sa.ForeignKey('warehouses.id'), nullable=False, index=True),
        sa.Column('created_by', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        _status('sent'),
        sa.Column('valid_until', sa.DateTime(timezone=True), nullable=False),
        sa.Column('notes', sa.Text()),
        sa.Column('responded_at', sa.DateTime(timezone=True)),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index(
        'uq_rfq_active_quote_warehouse', 'rfqs', ['quote_id', 'warehouse_id'],
        unique=True,
        postgresql_where=sa.text("status IN ('sent', 'responded')"),
        sqlite_where=sa.text("status IN ('sent', 'responded')"),
    )

    # Rates
    op.create_table('rates',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('rfq_id', sa.Integer(), sa.ForeignKey('rfqs.id'), nullable=False, index=True),
        sa.Column('warehouse_id', sa.Integer(), sa.ForeignKey('warehouses.id'), nullable=False),
        sa.Column('submitted_by', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('base_rate', sa.Float()),
        sa.Column('surcharges', sa.Float(), server_default='0'),
        sa.Column('total_rate', sa.Float(), nullable=False),
        sa.Column('validity_days', sa.Integer()),
        sa.Column('capacity_confirmed', sa.Boolean(), server_default=sa.false()),
        sa.Column('turnaround_time', sa.String(100)),
        sa.Column('terms', sa.Text()),
        sa.Column('notes', sa.Text()),
        _status('pending'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint('rfq_id', name='uq_rate_rfq'),
    )

    # Bookings
    op.create_table('bookings',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('quote_id', sa.Integer(), sa.ForeignKey('quotes.id'), nullable=False, unique=True),
        sa.Column('customer_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False, index=True),
        sa.Column('warehouse_id', sa.Integer(), sa.ForeignKey('warehouses.id'), nullable=False, index=True),
        _status('pending'),
        sa.Column('start_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('end_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('total_amount', sa.Float(), nullable=False),
        sa.Column('approved_by', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True)),
    )

    # Cargo dispatch details
    op.create_table('cargo_dispatch_details',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('booking_id', sa.Integer(), sa.ForeignKey('bookings.id'), nullable=False, index=True),
        sa.Column('submitted_by', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('item_description', sa.Text(), nullable=False),
        sa.Column('quantity', sa.Float(), nullable=False),
        sa.Column('weight', sa.Float()),
        sa.Column('dimensions', sa.String(255)),
        sa.Column('special_handling', sa.Text()),
        sa.Column('form_data', sa.JSON()),
        _status('submitted'),
        sa.Column('rejection_reason', sa.Text()),
        sa.Column('approved_by', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('approved_at', sa.DateTime(timezone=True)),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True)),
    )

    # Carting details
    op.create_table('carting_details',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('booking_id', sa.Integer(), sa.ForeignKey('bookings.id'), nullable=False, index=True),
        sa.Column('warehouse_id', sa.Integer(), sa.ForeignKey('warehouses.id'), nullable=False),
        sa.Column('submitted_by', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('item_description', sa.Text(), nullable=False),
        sa.Column('quantity', sa.Float(), nullable=False),
        sa.Column('weight', sa.Float()),
        sa.Column('dimensions', sa.String(255)),
        sa.Column('special_handling', sa.Text()),
        _status('submitted'),
        sa.Column('rejection_reason', sa.Text()),
        sa.Column('reviewed_by', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('reviewed_at', sa.DateTime(timezone=True)),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    # Delivery requests
    op.create_table('delivery_requests',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('booking_id', sa.Integer(), sa.ForeignKey('bookings.id'), nullable=False, unique=True),
        sa.Column('customer_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('delivery_address', sa.Text(), nullable=False),
        sa.Column('preferred_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('urgency', sa.String(40), nullable=False, server_default='standard'),
        sa.Column('transporter_contact_person', sa.String(255)),
        sa.Column('transporter_contact_details', sa.String(255)),
        sa.Column('billing_party', sa.String(255)),
        sa.Column('remarks', sa.Text()),
        sa.Column('available_quantity', sa.Float()),
        sa.Column('required_quantity', sa.Float()),
        _status('requested'),
        sa.Column('tracking_number', sa.String(50), unique=True),
        sa.Column('assigned_driver', sa.String(255)),
        sa.Column('rejection_reason', sa.Text()),
        sa.Column('reviewed_by', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True)),
    )

    # Delivery advices
    op.create_table('delivery_advices',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('delivery_request_id', sa.Integer(), sa.ForeignKey('delivery_requests.id'), nullable=False, unique=True),
        sa.Column('booking_id', sa.Integer(), sa.ForeignKey('bookings.id'), nullable=False, unique=True),
        sa.Column('customer_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('booking_number', sa.String(50)),
        sa.Column('delivery_address', sa.Text(), nullable=False),
        sa.Column('preferred_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('urgency', sa.String(40), nullable=False, server_default='standard'),
        sa.Column('instructions', sa.Text()),
        _status('created'),
        sa.Column('created_by', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    # Delivery orders
    op.create_table('delivery_orders',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('delivery_advice_id', sa.Integer(), sa.ForeignKey('delivery_advices.id'), nullable=False, unique=True),
        sa.Column('booking_id', sa.Integer(), sa.ForeignKey('bookings.id'), nullable=False, index=True),
        sa.Column('customer_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('warehouse_id', sa.Integer(), sa.ForeignKey('warehouses.id'), nullable=False),
        sa.Column('order_number', sa.String(50), unique=True, nullable=False),
        _status('created'),
        sa.Column('executed_at', sa.DateTime(timezone=True)),
        sa.Column('created_by', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    # Delivery reports
    op.create_table('delivery_reports',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('delivery_order_id', sa.Integer(), sa.ForeignKey('delivery_orders.id'), nullable=False, unique=True),
        sa.Column('booking_id', sa.Integer(), sa.ForeignKey('bookings.id'), nullable=False, index=True),
        sa.Column('customer_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('warehouse_id', sa.Integer(), sa.ForeignKey('warehouses.id'), nullable=False),
        sa.Column('report_number', sa.String(50), unique=True, nullable=False),
        sa.Column('delivered_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('proof_of_delivery', sa.Text()),
        sa.Column('goods_receipt_note', sa.Text()),
        sa.Column('quantities', sa.JSON()),
        sa.Column('exceptions', sa.Text()),
        _status('created'),
        sa.Column('created_by', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    # Invoices
    op.create_table('invoices',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('booking_id', sa.Integer(), sa.ForeignKey('bookings.id'), nullable=False, index=True),
        sa.Column('customer_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('invoice_number', sa.String(50), unique=True, nullable=False),
        sa.Column('amount', sa.Float(), nullable=False),
        _status('draft'),
        sa.Column('due_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('payment_method', sa.String(50)),
        sa.Column('transaction_id', sa.String(255)),
        sa.Column('amount_paid', sa.Float()),
        sa.Column('paid_at', sa.DateTime(timezone=True)),
        sa.Column('rejection_reason', sa.Text()),
        sa.Column('reviewed_by', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True)),
    )
    op.create_index(
        'uq_invoice_active_booking', 'invoices', ['booking_id'],
        unique=True,
        postgresql_where=sa.text("status <> 'cancelled'"),
        sqlite_where=sa.text("status <> 'cancelled'"),
    )


def downgrade() -> None:
    op.drop_index('uq_invoice_active_booking', table_name='invoices')
    op.drop_table('invoices')
    op.drop_table('delivery_reports')
    op.drop_table('delivery_orders')
    op.drop_table('delivery_advices')
    op.drop_table('delivery_requests')
    op.drop_table('carting_details')
    op.drop_table('cargo_dispatch_details')
    op.drop_table('bookings')
    op.drop_table('rates')
    op.drop_index('uq_rfq_active_quote_warehouse', table_name='rfqs')
    op.drop_table('rfqs')
    op.drop_table('workflow_events')
    op.drop_table('quotes')
    op.drop_table('warehouses')
    op.drop_table('users')
