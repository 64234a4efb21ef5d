"""Add return_requests, return_items and return_status_history tables

Revision ID: 20261018_add_return_requests
Revises:
Create Date: 2026-10-18

orders and order_items are owned by the commerce platform and must already exist.
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID, JSONB


# revision identifiers, used by Alembic.
revision = '20261018_add_return_requests'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Create return_requests table
    op.create_table(
        'return_requests',
        sa.Column('id', UUID(as_uuid=True), primary_key=True),
        sa.Column('return_id', sa.String(30), unique=True, nullable=False, index=True,
                  comment='Customer-facing return number'),
        sa.Column('order_id', UUID(as_uuid=True), sa.ForeignKey('orders.id', ondelete='RESTRICT'),
                  nullable=False, index=True),
        sa.Column('customer_id', UUID(as_uuid=True), nullable=False, index=True),
        sa.Column('status', sa.String(30), nullable=False, server_default='requested', index=True,
                  comment='requested, approved, pickup_assigned, pickup_rejected, picked_up, received, partially_refunded, refunded, rejected'),
        sa.Column('version', sa.Integer, nullable=False, server_default='1',
                  comment='Optimistic concurrency counter'),

        # Pickup Agent
        sa.Column('assigned_agent_id', sa.String(64), nullable=True, index=True),
        sa.Column('assigned_pickup_agent', JSONB, nullable=True,
                  comment='{agent_id, name, phone, assigned_at}'),

        # Refund
        sa.Column('refund_preference', JSONB, nullable=True, comment='{method: upi|bank, details}'),
        sa.Column('refund_method', sa.String(30), nullable=True),
        sa.Column('refunded_amount', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('refunded_at', sa.DateTime(timezone=True), nullable=True),

        # Pickup OTP
        sa.Column('pickup_otp_hash', sa.String(128), nullable=True),
        sa.Column('pickup_otp_issued_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('pickup_otp_expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('pickup_otp_attempts_remaining', sa.Integer, nullable=False, server_default='0'),
        sa.Column('pickup_otp_resend_available_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('pickup_otp_verified_at', sa.DateTime(timezone=True), nullable=True),

        # Timestamps
        sa.Column('requested_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    # Create return_items table
    op.create_table(
        'return_items',
        sa.Column('id', UUID(as_uuid=True), primary_key=True),
        sa.Column('return_request_id', UUID(as_uuid=True), sa.ForeignKey('return_requests.id'),
                  nullable=False, index=True),
        sa.Column('line_number', sa.Integer, nullable=False, server_default='1'),
        sa.Column('order_item_id', UUID(as_uuid=True), sa.ForeignKey('order_items.id'), nullable=True, index=True),
        sa.Column('product_id', UUID(as_uuid=True), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('price', sa.Numeric(12, 2), nullable=False, comment='Unit price as originally sold'),
        sa.Column('quantity', sa.Integer, nullable=False),
        sa.Column('price_includes_tax', sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column('tax_name', sa.String(50), nullable=True),
        sa.Column('tax_percentage', sa.Numeric(12, 2), nullable=True),
        sa.Column('return_reason', sa.String(100), nullable=False,
                  comment='DAMAGED, DEFECTIVE, WRONG_ITEM, NOT_AS_DESCRIBED, CHANGED_MIND, SIZE_FIT_ISSUE, QUALITY_ISSUE, OTHER'),
        sa.Column('return_reason_details', sa.Text, nullable=True),
        sa.Column('return_status', sa.String(20), nullable=False, server_default='pending',
                  comment='pending, refunded'),
        sa.Column('refund_amount', sa.Numeric(12, 2), nullable=True, comment='Set once when the line is refunded'),
        sa.Column('refunded_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    # Create return_status_history table (append-only)
    op.create_table(
        'return_status_history',
        sa.Column('id', UUID(as_uuid=True), primary_key=True),
        sa.Column('return_request_id', UUID(as_uuid=True), sa.ForeignKey('return_requests.id'),
                  nullable=False, index=True),
        sa.Column('sequence', sa.Integer, nullable=False),
        sa.Column('from_status', sa.String(30), nullable=True),
        sa.Column('status', sa.String(30), nullable=False),
        sa.Column('note', sa.Text, nullable=True),
        sa.Column('actor_id', sa.String(64), nullable=True, comment='User who made the change'),
        sa.Column('actor_role', sa.String(30), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint('return_request_id', 'sequence', name='uq_return_status_history_sequence'),
    )


def downgrade() -> None:
    op.drop_table('return_status_history')
    op.drop_table('return_items')
    op.drop_table('return_requests')
