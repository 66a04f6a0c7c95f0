"""create dealerbooks tables

Revision ID: 4f1c2a9d7e30
Revises:
Create Date: 2026-10-19 09:12:41.508213

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '4f1c2a9d7e30'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table('organizations',
    sa.Column('id', sa.String(), nullable=False),
    sa.Column('name', sa.String(), nullable=False),
    sa.Column('created_at', sa.DateTime(), nullable=True),
    sa.PrimaryKeyConstraint('id')
    )
    op.create_table('fortnox_corrections',
    sa.Column('id', sa.Integer(), nullable=False),
    sa.Column('user_id', sa.String(), nullable=False),
    sa.Column('original_series', sa.String(), nullable=False),
    sa.Column('original_number', sa.String(), nullable=False),
    sa.Column('correction_series', sa.String(), nullable=False),
    sa.Column('correction_number', sa.String(), nullable=False),
    sa.Column('correction_date', sa.Date(), nullable=False),
    sa.Column('created_at', sa.DateTime(), nullable=True),
    sa.PrimaryKeyConstraint('id')
    )
    with op.batch_alter_table('fortnox_corrections', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_fortnox_corrections_user_id'), ['user_id'], unique=False)

    op.create_table('fortnox_errors_log',
    sa.Column('id', sa.Integer(), nullable=False),
    sa.Column('user_id', sa.String(), nullable=False),
    sa.Column('type', sa.String(), nullable=False),
    sa.Column('message', sa.Text(), nullable=False),
    sa.Column('context', sa.JSON(), nullable=True),
    sa.Column('created_at', sa.DateTime(), nullable=True),
    sa.PrimaryKeyConstraint('id')
    )
    op.create_table('profiles',
    sa.Column('user_id', sa.String(), nullable=False),
    sa.Column('organization_id', sa.String(), nullable=False),
    sa.Column('email', sa.String(), nullable=False),
    sa.Column('full_name', sa.String(), nullable=True),
    sa.Column('role', sa.String(), nullable=True),
    sa.Column('api_token_hash', sa.String(), nullable=True),
    sa.Column('is_active', sa.Boolean(), nullable=True),
    sa.Column('created_at', sa.DateTime(), nullable=True),
    sa.ForeignKeyConstraint(['organization_id'], ['organizations.id'], ),
    sa.PrimaryKeyConstraint('user_id'),
    sa.UniqueConstraint('email')
    )
    with op.batch_alter_table('profiles', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_profiles_api_token_hash'), ['api_token_hash'], unique=True)

    op.create_table('fortnox_integrations',
    sa.Column('id', sa.String(), nullable=False),
    sa.Column('user_id', sa.String(), nullable=False),
    sa.Column('access_token', sa.Text(), nullable=True),
    sa.Column('refresh_token', sa.Text(), nullable=True),
    sa.Column('token_expires_at', sa.DateTime(), nullable=True),
    sa.Column('company_name', sa.String(), nullable=True),
    sa.Column('oauth_state', sa.String(), nullable=True),
    sa.Column('is_active', sa.Boolean(), nullable=True),
    sa.Column('created_at', sa.DateTime(), nullable=True),
    sa.Column('updated_at', sa.DateTime(), nullable=True),
    sa.ForeignKeyConstraint(['user_id'], ['profiles.user_id'], ),
    sa.PrimaryKeyConstraint('id')
    )
    with op.batch_alter_table('fortnox_integrations', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_fortnox_integrations_user_id'), ['user_id'], unique=False)

    op.create_table('inventory_items',
    sa.Column('id', sa.String(), nullable=False),
    sa.Column('user_id', sa.String(), nullable=False),
    sa.Column('organization_id', sa.String(), nullable=False),
    sa.Column('registration_number', sa.String(), nullable=False),
    sa.Column('chassis_number', sa.String(), nullable=True),
    sa.Column('brand', sa.String(), nullable=False),
    sa.Column('model', sa.String(), nullable=True),
    sa.Column('year_model', sa.Integer(), nullable=True),
    sa.Column('mileage', sa.Integer(), nullable=True),
    sa.Column('first_registration_date', sa.Date(), nullable=True),
    sa.Column('purchase_date', sa.Date(), nullable=False),
    sa.Column('purchase_price', sa.Float(), nullable=False),
    sa.Column('purchase_channel', sa.String(), nullable=True),
    sa.Column('seller', sa.String(), nullable=True),
    sa.Column('purchaser', sa.String(), nullable=True),
    sa.Column('vat_type', sa.String(), nullable=True),
    sa.Column('down_payment', sa.Float(), nullable=True),
    sa.Column('expected_selling_price', sa.Float(), nullable=True),
    sa.Column('selling_price', sa.Float(), nullable=True),
    sa.Column('selling_date', sa.Date(), nullable=True),
    sa.Column('sales_channel', sa.String(), nullable=True),
    sa.Column('status', sa.String(), nullable=True),
    sa.Column('fortnox_sync_status', sa.String(), nullable=True),
    sa.Column('fortnox_voucher_series', sa.String(), nullable=True),
    sa.Column('fortnox_verification_number', sa.String(), nullable=True),
    sa.Column('fortnox_synced_at', sa.DateTime(), nullable=True),
    sa.Column('purchase_documentation', sa.String(), nullable=True),
    sa.Column('comment', sa.Text(), nullable=True),
    sa.Column('created_at', sa.DateTime(), nullable=True),
    sa.Column('updated_at', sa.DateTime(), nullable=True),
    sa.ForeignKeyConstraint(['organization_id'], ['organizations.id'], ),
    sa.ForeignKeyConstraint(['user_id'], ['profiles.user_id'], ),
    sa.PrimaryKeyConstraint('id')
    )
    with op.batch_alter_table('inventory_items', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_inventory_items_registration_number'), ['registration_number'], unique=False)
        batch_op.create_index(batch_op.f('ix_inventory_items_user_id'), ['user_id'], unique=False)

    op.create_table('fortnox_sync_log',
    sa.Column('id', sa.Integer(), nullable=False),
    sa.Column('inventory_item_id', sa.String(), nullable=False),
    sa.Column('user_id', sa.String(), nullable=False),
    sa.Column('sync_type', sa.String(), nullable=True),
    sa.Column('sync_status', sa.String(), nullable=True),
    sa.Column('sync_data', sa.JSON(), nullable=True),
    sa.Column('error_message', sa.Text(), nullable=True),
    sa.Column('fortnox_verification_number', sa.String(), nullable=True),
    sa.Column('created_at', sa.DateTime(), nullable=True),
    sa.Column('updated_at', sa.DateTime(), nullable=True),
    sa.ForeignKeyConstraint(['inventory_item_id'], ['inventory_items.id'], ),
    sa.PrimaryKeyConstraint('id')
    )
    with op.batch_alter_table('fortnox_sync_log', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_fortnox_sync_log_inventory_item_id'), ['inventory_item_id'], unique=False)


def downgrade() -> None:
    """Downgrade schema."""
    with op.batch_alter_table('fortnox_sync_log', schema=None) as batch_op:
        batch_op.drop_index(batch_op.f('ix_fortnox_sync_log_inventory_item_id'))
    op.drop_table('fortnox_sync_log')

    with op.batch_alter_table('inventory_items', schema=None) as batch_op:
        batch_op.drop_index(batch_op.f('ix_inventory_items_user_id'))
        batch_op.drop_index(batch_op.f('ix_inventory_items_registration_number'))
    op.drop_table('inventory_items')

    with op.batch_alter_table('fortnox_integrations', schema=None) as batch_op:
        batch_op.drop_index(batch_op.f('ix_fortnox_integrations_user_id'))
    op.drop_table('fortnox_integrations')

    with op.batch_alter_table('profiles', schema=None) as batch_op:
        batch_op.drop_index(batch_op.f('ix_profiles_api_token_hash'))
    op.drop_table('profiles')

    op.drop_table('fortnox_errors_log')

    with op.batch_alter_table('fortnox_corrections', schema=None) as batch_op:
        batch_op.drop_index(batch_op.f('ix_fortnox_corrections_user_id'))
    op.drop_table('fortnox_corrections')

    op.drop_table('organizations')
