"""Record units actually deducted per order line

Revision ID: 20261020_stock_deducted
Revises: 20261019_initial
Create Date: 2026-10-20

This migration adds:
1. order_items.stock_deducted (units removed from products.stock under
   DEDUCT; NULL for lines that did not touch stock)
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '20261020_stock_deducted'
down_revision = '20261019_initial'
branch_labels = None
depends_on = None


def upgrade():
    with op.batch_alter_table('order_items', schema=None) as batch_op:
        batch_op.add_column(sa.Column('stock_deducted', sa.Integer(), nullable=True))


def downgrade():
    with op.batch_alter_table('order_items', schema=None) as batch_op:
        batch_op.drop_column('stock_deducted')
