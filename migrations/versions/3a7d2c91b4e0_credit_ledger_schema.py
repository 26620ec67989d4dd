"""credit ledger schema: users + purchases

Revision ID: 3a7d2c91b4e0
Revises:
Create Date: 2026-10-19 09:30:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = '3a7d2c91b4e0'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    bind = op.get_bind()
    tables = set(inspect(bind).get_table_names())

    def _log(message: str):
        print(f"[MIGRATION] {message}")

    # Guard: only create tables that don't already exist (create_all may have run)
    if 'users' in tables:
        _log("users already exists; skipping create_table")
    else:
        op.create_table(
            'users',
            sa.Column('user_id', sa.String(length=128), primary_key=True),
            sa.Column('credits', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        )
        _log("users created")

    if 'purchases' in tables:
        _log("purchases already exists; skipping create_table")
    else:
        op.create_table(
            'purchases',
            sa.Column('purchase_token', sa.String(length=512), primary_key=True),
            sa.Column('user_id', sa.String(length=128), nullable=False),
            sa.Column('amount', sa.Integer(), nullable=False),
            sa.Column('product_id', sa.String(length=128), nullable=False),
            sa.Column('product_meta', sa.Text().with_variant(postgresql.JSONB(), 'postgresql'), nullable=True),
            sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        )
        op.create_index('ix_purchases_user_id', 'purchases', ['user_id'], unique=False)
        op.create_index('ix_purchases_created_at', 'purchases', ['created_at'], unique=False)
        _log("purchases created")


def downgrade():
    op.drop_index('ix_purchases_created_at', table_name='purchases')
    op.drop_index('ix_purchases_user_id', table_name='purchases')
    op.drop_table('purchases')
    op.drop_table('users')
