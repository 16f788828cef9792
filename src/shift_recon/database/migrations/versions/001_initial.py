"""Initial migration - create work_sessions, idex_transactions, and bybit_transactions tables

Revision ID: 001_initial
Revises: 
Create Date: 2026-10-17

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Create work_sessions table
    op.create_table(
        'work_sessions',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('operator_id', sa.Integer(), nullable=False),
        sa.Column('cabinet_id', sa.Integer(), nullable=False),
        sa.Column('cabinet_type', sa.String(16), nullable=False, server_default='bybit'),
        sa.Column('start_time', sa.DateTime(), nullable=False),
        sa.Column('end_time', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_work_sessions_operator_start', 'work_sessions', ['operator_id', 'start_time'])

    # Create idex_transactions table
    op.create_table(
        'idex_transactions',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('cabinet_id', sa.Integer(), nullable=False),
        sa.Column('external_id', sa.String(64), nullable=True),
        sa.Column('order_ref', sa.String(128), nullable=True),
        sa.Column('amount_rub', sa.Numeric(20, 2), nullable=False),
        sa.Column('total_usdt', sa.Numeric(20, 8), nullable=False),
        sa.Column('status', sa.String(32), nullable=True),
        sa.Column('approved_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_idex_transactions_cabinet_approved', 'idex_transactions', ['cabinet_id', 'approved_at'])

    # Create bybit_transactions table
    op.create_table(
        'bybit_transactions',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('cabinet_id', sa.Integer(), nullable=False),
        sa.Column('order_no', sa.String(64), nullable=True),
        sa.Column('date_time', sa.DateTime(), nullable=False),
        sa.Column('type', sa.String(16), nullable=True),
        sa.Column('asset', sa.String(16), nullable=False, server_default='USDT'),
        sa.Column('amount', sa.Numeric(20, 8), nullable=False),
        sa.Column('total_price', sa.Numeric(20, 2), nullable=False),
        sa.Column('unit_price', sa.Numeric(20, 4), nullable=True),
        sa.Column('counterparty', sa.String(255), nullable=True),
        sa.Column('status', sa.String(32), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_bybit_transactions_cabinet_date_time', 'bybit_transactions', ['cabinet_id', 'date_time'])


def downgrade() -> None:
    op.drop_index('ix_bybit_transactions_cabinet_date_time', table_name='bybit_transactions')
    op.drop_table('bybit_transactions')

    op.drop_index('ix_idex_transactions_cabinet_approved', table_name='idex_transactions')
    op.drop_table('idex_transactions')

    op.drop_index('ix_work_sessions_operator_start', table_name='work_sessions')
    op.drop_table('work_sessions')
