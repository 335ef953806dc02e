"""Initial custody schema.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-18

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
    # Wallets table (one row per issued deposit address)
    op.create_table(
        'wallets',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('network', sa.String(20), nullable=False),
        sa.Column('address_index', sa.Integer(), nullable=False),
        sa.Column('deposit_address', sa.String(128), nullable=False),
        sa.Column('derivation_path', sa.String(64), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('address_index'),
    )
    op.create_index('ix_wallets_user_id', 'wallets', ['user_id'])
    op.create_index('ix_wallets_deposit_address', 'wallets', ['deposit_address'], unique=True)
    op.create_index('ix_wallets_user_network', 'wallets', ['user_id', 'network'])

    # Global address index counter
    op.create_table(
        'hd_index_counter',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('last_index', sa.Integer(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )

    # Deposits table
    op.create_table(
        'deposits',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('tx_hash', sa.String(128), nullable=False),
        sa.Column('wallet_id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('network', sa.String(20), nullable=False),
        sa.Column('from_address', sa.String(128), nullable=True),
        sa.Column('amount', sa.Numeric(20, 8), nullable=False),
        sa.Column('token_symbol', sa.String(10), nullable=False),
        sa.Column('confirmations', sa.Integer(), nullable=False),
        sa.Column('required_confirmations', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('credited_amount', sa.Numeric(20, 8), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.Column('credited_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('sweep_tx_hash', sa.String(128), nullable=True),
        sa.ForeignKeyConstraint(['wallet_id'], ['wallets.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_deposits_tx_hash', 'deposits', ['tx_hash'], unique=True)
    op.create_index('ix_deposits_user_id', 'deposits', ['user_id'])
    op.create_index('ix_deposits_status', 'deposits', ['status'])

    # Withdrawals table
    op.create_table(
        'withdrawals',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('network', sa.String(20), nullable=False),
        sa.Column('to_address', sa.String(128), nullable=False),
        sa.Column('amount', sa.Numeric(20, 8), nullable=False),
        sa.Column('fee', sa.Numeric(20, 8), nullable=False),
        sa.Column('token_symbol', sa.String(10), nullable=False),
        sa.Column('usdt_amount', sa.Numeric(20, 8), nullable=False),
        sa.Column('usdt_fee', sa.Numeric(20, 8), nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('tx_hash', sa.String(128), nullable=True),
        sa.Column('reviewed_by', sa.String(64), nullable=True),
        sa.Column('admin_note', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_withdrawals_status', 'withdrawals', ['status'])
    op.create_index('ix_withdrawals_tx_hash', 'withdrawals', ['tx_hash'])
    op.create_index('ix_withdrawals_user_created', 'withdrawals', ['user_id', 'created_at'])

    # Balances table (one row per user)
    op.create_table(
        'balances',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('amount', sa.Numeric(20, 8), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_balances_user_id', 'balances', ['user_id'], unique=True)

    # Transactions table (append-only ledger)
    op.create_table(
        'transactions',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('type', sa.String(20), nullable=False),
        sa.Column('amount', sa.Numeric(20, 8), nullable=False),
        sa.Column('description', sa.Text(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_transactions_user_created', 'transactions', ['user_id', 'created_at'])


def downgrade() -> None:
    op.drop_table('transactions')
    op.drop_table('balances')
    op.drop_table('withdrawals')
    op.drop_table('deposits')
    op.drop_table('hd_index_counter')
    op.drop_table('wallets')
