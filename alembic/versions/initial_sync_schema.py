"""create settings and books tables

Revision ID: initial_sync_schema
Revises:
Create Date: 2026-10-19 10:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 'initial_sync_schema'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Check if tables exist to avoid errors on re-run
    conn = op.get_bind()
    inspector = sa.inspect(conn)
    tables = inspector.get_table_names()

    if 'settings' not in tables:
        op.create_table('settings',
            sa.Column('key', sa.String(length=255), nullable=False),
            sa.Column('value', sa.Text(), nullable=True),
            sa.PrimaryKeyConstraint('key')
        )

    if 'books' not in tables:
        op.create_table('books',
            sa.Column('book_id', sa.String(length=255), nullable=False),
            sa.Column('title', sa.String(length=1000), nullable=True),
            sa.Column('path', sa.String(length=2000), nullable=False),
            sa.PrimaryKeyConstraint('book_id')
        )
        op.create_index('ix_books_path', 'books', ['path'])


def downgrade() -> None:
    op.drop_index('ix_books_path', table_name='books')
    op.drop_table('books')
    op.drop_table('settings')
