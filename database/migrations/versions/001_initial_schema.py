"""Initial schema

Revision ID: 001
Revises:
Create Date: 2026-10-18

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Bible content
    op.create_table(
        'translations',
        sa.Column('id', sa.String(100), primary_key=True),
        sa.Column('abbreviation', sa.String(20), nullable=False, unique=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('language', sa.String(100)),
        sa.Column('description', sa.Text),
        sa.Column('estimated_size', sa.String(50)),
        sa.Column('estimated_size_bytes', sa.Integer, server_default='0'),
        sa.Column('downloaded', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('downloaded_at', sa.DateTime),
        sa.Column('downloaded_size', sa.Integer, server_default='0'),
    )
    op.create_index('idx_translations_downloaded_at', 'translations', ['downloaded_at'])

    op.create_table(
        'books',
        sa.Column('id', sa.String(255), primary_key=True),
        sa.Column('translation_id', sa.String(100), nullable=False),
        sa.Column('book_id', sa.String(50), nullable=False),
        sa.Column('name', sa.String(255)),
        sa.Column('abbreviation', sa.String(50)),
    )
    op.create_index('idx_books_translation_id', 'books', ['translation_id'])
    op.create_index('idx_books_book_id', 'books', ['book_id'])

    op.create_table(
        'chapters',
        sa.Column('id', sa.String(255), primary_key=True),
        sa.Column('translation_id', sa.String(100), nullable=False),
        sa.Column('book_id', sa.String(50), nullable=False),
        sa.Column('chapter_id', sa.String(100), nullable=False),
        sa.Column('chapter_number', sa.String(20)),
        sa.Column('reference', sa.String(255)),
    )
    op.create_index('idx_chapters_translation_id', 'chapters', ['translation_id'])
    op.create_index('idx_chapters_book_id', 'chapters', ['book_id'])
    op.create_index('idx_chapters_chapter_number', 'chapters', ['chapter_number'])

    op.create_table(
        'verses',
        sa.Column('id', sa.String(255), primary_key=True),
        sa.Column('translation_id', sa.String(100), nullable=False),
        sa.Column('book_id', sa.String(50)),
        sa.Column('chapter_id', sa.String(100)),
        sa.Column('reference', sa.String(255), nullable=False),
        sa.Column('content', sa.JSON),
        sa.Column('cached_at', sa.DateTime, nullable=False, server_default=sa.func.now()),
    )
    op.create_index('idx_verses_translation_id', 'verses', ['translation_id'])
    op.create_index('idx_verses_book_id', 'verses', ['book_id'])
    op.create_index('idx_verses_chapter_id', 'verses', ['chapter_id'])
    op.create_index('idx_verses_reference', 'verses', ['reference'])

    # Annotations
    op.create_table(
        'notes',
        sa.Column('id', sa.String(100), primary_key=True),
        sa.Column('reference', sa.String(255), nullable=False),
        sa.Column('verse_id', sa.String(255)),
        sa.Column('title', sa.String(255)),
        sa.Column('content', sa.Text, nullable=False, server_default=''),
        sa.Column('created_at', sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column('synced', sa.Boolean, nullable=False, server_default=sa.false()),
    )
    op.create_index('idx_notes_verse_id', 'notes', ['verse_id'])
    op.create_index('idx_notes_reference', 'notes', ['reference'])
    op.create_index('idx_notes_created_at', 'notes', ['created_at'])
    op.create_index('idx_notes_synced', 'notes', ['synced'])

    op.create_table(
        'highlights',
        sa.Column('id', sa.String(100), primary_key=True),
        sa.Column('reference', sa.String(255), nullable=False),
        sa.Column('verse_id', sa.String(255)),
        sa.Column('color', sa.String(20), nullable=False),
        sa.Column('created_at', sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column('synced', sa.Boolean, nullable=False, server_default=sa.false()),
    )
    op.create_index('idx_highlights_verse_id', 'highlights', ['verse_id'])
    op.create_index('idx_highlights_reference', 'highlights', ['reference'])
    op.create_index('idx_highlights_color', 'highlights', ['color'])
    op.create_index('idx_highlights_synced', 'highlights', ['synced'])

    # Sync
    op.create_table(
        'sync_queue',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('action_type', sa.String(50), nullable=False),
        sa.Column('data', sa.JSON, nullable=False),
        sa.Column('created_at', sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('synced_at', sa.DateTime),
        sa.Column('attempts', sa.Integer, nullable=False, server_default='0'),
        sa.Column('last_error', sa.Text),
        sa.Column('next_attempt_at', sa.DateTime),
    )
    op.create_index('idx_sync_queue_action_type', 'sync_queue', ['action_type'])
    op.create_index('idx_sync_queue_created_at', 'sync_queue', ['created_at'])
    op.create_index('idx_sync_queue_status', 'sync_queue', ['status'])

    op.create_table(
        'download_progress',
        sa.Column('translation_id', sa.String(100), primary_key=True),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('progress', sa.Integer, nullable=False, server_default='0'),
        sa.Column('current_step', sa.String(255)),
        sa.Column('started_at', sa.DateTime),
        sa.Column('completed_at', sa.DateTime),
        sa.Column('error', sa.Text),
    )

    op.create_table(
        'key_values',
        sa.Column('key', sa.String(255), primary_key=True),
        sa.Column('value', sa.Text),
        sa.Column('updated_at', sa.DateTime, nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        'sync_locks',
        sa.Column('name', sa.String(100), primary_key=True),
        sa.Column('owner', sa.String(255), nullable=False),
        sa.Column('acquired_at', sa.DateTime, nullable=False),
        sa.Column('expires_at', sa.DateTime, nullable=False),
    )


def downgrade() -> None:
    for table in (
        'sync_locks',
        'key_values',
        'download_progress',
        'sync_queue',
        'highlights',
        'notes',
        'verses',
        'chapters',
        'books',
        'translations',
    ):
        op.drop_table(table)
