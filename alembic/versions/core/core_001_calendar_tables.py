"""create_calendar_tables

Revision ID: core_001
Revises:
Create Date: 2020-03-16 12:24:04.000000

"""

from __future__ import annotations

from alembic import op

# revision identifiers, used by Alembic.
revision = "core_001"
down_revision = None
branch_labels = ("core",)
depends_on = None


def upgrade() -> None:
    op.execute("""
        CREATE TABLE IF NOT EXISTS calendar_list (
            id SERIAL PRIMARY KEY,
            calendar_name TEXT NOT NULL,
            gcal_id TEXT NOT NULL UNIQUE,
            gcal_name TEXT,
            gcal_description TEXT,
            gcal_location TEXT,
            gcal_timezone TEXT,
            sync BOOLEAN NOT NULL DEFAULT false,
            edit BOOLEAN NOT NULL DEFAULT false,
            display BOOLEAN NOT NULL DEFAULT false,
            last_modified TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS calendar_cache (
            id SERIAL PRIMARY KEY,
            gcal_id TEXT NOT NULL,
            event_id TEXT NOT NULL,
            event_start_time TIMESTAMPTZ NOT NULL,
            event_end_time TIMESTAMPTZ NOT NULL,
            event_url TEXT,
            event_name TEXT NOT NULL,
            event_description TEXT,
            event_location_name TEXT,
            event_location_lat DOUBLE PRECISION,
            event_location_lon DOUBLE PRECISION,
            last_modified TIMESTAMPTZ NOT NULL DEFAULT now(),
            UNIQUE (gcal_id, event_id)
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_calendar_cache_start_time
        ON calendar_cache (event_start_time)
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_calendar_cache_last_modified
        ON calendar_cache (last_modified)
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS shortened_links (
            id SERIAL PRIMARY KEY,
            shortened_url TEXT NOT NULL UNIQUE,
            original_url TEXT NOT NULL,
            last_modified TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_shortened_links_original_url
        ON shortened_links (original_url)
    """)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS shortened_links")
    op.execute("DROP TABLE IF EXISTS calendar_cache")
    op.execute("DROP TABLE IF EXISTS calendar_list")
