"""calendar_sync_baseline

Revision ID: 3c1f9a7d2b40
Revises:
Create Date: 2026-10-17 09:12:31.402118

Baseline migration for the calendar sync schema. Creates every table from the
current model definitions: appointments, external connections, event
mappings, recurring availability slots with their per-connection sync
status, and sync conflicts.
"""
from typing import Sequence, Union
import sys
import os

# Add src directory to path to import models
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..', 'src'))

from alembic import op

# Import all models to ensure they're registered with Base.metadata
from core.database import Base
from models.appointment import Appointment
from models.external_connection import ExternalConnection
from models.external_event_mapping import ExternalEventMapping
from models.recurring_availability import RecurringAvailabilitySlot, AvailabilitySyncStatus
from models.sync_conflict import SyncConflict


# revision identifiers, used by Alembic.
revision: str = '3c1f9a7d2b40'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """
    Create all database tables from SQLAlchemy models.

    Indexes, unique constraints and check constraints are declared on the
    models, so create_all covers them.
    """
    Base.metadata.create_all(bind=op.get_bind())

    # Open conflicts are listed per connection far more often than resolved ones
    if op.get_bind().dialect.name == 'postgresql':
        op.create_index(
            'idx_sync_conflicts_unresolved',
            'sync_conflicts',
            ['connection_id', 'created_at'],
            postgresql_where='resolved = false'
        )


def downgrade() -> None:
    """Drop all database tables."""
    if op.get_bind().dialect.name == 'postgresql':
        op.drop_index('idx_sync_conflicts_unresolved', table_name='sync_conflicts')

    Base.metadata.drop_all(bind=op.get_bind())
