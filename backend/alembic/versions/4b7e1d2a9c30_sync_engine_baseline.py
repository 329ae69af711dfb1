"""sync_engine_baseline

Revision ID: 4b7e1d2a9c30
Revises: 
Create Date: 2026-10-17 09:42:11.508213

"""
from typing import Sequence, Union

from alembic import op

from esisync.db_base import Base
import esisync.models  # noqa: F401 - record tables
import esisync.ingestion.batch  # noqa: F401 - sync_batches
import esisync.ingestion.jobs.models  # noqa: F401 - sync_jobs


# revision identifiers, used by Alembic.
revision: str = '4b7e1d2a9c30'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    bind = op.get_bind()
    Base.metadata.create_all(bind=bind)


def downgrade() -> None:
    bind = op.get_bind()
    Base.metadata.drop_all(bind=bind)
