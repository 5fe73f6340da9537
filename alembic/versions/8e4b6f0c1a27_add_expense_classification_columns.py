"""add expense classification columns

Revision ID: 8e4b6f0c1a27
Revises: 3c1e9a7b2d40
Create Date: 2026-10-06

"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "8e4b6f0c1a27"
down_revision: Union[str, Sequence[str], None] = "3c1e9a7b2d40"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Nullable: rows written before this revision keep only the legacy `type`.
    with op.batch_alter_table("expenses") as batch:
        batch.add_column(sa.Column("doc_type", sa.String(length=7), nullable=True))
        batch.add_column(sa.Column("doc_type_source", sa.String(length=9), nullable=True))
        batch.add_column(sa.Column("classification_path", sa.String(length=2), nullable=True))


def downgrade() -> None:
    with op.batch_alter_table("expenses") as batch:
        batch.drop_column("classification_path")
        batch.drop_column("doc_type_source")
        batch.drop_column("doc_type")
