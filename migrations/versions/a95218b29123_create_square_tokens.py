"""create_square_tokens

Revision ID: a95218b29123
Revises:
Create Date: 2025-03-24 18:10:00.000000

"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "a95218b29123"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # One row per company holding its latest Square tokens
    op.create_table(
        "square_tokens",
        sa.Column("tenant_id", sa.String(), primary_key=True),
        sa.Column("access_token", sa.String(), nullable=False),
        sa.Column("refresh_token", sa.String(), nullable=False),
        sa.Column("expires_at", sa.String(), nullable=False),
        sa.Column("merchant_id", sa.String(), nullable=True),
        sa.Column(
            "updated_at", sa.DateTime(), server_default=sa.text("CURRENT_TIMESTAMP")
        ),
    )
    op.create_index("ix_square_tokens_tenant_id", "square_tokens", ["tenant_id"])


def downgrade() -> None:
    op.drop_index("ix_square_tokens_tenant_id", table_name="square_tokens")
    op.drop_table("square_tokens")
