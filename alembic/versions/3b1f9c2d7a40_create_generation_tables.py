"""create_generation_tables

Revision ID: 3b1f9c2d7a40
Revises:
Create Date: 2026-10-19 09:12:44.118302

"""

from typing import Sequence, Union

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "3b1f9c2d7a40"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

task_kind = sa.Enum("TEXT_TO_IMAGE", "IMAGE_TO_IMAGE", name="taskkind")
task_status = sa.Enum("PENDING", "PROCESSING", "COMPLETED", "FAILED", name="taskstatus")
image_status = sa.Enum("PENDING", "COMPLETED", "FAILED", name="imagestatus")


def upgrade() -> None:
    """Create users, generation_tasks, generated_images and style_usages tables."""
    op.create_table(
        "users",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("stars", sa.Integer(), nullable=False),
        sa.Column("subscription", sa.String(length=50), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email"),
    )

    op.create_table(
        "generation_tasks",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("task_id", sa.String(length=255), nullable=False),
        sa.Column("owner_id", sa.Uuid(), nullable=False),
        sa.Column("kind", task_kind, nullable=False),
        sa.Column("status", task_status, nullable=False),
        sa.Column("prompt", sa.String(length=5000), nullable=False),
        sa.Column("image_size", sa.String(length=10), nullable=False),
        sa.Column("num_images", sa.Integer(), nullable=False),
        sa.Column("input_image_urls", sa.JSON(), nullable=True),
        sa.Column("template_id", sa.String(length=255), nullable=True),
        sa.Column("cost", sa.Integer(), nullable=False),
        sa.Column("result_references", sa.JSON(), nullable=True),
        sa.Column("error_detail", sa.String(length=1000), nullable=True),
        sa.Column("claim_id", sa.String(length=64), nullable=True),
        sa.Column("claimed_at", sa.DateTime(), nullable=True),
        sa.Column("materialization_attempts", sa.Integer(), nullable=False),
        sa.Column("last_storage_error", sa.String(length=1000), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(["owner_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_generation_tasks_task_id", "generation_tasks", ["task_id"], unique=True
    )
    op.create_index("ix_generation_tasks_owner_id", "generation_tasks", ["owner_id"])
    op.create_index("ix_generation_tasks_status", "generation_tasks", ["status"])

    op.create_table(
        "generated_images",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("owner_id", sa.Uuid(), nullable=False),
        sa.Column("task_id", sa.String(length=255), nullable=True),
        sa.Column("prompt", sa.String(length=5000), nullable=False),
        sa.Column("kind", task_kind, nullable=False),
        sa.Column("status", image_status, nullable=False),
        sa.Column("image_reference", sa.String(), nullable=True),
        sa.Column("reference_inputs", sa.JSON(), nullable=True),
        sa.Column("template_id", sa.String(length=255), nullable=True),
        sa.Column("error_detail", sa.String(length=1000), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(["owner_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_generated_images_task_id", "generated_images", ["task_id"], unique=True
    )
    op.create_index("ix_generated_images_owner_id", "generated_images", ["owner_id"])
    op.create_index("ix_generated_images_status", "generated_images", ["status"])

    op.create_table(
        "style_usages",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("template_id", sa.String(length=255), nullable=False),
        sa.Column("owner_id", sa.Uuid(), nullable=False),
        sa.Column("generated_image_id", sa.Uuid(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["generated_image_id"], ["generated_images.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_style_usages_template_id", "style_usages", ["template_id"])
    op.create_index("ix_style_usages_owner_id", "style_usages", ["owner_id"])


def downgrade() -> None:
    """Drop generation tables and enum types."""
    op.drop_index("ix_style_usages_owner_id", table_name="style_usages")
    op.drop_index("ix_style_usages_template_id", table_name="style_usages")
    op.drop_table("style_usages")

    op.drop_index("ix_generated_images_status", table_name="generated_images")
    op.drop_index("ix_generated_images_owner_id", table_name="generated_images")
    op.drop_index("ix_generated_images_task_id", table_name="generated_images")
    op.drop_table("generated_images")

    op.drop_index("ix_generation_tasks_status", table_name="generation_tasks")
    op.drop_index("ix_generation_tasks_owner_id", table_name="generation_tasks")
    op.drop_index("ix_generation_tasks_task_id", table_name="generation_tasks")
    op.drop_table("generation_tasks")

    op.drop_table("users")

    bind = op.get_bind()
    image_status.drop(bind, checkfirst=True)
    task_status.drop(bind, checkfirst=True)
    task_kind.drop(bind, checkfirst=True)
