"""Initial schema: users, tokens, projects, shares, builds, jobs, files.

Revision ID: 0001
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: str | None = None
branch_labels: str | None = None
depends_on: str | None = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("email", sa.String(255), nullable=False, unique=True),
        sa.Column("name", sa.String(255), nullable=False, server_default=""),
        sa.Column("admin", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("token", sa.String(255), unique=True),
        sa.Column("oidc_subject", sa.String(255), unique=True),
        sa.Column(
            "email_verified", sa.Boolean, nullable=False, server_default=sa.false()
        ),
        sa.Column("groups", sa.JSON, nullable=False),
        sa.Column("created_ts", sa.Integer, nullable=False),
        sa.Column("updated_ts", sa.Integer, nullable=False),
        sa.Column("deleted_ts", sa.Integer),
    )
    op.create_index("idx_users_deleted_ts", "users", ["deleted_ts"])

    op.create_table(
        "user_tokens",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("token", sa.String(255), nullable=False, unique=True),
        sa.Column("last_used_ts", sa.Integer),
        sa.Column("created_ts", sa.Integer, nullable=False),
    )
    op.create_index("ix_user_tokens_user_id", "user_tokens", ["user_id"])

    op.create_table(
        "projects",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("token", sa.String(255), nullable=False, unique=True),
        sa.Column("current_branch", sa.String(255), nullable=False, server_default=""),
        sa.Column("base_url", sa.String(255), nullable=False, server_default=""),
        sa.Column("coverage_rate", sa.Float, nullable=False, server_default="0"),
        sa.Column("user_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
        sa.Column("created_ts", sa.Integer, nullable=False),
        sa.Column("updated_ts", sa.Integer, nullable=False),
    )
    op.create_index("ix_projects_user_id", "projects", ["user_id"])

    op.create_table(
        "project_shares",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "project_id", sa.String(36), sa.ForeignKey("projects.id"), nullable=False
        ),
        sa.Column("group_name", sa.String(255), nullable=False),
        sa.Column("created_ts", sa.Integer, nullable=False),
        sa.UniqueConstraint("project_id", "group_name", name="uq_project_shares_group"),
    )
    op.create_index("ix_project_shares_project_id", "project_shares", ["project_id"])
    op.create_index("ix_project_shares_group_name", "project_shares", ["group_name"])

    op.create_table(
        "project_tokens",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "project_id", sa.String(36), sa.ForeignKey("projects.id"), nullable=False
        ),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("token", sa.String(255), nullable=False, unique=True),
        sa.Column("last_used_ts", sa.Integer),
        sa.Column("created_ts", sa.Integer, nullable=False),
    )
    op.create_index("ix_project_tokens_project_id", "project_tokens", ["project_id"])

    op.create_table(
        "builds",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "project_id", sa.String(36), sa.ForeignKey("projects.id"), nullable=False
        ),
        sa.Column("build_num", sa.Integer, nullable=False),
        sa.Column("branch", sa.String(255), nullable=False, server_default=""),
        sa.Column("commit_sha", sa.String(255), nullable=False, server_default=""),
        sa.Column("commit_msg", sa.Text, nullable=False, server_default=""),
        sa.Column("coverage_rate", sa.Float, nullable=False, server_default="0"),
        sa.Column("created_ts", sa.Integer, nullable=False),
        sa.UniqueConstraint("project_id", "build_num", name="uq_builds_project_num"),
    )
    op.create_index("idx_builds_project_ts", "builds", ["project_id", "created_ts"])

    op.create_table(
        "jobs",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("build_id", sa.Integer, sa.ForeignKey("builds.id"), nullable=False),
        sa.Column("job_number", sa.String(255), nullable=False),
        sa.Column("coverage_rate", sa.Float, nullable=False, server_default="0"),
        sa.Column("data", sa.Text, nullable=False, server_default="{}"),
        sa.Column("created_ts", sa.Integer, nullable=False),
    )
    op.create_index("ix_jobs_build_id", "jobs", ["build_id"])

    op.create_table(
        "job_files",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("job_id", sa.Integer, sa.ForeignKey("jobs.id"), nullable=False),
        sa.Column("name", sa.Text, nullable=False),
        sa.Column("source", sa.Text, nullable=False, server_default=""),
        sa.Column("coverage", sa.Text, nullable=False, server_default="[]"),
        sa.Column("coverage_rate", sa.Float, nullable=False, server_default="0"),
        sa.Column("created_ts", sa.Integer, nullable=False),
    )
    op.create_index("ix_job_files_job_id", "job_files", ["job_id"])


def downgrade() -> None:
    op.drop_index("ix_job_files_job_id", table_name="job_files")
    op.drop_table("job_files")
    op.drop_index("ix_jobs_build_id", table_name="jobs")
    op.drop_table("jobs")
    op.drop_index("idx_builds_project_ts", table_name="builds")
    op.drop_table("builds")
    op.drop_index("ix_project_tokens_project_id", table_name="project_tokens")
    op.drop_table("project_tokens")
    op.drop_index("ix_project_shares_group_name", table_name="project_shares")
    op.drop_index("ix_project_shares_project_id", table_name="project_shares")
    op.drop_table("project_shares")
    op.drop_index("ix_projects_user_id", table_name="projects")
    op.drop_table("projects")
    op.drop_index("ix_user_tokens_user_id", table_name="user_tokens")
    op.drop_table("user_tokens")
    op.drop_index("idx_users_deleted_ts", table_name="users")
    op.drop_table("users")
