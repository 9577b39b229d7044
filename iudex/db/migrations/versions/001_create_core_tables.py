"""Create core tables

Revision ID: 001_create_core_tables
Revises:
Create Date: 2026-10-19

Suites, runs, stable test identities with validity-interval history, and
the append-only result log.
"""
from __future__ import annotations

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision = "001_create_core_tables"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "test_suites",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )
    op.create_index("ix_test_suites_name", "test_suites", ["name"], unique=True)

    op.create_table(
        "test_runs",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("suite_id", sa.Integer, sa.ForeignKey("test_suites.id"), nullable=False),
        # Source metadata
        sa.Column("environment", sa.String(length=50), nullable=False),
        sa.Column("branch", sa.String(length=255), nullable=True),
        sa.Column("commit_sha", sa.String(length=40), nullable=True),
        sa.Column("commit_message", sa.Text, nullable=True),
        sa.Column("triggered_by", sa.String(length=255), nullable=True),
        sa.Column("run_url", sa.Text, nullable=True),
        # Outcome counts
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("total_tests", sa.Integer, nullable=False, server_default="0"),
        sa.Column("passed_tests", sa.Integer, nullable=False, server_default="0"),
        sa.Column("failed_tests", sa.Integer, nullable=False, server_default="0"),
        sa.Column("skipped_tests", sa.Integer, nullable=False, server_default="0"),
        sa.Column("duration_ms", sa.Integer, nullable=False, server_default="0"),
        sa.Column("deleted_test_ids", sa.JSON, nullable=False),
        # Timestamps
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.CheckConstraint(
            "total_tests = passed_tests + failed_tests + skipped_tests",
            name="valid_test_counts",
        ),
    )
    op.create_index("ix_test_runs_suite_id", "test_runs", ["suite_id"])
    op.create_index("ix_test_runs_environment", "test_runs", ["environment"])
    op.create_index("ix_test_runs_branch", "test_runs", ["branch"])
    op.create_index("ix_test_runs_status", "test_runs", ["status"])
    op.create_index("ix_test_runs_started_at_id", "test_runs", ["started_at", "id"])

    op.create_table(
        "tests",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("slug", sa.String(length=512), nullable=False, unique=True),
        sa.Column("hash", sa.String(length=64), nullable=False),
        sa.Column("current_name", sa.String(length=512), nullable=False),
        sa.Column("current_description", sa.Text, nullable=True),
        sa.Column("suite_name", sa.String(length=255), nullable=True),
        sa.Column("test_file", sa.String(length=255), nullable=True),
        sa.Column("endpoint", sa.String(length=500), nullable=True),
        sa.Column("http_method", sa.String(length=10), nullable=True),
        # Lifecycle
        sa.Column("first_seen_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_seen_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("total_runs", sa.Integer, nullable=False, server_default="0"),
        sa.Column("last_status", sa.String(length=20), nullable=True),
    )
    op.create_index("ix_tests_hash", "tests", ["hash"])
    op.create_index("ix_tests_current_name", "tests", ["current_name"])
    op.create_index("ix_tests_suite_name", "tests", ["suite_name"])
    op.create_index("ix_tests_endpoint", "tests", ["endpoint"])
    op.create_index("ix_tests_last_seen_at", "tests", ["last_seen_at"])
    op.create_index("ix_tests_deleted_at", "tests", ["deleted_at"])
    op.create_index("ix_tests_suite_active", "tests", ["suite_name", "deleted_at"])

    op.create_table(
        "test_history",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("test_id", sa.Integer, sa.ForeignKey("tests.id"), nullable=False),
        sa.Column("name", sa.String(length=512), nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("hash", sa.String(length=64), nullable=False),
        sa.Column("valid_from", sa.DateTime(timezone=True), nullable=False),
        sa.Column("valid_to", sa.DateTime(timezone=True), nullable=True),
        sa.Column("change_type", sa.String(length=50), nullable=False, server_default="created"),
    )
    op.create_index("ix_test_history_test_id", "test_history", ["test_id"])
    op.create_index("ix_test_history_valid_range", "test_history", ["valid_from", "valid_to"])
    # At most one open interval per test
    op.create_index(
        "uq_test_history_open_interval",
        "test_history",
        ["test_id"],
        unique=True,
        sqlite_where=sa.text("valid_to IS NULL"),
        postgresql_where=sa.text("valid_to IS NULL"),
    )

    op.create_table(
        "test_results",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("run_id", sa.Integer, sa.ForeignKey("test_runs.id"), nullable=False),
        sa.Column("test_id", sa.Integer, sa.ForeignKey("tests.id"), nullable=False),
        # Snapshot at execution time
        sa.Column("test_name", sa.String(length=512), nullable=False),
        sa.Column("test_description", sa.Text, nullable=True),
        sa.Column("test_hash", sa.String(length=64), nullable=False),
        sa.Column("suite_name", sa.String(length=255), nullable=True),
        sa.Column("test_file", sa.String(length=255), nullable=True),
        sa.Column("endpoint", sa.String(length=500), nullable=True),
        sa.Column("http_method", sa.String(length=10), nullable=True),
        # Outcome
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("duration_ms", sa.Integer, nullable=False, server_default="0"),
        sa.Column("status_code", sa.Integer, nullable=True),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column("error_type", sa.String(length=255), nullable=True),
        sa.Column("stack_trace", sa.Text, nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("updated_at IS NULL", name="immutable_results"),
    )
    op.create_index("ix_test_results_run_id", "test_results", ["run_id"])
    op.create_index("ix_test_results_test_id", "test_results", ["test_id"])
    op.create_index("ix_test_results_test_hash", "test_results", ["test_hash"])
    op.create_index("ix_test_results_endpoint", "test_results", ["endpoint"])
    op.create_index("ix_test_results_status", "test_results", ["status"])
    op.create_index("ix_test_results_created_at", "test_results", ["created_at"])
    op.create_index("ix_test_results_test_created", "test_results", ["test_id", "created_at"])


def downgrade() -> None:
    op.drop_table("test_results")
    op.drop_table("test_history")
    op.drop_table("tests")
    op.drop_table("test_runs")
    op.drop_table("test_suites")
