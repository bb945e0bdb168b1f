"""Initial database schema"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime()),
        sa.Column("updated_at", sa.DateTime()),
    ]


def upgrade() -> None:
    op.create_table(
        "teacher",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=120), nullable=False, unique=True),
        sa.Column("branch", sa.String(length=120)),
        sa.Column("email", sa.String(length=255)),
        sa.Column("phone", sa.String(length=50)),
        *_timestamps(),
    )

    op.create_table(
        "classroom",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("branch", sa.String(length=120), nullable=False),
        sa.Column("capacity", sa.Integer()),
        *_timestamps(),
        sa.UniqueConstraint("name", "branch", name="uq_classroom_branch_name"),
        sa.CheckConstraint("capacity IS NULL OR capacity >= 0", name="chk_classroom_capacity"),
    )

    op.create_table(
        "student",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("branch", sa.String(length=120)),
        *_timestamps(),
    )

    op.create_table(
        "learning_group",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("branch", sa.String(length=120), nullable=False),
        *_timestamps(),
    )

    op.create_table(
        "group_student",
        sa.Column("group_id", sa.Integer(), sa.ForeignKey("learning_group.id"), primary_key=True),
        sa.Column("student_id", sa.Integer(), sa.ForeignKey("student.id"), primary_key=True),
    )

    op.create_table(
        "closing_period",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=False),
        sa.Column("label", sa.String(length=255)),
        sa.Column("branch", sa.String(length=120)),
        *_timestamps(),
        sa.CheckConstraint("end_date >= start_date", name="chk_closing_period_range"),
    )

    op.create_table(
        "recurring_template",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("teacher_name", sa.String(length=120), nullable=False),
        sa.Column("branch", sa.String(length=120), nullable=False),
        sa.Column("classroom", sa.String(length=120), nullable=False),
        sa.Column("weekdays", sa.String(length=20), nullable=False, server_default=""),
        sa.Column("start_time", sa.Time(), nullable=False),
        sa.Column("end_time", sa.Time(), nullable=False),
        sa.Column("valid_from", sa.Date(), nullable=False),
        sa.Column("valid_to", sa.Date()),
        sa.Column("group_id", sa.Integer(), sa.ForeignKey("learning_group.id")),
        sa.Column("student_id", sa.Integer(), sa.ForeignKey("student.id")),
        sa.Column("capacity", sa.Integer()),
        *_timestamps(),
        sa.CheckConstraint("end_time > start_time", name="chk_template_time_order"),
        sa.CheckConstraint(
            "valid_to IS NULL OR valid_to >= valid_from", name="chk_template_validity"
        ),
    )

    op.create_table(
        "lesson_session",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("group_id", sa.Integer(), sa.ForeignKey("learning_group.id")),
        sa.Column("student_id", sa.Integer(), sa.ForeignKey("student.id")),
        sa.Column("teacher_name", sa.String(length=120), nullable=False),
        sa.Column("branch", sa.String(length=120), nullable=False),
        sa.Column("classroom", sa.String(length=120), nullable=False),
        sa.Column("lesson_date", sa.Date(), nullable=False),
        sa.Column("start_time", sa.Time(), nullable=False),
        sa.Column("end_time", sa.Time(), nullable=False),
        sa.Column("day_of_week", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("notes", sa.Text()),
        sa.Column(
            "recurrence_source_id",
            sa.Integer(),
            sa.ForeignKey("recurring_template.id"),
        ),
        sa.Column("rescheduled_from_id", sa.Integer(), sa.ForeignKey("lesson_session.id")),
        sa.Column("rescheduled_to_id", sa.Integer(), sa.ForeignKey("lesson_session.id")),
        sa.Column("makeup_for_id", sa.Integer(), sa.ForeignKey("lesson_session.id")),
        sa.Column("capacity", sa.Integer()),
        sa.Column("student_count", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.CheckConstraint("end_time > start_time", name="chk_session_time_order"),
        sa.CheckConstraint("day_of_week BETWEEN 0 AND 6", name="chk_session_weekday"),
        sa.UniqueConstraint(
            "recurrence_source_id", "lesson_date", name="uq_session_template_date"
        ),
    )

    op.create_table(
        "session_history",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "session_id",
            sa.Integer(),
            sa.ForeignKey("lesson_session.id"),
            nullable=False,
        ),
        sa.Column("event_type", sa.String(length=20), nullable=False),
        sa.Column("old_value", sa.Text()),
        sa.Column("new_value", sa.Text()),
        sa.Column("changed_at", sa.DateTime(), nullable=False),
        sa.Column("changed_by", sa.String(length=120), nullable=False, server_default="system"),
        sa.Column("description", sa.Text()),
    )

    for table, column in INDEXED_COLUMNS:
        op.create_index(f"ix_{table}_{column}", table, [column])


INDEXED_COLUMNS = (
    ("teacher", "branch"),
    ("classroom", "branch"),
    ("recurring_template", "branch"),
    ("lesson_session", "group_id"),
    ("lesson_session", "teacher_name"),
    ("lesson_session", "branch"),
    ("lesson_session", "lesson_date"),
    ("lesson_session", "status"),
    ("lesson_session", "recurrence_source_id"),
    ("session_history", "session_id"),
    ("session_history", "changed_at"),
)


def downgrade() -> None:
    for table, column in reversed(INDEXED_COLUMNS):
        op.drop_index(f"ix_{table}_{column}", table_name=table)
    op.drop_table("session_history")
    op.drop_table("lesson_session")
    op.drop_table("recurring_template")
    op.drop_table("closing_period")
    op.drop_table("group_student")
    op.drop_table("learning_group")
    op.drop_table("student")
    op.drop_table("classroom")
    op.drop_table("teacher")
