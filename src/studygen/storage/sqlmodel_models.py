"""SQLModel ORM tables for study generation storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, UniqueConstraint
from sqlmodel import Field, SQLModel

DEFAULT_SIGNUP_CREDITS = 5


class UserAccount(SQLModel, table=True):
    __tablename__ = "users"  # type: ignore[bad-override]
    __table_args__ = (UniqueConstraint("external_id", name="uq_users_external_id"),)

    user_id: int | None = Field(default=None, primary_key=True)
    external_id: str = Field(index=True)
    email: str = Field(index=True)
    name: str
    credits: int = Field(default=DEFAULT_SIGNUP_CREDITS)
    used_credits: int = Field(default=0)
    subscription_tier: str = Field(default="free")
    subscription_expires: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class CreditLedgerEntry(SQLModel, table=True):
    __tablename__ = "credit_ledger"  # type: ignore[bad-override]

    entry_id: int | None = Field(default=None, primary_key=True)
    user_id: int = Field(
        sa_column=Column(
            ForeignKey("users.user_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    request_id: str | None = Field(default=None, index=True)
    delta: int
    reason: str
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class StudyRequest(SQLModel, table=True):
    __tablename__ = "study_requests"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_study_requests_user_status", "user_id", "status"),)

    request_id: str = Field(primary_key=True)
    user_id: int = Field(
        sa_column=Column(
            ForeignKey("users.user_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    topic: str
    purpose: str
    difficulty: str
    status: str = Field(index=True)
    attempts: int = Field(default=0)
    model: str | None = None
    prompt: str | None = Field(default=None, sa_column=Column(Text))
    output: str | None = Field(default=None, sa_column=Column(Text))
    error: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class StudyMaterial(SQLModel, table=True):
    __tablename__ = "study_materials"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("request_id", name="uq_study_materials_request_id"),
        Index("idx_study_materials_created_by", "created_by"),
    )

    material_id: int | None = Field(default=None, primary_key=True)
    course_id: str = Field(index=True)
    request_id: str | None = Field(
        default=None,
        sa_column=Column(
            ForeignKey("study_requests.request_id", ondelete="SET NULL"),
            nullable=True,
        ),
    )
    topic: str
    difficulty_level: str
    status: str
    layout_json: str = Field(sa_column=Column(Text, nullable=False))
    created_by: str
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class WorkEvent(SQLModel, table=True):
    __tablename__ = "work_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_work_events_queue", "status", "created_at"),)

    event_id: str = Field(primary_key=True)
    name: str = Field(index=True)
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    status: str = Field(index=True)
    deliveries: int = Field(default=0)
    worker_id: str | None = Field(default=None, index=True)
    claimed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    result_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
