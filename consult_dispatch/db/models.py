from __future__ import annotations

from datetime import datetime
from enum import Enum

from sqlalchemy import JSON, DateTime, Float, Index, Integer, String, Text, func
from sqlalchemy import Enum as SqlEnum
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class JobStatus(str, Enum):
    HELD = "held"
    PENDING = "pending"
    PROCESSING = "processing"
    CONSULTED = "consulted"
    COMPLETED = "completed"
    ERROR = "error"


class Account(Base):
    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    provider: Mapped[str] = mapped_column(String(50), nullable=False)
    label: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    # Opaque to the dispatcher: login+password, API token, ... interpreted by the provider adapter.
    credential: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    daily_limit: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    consumed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_reset_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class Job(Base):
    __tablename__ = "jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    provider: Mapped[str] = mapped_column(String(50), nullable=False)

    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    document: Mapped[str | None] = mapped_column(String(20), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(20), nullable=True)
    birth_date: Mapped[str | None] = mapped_column(String(10), nullable=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    gender: Mapped[str | None] = mapped_column(String(20), nullable=True)

    status: Mapped[JobStatus] = mapped_column(
        SqlEnum(JobStatus, name="job_status", validate_strings=True),
        default=JobStatus.PENDING,
        nullable=False,
    )
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    forced_account_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    user_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    team_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    role_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    batch_label: Mapped[str | None] = mapped_column(String(100), nullable=True)

    result_status: Mapped[str | None] = mapped_column(String(100), nullable=True)
    result_description: Mapped[str | None] = mapped_column(Text, nullable=True)
    result_value: Mapped[float | None] = mapped_column(Float, nullable=True)
    result_table: Mapped[str | None] = mapped_column(String(255), nullable=True)
    result_term: Mapped[str | None] = mapped_column(String(20), nullable=True)
    result_payload: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class RunLock(Base):
    __tablename__ = "run_locks"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    owner: Mapped[str] = mapped_column(String(64), nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


Index("idx_accounts_provider", Account.provider, Account.id)
Index("idx_jobs_provider_status", Job.provider, Job.status, Job.id)
Index("idx_jobs_forced_account", Job.provider, Job.forced_account_id, Job.status)
