"""SQLAlchemy ORM models for librecov."""

from __future__ import annotations

import secrets
import time
import uuid
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def now_ts() -> int:
    return int(time.time())


def generate_token() -> str:
    """Return a fresh 256-bit URL-safe secret."""
    return secrets.token_urlsafe(32)


def new_project_id() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    admin: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    token: Mapped[str | None] = mapped_column(String(255), unique=True)
    oidc_subject: Mapped[str | None] = mapped_column(String(255), unique=True)
    email_verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    groups: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    created_ts: Mapped[int] = mapped_column(Integer, nullable=False, default=now_ts)
    updated_ts: Mapped[int] = mapped_column(
        Integer, nullable=False, default=now_ts, onupdate=now_ts
    )
    deleted_ts: Mapped[int | None] = mapped_column(Integer)

    __table_args__ = (Index("idx_users_deleted_ts", "deleted_ts"),)

    @property
    def group_set(self) -> frozenset[str]:
        return frozenset(g for g in (self.groups or []) if isinstance(g, str))


class UserToken(Base):
    __tablename__ = "user_tokens"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    token: Mapped[str] = mapped_column(
        String(255), nullable=False, unique=True, default=generate_token
    )
    last_used_ts: Mapped[int | None] = mapped_column(Integer)
    created_ts: Mapped[int] = mapped_column(Integer, nullable=False, default=now_ts)


class Project(Base):
    __tablename__ = "projects"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_project_id)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    token: Mapped[str] = mapped_column(
        String(255), nullable=False, unique=True, default=generate_token
    )
    current_branch: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    base_url: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    coverage_rate: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id"), nullable=False, index=True
    )
    created_ts: Mapped[int] = mapped_column(Integer, nullable=False, default=now_ts)
    updated_ts: Mapped[int] = mapped_column(
        Integer, nullable=False, default=now_ts, onupdate=now_ts
    )


class ProjectShare(Base):
    __tablename__ = "project_shares"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_id: Mapped[str] = mapped_column(
        ForeignKey("projects.id"), nullable=False, index=True
    )
    group_name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    created_ts: Mapped[int] = mapped_column(Integer, nullable=False, default=now_ts)

    __table_args__ = (
        UniqueConstraint("project_id", "group_name", name="uq_project_shares_group"),
    )


class ProjectToken(Base):
    __tablename__ = "project_tokens"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_id: Mapped[str] = mapped_column(
        ForeignKey("projects.id"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    token: Mapped[str] = mapped_column(
        String(255), nullable=False, unique=True, default=generate_token
    )
    last_used_ts: Mapped[int | None] = mapped_column(Integer)
    created_ts: Mapped[int] = mapped_column(Integer, nullable=False, default=now_ts)


class Build(Base):
    __tablename__ = "builds"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_id: Mapped[str] = mapped_column(ForeignKey("projects.id"), nullable=False)
    build_num: Mapped[int] = mapped_column(Integer, nullable=False)
    branch: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    commit_sha: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    commit_msg: Mapped[str] = mapped_column(Text, nullable=False, default="")
    coverage_rate: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    created_ts: Mapped[int] = mapped_column(Integer, nullable=False, default=now_ts)

    __table_args__ = (
        UniqueConstraint("project_id", "build_num", name="uq_builds_project_num"),
        Index("idx_builds_project_ts", "project_id", "created_ts"),
    )


class Job(Base):
    __tablename__ = "jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    build_id: Mapped[int] = mapped_column(
        ForeignKey("builds.id"), nullable=False, index=True
    )
    job_number: Mapped[str] = mapped_column(String(255), nullable=False)
    coverage_rate: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    data: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    created_ts: Mapped[int] = mapped_column(Integer, nullable=False, default=now_ts)


class JobFile(Base):
    __tablename__ = "job_files"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[int] = mapped_column(
        ForeignKey("jobs.id"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(Text, nullable=False)
    source: Mapped[str] = mapped_column(Text, nullable=False, default="")
    coverage: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    coverage_rate: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    created_ts: Mapped[int] = mapped_column(Integer, nullable=False, default=now_ts)


# ------------------------------------------------------------------
# JSON views
# ------------------------------------------------------------------


def user_to_dict(user: User, *, include_token: bool = False) -> dict[str, Any]:
    data: dict[str, Any] = {
        "id": user.id,
        "email": user.email,
        "name": user.name,
        "admin": bool(user.admin),
        "email_verified": bool(user.email_verified),
        "groups": sorted(user.group_set),
        "created_ts": user.created_ts,
        "updated_ts": user.updated_ts,
    }
    if include_token:
        data["token"] = user.token
    return data


def project_to_dict(project: Project) -> dict[str, Any]:
    return {
        "id": project.id,
        "name": project.name,
        "token": project.token,
        "current_branch": project.current_branch,
        "base_url": project.base_url,
        "coverage_rate": project.coverage_rate,
        "user_id": project.user_id,
        "created_ts": project.created_ts,
        "updated_ts": project.updated_ts,
    }


def share_to_dict(share: ProjectShare) -> dict[str, Any]:
    return {
        "id": share.id,
        "project_id": share.project_id,
        "group_name": share.group_name,
        "created_ts": share.created_ts,
    }


def token_to_dict(
    token: UserToken | ProjectToken, *, reveal: bool = False
) -> dict[str, Any]:
    """Token secrets are only revealed once, at creation."""
    data: dict[str, Any] = {
        "id": token.id,
        "name": token.name,
        "last_used_ts": token.last_used_ts,
        "created_ts": token.created_ts,
    }
    if isinstance(token, ProjectToken):
        data["project_id"] = token.project_id
    else:
        data["user_id"] = token.user_id
    if reveal:
        data["token"] = token.token
    return data


def build_to_dict(build: Build) -> dict[str, Any]:
    return {
        "id": build.id,
        "project_id": build.project_id,
        "build_num": build.build_num,
        "branch": build.branch,
        "commit_sha": build.commit_sha,
        "commit_msg": build.commit_msg,
        "coverage_rate": build.coverage_rate,
        "created_ts": build.created_ts,
    }


def job_to_dict(job: Job) -> dict[str, Any]:
    return {
        "id": job.id,
        "build_id": job.build_id,
        "job_number": job.job_number,
        "coverage_rate": job.coverage_rate,
        "data": job.data,
        "created_ts": job.created_ts,
    }


def job_file_to_dict(job_file: JobFile) -> dict[str, Any]:
    return {
        "id": job_file.id,
        "job_id": job_file.job_id,
        "name": job_file.name,
        "source": job_file.source,
        "coverage": job_file.coverage,
        "coverage_rate": job_file.coverage_rate,
        "created_ts": job_file.created_ts,
    }
