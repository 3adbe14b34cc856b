"""Async SQLAlchemy database layer."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Iterable

from sqlalchemy import delete, func, or_, select, text, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from librecov.errors import StorageError
from librecov.models import (
    Build,
    Job,
    JobFile,
    Project,
    ProjectShare,
    ProjectToken,
    User,
    UserToken,
    now_ts,
)

logger = logging.getLogger(__name__)

# ------------------------------------------------------------------
# Engine & session factory
# ------------------------------------------------------------------

_engine = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def sqlite_url(db_path: Path) -> str:
    return f"sqlite+aiosqlite:///{db_path}"


def configure(url: str) -> None:
    """Create the async engine for *url* (any SQLAlchemy async URL)."""
    global _engine, _session_factory
    _engine = create_async_engine(url, echo=False)
    _session_factory = async_sessionmaker(_engine, expire_on_commit=False)


def _get_session_factory() -> async_sessionmaker[AsyncSession]:
    if _session_factory is None:
        raise RuntimeError("Database not configured – call db.configure() first")
    return _session_factory


@asynccontextmanager
async def session() -> AsyncIterator[AsyncSession]:
    """Async context manager yielding a ready-to-use SQLAlchemy session."""
    factory = _get_session_factory()
    async with factory() as sess:
        yield sess
        await sess.commit()


@asynccontextmanager
async def transaction() -> AsyncIterator[AsyncSession]:
    """Yield a session whose work commits as one unit or not at all."""
    factory = _get_session_factory()
    async with factory() as sess:
        async with sess.begin():
            yield sess


# ------------------------------------------------------------------
# Alembic helpers
# ------------------------------------------------------------------

_ALEMBIC_DIR = str(Path(__file__).resolve().parent.parent / "alembic")


def _run_alembic_upgrade(connection: Any) -> None:
    """Synchronous helper executed inside ``run_sync``."""
    from sqlalchemy import inspect as sa_inspect

    from alembic import command
    from alembic.config import Config
    from alembic.migration import MigrationContext

    cfg = Config()
    cfg.set_main_option("script_location", _ALEMBIC_DIR)
    cfg.attributes["connection"] = connection

    # Databases created with ``Base.metadata.create_all`` have the tables
    # but no alembic_version row yet.
    ctx = MigrationContext.configure(connection)
    if ctx.get_current_revision() is None:
        existing = set(sa_inspect(connection).get_table_names())
        if "projects" in existing:
            command.stamp(cfg, "head")
            return

    command.upgrade(cfg, "head")


async def init_db() -> None:
    """Apply pending Alembic migrations to bring the database up to date."""
    if _engine is None:
        raise RuntimeError("Database not configured – call db.configure() first")
    async with _engine.begin() as conn:
        if _engine.dialect.name == "sqlite":
            await conn.execute(text("PRAGMA journal_mode=WAL"))
        await conn.run_sync(_run_alembic_upgrade)


async def dispose() -> None:
    """Dispose of the engine and reset module state."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None


# ------------------------------------------------------------------
# Lookup helpers
# ------------------------------------------------------------------


async def active_user(sess: AsyncSession, user_id: int) -> User | None:
    stmt = select(User).where(User.id == user_id, User.deleted_ts.is_(None))
    return (await sess.execute(stmt)).scalars().first()


async def user_by_legacy_token(sess: AsyncSession, token: str) -> User | None:
    stmt = select(User).where(User.token == token, User.deleted_ts.is_(None))
    return (await sess.execute(stmt)).scalars().first()


async def user_token_by_value(sess: AsyncSession, token: str) -> UserToken | None:
    stmt = select(UserToken).where(UserToken.token == token)
    return (await sess.execute(stmt)).scalars().first()


async def project_token_by_value(
    sess: AsyncSession, token: str
) -> ProjectToken | None:
    stmt = select(ProjectToken).where(ProjectToken.token == token)
    return (await sess.execute(stmt)).scalars().first()


async def project_by_id(sess: AsyncSession, project_id: str) -> Project | None:
    return await sess.get(Project, project_id)


async def project_by_token(sess: AsyncSession, token: str) -> Project | None:
    stmt = select(Project).where(Project.token == token).limit(1)
    return (await sess.execute(stmt)).scalars().first()


async def next_build_num(sess: AsyncSession, project_id: str) -> int:
    stmt = select(func.coalesce(func.max(Build.build_num), 0)).where(
        Build.project_id == project_id
    )
    current = (await sess.execute(stmt)).scalar_one()
    return int(current) + 1


async def stamp_last_used(sess: AsyncSession, token: UserToken | ProjectToken) -> None:
    model = type(token)
    await sess.execute(
        update(model).where(model.id == token.id).values(last_used_ts=now_ts())
    )


# ------------------------------------------------------------------
# Project visibility
# ------------------------------------------------------------------


def visibility_clause(user: User) -> Any | None:
    """WHERE clause restricting projects to those *user* may see.

    ``None`` means no restriction (admins).  Otherwise a project is
    visible when the user owns it or when it is shared with one of the
    user's current groups.
    """
    if user.admin:
        return None
    owned = Project.user_id == user.id
    groups = sorted(user.group_set)
    if not groups:
        return owned
    shared = select(ProjectShare.project_id).where(ProjectShare.group_name.in_(groups))
    return or_(owned, Project.id.in_(shared))


async def list_visible_projects(sess: AsyncSession, user: User) -> list[Project]:
    stmt = select(Project).order_by(Project.created_ts.desc(), Project.name.asc())
    clause = visibility_clause(user)
    if clause is not None:
        stmt = stmt.where(clause)
    return list((await sess.execute(stmt)).scalars().all())


async def visible_project(
    sess: AsyncSession, user: User, project_id: str
) -> Project | None:
    stmt = select(Project).where(Project.id == project_id)
    clause = visibility_clause(user)
    if clause is not None:
        stmt = stmt.where(clause)
    return (await sess.execute(stmt)).scalars().first()


async def shares_for(sess: AsyncSession, project_ids: Iterable[str]) -> list[ProjectShare]:
    ids = list(project_ids)
    if not ids:
        return []
    stmt = (
        select(ProjectShare)
        .where(ProjectShare.project_id.in_(ids))
        .order_by(ProjectShare.id.asc())
    )
    return list((await sess.execute(stmt)).scalars().all())


# ------------------------------------------------------------------
# Deletions
# ------------------------------------------------------------------


async def delete_project(sess: AsyncSession, project_id: str) -> None:
    """Remove a project together with everything hanging off it."""
    build_ids = select(Build.id).where(Build.project_id == project_id)
    job_ids = select(Job.id).where(Job.build_id.in_(build_ids))
    await sess.execute(delete(JobFile).where(JobFile.job_id.in_(job_ids)))
    await sess.execute(delete(Job).where(Job.build_id.in_(build_ids)))
    await sess.execute(delete(Build).where(Build.project_id == project_id))
    await sess.execute(delete(ProjectToken).where(ProjectToken.project_id == project_id))
    await sess.execute(delete(ProjectShare).where(ProjectShare.project_id == project_id))
    await sess.execute(delete(Project).where(Project.id == project_id))


async def transfer_projects(sess: AsyncSession, from_user_id: int, to_user_id: int) -> int:
    result = await sess.execute(
        update(Project)
        .where(Project.user_id == from_user_id)
        .values(user_id=to_user_id, updated_ts=now_ts())
    )
    return result.rowcount or 0


async def delete_user_tokens(sess: AsyncSession, user_id: int) -> None:
    await sess.execute(delete(UserToken).where(UserToken.user_id == user_id))


async def soft_delete_user(sess: AsyncSession, user_id: int) -> None:
    # The legacy token is released so it can never authenticate again.
    await sess.execute(
        update(User)
        .where(User.id == user_id)
        .values(deleted_ts=now_ts(), token=None, updated_ts=now_ts())
    )


async def delete_user(user_id: int, admin_id: int) -> int:
    """Delete *user_id*, handing their projects to *admin_id*.

    Ownership transfer, token cleanup and the soft delete commit together;
    any failure rolls all of them back.  Returns the number of projects
    transferred.
    """
    try:
        async with transaction() as sess:
            moved = await transfer_projects(sess, user_id, admin_id)
            await delete_user_tokens(sess, user_id)
            await soft_delete_user(sess, user_id)
    except SQLAlchemyError as exc:
        logger.exception("Deleting user %s failed; rolled back", user_id)
        raise StorageError() from exc
    logger.info(
        "Deleted user %s; %d project(s) transferred to user %s",
        user_id,
        moved,
        admin_id,
    )
    return moved


# ------------------------------------------------------------------
# Bootstrap
# ------------------------------------------------------------------


async def promote_first_admin(email: str) -> bool:
    """Mark the user with *email* as admin.  Returns ``True`` if one exists."""
    email = email.strip()
    if not email:
        return False
    async with session() as sess:
        stmt = select(User).where(
            func.lower(User.email) == email.lower(), User.deleted_ts.is_(None)
        )
        user = (await sess.execute(stmt)).scalars().first()
        if user is None:
            logger.warning(
                "FIRST_ADMIN_EMAIL=%s set but user not found. "
                "Create the user via OIDC first.",
                email,
            )
            return False
        if user.admin:
            logger.info("User %s already an admin", email)
        else:
            user.admin = True
            logger.info("User %s marked as admin (FIRST_ADMIN_EMAIL)", email)
    return True
