"""REST API under ``/api/v1``: projects, tokens, shares, builds, users."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from librecov import db
from librecov.auth.dependencies import (
    Principal,
    require_account,
    require_admin,
    require_user,
)
from librecov.auth.state import AuthState, get_auth_state
from librecov.errors import Conflict, Forbidden, NotFound
from librecov.models import (
    Build,
    Job,
    JobFile,
    Project,
    ProjectShare,
    ProjectToken,
    User,
    UserToken,
    build_to_dict,
    generate_token,
    job_file_to_dict,
    job_to_dict,
    project_to_dict,
    share_to_dict,
    token_to_dict,
    user_to_dict,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["api"])
admin_router = APIRouter(
    prefix="/api/v1/admin", tags=["admin"], dependencies=[Depends(require_admin)]
)

MAX_BUILDS = 500

# ----------------------------
# DTOs (no Pydantic)
# ----------------------------


async def _json_object(request: Request) -> dict[str, Any]:
    try:
        body = await request.json()
    except ValueError:
        raise HTTPException(status_code=422, detail="Body must be valid JSON") from None
    if not isinstance(body, dict):
        raise HTTPException(status_code=422, detail="Body must be a JSON object")
    return body


def _required_str(body: dict[str, Any], key: str) -> str:
    value = body.get(key)
    if not isinstance(value, str) or not value.strip():
        raise HTTPException(status_code=422, detail=f"{key} must be a non-empty string")
    return value.strip()


def _optional_str(body: dict[str, Any], key: str) -> str | None:
    value = body.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise HTTPException(status_code=422, detail=f"{key} must be a string")
    return value.strip()


@dataclass(frozen=True, slots=True)
class NamedTokenDTO:
    name: str

    @classmethod
    def from_json(cls, body: dict[str, Any]) -> "NamedTokenDTO":
        return cls(name=_required_str(body, "name"))


@dataclass(frozen=True, slots=True)
class ProjectCreateDTO:
    name: str
    current_branch: str
    base_url: str

    @classmethod
    def from_json(cls, body: dict[str, Any]) -> "ProjectCreateDTO":
        return cls(
            name=_required_str(body, "name"),
            current_branch=_optional_str(body, "current_branch") or "",
            base_url=_optional_str(body, "base_url") or "",
        )


@dataclass(frozen=True, slots=True)
class ProjectUpdateDTO:
    name: str | None
    current_branch: str | None
    base_url: str | None

    @classmethod
    def from_json(cls, body: dict[str, Any]) -> "ProjectUpdateDTO":
        name = _optional_str(body, "name")
        if name == "":
            raise HTTPException(status_code=422, detail="name must be a non-empty string")
        return cls(
            name=name,
            current_branch=_optional_str(body, "current_branch"),
            base_url=_optional_str(body, "base_url"),
        )


@dataclass(frozen=True, slots=True)
class UserUpdateDTO:
    name: str | None
    email: str | None
    admin: bool | None

    @classmethod
    def from_json(cls, body: dict[str, Any]) -> "UserUpdateDTO":
        admin = body.get("admin")
        if admin is not None and not isinstance(admin, bool):
            raise HTTPException(status_code=422, detail="admin must be a boolean")
        return cls(
            name=_optional_str(body, "name") or None,
            email=_optional_str(body, "email") or None,
            admin=admin,
        )


def _user_id_field(body: dict[str, Any]) -> int:
    value = body.get("user_id")
    if isinstance(value, bool) or not isinstance(value, int):
        raise HTTPException(status_code=422, detail="user_id must be an integer")
    return value


# ----------------------------
# Access helpers
# ----------------------------


async def visible_project_or_404(
    sess: AsyncSession, principal: Principal, project_id: str
) -> Project:
    principal.check_project(project_id)
    project = await db.visible_project(sess, principal.user, project_id)
    if project is None:
        raise NotFound("Project not found")
    return project


async def owned_project_or_404(
    sess: AsyncSession, principal: Principal, project_id: str
) -> Project:
    """Mutations are reserved to the owner and admins."""
    project = await db.project_by_id(sess, project_id)
    if project is None or not (
        principal.is_admin or project.user_id == principal.user.id
    ):
        raise NotFound("Project not found")
    return project


async def _build_or_404(sess: AsyncSession, principal: Principal, build_id: int) -> Build:
    build = await sess.get(Build, build_id)
    if build is None:
        raise NotFound("Build not found")
    await visible_project_or_404(sess, principal, build.project_id)
    return build


async def _job_or_404(sess: AsyncSession, principal: Principal, job_id: int) -> Job:
    job = await sess.get(Job, job_id)
    if job is None:
        raise NotFound("Job not found")
    await _build_or_404(sess, principal, job.build_id)
    return job


# ----------------------------
# User tokens
# ----------------------------


@router.get("/user/tokens")
async def list_user_tokens(
    principal: Principal = Depends(require_account),
) -> list[dict[str, Any]]:
    async with db.session() as sess:
        stmt = (
            select(UserToken)
            .where(UserToken.user_id == principal.user.id)
            .order_by(UserToken.created_ts.desc(), UserToken.id.desc())
        )
        tokens = (await sess.execute(stmt)).scalars().all()
    return [token_to_dict(t) for t in tokens]


@router.post("/user/tokens", status_code=201)
async def create_user_token(
    request: Request, principal: Principal = Depends(require_account)
) -> dict[str, Any]:
    dto = NamedTokenDTO.from_json(await _json_object(request))
    async with db.session() as sess:
        token = UserToken(user_id=principal.user.id, name=dto.name)
        sess.add(token)
        await sess.flush()
    logger.info("User %d created token %r", principal.user.id, dto.name)
    return token_to_dict(token, reveal=True)


@router.delete("/user/tokens/{token_id}")
async def delete_user_token(
    token_id: int, principal: Principal = Depends(require_account)
) -> dict[str, str]:
    async with db.session() as sess:
        token = await sess.get(UserToken, token_id)
        if token is None or token.user_id != principal.user.id:
            raise NotFound("Token not found")
        await sess.delete(token)
    return {"message": "Token deleted successfully"}


# ----------------------------
# Projects
# ----------------------------


@router.get("/projects")
async def list_projects(principal: Principal = Depends(require_user)) -> list[dict[str, Any]]:
    async with db.session() as sess:
        projects = await db.list_visible_projects(sess, principal.user)
    if principal.project_id is not None:
        projects = [p for p in projects if p.id == principal.project_id]
    return [project_to_dict(p) for p in projects]


@router.post("/projects", status_code=201)
async def create_project(
    request: Request, principal: Principal = Depends(require_account)
) -> dict[str, Any]:
    dto = ProjectCreateDTO.from_json(await _json_object(request))
    async with db.session() as sess:
        project = Project(
            name=dto.name,
            current_branch=dto.current_branch,
            base_url=dto.base_url,
            user_id=principal.user.id,
        )
        sess.add(project)
        await sess.flush()
    logger.info("User %d created project %s (%s)", principal.user.id, project.id, dto.name)
    return project_to_dict(project)


@router.get("/projects/{project_id}")
async def get_project(
    project_id: str, principal: Principal = Depends(require_user)
) -> dict[str, Any]:
    async with db.session() as sess:
        project = await visible_project_or_404(sess, principal, project_id)
        shares = await db.shares_for(sess, [project.id])
    data = project_to_dict(project)
    data["shares"] = [share_to_dict(s) for s in shares]
    return data


@router.put("/projects/{project_id}")
async def update_project(
    project_id: str, request: Request, principal: Principal = Depends(require_account)
) -> dict[str, Any]:
    dto = ProjectUpdateDTO.from_json(await _json_object(request))
    async with db.session() as sess:
        project = await owned_project_or_404(sess, principal, project_id)
        if dto.name is not None:
            project.name = dto.name
        if dto.current_branch is not None:
            project.current_branch = dto.current_branch
        if dto.base_url is not None:
            project.base_url = dto.base_url
        await sess.flush()
    return project_to_dict(project)


@router.delete("/projects/{project_id}")
async def delete_project(
    project_id: str, principal: Principal = Depends(require_account)
) -> dict[str, str]:
    async with db.transaction() as sess:
        project = await owned_project_or_404(sess, principal, project_id)
        await db.delete_project(sess, project.id)
    logger.info("User %d deleted project %s", principal.user.id, project_id)
    return {"message": "Project deleted"}


@router.post("/projects/{project_id}/transfer-ownership")
async def transfer_ownership(
    project_id: str, request: Request, principal: Principal = Depends(require_account)
) -> dict[str, Any]:
    new_owner_id = _user_id_field(await _json_object(request))
    async with db.session() as sess:
        project = await owned_project_or_404(sess, principal, project_id)
        new_owner = await db.active_user(sess, new_owner_id)
        if new_owner is None:
            raise NotFound("User not found")
        project.user_id = new_owner.id
        await sess.flush()
    logger.info(
        "Project %s transferred from user %d to user %d",
        project_id,
        principal.user.id,
        new_owner_id,
    )
    return project_to_dict(project)


# ----------------------------
# Project tokens
# ----------------------------


@router.get("/projects/{project_id}/tokens")
async def list_project_tokens(
    project_id: str, principal: Principal = Depends(require_account)
) -> list[dict[str, Any]]:
    async with db.session() as sess:
        await owned_project_or_404(sess, principal, project_id)
        stmt = (
            select(ProjectToken)
            .where(ProjectToken.project_id == project_id)
            .order_by(ProjectToken.created_ts.desc(), ProjectToken.id.desc())
        )
        tokens = (await sess.execute(stmt)).scalars().all()
    return [token_to_dict(t) for t in tokens]


@router.post("/projects/{project_id}/tokens", status_code=201)
async def create_project_token(
    project_id: str, request: Request, principal: Principal = Depends(require_account)
) -> dict[str, Any]:
    dto = NamedTokenDTO.from_json(await _json_object(request))
    async with db.session() as sess:
        await owned_project_or_404(sess, principal, project_id)
        token = ProjectToken(project_id=project_id, name=dto.name)
        sess.add(token)
        await sess.flush()
    return token_to_dict(token, reveal=True)


@router.delete("/projects/{project_id}/tokens/{token_id}")
async def delete_project_token(
    project_id: str, token_id: int, principal: Principal = Depends(require_account)
) -> dict[str, str]:
    async with db.session() as sess:
        await owned_project_or_404(sess, principal, project_id)
        token = await sess.get(ProjectToken, token_id)
        if token is None or token.project_id != project_id:
            raise NotFound("Token not found")
        await sess.delete(token)
    return {"message": "Token deleted successfully"}


@router.post("/projects/{project_id}/refresh-token")
async def refresh_project_token(
    project_id: str, principal: Principal = Depends(require_account)
) -> dict[str, str]:
    """Replace the upload token; the old one stops working immediately."""
    async with db.session() as sess:
        project = await owned_project_or_404(sess, principal, project_id)
        project.token = generate_token()
        await sess.flush()
    logger.info("Upload token of project %s regenerated", project_id)
    return {"token": project.token}


# ----------------------------
# Shares
# ----------------------------


@router.get("/projects/{project_id}/shares")
async def list_shares(
    project_id: str, principal: Principal = Depends(require_user)
) -> list[dict[str, Any]]:
    async with db.session() as sess:
        project = await visible_project_or_404(sess, principal, project_id)
        shares = await db.shares_for(sess, [project.id])
    return [share_to_dict(s) for s in shares]


@router.post("/projects/{project_id}/shares", status_code=201)
async def create_share(
    project_id: str, request: Request, principal: Principal = Depends(require_account)
) -> dict[str, Any]:
    group = _required_str(await _json_object(request), "group_name")
    if not principal.is_admin and group not in principal.groups:
        raise Forbidden("You do not have access to this group")

    try:
        async with db.session() as sess:
            await owned_project_or_404(sess, principal, project_id)
            stmt = select(ProjectShare).where(
                ProjectShare.project_id == project_id,
                ProjectShare.group_name == group,
            )
            if (await sess.execute(stmt)).scalars().first() is not None:
                raise Conflict("Project is already shared with this group")
            share = ProjectShare(project_id=project_id, group_name=group)
            sess.add(share)
            await sess.flush()
    except IntegrityError:
        raise Conflict("Project is already shared with this group") from None
    return share_to_dict(share)


@router.delete("/projects/{project_id}/shares/{share_id}")
async def delete_share(
    project_id: str, share_id: int, principal: Principal = Depends(require_account)
) -> dict[str, str]:
    async with db.session() as sess:
        await owned_project_or_404(sess, principal, project_id)
        share = await sess.get(ProjectShare, share_id)
        if share is None or share.project_id != project_id:
            raise NotFound("Share not found")
        await sess.delete(share)
    return {"message": "Share deleted"}


# ----------------------------
# Users (ownership transfer picker)
# ----------------------------


@router.get("/users")
async def list_users_brief(
    principal: Principal = Depends(require_account),
) -> list[dict[str, Any]]:
    async with db.session() as sess:
        stmt = select(User).where(User.deleted_ts.is_(None)).order_by(User.email.asc())
        users = (await sess.execute(stmt)).scalars().all()
    return [{"id": u.id, "email": u.email, "name": u.name} for u in users]


# ----------------------------
# Builds, jobs, files
# ----------------------------


@router.get("/projects/{project_id}/builds")
async def list_builds(
    project_id: str,
    limit: int = 100,
    principal: Principal = Depends(require_user),
) -> list[dict[str, Any]]:
    limit = max(1, min(int(limit), MAX_BUILDS))
    async with db.session() as sess:
        await visible_project_or_404(sess, principal, project_id)
        stmt = (
            select(Build)
            .where(Build.project_id == project_id)
            .order_by(Build.build_num.desc())
            .limit(limit)
        )
        builds = (await sess.execute(stmt)).scalars().all()
    return [build_to_dict(b) for b in builds]


@router.get("/builds/{build_id}")
async def get_build(
    build_id: int, principal: Principal = Depends(require_user)
) -> dict[str, Any]:
    async with db.session() as sess:
        build = await _build_or_404(sess, principal, build_id)
    return build_to_dict(build)


@router.get("/builds/{build_id}/jobs")
async def list_jobs(
    build_id: int, principal: Principal = Depends(require_user)
) -> list[dict[str, Any]]:
    async with db.session() as sess:
        await _build_or_404(sess, principal, build_id)
        stmt = select(Job).where(Job.build_id == build_id).order_by(Job.id.asc())
        jobs = (await sess.execute(stmt)).scalars().all()
    return [job_to_dict(j) for j in jobs]


@router.get("/jobs/{job_id}")
async def get_job(job_id: int, principal: Principal = Depends(require_user)) -> dict[str, Any]:
    async with db.session() as sess:
        job = await _job_or_404(sess, principal, job_id)
    return job_to_dict(job)


@router.get("/jobs/{job_id}/files")
async def list_files(
    job_id: int, principal: Principal = Depends(require_user)
) -> list[dict[str, Any]]:
    async with db.session() as sess:
        await _job_or_404(sess, principal, job_id)
        stmt = select(JobFile).where(JobFile.job_id == job_id).order_by(JobFile.name.asc())
        files = (await sess.execute(stmt)).scalars().all()
    return [job_file_to_dict(f) for f in files]


@router.get("/files/{file_id}")
async def get_file(
    file_id: int, principal: Principal = Depends(require_user)
) -> dict[str, Any]:
    async with db.session() as sess:
        job_file = await sess.get(JobFile, file_id)
        if job_file is None:
            raise NotFound("File not found")
        await _job_or_404(sess, principal, job_file.job_id)
    return job_file_to_dict(job_file)


# ----------------------------
# Admin
# ----------------------------


async def _user_or_404(sess: AsyncSession, user_id: int) -> User:
    user = await db.active_user(sess, user_id)
    if user is None:
        raise NotFound("User not found")
    return user


@admin_router.get("/users")
async def admin_list_users() -> list[dict[str, Any]]:
    async with db.session() as sess:
        stmt = select(User).where(User.deleted_ts.is_(None)).order_by(User.id.asc())
        users = (await sess.execute(stmt)).scalars().all()
    return [user_to_dict(u) for u in users]


@admin_router.get("/users/{user_id}")
async def admin_get_user(user_id: int) -> dict[str, Any]:
    async with db.session() as sess:
        user = await _user_or_404(sess, user_id)
    return user_to_dict(user)


@admin_router.put("/users/{user_id}")
async def admin_update_user(user_id: int, request: Request) -> dict[str, Any]:
    dto = UserUpdateDTO.from_json(await _json_object(request))
    try:
        async with db.session() as sess:
            user = await _user_or_404(sess, user_id)
            if dto.name is not None:
                user.name = dto.name
            if dto.email is not None:
                user.email = dto.email
            if dto.admin is not None:
                user.admin = dto.admin
            await sess.flush()
    except IntegrityError:
        raise Conflict("Email already in use") from None
    return user_to_dict(user)


@admin_router.delete("/users/{user_id}")
async def admin_delete_user(
    user_id: int,
    principal: Principal = Depends(require_admin),
    auth: AuthState = Depends(get_auth_state),
) -> dict[str, str]:
    if user_id == principal.user.id:
        raise HTTPException(status_code=400, detail="Cannot delete your own account")
    async with db.session() as sess:
        await _user_or_404(sess, user_id)

    await db.delete_user(user_id, principal.user.id)
    auth.sessions.delete_user_sessions(user_id)
    return {"message": "User deleted and projects transferred to admin"}


@admin_router.get("/projects")
async def admin_list_projects() -> list[dict[str, Any]]:
    async with db.session() as sess:
        stmt = select(Project).order_by(Project.created_ts.desc(), Project.name.asc())
        projects = (await sess.execute(stmt)).scalars().all()
    return [project_to_dict(p) for p in projects]
