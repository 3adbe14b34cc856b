"""Coveralls-compatible coverage ingestion.

An upload is parsed into a :class:`CoverallsUpload`, the owning project
is resolved by its secret token, and a Build, a Job and one JobFile per
source file are written inside a single transaction together with the
aggregated coverage rates.

Per-line coverage entries are either ``null`` (not executable) or an
execution count.  A line is *measurable* when its entry is not ``null``
and *covered* when the entry is a number greater than zero::

    rate = covered / measurable * 100      (0 when nothing is measurable)
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Sequence

from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from librecov import db
from librecov.errors import InvalidPayload, InvalidToken, LibrecovError, StorageError
from librecov.models import Build, Job, JobFile, Project

logger = logging.getLogger(__name__)

# Attempts made when two uploads race for the same build number.
MAX_INGEST_ATTEMPTS = 3

ProjectCheck = Callable[[AsyncSession, Project], Awaitable[None]]

# ----------------------------
# Rate computation
# ----------------------------


def _is_covered(entry: Any) -> bool:
    if isinstance(entry, bool):
        return False
    return isinstance(entry, (int, float)) and entry > 0


def line_counts(coverage: Sequence[Any]) -> tuple[int, int]:
    """Return ``(measurable, covered)`` for one coverage sequence."""
    measurable = 0
    covered = 0
    for entry in coverage:
        if entry is None:
            continue
        measurable += 1
        if _is_covered(entry):
            covered += 1
    return measurable, covered


def coverage_rate(covered: int, measurable: int) -> float:
    if measurable <= 0:
        return 0.0
    return covered / measurable * 100.0


# ----------------------------
# DTOs (no Pydantic)
# ----------------------------


@dataclass(frozen=True, slots=True)
class SourceFile:
    name: str
    source: str
    coverage: list[Any]

    @classmethod
    def from_dict(cls, raw: Any, index: int) -> "SourceFile":
        if not isinstance(raw, dict):
            raise InvalidPayload(f"source_files[{index}] must be an object")
        name = raw.get("name")
        if not isinstance(name, str) or not name.strip():
            raise InvalidPayload(f"source_files[{index}].name must be a non-empty string")
        source = raw.get("source") or ""
        if not isinstance(source, str):
            raise InvalidPayload(f"source_files[{index}].source must be a string")
        coverage = raw.get("coverage")
        if coverage is None:
            coverage = []
        if not isinstance(coverage, list):
            raise InvalidPayload(f"source_files[{index}].coverage must be an array")
        return cls(name=name, source=source, coverage=coverage)

    def counts(self) -> tuple[int, int]:
        return line_counts(self.coverage)


@dataclass(frozen=True, slots=True)
class CoverallsUpload:
    repo_token: str
    branch: str = ""
    commit_sha: str = ""
    commit_msg: str = ""
    service_name: str = ""
    service_number: str = ""
    service_job_id: str = ""
    source_files: tuple[SourceFile, ...] = field(default_factory=tuple)

    @classmethod
    def from_json(cls, raw: str | bytes) -> "CoverallsUpload":
        """Parse and validate a Coveralls JSON document."""
        try:
            data = json.loads(raw)
        except (ValueError, UnicodeDecodeError) as exc:
            raise InvalidPayload(f"Invalid JSON format: {exc}") from exc
        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: Any) -> "CoverallsUpload":
        if not isinstance(data, dict):
            raise InvalidPayload("Upload must be a JSON object")

        token = data.get("repo_token")
        if not isinstance(token, str) or not token.strip():
            raise InvalidPayload("repo_token is required")

        git = data.get("git") or {}
        if not isinstance(git, dict):
            raise InvalidPayload("git must be an object")
        head = git.get("head") or {}
        if not isinstance(head, dict):
            raise InvalidPayload("git.head must be an object")

        files_raw = data.get("source_files")
        if files_raw is None:
            files_raw = []
        if not isinstance(files_raw, list):
            raise InvalidPayload("source_files must be an array")

        return cls(
            repo_token=token.strip(),
            branch=_text(git.get("branch")),
            commit_sha=_text(head.get("id")),
            commit_msg=_text(head.get("message")),
            service_name=_text(data.get("service_name")),
            service_number=_text(data.get("service_number")),
            service_job_id=_text(data.get("service_job_id")),
            source_files=tuple(
                SourceFile.from_dict(f, i) for i, f in enumerate(files_raw)
            ),
        )

    def job_number(self, build_num: int) -> str:
        if self.service_job_id.strip():
            return self.service_job_id.strip()
        return f"{build_num}.1"

    def service_data(self) -> str:
        return json.dumps(
            {
                "service_name": self.service_name,
                "service_number": self.service_number,
                "service_job_id": self.service_job_id,
            }
        )


def _text(value: Any) -> str:
    # CI tools send job ids and build numbers as either strings or numbers.
    if value is None:
        return ""
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, str):
        return value
    raise InvalidPayload("expected a string value")


@dataclass(frozen=True, slots=True)
class IngestResult:
    project_id: str
    build_id: int
    job_id: int
    build_num: int
    job_number: str
    coverage_rate: float

    def to_response(self) -> dict[str, Any]:
        return {
            "message": "Coverage uploaded successfully",
            "project_id": self.project_id,
            "build_id": self.build_id,
            "job_id": self.job_id,
            "coverage_rate": self.coverage_rate,
        }


# ----------------------------
# Pipeline
# ----------------------------


async def ingest_upload(
    upload: CoverallsUpload,
    *,
    check_project: ProjectCheck | None = None,
) -> IngestResult:
    """Persist *upload* and return the identifiers of what was created.

    *check_project* lets authenticated callers veto the resolved project
    (it raises to refuse).  Build-number conflicts with a concurrent
    upload to the same project are retried; every other storage failure
    surfaces as :class:`StorageError` with nothing written.
    """
    for attempt in range(1, MAX_INGEST_ATTEMPTS + 1):
        try:
            return await _ingest_once(upload, check_project)
        except (IntegrityError, OperationalError) as exc:
            if attempt == MAX_INGEST_ATTEMPTS:
                logger.exception(
                    "Coverage ingest failed after %d attempts", MAX_INGEST_ATTEMPTS
                )
                raise StorageError() from exc
            logger.warning(
                "Build number conflict during ingest (attempt %d/%d), retrying",
                attempt,
                MAX_INGEST_ATTEMPTS,
            )
        except LibrecovError:
            raise
        except SQLAlchemyError as exc:
            logger.exception("Coverage ingest failed")
            raise StorageError() from exc
    raise AssertionError("unreachable")  # pragma: no cover


async def _ingest_once(
    upload: CoverallsUpload, check_project: ProjectCheck | None
) -> IngestResult:
    async with db.transaction() as sess:
        project = await db.project_by_token(sess, upload.repo_token)
        if project is None:
            raise InvalidToken()
        if check_project is not None:
            await check_project(sess, project)

        build_num = await db.next_build_num(sess, project.id)
        build = Build(
            project_id=project.id,
            build_num=build_num,
            branch=upload.branch,
            commit_sha=upload.commit_sha,
            commit_msg=upload.commit_msg,
        )
        sess.add(build)
        await sess.flush()

        job = Job(
            build_id=build.id,
            job_number=upload.job_number(build_num),
            data=upload.service_data(),
        )
        sess.add(job)
        await sess.flush()

        total_measurable = 0
        total_covered = 0
        for source_file in upload.source_files:
            measurable, covered = source_file.counts()
            total_measurable += measurable
            total_covered += covered
            sess.add(
                JobFile(
                    job_id=job.id,
                    name=source_file.name,
                    source=source_file.source,
                    coverage=json.dumps(source_file.coverage),
                    coverage_rate=coverage_rate(covered, measurable),
                )
            )

        rate = coverage_rate(total_covered, total_measurable)
        job.coverage_rate = rate
        build.coverage_rate = rate
        # Latest build wins; this is not an average over history.
        project.coverage_rate = rate
        await sess.flush()

        result = IngestResult(
            project_id=project.id,
            build_id=build.id,
            job_id=job.id,
            build_num=build_num,
            job_number=job.job_number,
            coverage_rate=rate,
        )

    logger.info(
        "Ingested build #%d for project %s (%d files, %.2f%%)",
        result.build_num,
        result.project_id,
        len(upload.source_files),
        result.coverage_rate,
    )
    return result
